"""Password verification with latency and outcome telemetry."""
from __future__ import annotations

import logging
import secrets
import time
from typing import Optional

from passlib.context import CryptContext
from passlib.exc import PasswordValueError

from .models import AuthErrorClass, AuthOutcome, User
from .telemetry import NullTelemetrySink, TelemetrySink

logger = logging.getLogger("users_api.auth")

DEFAULT_ROUNDS = 12


def build_password_context(rounds: int = DEFAULT_ROUNDS) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


class PasswordVerifier:
    """Compare submitted passwords against stored bcrypt hashes.

    Every call to :meth:`verify` records exactly one latency observation,
    tagged only with whether the password matched. A structurally invalid
    stored hash additionally increments the error counter; an ordinary wrong
    password does not.
    """

    def __init__(
        self,
        telemetry: Optional[TelemetrySink] = None,
        *,
        rounds: int = DEFAULT_ROUNDS,
    ) -> None:
        self._telemetry = telemetry if telemetry is not None else NullTelemetrySink()
        self._context = build_password_context(rounds)
        # Accounts without a password are checked against this hash so that
        # they cost the same work factor as a wrong password.
        self._placeholder_hash = self._context.hash(secrets.token_urlsafe(24)).encode("ascii")

    def hash_password(self, password: str) -> bytes:
        if not password:
            raise ValueError("Password must not be empty")
        return self._context.hash(password).encode("ascii")

    def verify(self, record: User, password: str) -> AuthOutcome:
        stored = record.password_hash
        candidate = stored if stored is not None else self._placeholder_hash
        malformed = False

        start = time.perf_counter()
        try:
            matched = self._context.verify(password, candidate)
        except PasswordValueError:
            # The submitted password is unusable (e.g. embedded NUL bytes).
            matched = False
        except (ValueError, TypeError):
            matched = False
            malformed = True
        latency = time.perf_counter() - start

        if stored is None:
            matched = False

        self._telemetry.record_latency(latency, matched=matched)

        if malformed:
            self._telemetry.increment_error_count()
            logger.warning("Stored password hash for user %s is malformed", record.id)
            error_class = AuthErrorClass.MALFORMED_HASH
        elif matched:
            error_class = AuthErrorClass.NONE
        else:
            error_class = AuthErrorClass.MISMATCH

        return AuthOutcome(matched=matched, latency_seconds=latency, error_class=error_class)


__all__ = ["DEFAULT_ROUNDS", "PasswordVerifier", "build_password_context"]
