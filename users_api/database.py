"""SQLite-backed user store."""
from __future__ import annotations

import logging
import re
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from .auth import DEFAULT_ROUNDS, PasswordVerifier
from .errors import ClientInputError, StoreError, UserNotFound
from .models import User
from .telemetry import NullTelemetrySink, TelemetrySink, record_error

logger = logging.getLogger("users_api.database")

_USER_ID_PATTERN = re.compile(r"[+-]?[0-9]+")
_SQLITE_INTEGER_MIN = -(2**63)
_SQLITE_INTEGER_MAX = 2**63 - 1
_SQLITE_INTEGER_DIGITS = len(str(_SQLITE_INTEGER_MAX))


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _encode_password_hash(value: Optional[bytes]) -> Optional[str]:
    return value.hex() if value is not None else None


def _decode_password_hash(value: Optional[str]) -> Optional[bytes]:
    if value is None:
        return None
    return bytes.fromhex(value)


def parse_user_id(identifier: object) -> int:
    """Convert a raw identifier into the store's integer key.

    Raises :class:`ClientInputError` without touching the database when the
    identifier is missing, not an integer, or outside SQLite's INTEGER range.
    """

    if isinstance(identifier, bool):
        raise ClientInputError("Invalid user ID")
    if isinstance(identifier, int):
        user_id = identifier
    else:
        text = "" if identifier is None else str(identifier).strip()
        if not text:
            raise ClientInputError("Missing user ID")
        if not _USER_ID_PATTERN.fullmatch(text):
            raise ClientInputError("Invalid user ID")
        # Reject overlong digit runs before int() hits the conversion limit.
        if len(text.lstrip("+-").lstrip("0")) > _SQLITE_INTEGER_DIGITS:
            raise ClientInputError("Invalid user ID")
        user_id = int(text)

    if not _SQLITE_INTEGER_MIN <= user_id <= _SQLITE_INTEGER_MAX:
        raise ClientInputError("Invalid user ID")
    return user_id


class Database:
    """Simple wrapper around SQLite for reading and maintaining user records."""

    def __init__(
        self,
        path: Path,
        *,
        telemetry: Optional[TelemetrySink] = None,
        verifier: Optional[PasswordVerifier] = None,
        bcrypt_rounds: int = DEFAULT_ROUNDS,
        timeout: float = 5.0,
    ) -> None:
        self._path = path
        self._timeout = timeout
        self._telemetry = telemetry if telemetry is not None else NullTelemetrySink()
        # New passwords are hashed by the same verifier that checks them.
        if verifier is None:
            verifier = PasswordVerifier(self._telemetry, rounds=bcrypt_rounds)
        self._verifier = verifier

    @property
    def path(self) -> Path:
        return self._path

    @property
    def verifier(self) -> PasswordVerifier:
        return self._verifier

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=self._timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        _ensure_directory(self._path)
        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT UNIQUE,
                    password TEXT,
                    created_at TEXT NOT NULL
                );
                """
            )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def fetch(self, identifier: object) -> User:
        """Return the user for ``identifier``.

        Raises :class:`ClientInputError` for unparseable identifiers,
        :class:`UserNotFound` when no row matches and :class:`StoreError`
        when SQLite fails or the stored record cannot be decoded.
        """

        user_id = parse_user_id(identifier)

        with self._telemetry.start_span(
            "users.fetch",
            attributes={"db.system": "sqlite", "db.operation": "SELECT", "user.id": user_id},
        ) as span:
            try:
                with self._connection() as conn:
                    row = conn.execute(
                        "SELECT id, name, email, password, created_at FROM users WHERE id = ?",
                        (user_id,),
                    ).fetchone()
            except sqlite3.Error as exc:
                record_error(span, exc)
                logger.exception("Failed to query user %s", user_id)
                raise StoreError(f"Failed to load user {user_id}") from exc

            if row is None:
                span.set_attribute("users.found", False)
                raise UserNotFound(user_id)
            span.set_attribute("users.found", True)

            try:
                return self._row_to_user(row)
            except (TypeError, ValueError) as exc:
                record_error(span, exc)
                logger.error("Stored record for user %s could not be decoded", user_id)
                raise StoreError(f"Stored record for user {user_id} is corrupt") from exc

    def list_users(self) -> List[User]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT id, name, email, password, created_at FROM users ORDER BY id"
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def create_user(self, name: str, email: Optional[str], password: Optional[str]) -> User:
        """Create a new user, hashing ``password`` when one is given."""

        normalized_name = name.strip()
        if not normalized_name:
            raise ValueError("Name must not be empty")
        if password is not None and not password:
            raise ValueError("Password must not be empty")

        created_at = _current_timestamp()
        normalized_email = email.strip().lower() if email else None
        password_hash = self._hash_password(password) if password is not None else None

        with self._connection() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO users (name, email, password, created_at) VALUES (?, ?, ?, ?)",
                    (
                        normalized_name,
                        normalized_email,
                        _encode_password_hash(password_hash),
                        _serialize_datetime(created_at),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ValueError("A user with that email already exists") from exc
            user_id = cursor.lastrowid

        logger.info("Created user %s", user_id)
        return User(
            id=user_id,
            name=normalized_name,
            email=normalized_email,
            created_at=created_at,
            password_hash=password_hash,
        )

    def set_user_password(self, user_id: int, password: str) -> None:
        if not password:
            raise ValueError("Password must not be empty")
        self.set_password_hash(user_id, self._hash_password(password))

    def clear_user_password(self, user_id: int) -> None:
        self.set_password_hash(user_id, None)

    def set_password_hash(self, user_id: int, password_hash: Optional[bytes]) -> None:
        """Store an already-computed hash (or ``None``) for ``user_id``."""

        with self._connection() as conn:
            cursor = conn.execute(
                "UPDATE users SET password = ? WHERE id = ?",
                (_encode_password_hash(password_hash), user_id),
            )
        if cursor.rowcount == 0:
            raise UserNotFound(user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _hash_password(self, password: str) -> bytes:
        return self._verifier.hash_password(password)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            created_at=_parse_datetime(row["created_at"]),
            password_hash=_decode_password_hash(row["password"]),
        )


__all__ = ["Database", "parse_user_id"]
