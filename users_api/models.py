"""Domain models for the users service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class User:
    """Represents a user account stored in the users database."""

    id: int
    name: str
    email: Optional[str]
    created_at: Optional[datetime] = None
    password_hash: Optional[bytes] = field(default=None, repr=False, compare=False)


class AuthErrorClass(str, Enum):
    NONE = "none"
    MALFORMED_HASH = "malformed-hash"
    MISMATCH = "mismatch"


@dataclass(frozen=True)
class AuthOutcome:
    """Result of a single password verification."""

    matched: bool
    latency_seconds: float
    error_class: AuthErrorClass


__all__ = ["AuthErrorClass", "AuthOutcome", "User"]
