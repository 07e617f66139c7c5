"""Error taxonomy shared by the user store, password checks and HTTP layer."""

from __future__ import annotations


class UsersAPIError(Exception):
    """Base class for failures raised along the user request path."""


class ClientInputError(UsersAPIError):
    """The caller supplied a missing or malformed identifier."""


class UserNotFound(UsersAPIError):
    """No user exists for the requested identifier."""

    def __init__(self, user_id: int) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class StoreError(UsersAPIError):
    """The user store could not be read or returned undecodable data."""


class Unauthenticated(UsersAPIError):
    """The submitted credential was rejected."""


__all__ = [
    "ClientInputError",
    "StoreError",
    "Unauthenticated",
    "UserNotFound",
    "UsersAPIError",
]
