"""Error taxonomy shared by every component.

Each error carries the HTTP status it maps to at the API boundary.
"""

from __future__ import annotations


class BeaconError(Exception):
    """Base exception for all beacon errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(BeaconError):
    """Missing or malformed required fields."""

    status_code = 400


class AuthenticationError(BeaconError):
    """Missing or invalid credential."""

    status_code = 401


class NotFoundOrUnauthorized(BeaconError):
    """Entity absent or owned by someone else.

    Both cases share one error; non-owners cannot tell which device ids
    exist.
    """

    status_code = 404

    def __init__(self, message: str = "Device not found") -> None:
        super().__init__(message)


class ConflictError(BeaconError):
    """A unique field is already taken."""

    status_code = 409


class InternalError(BeaconError):
    """Store or unexpected failure."""

    status_code = 500
