"""Exception hierarchy shared by the store, the mailer and the HTTP layer."""
from __future__ import annotations

from typing import Any, Dict, Optional


class LeadsiteError(Exception):
    """Base error carrying a short, user-facing message and an HTTP status."""

    status_code = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(LeadsiteError):
    """Raised when request input is missing or malformed."""

    status_code = 400


class DuplicateError(LeadsiteError):
    """Raised when a registration collides with an existing email address."""

    status_code = 409


class NotFoundError(LeadsiteError):
    """Raised when an operation targets a record that does not exist."""

    status_code = 404


class ServiceUnavailableError(LeadsiteError):
    """Raised when a dependency needed to serve the request is down."""

    status_code = 503


class DuplicateEmailError(DuplicateError):
    """Unique constraint violation on ``users.email``."""

    def __init__(self, email: str) -> None:
        super().__init__("An account with this email already exists")
        self.email = email


class StoreConnectionError(ServiceUnavailableError):
    """Raised when the record store cannot be reached."""


class EmailServiceError(LeadsiteError):
    """Base class for failures raised by the email service."""


class EmailNotConfiguredError(EmailServiceError):
    """Raised when no SMTP transport has been established."""

    status_code = 503

    def __init__(self, message: str = "Email service not configured") -> None:
        super().__init__(message)


class EmailDeliveryError(EmailServiceError):
    """Raised when the SMTP server rejects a message or cannot be reached."""

    def __init__(self, message: str, *, code: Optional[int] = None, connection_failed: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.connection_failed = connection_failed


__all__ = [
    "DuplicateEmailError",
    "DuplicateError",
    "EmailDeliveryError",
    "EmailNotConfiguredError",
    "EmailServiceError",
    "LeadsiteError",
    "NotFoundError",
    "ServiceUnavailableError",
    "StoreConnectionError",
    "ValidationError",
]
