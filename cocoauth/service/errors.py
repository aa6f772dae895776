from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - invalid_credentials (401)
    - server_error (500)
    - parse_error (500)
    - upstream_error (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class UnauthorizedError(ServiceError):
    """Missing, mismatched, expired or malformed token (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(UnauthorizedError):
    """Login id unknown or secret wrong (401)."""
    error_code = "invalid_credentials"


class UpstreamCoordinationError(ServiceError):
    """Push or chat service unreachable or answered with an error (502)."""
    status_code = 502
    error_code = "upstream_error"


class MailDeliveryError(ServiceError):
    """Mail transport refused or failed to send a message (502)."""
    status_code = 502
    error_code = "upstream_error"


class PersistenceError(ServiceError):
    """The credential/profile store failed (500)."""
    status_code = 500
    error_code = "server_error"


class ParseError(ServiceError):
    """A stored payload could not be serialized or deserialized (500)."""
    status_code = 500
    error_code = "parse_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthorizedError",
    "InvalidCredentialsError",
    "UpstreamCoordinationError",
    "MailDeliveryError",
    "PersistenceError",
    "ParseError",
]
