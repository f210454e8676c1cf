from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and the stable ``error_code``
    placed in the response body:

    - invalid_request (400)
    - invalid_credentials (401)
    - invalid_token (401)
    - user_not_found (401)
    - email_exists (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "invalid_request"

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


class InvalidRequestError(ServiceError):
    """A required field is missing or malformed (400)."""
    status_code = 400
    error_code = "invalid_request"


class InvalidCredentialsError(ServiceError):
    """Login credentials did not verify (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class InvalidTokenError(ServiceError):
    """Refresh token unusable (401).

    Covers unknown, expired, revoked, and reused tokens alike. ``reason``
    carries the real cause for the security monitor and is never rendered
    to the client.
    """
    status_code = 401
    error_code = "invalid_token"

    def __init__(self, reason: str, message: str = "refresh token invalid or expired") -> None:
        super().__init__(message)
        self.reason = reason


class UserNotFoundError(ServiceError):
    """Refresh token is valid but its subject no longer exists (401)."""
    status_code = 401
    error_code = "user_not_found"


class ConflictError(ServiceError):
    """Account with that email already exists (409)."""
    status_code = 409
    error_code = "email_exists"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "InvalidRequestError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "UserNotFoundError",
    "ConflictError",
    "ServerError",
]
