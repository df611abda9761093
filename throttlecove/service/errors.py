from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on:
    - validation_error / duplicate_user (400)
    - unauthorized / invalid_credentials (401)
    - forbidden / invalid_token (403)
    - not_found (404)
    - account_locked (423)
    - rate_limited (429)
    - server_error (500)
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


class DuplicateUserError(ServiceError):
    """Username or email already registered (400).

    ``detail["field"]`` names the colliding field when known.
    """
    status_code = 400
    error_code = "duplicate_user"

    def __init__(self, field: Optional[str] = None, message: Optional[str] = None) -> None:
        super().__init__(
            message or (f"{field} already exists" if field else "user already exists"),
            detail={"field": field} if field else None,
        )
        self.field = field


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


UnauthorizedError = AuthenticationError


class SessionExpiredError(AuthenticationError):
    """Session has expired or was revoked (401)."""
    pass


class InvalidCredentialsError(AuthenticationError):
    """Unknown identity or wrong password; deliberately does not say which (401)."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class InvalidTokenError(ForbiddenError):
    """Token signature, structure or expiry check failed (403)."""
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", *, reason: Optional[str] = None) -> None:
        super().__init__(message)
        # Kept off the response; logged by callers.
        self.reason = reason


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AccountLockedError(ServiceError):
    """Too many failed logins; account temporarily locked (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "Account is temporarily locked due to too many failed login attempts",
    ) -> None:
        super().__init__(message)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateUserError",
    "AuthenticationError",
    "UnauthorizedError",
    "SessionExpiredError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "InvalidTokenError",
    "NotFoundError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
]
