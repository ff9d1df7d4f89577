from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:

    - VALIDATION_ERROR (400)
    - DUPLICATE_VALUE (400)
    - NOT_AUTHORIZED / INVALID_CREDENTIALS / INVALID_TOKEN / TOKEN_EXPIRED (401)
    - FORBIDDEN (403)
    - RESOURCE_NOT_FOUND (404)
    - SERVER_ERROR (500)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
    default_message: str = "Invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
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
    error_code = "VALIDATION_ERROR"


class MissingRefreshTokenError(ValidationError):
    """Refresh exchange attempted without a token (400)."""
    default_message = "No refresh token provided"


class ConflictError(ServiceError):
    """Unique value already taken (400)."""
    status_code = 400
    error_code = "DUPLICATE_VALUE"
    default_message = "Duplicate field value entered"


class AuthenticationError(ServiceError):
    """Caller could not be identified (401)."""
    status_code = 401
    error_code = "NOT_AUTHORIZED"
    default_message = "Not authorized to access this route"


class InvalidCredentialsError(AuthenticationError):
    """Login failed; unknown email and wrong password look the same (401)."""
    error_code = "INVALID_CREDENTIALS"
    default_message = "Invalid credentials"


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token unknown, already rotated, or past its expiry (401)."""
    error_code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid or expired refresh token"


class InvalidTokenError(AuthenticationError):
    """Access token is malformed or its signature does not verify (401)."""
    error_code = "INVALID_TOKEN"
    default_message = "Invalid token"


class TokenExpiredError(AuthenticationError):
    """Access token signature verifies but ``exp`` has passed (401)."""
    error_code = "TOKEN_EXPIRED"
    default_message = "Token expired"


class ForbiddenError(ServiceError):
    """Resource exists but belongs to someone else (403)."""
    status_code = 403
    error_code = "FORBIDDEN"
    default_message = "Not authorized to access this resource"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "RESOURCE_NOT_FOUND"
    default_message = "Resource not found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "SERVER_ERROR"
    default_message = "Server Error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "MissingRefreshTokenError",
    "ConflictError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidRefreshTokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
]
