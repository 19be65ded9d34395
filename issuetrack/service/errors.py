from __future__ import annotations

import math
from datetime import datetime
from typing import Optional


class AppError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable upper-case
    ``error_code`` that ends up in the error envelope:

    - VALIDATION_ERROR (400)
    - AUTHENTICATION_ERROR (401)
    - AUTHORIZATION_ERROR (403)
    - NOT_FOUND (404)
    - CONFLICT (409)
    - ACCOUNT_LOCKED (423)
    - RATE_LIMIT_EXCEEDED (429)
    - INTERNAL_ERROR (500)
    """

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.details = details or {}


class ValidationError(AppError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "AUTHENTICATION_ERROR"


class AuthorizationError(AppError):
    """Authenticated but not permitted (403)."""
    status_code = 403
    error_code = "AUTHORIZATION_ERROR"


class NotFoundError(AppError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(AppError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"


class AccountLockedError(AppError):
    """Login refused while the account lock is active (423)."""
    status_code = 423
    error_code = "ACCOUNT_LOCKED"

    def __init__(self, minutes_remaining: int, *, details: Optional[dict] = None) -> None:
        self.minutes_remaining = minutes_remaining
        super().__init__(
            "Account is locked due to multiple failed login attempts. "
            f"Try again in {minutes_remaining} minutes.",
            details=details,
        )


class RateLimitError(AppError):
    """Rate limit exceeded (429). Always carries retry timing."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        *,
        retry_after_seconds: int,
        limit: int,
        reset_at: datetime,
        message: str = "Too many requests, please try again later",
    ) -> None:
        self.retry_after_seconds = max(1, int(math.ceil(retry_after_seconds)))
        self.limit = limit
        self.reset_at = reset_at
        super().__init__(
            message,
            details={"retryAfter": self.retry_after_seconds},
        )


class ServerError(AppError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


ERROR_CODES = frozenset(
    cls.error_code
    for cls in (
        AppError,
        ValidationError,
        AuthenticationError,
        AuthorizationError,
        NotFoundError,
        ConflictError,
        AccountLockedError,
        RateLimitError,
        ServerError,
    )
)


__all__ = [
    "AppError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitError",
    "ServerError",
    "ERROR_CODES",
]
