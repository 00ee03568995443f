from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - locked (423)
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
        headers: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class LockedError(ServiceError):
    """Resource temporarily locked (423)."""
    status_code = 423
    error_code = "locked"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "too many requests", *, retry_after_seconds: int = 0) -> None:
        headers = {"Retry-After": str(retry_after_seconds)} if retry_after_seconds else None
        super().__init__(
            message,
            detail={"retry_after_seconds": retry_after_seconds},
            headers=headers,
        )
        self.retry_after_seconds = retry_after_seconds


# Auth failures. Messages are fixed so callers cannot learn why a check failed.


class DuplicateEmailError(ConflictError):
    def __init__(self) -> None:
        super().__init__(
            "an account with this email already exists", detail={"field": "email"}
        )


class InvalidCredentialsError(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("invalid email or password")


class AccountLockedError(LockedError):
    def __init__(self, remaining_minutes: int) -> None:
        remaining_minutes = max(1, int(remaining_minutes))
        super().__init__(
            f"account is locked, try again in {remaining_minutes} minutes",
            detail={"retry_after_minutes": remaining_minutes},
            headers={"Retry-After": str(remaining_minutes * 60)},
        )
        self.remaining_minutes = remaining_minutes


class InvalidOrExpiredRefreshTokenError(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("invalid or expired refresh token")


class UnauthorizedError(AuthenticationError):
    """Access credential missing, invalid, expired or of the wrong type."""

    def __init__(self, message: str = "invalid or expired access token") -> None:
        super().__init__(message)


class UserNotFoundError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("user not found")


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "LockedError",
    "RateLimitedError",
    "DuplicateEmailError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "InvalidOrExpiredRefreshTokenError",
    "UnauthorizedError",
    "UserNotFoundError",
]
