from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


class AppError(Exception):
    """Base class for security-core exceptions mapped to HTTP responses.

    Every error carries a stable ``code``, an HTTP ``status_code`` and an
    ``is_operational`` flag. Operational errors are expected and safe to
    show to the caller verbatim; non-operational ones (RNG or digest
    failures) are logged in full and surfaced as a generic 500.
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        *,
        is_operational: bool = True,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.is_operational = is_operational
        self.detail = detail or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_response(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "statusCode": self.status_code,
                "timestamp": self.timestamp,
            }
        }


class ValidationError(AppError):
    """Request validation failed (400)."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message, detail={"field": field} if field else None)
        self.field = field


class AuthenticationError(AppError):
    """Authentication failed or missing (401)."""

    status_code = 401
    code = "AUTHENTICATION_ERROR"

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message)


class AuthorizationError(AppError):
    """Authenticated but not allowed (403)."""

    status_code = 403
    code = "AUTHORIZATION_ERROR"

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message)


class ConflictError(AppError):
    """Resource conflict, e.g. duplicate registration (409)."""

    status_code = 409
    code = "CONFLICT"


class RateLimitError(AppError):
    """Rate limit exceeded (429)."""

    status_code = 429
    code = "RATE_LIMIT"

    def __init__(
        self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None
    ) -> None:
        super().__init__(
            message, detail={"retry_after": retry_after} if retry_after is not None else None
        )
        self.retry_after = retry_after


def is_operational_error(exc: BaseException) -> bool:
    if isinstance(exc, AppError):
        return exc.is_operational
    return False


__all__ = [
    "AppError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "ConflictError",
    "RateLimitError",
    "is_operational_error",
]
