from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apexguard.api.schemas import ErrorBody, ErrorEnvelope
from apexguard.logging import get_logger
from apexguard.service.errors import AppError, RateLimitError

logger = get_logger(__name__)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred"

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "AUTHENTICATION_ERROR",
    403: "AUTHORIZATION_ERROR",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMIT",
}


def _error_response(
    status_code: int,
    message: str,
    code: Optional[str] = None,
    timestamp: Optional[str] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    body = ErrorBody(
        code=code or _STATUS_TO_CODE.get(status_code, "INTERNAL_ERROR"),
        message=message,
        status_code=status_code,
        timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
    )
    envelope = ErrorEnvelope(error=body)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(by_alias=True),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map every failure to the ``{"error": {...}}`` envelope.

    Operational ``AppError``s are returned as raised. Anything else,
    including non-operational ``AppError``s, is logged in full and
    answered with a generic 500 so internals never reach the client.
    """

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        if not exc.is_operational:
            logger.exception(
                "non_operational_error",
                exc_info=exc,
                path=request.url.path,
                method=request.method,
                error_code=exc.code,
                message=exc.message,
            )
            return _error_response(500, GENERIC_ERROR_MESSAGE, "INTERNAL_ERROR")

        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "app_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.code,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            headers = {"Retry-After": str(exc.retry_after)}
        return _error_response(
            exc.status_code, exc.message, exc.code, exc.timestamp, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        if location:
            message = f"{location}: {message}"
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=len(errors),
        )
        return _error_response(400, f"Invalid input: {message}", "VALIDATION_ERROR")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, GENERIC_ERROR_MESSAGE, "INTERNAL_ERROR")
