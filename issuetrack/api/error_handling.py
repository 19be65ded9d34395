from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from issuetrack.api.schemas import Envelope, ErrorBody
from issuetrack.config import get_settings
from issuetrack.logging import get_logger, sanitize_error_message
from issuetrack.service.errors import AppError, RateLimitError
from issuetrack.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# stable error codes for bare HTTP statuses raised by the framework
_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "AUTHENTICATION_ERROR",
    403: "AUTHORIZATION_ERROR",
    404: "NOT_FOUND",
    409: "CONFLICT",
    423: "ACCOUNT_LOCKED",
    429: "RATE_LIMIT_EXCEEDED",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "INTERNAL_ERROR" if status_code >= 500 else "VALIDATION_ERROR"


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render ``{success:false, error:{code,message,statusCode,details?}, requestId}``."""
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        status_code=status_code,
        details=details or None,
    )
    envelope = Envelope(success=False, error=error_body)
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )


def _field_errors(exc: RequestValidationError) -> List[Dict[str, str]]:
    fields = []
    for error in exc.errors():
        # drop the leading "body"/"query" location segment
        loc = [str(part) for part in error.get("loc", ())[1:]]
        message = str(error.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        fields.append({"field": ".".join(loc) or "body", "message": message})
    return fields


def register_exception_handlers(app: FastAPI) -> None:
    """Translate every failure into the error envelope at the request boundary."""

    @app.exception_handler(RateLimitError)
    async def handle_rate_limit(request: Request, exc: RateLimitError):
        logger.warning(
            "rate_limit_denied",
            path=request.url.path,
            method=request.method,
            retry_after=exc.retry_after_seconds,
        )
        headers = {
            "Retry-After": str(exc.retry_after_seconds),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": exc.reset_at.isoformat(),
        }
        return _error_response(
            exc.status_code, exc.message, exc.details, code=exc.error_code, headers=headers
        )

    @app.exception_handler(AppError)
    async def handle_app_error(request: Request, exc: AppError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "app_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(exc.status_code, exc.message, exc.details, code=exc.error_code)

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            field=exc.field,
        )
        details = {"field": exc.field} if exc.field else None
        return _error_response(409, exc.message, details, code="CONFLICT")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = _field_errors(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[f["field"] for f in fields],
        )
        return _error_response(400, "Validation failed", {"errors": fields})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, str):
            message = exc.detail
        else:
            message = "Request failed"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        if exc.status_code == 404 and message == "Not Found":
            message = f"Route {request.url.path} not found"
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

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
        details = None
        if not get_settings().is_production:
            details = {
                "type": type(exc).__name__,
                "error": sanitize_error_message(str(exc)),
            }
        return _error_response(500, "Internal server error", details, code="INTERNAL_ERROR")
