from __future__ import annotations

from typing import Any, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from asphaltworks.api.schemas import ErrorEnvelope, FieldError
from asphaltworks.logging import get_logger
from asphaltworks.service.errors import RateLimitedError, ServiceError
from asphaltworks.service.fs import PathTraversalError
from asphaltworks.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    413: "validation_error",
    429: "rate_limited",
    500: "server_error",
}

_STATUS_MESSAGES = {
    404: "route not found",
    405: "method not allowed",
}


def _error_code_for_status(status_code: int) -> str:
    if status_code in _STATUS_TO_CODE:
        return _STATUS_TO_CODE[status_code]
    return "server_error" if status_code >= 500 else "validation_error"


def error_response(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    details: Any = None,
    errors: Optional[List[FieldError]] = None,
    retry_after: Optional[int] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    """Build the ``{success:false, ...}`` envelope as a JSON response."""
    envelope = ErrorEnvelope(
        message=message,
        code=code or _error_code_for_status(status_code),
        errors=errors,
        details=details or None,
        retry_after=retry_after,
    )
    return JSONResponse(
        status_code=status_code,
        content=envelope.model_dump(mode="json", by_alias=True),
        headers=headers,
    )


def _field_errors(exc: RequestValidationError) -> List[FieldError]:
    errors: List[FieldError] = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        message = str(err.get("msg", "invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append(FieldError(field=".".join(loc) or "body", message=message))
    return errors


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, exc.message, code="conflict", details=exc.detail)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.status_code >= 500:
            return error_response(exc.status_code, "internal server error", code=exc.error_code)
        retry_after = None
        headers = None
        if isinstance(exc, RateLimitedError):
            retry_after = exc.retry_after
            headers = {"Retry-After": str(exc.retry_after)}
        return error_response(
            exc.status_code,
            exc.message,
            code=exc.error_code,
            details=exc.detail,
            retry_after=retry_after,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = _field_errors(exc)
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[e.field for e in errors],
        )
        return error_response(400, "validation failed", code="validation_error", errors=errors)

    @app.exception_handler(PathTraversalError)
    async def handle_path_traversal_error(request: Request, exc: PathTraversalError):
        logger.warning(
            "path_traversal_attempt",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            client_ip=request.client.host if request.client else None,
        )
        return error_response(400, str(exc), code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if isinstance(exc.detail, str) and exc.detail and exc.status_code not in _STATUS_MESSAGES:
            message = exc.detail
        else:
            message = _STATUS_MESSAGES.get(exc.status_code, "http error")
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        else:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        if details is None and exc.status_code == 404:
            details = {"path": request.url.path}
        return error_response(
            exc.status_code,
            message,
            details=details,
            headers=getattr(exc, "headers", None),
        )

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
        return error_response(500, "internal server error", code="server_error")
