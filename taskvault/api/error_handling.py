from __future__ import annotations

import traceback
from typing import Any, Iterable, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskvault.api.schemas import ErrorBody, ErrorEnvelope
from taskvault.config import get_settings
from taskvault.logging import get_logger
from taskvault.service.errors import ServiceError
from taskvault.storage.errors import ConstraintViolation, InvalidIdentifier

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "VALIDATION_ERROR",
    401: "NOT_AUTHORIZED",
    403: "FORBIDDEN",
    404: "RESOURCE_NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    500: "SERVER_ERROR",
}

PRODUCTION_SERVER_MESSAGE = "Server Error"


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "SERVER_ERROR")


def format_validation_errors(errors: Iterable[dict[str, Any]]) -> str:
    """Join pydantic error entries into one human-readable message."""
    messages = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        msg = str(error.get("msg", "invalid value"))
        if error.get("type") == "value_error":
            msg = msg.removeprefix("Value error, ")
            messages.append(msg)
        elif loc:
            messages.append(f"{'.'.join(loc)}: {msg}")
        else:
            messages.append(msg)
    return ", ".join(messages) or "Invalid request"


def classify_exception(exc: Exception) -> Tuple[int, str, str]:
    """Map any failure onto ``(status, code, message)``.

    Unrecognised exceptions are server errors; their text is kept here and
    masked later for production responses.
    """
    if isinstance(exc, ServiceError):
        return exc.status_code, exc.error_code, exc.message
    if isinstance(exc, InvalidIdentifier):
        return 404, "RESOURCE_NOT_FOUND", "Resource not found"
    if isinstance(exc, ConstraintViolation):
        return 400, "DUPLICATE_VALUE", "Duplicate field value entered"
    if isinstance(exc, RequestValidationError):
        return 400, "VALIDATION_ERROR", format_validation_errors(exc.errors())
    if isinstance(exc, StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "HTTP error"
        return exc.status_code, _error_code_for_status(exc.status_code), message
    return 500, "SERVER_ERROR", str(exc) or PRODUCTION_SERVER_MESSAGE


def build_error_body(
    exc: Exception, *, production: bool
) -> Tuple[int, ErrorBody]:
    status_code, code, message = classify_exception(exc)
    if production and status_code >= 500:
        message = PRODUCTION_SERVER_MESSAGE
    trace: Optional[str] = None
    if not production:
        trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return status_code, ErrorBody(message=message, code=code, trace=trace)


def _error_response(status_code: int, body: ErrorBody) -> JSONResponse:
    envelope = ErrorEnvelope(error=body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(exclude_none=True)
    )


def _handle(request: Request, exc: Exception, event: str) -> JSONResponse:
    production = get_settings().is_production
    status_code, body = build_error_body(exc, production=production)
    if status_code >= 500:
        logger.error(
            event,
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_code=body.code,
            error_type=type(exc).__name__,
            error=str(exc),
            exc_info=exc,
        )
    else:
        logger.warning(
            event,
            path=request.url.path,
            method=request.method,
            status_code=status_code,
            error_code=body.code,
            message=body.message,
        )
    return _error_response(status_code, body)


def register_exception_handlers(app: FastAPI) -> None:
    """Route every failure through the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        return _handle(request, exc, "service_error")

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        return _handle(request, exc, "constraint_violation")

    @app.exception_handler(InvalidIdentifier)
    async def handle_invalid_identifier(request: Request, exc: InvalidIdentifier):
        return _handle(request, exc, "invalid_identifier")

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return _handle(request, exc, "request_validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        return _handle(request, exc, "http_error")

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        return _handle(request, exc, "unhandled_exception")
