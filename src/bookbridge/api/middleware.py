"""API error handling: consistent error responses.

Registers FastAPI exception handlers that convert engine exceptions into
standardised ``{"error": {"code": "...", "message": "...", "details": ...}}``
JSON responses.

Status code mapping:
- ``CalendarEngineError`` subclasses map by ``kind`` (see ``ERROR_STATUS_CODES``)
- ``KeyError`` (unknown tenant, connection or OAuth state) → 404 Not Found
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from bookbridge.api.models import ErrorDetail, ErrorResponse
from bookbridge.errors import CalendarEngineError, build_structured_error
from bookbridge.models import OperationError

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES: dict[str, int] = {
    "conflict": 409,
    "configuration": 422,
    "invalid_input": 422,
    "auth": 502,
    "provider_api": 502,
    "internal": 502,
    "provider_unavailable": 503,
    "timeout": 503,
}


def status_for_error(error: OperationError) -> int:
    return ERROR_STATUS_CODES.get(error.kind, 502)


def operation_error_response(error: OperationError, details: dict | None = None) -> JSONResponse:
    """Render a structured engine error with the status its kind maps to."""
    merged = {**error.context, **(details or {})}
    body = ErrorResponse(
        error=ErrorDetail(
            code=error.kind.upper(),
            message=error.message,
            details=merged or None,
        )
    )
    return JSONResponse(status_code=status_for_error(error), content=body.model_dump(mode="json"))


async def _handle_engine_error(
    request: Request,
    exc: CalendarEngineError,
) -> JSONResponse:
    """Map an engine error to its HTTP status without leaking credential values."""
    error = build_structured_error(exc)
    logger.warning("Engine error on %s %s: %s", request.method, request.url.path, error.message)
    return operation_error_response(error)


async def _handle_key_error(
    request: Request,
    exc: KeyError,
) -> JSONResponse:
    """Return 404 when a tenant, connection or OAuth state is unknown."""
    missing = exc.args[0] if exc.args else None
    logger.info("Not found: %s", missing)
    body = ErrorResponse(
        error=ErrorDetail(
            code="NOT_FOUND",
            message=f"Not found: {missing}",
        )
    )
    return JSONResponse(status_code=404, content=body.model_dump())


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    body = ErrorResponse(
        error=ErrorDetail(
            code="VALIDATION_ERROR",
            message=str(exc),
        )
    )
    return JSONResponse(status_code=400, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    This sits above the Starlette exception handler layer, ensuring that
    even exceptions not caught by ``add_exception_handler`` are converted
    to the standard error envelope rather than bubbling up as raw 500s.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            body = ErrorResponse(
                error=ErrorDetail(
                    code="INTERNAL_ERROR",
                    message="Internal server error",
                )
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.add_exception_handler(CalendarEngineError, _handle_engine_error)  # type: ignore[arg-type]
    app.add_exception_handler(KeyError, _handle_key_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
