"""Standard error handler — one error envelope for every route."""

from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..errors import IncidentDeskError
from ..utils.logging import get_logger

logger = get_logger("middleware.error_handler")


def _envelope(request: Request, status_code: int, detail, retryable: bool = False, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": extra.pop("error", True),
            "status_code": status_code,
            "detail": detail,
            "retryable": retryable,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": getattr(request.state, "request_id", None),
            **extra,
        },
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register standard error handlers on the app."""

    @app.exception_handler(IncidentDeskError)
    async def incidentdesk_exception_handler(request: Request, exc: IncidentDeskError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "request_failed",
            error=type(exc).__name__,
            detail=exc.message,
            path=str(request.url.path),
        )
        return _envelope(
            request,
            exc.status_code,
            exc.message,
            retryable=exc.retryable,
            error=type(exc).__name__,
            context=exc.context,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        response = _envelope(request, exc.status_code, exc.detail)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _envelope(request, 422, "Validation error", errors=exc.errors())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            request_id=getattr(request.state, "request_id", None),
            path=str(request.url.path),
            exc_info=True,
        )
        return _envelope(request, 500, "Internal server error")
