"""Exception handlers: every error leaves the API as JSON.

Domain errors carry a machine-readable ``kind`` and a short message in the
caller's language (from ``Accept-Language``); they are client-correctable and
logged at info level only. Integrity faults and unhandled exceptions are
logged as errors.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from checkpoint.errors import CheckpointError, IntegrityFault

logger = structlog.get_logger()


def request_locale(request: Request) -> str | None:
    """First language tag of the Accept-Language header, if any."""
    header = request.headers.get("accept-language", "")
    first = header.split(",")[0].split(";")[0].strip()
    return first or None


def setup_error_handlers(app: FastAPI, default_locale: str = "en") -> None:
    """Register global exception handlers."""

    @app.exception_handler(CheckpointError)
    async def checkpoint_error_handler(request: Request, exc: CheckpointError) -> JSONResponse:
        if isinstance(exc, IntegrityFault):
            logger.error(
                "integrity_fault",
                path=request.url.path,
                kind=exc.kind,
                context=exc.context,
                exc_info=exc,
            )
        else:
            logger.info("client_error", path=request.url.path, kind=exc.kind, status=exc.status_code)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_locale(request), default_locale),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "detail": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "kind": "validation_error",
                "detail": "Validation error",
                "errors": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=exc,
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "detail": "Internal server error"},
        )
