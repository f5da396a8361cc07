import logging

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from streakboard.errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)


def register_error_handlers(app: FastAPI):
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        sentry_sdk.capture_exception(exc)
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "type": type(exc).__name__,
            },
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc)},
        )

    @app.exception_handler(ValidationError)
    async def session_state_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "type": type(exc).__name__},
        )

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error("Store write failed on %s: %s", request.url.path, exc.__cause__ or exc)
        sentry_sdk.capture_exception(exc)
        return JSONResponse(
            status_code=503,
            content={"detail": "Storage unavailable, nothing was changed", "type": type(exc).__name__},
        )
