"""Matching Service - Main FastAPI Application

Agent matching engine for the travel marketplace.

This module creates and configures the FastAPI application:
- Lifespan startup checks (settings, peak-season table, event bus)
- Correlation ID middleware
- Exception handlers
- Matching and observability routers
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from config import get_settings
from dependencies import get_container
from matching.exceptions import MatchingError, StateTransitionError
from matching.router import router as matching_router
from observability.logging_config import configure_logging
from observability.middleware import CorrelationIDMiddleware
from observability.router import router as observability_router

settings = get_settings()

configure_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Startup fails fast on an invalid peak-season table or scoring weights
    (raised while wiring) and on an unreachable event bus.
    """
    logger.info(f"{settings.SERVICE_NAME} starting up (environment: {settings.ENVIRONMENT})")

    container = get_container()
    if not container.bus.ping():
        raise RuntimeError(f"Event bus unreachable at {settings.REDIS_URL}")
    container.start()

    yield

    logger.info(f"{settings.SERVICE_NAME} shutting down...")
    container.close()


app = FastAPI(
    title="Matching Service",
    description="Agent matching engine for travel requests",
    version="0.1.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url=None,
    openapi_url="/openapi.json" if settings.ENVIRONMENT != "production" else None,
    lifespan=lifespan,
)


# =============================================================================
# MIDDLEWARE CONFIGURATION
# =============================================================================

app.add_middleware(CorrelationIDMiddleware)


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError
) -> JSONResponse:
    """Return field-level details for request validation errors."""
    logger.warning(f"Validation error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": jsonable_encoder(exc.errors()),
        },
    )


@app.exception_handler(StateTransitionError)
async def state_transition_exception_handler(
    request: Request,
    exc: StateTransitionError
) -> JSONResponse:
    logger.warning(f"State transition rejected on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"error": "invalid_transition", "message": str(exc)},
    )


@app.exception_handler(MatchingError)
async def matching_exception_handler(
    request: Request,
    exc: MatchingError
) -> JSONResponse:
    """Transient matching errors (directory, bus, lock) map to 503."""
    logger.error(f"Matching error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "service_unavailable", "message": str(exc)},
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(
    request: Request,
    exc: SQLAlchemyError
) -> JSONResponse:
    """Log the full error but return a generic message."""
    logger.error(
        f"Database error on {request.method} {request.url.path}",
        exc_info=exc
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "database_error",
            "message": "A database error occurred. Please try again later.",
        },
    )


# =============================================================================
# ROUTER REGISTRATION
# =============================================================================

app.include_router(observability_router)
app.include_router(matching_router)


@app.get("/", include_in_schema=False)
async def root() -> dict[str, Any]:
    return {
        "name": settings.SERVICE_NAME,
        "version": "0.1.0",
        "status": "running",
    }


def create_app() -> FastAPI:
    """Return the configured application (ASGI servers and tests)."""
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
        log_level=settings.LOG_LEVEL.lower(),
    )
