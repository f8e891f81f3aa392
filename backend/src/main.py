"""Wholesale Matcher Backend - Main FastAPI Application

Matches free-text wholesale product names to catalog products and learns
from reviewer decisions.

This module creates and configures the main FastAPI application, including:
- API routers (match, memory, matching tasks, review, catalog)
- Middleware (request ID correlation, CORS)
- Exception handlers
- Health and observability endpoints
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from config import settings

# Observability
from observability.logging_config import configure_logging
from observability.middleware import RequestIDMiddleware
from observability.request_id import get_request_id
from observability.router import router as observability_router

# Domain Routers
from catalog.router import router as catalog_router
from matching.router import router as matching_router
from memory.router import router as memory_router
from matching_tasks.router import router as matching_tasks_router
from matching_tasks.router import records_router as matching_records_router

# Configure logging
configure_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    - Startup: log the effective matching configuration
    - Shutdown: log shutdown
    """
    logger.info("Wholesale matcher API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(
        f"Matching profile: {settings.MATCHING_PROFILE} "
        f"(review >= {settings.MATCHING_REVIEW_THRESHOLD}, "
        f"auto-confirm >= {settings.MATCHING_AUTO_CONFIRM_THRESHOLD})"
    )

    yield

    logger.info("Wholesale matcher API shutting down...")


def _error_response(status_code: int, error: str, message: str, **extra: Any) -> JSONResponse:
    content = {"error": error, "message": message, "request_id": get_request_id()}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def create_app() -> FastAPI:
    """Application factory.

    Returns a configured FastAPI application; used by the ASGI server and tests.
    """
    docs_enabled = settings.ENVIRONMENT != "production"
    app = FastAPI(
        title="Wholesale Matcher API",
        description="Wholesale product name matching with learned bindings and human review",
        version=API_VERSION,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )

    # =========================================================================
    # MIDDLEWARE CONFIGURATION
    # =========================================================================

    # Request ID Middleware (must be first for proper correlation)
    app.add_middleware(RequestIDMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    # =========================================================================
    # EXCEPTION HANDLERS
    # =========================================================================

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle Pydantic validation errors with field-level details."""
        logger.warning(
            f"Validation error on {request.method} {request.url.path}",
            extra={"path": request.url.path},
        )
        return _error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "validation_error",
            "Request validation failed",
            details=jsonable_errors(exc),
        )

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        """Handle database errors.

        Logs the full error but returns a generic message to prevent
        information leakage.
        """
        logger.error(f"Database error on {request.method} {request.url.path}", exc_info=exc)
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "database_error",
            "A database error occurred. Please try again later.",
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions without exposing details to the client."""
        logger.error(f"Unhandled exception on {request.method} {request.url.path}", exc_info=exc)
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "internal_error",
            "An unexpected error occurred. Please try again later.",
        )

    # =========================================================================
    # ROUTER REGISTRATION
    # =========================================================================

    # Observability (health, metrics, ready)
    app.include_router(observability_router)

    # Catalog
    app.include_router(catalog_router)

    # Matching, memory and review
    app.include_router(matching_router)
    app.include_router(memory_router)
    app.include_router(matching_tasks_router)
    app.include_router(matching_records_router)

    @app.get("/", include_in_schema=False)
    async def root() -> dict:
        """Root endpoint - API information."""
        return {
            "name": "Wholesale Matcher API",
            "version": API_VERSION,
            "status": "running",
            "docs": "/docs" if docs_enabled else None,
        }

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    """Validation errors without non-serializable context objects."""
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        error.pop("input", None)
        errors.append(error)
    return errors


app = create_app()


# =============================================================================
# DEVELOPMENT SERVER
# =============================================================================

if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=settings.ENVIRONMENT == "development",
        log_level=settings.LOG_LEVEL.lower(),
    )
