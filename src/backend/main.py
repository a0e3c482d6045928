"""
SecurePolls Backend Application

Secret-ballot polling with individually verifiable votes.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.v1 import router as api_v1_router
from core.config import settings
from core.events import create_start_app_handler, create_stop_app_handler
from core.logging import configure_logging
from core.middleware import REQUEST_ID_HEADER, RequestContextMiddleware
from db.session import Database

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    await create_start_app_handler(app)()
    yield
    # Shutdown
    await create_stop_app_handler(app)()


def create_application(database: Optional[Database] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        database: Pre-built store handle (tests). When omitted, one is
            built from settings at startup and disposed at shutdown.
    """
    configure_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)

    application = FastAPI(
        title=settings.APP_NAME,
        description="Secret-ballot polling with individually verifiable votes",
        version="1.0.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    application.state.database = database
    application.state.owns_database = False

    # Add middleware (order matters - processed in reverse)
    application.add_middleware(RequestContextMiddleware)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )

    # Include routers
    application.include_router(api_v1_router, prefix="/api/v1")

    @application.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch unhandled exceptions and return a generic JSON error."""
        logger.exception(
            "unhandled_exception",
            error_type=type(exc).__name__,
            path=request.url.path,
            method=request.method,
        )

        return JSONResponse(
            status_code=500,
            content={
                "detail": "An internal server error occurred. Please try again later.",
                "error_type": type(exc).__name__ if settings.DEBUG else "InternalServerError",
            },
        )

    @application.get("/health", tags=["Health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for load balancers and monitoring."""
        return {"status": "healthy", "service": "securepolls-api"}

    @application.get("/", tags=["Root"])
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": settings.APP_NAME,
            "version": "1.0.0",
            "docs": "/docs" if settings.DEBUG else "Documentation disabled in production",
        }

    return application


app = create_application()
