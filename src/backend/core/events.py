"""
Application lifecycle event handlers.

Manages startup and shutdown of the database handle and refuses to start
when secure voting cannot be keyed.
"""

from typing import Callable

import structlog
from fastapi import FastAPI

from core.config import settings
from core.secure_voting import get_ballot_crypto
from db.session import Database

logger = structlog.get_logger(__name__)


def create_start_app_handler(app: FastAPI) -> Callable:
    """Create startup event handler."""

    async def start_app() -> None:
        logger.info("app_starting", app_name=settings.APP_NAME, app_env=settings.APP_ENV)

        # Fail fast: raises ConfigurationError without VOTE_ENCRYPTION_KEY
        get_ballot_crypto()

        if getattr(app.state, "database", None) is None:
            app.state.database = Database(
                settings.database_url,
                echo=settings.DB_ECHO,
                pool_size=settings.DB_POOL_SIZE,
                max_overflow=settings.DB_MAX_OVERFLOW,
                sqlite_busy_timeout=settings.SQLITE_BUSY_TIMEOUT_SECONDS,
            )
            app.state.owns_database = True

        await app.state.database.create_all()

        logger.info("app_started")

    return start_app


def create_stop_app_handler(app: FastAPI) -> Callable:
    """Create shutdown event handler."""

    async def stop_app() -> None:
        logger.info("app_stopping")

        if getattr(app.state, "owns_database", False):
            await app.state.database.dispose()
            app.state.database = None
            app.state.owns_database = False

        logger.info("app_stopped")

    return stop_app
