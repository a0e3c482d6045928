"""
Dialect helpers for statements SQLAlchemy does not abstract.

PostgreSQL and SQLite both support ``INSERT ... ON CONFLICT`` with the
same SQLAlchemy API, but through dialect-specific ``insert`` constructs.
"""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

# SQLSTATEs worth retrying: serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def upsert_insert(session: AsyncSession, table: Any) -> Any:
    """Return a dialect-specific insert() supporting on_conflict_*."""
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect_name!r}")


def is_retryable_error(exc: BaseException) -> bool:
    """
    Whether a failed transaction may succeed if simply run again.

    Covers PostgreSQL serialization failures and deadlocks, and SQLite
    lock timeouts.
    """
    if not isinstance(exc, DBAPIError):
        return False

    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True

    message = str(orig).lower() if orig is not None else ""
    return "database is locked" in message or "database is busy" in message
