"""
Portable SQLAlchemy column types.

PostgreSQL gets its native types (JSONB); SQLite, used for local
development and tests, falls back to the generic equivalents.
"""

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# Tally payloads: JSONB on PostgreSQL, JSON text elsewhere
JSONDocument = JSON().with_variant(JSONB(), "postgresql")
