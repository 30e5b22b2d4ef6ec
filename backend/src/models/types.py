"""
Custom SQLAlchemy types for cross-database compatibility.

Event records carry document-shaped fields (status history, category lists,
cancellation markers, provenance payloads). They are stored as JSONB on
PostgreSQL and plain JSON on SQLite so tests run without a server.
"""

from sqlalchemy import TypeDecorator, JSON
from sqlalchemy.dialects.postgresql import JSONB


class JSONBType(TypeDecorator):
    """
    Platform-independent JSONB type.

    Uses PostgreSQL's native JSONB type when available,
    otherwise falls back to JSON for SQLite.

    Values are replaced wholesale on write (never mutated in place), so no
    mutation tracking is attached to columns of this type.
    """

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())
