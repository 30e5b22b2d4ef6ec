"""
SQLAlchemy models for the room calendar backend.

This module provides the declarative base class and imports all models
to ensure they are registered with SQLAlchemy's metadata.
"""

from sqlalchemy.orm import declarative_base

# Create the declarative base class
# All models will inherit from this Base class
Base = declarative_base()


# Import all models here so they are registered with Base.metadata
# This is required for Alembic autogenerate to detect models
from backend.src.models.event import (
    Event,
    EventStatus,
    EventType,
    CreationSource,
    PLACEHOLDER_EXTERNAL_ID_PREFIXES,
    is_placeholder_external_id,
)
from backend.src.models.location import Location
from backend.src.models.user import User, UserRole

# Export Base and all models
__all__ = [
    "Base",
    "Event",
    "EventStatus",
    "EventType",
    "CreationSource",
    "PLACEHOLDER_EXTERNAL_ID_PREFIXES",
    "is_placeholder_external_id",
    "Location",
    "User",
    "UserRole",
]
