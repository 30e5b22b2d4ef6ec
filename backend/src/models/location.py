"""
Location model for reservable rooms and virtual meeting placeholders.

Locations are referenced by events through an ordered id list. The event
caches the "; "-joined display names of its locations for display and for
pushing back to the calendar provider.

Design Rationale:
- aliases hold alternate spellings used when matching free-text provider
  location strings to rooms
- is_virtual marks the system-managed placeholder for online meetings, which
  never appears in room availability
- is_reservable controls whether the room is offered to reservation requests
"""

from typing import List

from sqlalchemy import Column, Integer, String, Boolean, DateTime

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin
from backend.src.models.types import JSONBType
from backend.src.utils.formatting import utcnow


class Location(Base, GuidMixin):
    """
    Room / venue model.

    Attributes:
        id: Primary key (internal, referenced by Event.location_ids)
        uuid: UUIDv7 for external identification (inherited from GuidMixin)
        guid: GUID string property (loc_xxx, inherited from GuidMixin)
        name: Canonical room name (unique)
        display_name: Name shown to users; falls back to name
        building: Building label
        floor: Floor label
        capacity: Seated capacity
        features: List of feature tags (projector, kitchen, ...)
        is_reservable: Offered to room reservation requests
        aliases: Alternate spellings for free-text matching
        is_virtual: System-managed virtual meeting placeholder
    """

    __tablename__ = "locations"

    GUID_PREFIX = "loc"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True, index=True)
    display_name = Column(String(255), nullable=True)
    building = Column(String(255), nullable=True)
    floor = Column(String(64), nullable=True)
    capacity = Column(Integer, nullable=True)
    features = Column(JSONBType(), nullable=True)
    is_reservable = Column(Boolean, default=True, nullable=False)
    aliases = Column(JSONBType(), nullable=True)
    is_virtual = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def label(self) -> str:
        """Display name with fallback to the canonical name."""
        return self.display_name or self.name

    @property
    def alias_list(self) -> List[str]:
        return list(self.aliases or [])

    def __repr__(self) -> str:
        return f"<Location(id={self.id}, name='{self.name}', virtual={self.is_virtual})>"

    def __str__(self) -> str:
        return self.label
