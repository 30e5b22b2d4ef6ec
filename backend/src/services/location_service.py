"""
Location service for rooms referenced by events.

Provides business logic for:
- Creating rooms and the virtual meeting placeholder
- Matching free-text provider location strings to rooms (name, display
  name or alias, compared after normalization)
- Computing the cached "; "-joined location display string of an event

Design:
- Location strings from the provider and CSV files are semicolon-delimited
- Meeting URLs (Zoom, Teams, ...) map to the single virtual location
- Unmatched parts are reported, never invented as new rooms
"""

import re
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.src.models import Location
from backend.src.services.exceptions import NotFoundError, ValidationError
from backend.src.services.guid import GuidService
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

LOCATION_SEPARATOR = ";"
DISPLAY_SEPARATOR = "; "
VIRTUAL_LOCATION_NAME = "Virtual Meeting"

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9\s]")
_VIRTUAL_PATTERNS = [
    re.compile(pattern, re.IGNORECASE) for pattern in (
        r"^https?://",
        r"zoom\.us/",
        r"teams\.microsoft\.com",
        r"meet\.google\.com",
        r"webex\.com",
        r"gotomeeting\.com",
        r"meet\.jit\.si",
    )
]


def normalize_location_string(value: Optional[str]) -> str:
    """
    Normalize a location string for matching.

    Examples:
        >>> normalize_location_string("  Room #402 ")
        'room 402'
    """
    if not value:
        return ""
    return " ".join(_NON_ALPHANUMERIC.sub("", value.lower()).split())


def parse_location_string(value: Optional[str]) -> List[str]:
    """
    Split a semicolon-delimited location string into trimmed parts.

    Examples:
        >>> parse_location_string("Chapel; Room 402;")
        ['Chapel', 'Room 402']
    """
    if not value:
        return []
    return [part.strip() for part in value.split(LOCATION_SEPARATOR) if part.strip()]


def is_virtual_location(value: Optional[str]) -> bool:
    """Check whether a location string is an online meeting link."""
    if not value:
        return False
    return any(pattern.search(value.strip()) for pattern in _VIRTUAL_PATTERNS)


class LocationService:
    """
    Service for rooms and location matching.

    Usage:
        >>> service = LocationService(db_session)
        >>> ids, unmatched = service.resolve_location_ids("Chapel; Room 402")
        >>> service.display_names(ids)
        'Chapel; Room 402'
    """

    def __init__(self, db: Session):
        self.db = db
        self._index: Optional[Dict[str, Location]] = None

    def create(
        self,
        name: str,
        display_name: Optional[str] = None,
        building: Optional[str] = None,
        floor: Optional[str] = None,
        capacity: Optional[int] = None,
        features: Optional[List[str]] = None,
        aliases: Optional[List[str]] = None,
        is_reservable: bool = True,
        is_virtual: bool = False,
    ) -> Location:
        """
        Create a new room.

        Raises:
            ValidationError: If the name is empty or already used
        """
        if not name or not name.strip():
            raise ValidationError("Location name is required", field="name")
        if capacity is not None and capacity < 0:
            raise ValidationError("Capacity cannot be negative", field="capacity")

        try:
            location = Location(
                name=name.strip(),
                display_name=display_name,
                building=building,
                floor=floor,
                capacity=capacity,
                features=list(features or []),
                aliases=list(aliases or []),
                is_reservable=is_reservable,
                is_virtual=is_virtual,
            )
            self.db.add(location)
            self.db.commit()
            self.db.refresh(location)
        except IntegrityError as e:
            self.db.rollback()
            logger.error(f"Failed to create location '{name}': {e}")
            raise ValidationError(f"Location '{name}' already exists", field="name")

        self._index = None
        logger.info(f"Created location: {location.name} ({location.guid})")
        return location

    def ensure_virtual_location(self) -> Location:
        """Get the virtual meeting placeholder, creating it when missing."""
        location = self.db.query(Location).filter(Location.is_virtual.is_(True)).first()
        if location is not None:
            return location
        return self.create(
            name=VIRTUAL_LOCATION_NAME,
            display_name=VIRTUAL_LOCATION_NAME,
            is_reservable=False,
            is_virtual=True,
        )

    def get_by_guid(self, guid: str) -> Location:
        """
        Get a location by GUID.

        Raises:
            NotFoundError: If the GUID is malformed or the location does not exist
        """
        if not GuidService.validate_guid(guid, "loc"):
            raise NotFoundError("Location", guid)
        uuid_value = GuidService.parse_guid(guid, "loc")

        location = self.db.query(Location).filter(Location.uuid == uuid_value).first()
        if location is None:
            raise NotFoundError("Location", guid)
        return location

    def match_location(self, text: str) -> Optional[Location]:
        """Find the room whose name, display name or alias matches text."""
        normalized = normalize_location_string(text)
        if not normalized:
            return None
        return self._alias_index().get(normalized)

    def resolve_location_ids(self, location_string: Optional[str]) -> Tuple[List[int], List[str]]:
        """
        Resolve a free-text location string to room ids.

        Returns:
            (location ids in input order without duplicates, unmatched parts)
        """
        ids: List[int] = []
        unmatched: List[str] = []
        for part in parse_location_string(location_string):
            if is_virtual_location(part):
                location = self.ensure_virtual_location()
            else:
                location = self.match_location(part)

            if location is None:
                unmatched.append(part)
            elif location.id not in ids:
                ids.append(location.id)

        if unmatched:
            logger.info(
                "Unmatched location strings",
                extra={"unmatched": unmatched, "matched_count": len(ids)}
            )
        return ids, unmatched

    def display_names(self, location_ids: Optional[Sequence[int]]) -> str:
        """
        Compute the "; "-joined display string for location ids.

        Missing ids are skipped; order follows location_ids.
        """
        if not location_ids:
            return ""
        locations = self.db.query(Location).filter(Location.id.in_(list(location_ids))).all()
        by_id = {location.id: location for location in locations}
        return DISPLAY_SEPARATOR.join(
            by_id[location_id].label for location_id in location_ids if location_id in by_id
        )

    def _alias_index(self) -> Dict[str, Location]:
        if self._index is None:
            index: Dict[str, Location] = {}
            for location in self.db.query(Location).order_by(Location.id).all():
                for text in [location.name, location.display_name] + location.alias_list:
                    key = normalize_location_string(text)
                    if key and key not in index:
                        index[key] = location
            self._index = index
        return self._index
