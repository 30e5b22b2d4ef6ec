"""
Identity resolution for incoming event candidates.

Decides whether a candidate produced by an ingestion path refers to an event
already in the store. Signals are consulted strongest first:

1. ical_uid - calendar-wide unique id, authoritative within a calendar scope
   even when title or time differ
2. external_id - the provider's stable id
3. match key - normalized (title, start minute, location, categories)

A match-key hit is discarded when both records carry different ical_uids.
The ical_uid and external_id lookups also see soft-deleted records (a live
record is preferred), so a deleted event keeps its identity; the match key
only considers live records. When several records share the strongest
available signal, the single one created by the candidate's own ingestion path
wins; otherwise the match is ambiguous and raises AmbiguousMatchError rather
than picking one arbitrarily.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from backend.src.models import Event, EventStatus
from backend.src.schemas.event import EventCandidate
from backend.src.services.exceptions import AmbiguousMatchError
from backend.src.utils.formatting import collapse_whitespace, minute_key
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

MATCH_KEY_SEPARATOR = "|"


def build_match_key(
    title: Optional[str],
    start: Optional[datetime],
    location: Optional[str],
    categories: Optional[Iterable[str]],
) -> Optional[str]:
    """
    Build the normalized identity key of an event.

    Args:
        title: Event title (case and whitespace insensitive)
        start: Start instant (converted to UTC, truncated to the minute)
        location: Location text (case and whitespace insensitive)
        categories: Category names (order insensitive)

    Returns:
        Key string, or None when start is missing (no match possible)

    Examples:
        >>> build_match_key("Board  Meeting", datetime(2025, 3, 1, 18, 0), "Room 402", ["B", "a"])
        'board meeting|2025-03-01T18:00|room 402|a,b'
    """
    start_part = minute_key(start)
    if start_part is None:
        return None

    category_part = ",".join(sorted(
        c.strip().lower() for c in (categories or []) if c and c.strip()
    ))
    return MATCH_KEY_SEPARATOR.join([
        collapse_whitespace(title),
        start_part,
        collapse_whitespace(location),
        category_part,
    ])


def match_key_for_event(event: Event) -> Optional[str]:
    """Match key of a stored record (location taken from the cached display string)."""
    return build_match_key(event.title, event.start_at, event.location_display, event.categories)


class MatchSignal(str, enum.Enum):
    """Signal that produced a resolution."""
    ICAL_UID = "ical_uid"
    EXTERNAL_ID = "external_id"
    MATCH_KEY = "match_key"
    NONE = "none"


@dataclass
class Resolution:
    """
    Outcome of identity resolution.

    Attributes:
        event: Matched record, or None for a new event
        signal: Signal used for the decision
        match_key: Key computed for the candidate (None without a start)
    """
    event: Optional[Event]
    signal: MatchSignal
    match_key: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.event is not None


class IdentityResolver:
    """
    Resolves ingestion candidates against stored events.

    Usage:
        >>> resolver = IdentityResolver(db_session)
        >>> resolution = resolver.resolve(candidate)
        >>> if resolution.matched:
        ...     update(resolution.event)
    """

    def __init__(self, db: Session):
        self.db = db

    def resolve(
        self,
        candidate: EventCandidate,
        location_text: Optional[str] = None,
        strong_only: bool = False,
    ) -> Resolution:
        """
        Find the stored record a candidate refers to.

        Args:
            candidate: Normalized ingestion candidate
            location_text: Location text for the match key; defaults to
                candidate.location (callers pass the resolved display string
                when the candidate only carries location ids)
            strong_only: Skip the match-key signal (the key is still computed)

        Returns:
            Resolution with the matched record (or None) and the signal used

        Raises:
            AmbiguousMatchError: If more than one record matches the strongest signal
        """
        location = location_text if location_text is not None else candidate.location
        key = build_match_key(candidate.title, candidate.start_at, location, candidate.categories)
        source = candidate.creation_source.value

        if candidate.ical_uid:
            query = self.db.query(Event).filter(Event.ical_uid == candidate.ical_uid)
            if candidate.calendar_id:
                query = query.filter(Event.calendar_id == candidate.calendar_id)
            found = self._strong(query, f"ical_uid:{candidate.ical_uid}", source)
            if found is not None:
                return self._resolved(found, MatchSignal.ICAL_UID, key)

        if candidate.external_id:
            found = self._strong(
                self.db.query(Event).filter(Event.external_id == candidate.external_id),
                f"external_id:{candidate.external_id}",
                source,
            )
            if found is not None:
                return self._resolved(found, MatchSignal.EXTERNAL_ID, key)

        if key is not None and not strong_only:
            records = self.key_matches(key, candidate.calendar_id, candidate.ical_uid)
            found = self._single(records, f"match_key:{key}", source)
            if found is not None:
                return self._resolved(found, MatchSignal.MATCH_KEY, key)

        return Resolution(event=None, signal=MatchSignal.NONE, match_key=key)

    def key_matches(
        self,
        key: Optional[str],
        calendar_id: Optional[str] = None,
        ical_uid: Optional[str] = None,
    ) -> List[Event]:
        """Live records sharing a match key, oldest first (different ical_uids excluded)."""
        if key is None:
            return []
        query = self._live().filter(Event.match_key == key)
        if calendar_id:
            query = query.filter(Event.calendar_id == calendar_id)
        return [
            record for record in query.order_by(Event.id).all()
            if not self._ical_conflict(record.ical_uid, ical_uid)
        ]

    def _live(self):
        return self.db.query(Event).filter(Event.status != EventStatus.DELETED.value)

    def _strong(self, query, key: str, source: str) -> Optional[Event]:
        records = query.order_by(Event.id).all()
        live = [r for r in records if r.status != EventStatus.DELETED.value]
        if live or not records:
            return self._single(live, key, source)
        # Only deleted records carry the id: the newest one stands for it
        same_source = [r for r in records if r.creation_source == source]
        return (same_source or records)[-1]

    @staticmethod
    def _ical_conflict(stored: Optional[str], incoming: Optional[str]) -> bool:
        return bool(stored) and bool(incoming) and stored != incoming

    @staticmethod
    def _single(records: List[Event], key: str, source: str) -> Optional[Event]:
        if not records:
            return None
        if len(records) > 1:
            # A record from the candidate's own path outranks cross-path duplicates
            same_source = [r for r in records if r.creation_source == source]
            if len(same_source) == 1:
                return same_source[0]
            logger.warning(
                "Ambiguous identity match",
                extra={"match_on": key, "candidates": [r.guid for r in records]}
            )
            raise AmbiguousMatchError(key, [r.guid for r in records])
        return records[0]

    @staticmethod
    def _resolved(event: Event, signal: MatchSignal, key: Optional[str]) -> Resolution:
        logger.debug(
            "Candidate resolved to existing event",
            extra={"event_guid": event.guid, "signal": signal.value}
        )
        return Resolution(event=event, signal=signal, match_key=key)
