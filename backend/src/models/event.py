"""
Event model for calendar events and room reservations.

Events mirror entries of the external calendar provider and augment them with
workflow metadata: approval status and its audit trail, setup/teardown
timing, location assignments and the provenance of the record.

Design Rationale:
- One table for every ingestion path; the creation source discriminates the
  provenance payload stored in source_payload
- Recurrence links are weak: occurrences and exceptions carry the master's
  external id, masters own the list of linked exception ids
- Status and status_history are only ever written together, in one
  version-guarded UPDATE
- version is NULL on rows written before optimistic concurrency existed and
  is treated as 1 until the backfill pass has run
"""

import enum
from typing import List, Optional

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, Index
)

from backend.src.models import Base
from backend.src.models.mixins import GuidMixin
from backend.src.models.types import JSONBType
from backend.src.utils.formatting import utcnow


class EventStatus(str, enum.Enum):
    """Workflow status of an event."""
    DRAFT = "draft"
    PENDING = "pending"
    PUBLISHED = "published"
    REJECTED = "rejected"
    DELETED = "deleted"


class EventType(str, enum.Enum):
    """Recurrence role of an event (exactly one applies)."""
    SINGLE_INSTANCE = "single_instance"
    SERIES_MASTER = "series_master"
    OCCURRENCE = "occurrence"
    EXCEPTION = "exception"


class CreationSource(str, enum.Enum):
    """Ingestion path that created the record."""
    FORM = "form"
    CSV_IMPORT = "csv-import"
    PROVIDER_SYNC = "provider-sync"
    ROOM_RESERVATION = "room-reservation"
    UNKNOWN = "unknown"


# External ids minted locally before a record ever reached the provider
PLACEHOLDER_EXTERNAL_ID_PREFIXES = ("csv_import_", "evt-")


def is_placeholder_external_id(external_id: Optional[str]) -> bool:
    """Check whether an external id was generated locally rather than by the provider."""
    if not external_id:
        return False
    return external_id.startswith(PLACEHOLDER_EXTERNAL_ID_PREFIXES)


class Event(Base, GuidMixin):
    """
    Calendar event model.

    Attributes:
        id: Primary key (internal, never exposed)
        uuid: UUIDv7 for external identification (inherited from GuidMixin)
        guid: GUID string property (evt_xxx, inherited from GuidMixin)

        Identity Fields:
            external_id: Provider event id (NULL until synced)
            ical_uid: Calendar-wide unique id, authoritative dedup key
            calendar_id: Calendar scope the record belongs to
            match_key: Cached identity-resolver key (title/start/location/categories)

        Time Fields:
            start_at / end_at: Naive UTC instants
            is_all_day: Whether event spans full days
            timezone: IANA label used for display
            setup_at / door_open_at: Must not be after start_at
            door_close_at / teardown_at: Must not be before end_at

        Classification Fields:
            title, description
            categories: Ordered list of category names
            location_ids: Ordered list of Location ids
            location_display: Cached "; "-joined location display names

        Provenance Fields:
            creation_source: CreationSource value
            created_by_id / created_by_email / created_by_name
            source_payload: Provenance payload (tagged by source)

        Recurrence Fields:
            event_type: EventType value
            series_master_external_id: Master's external id (weak reference)
            original_start_at: Original slot of an exception/occurrence
            recurrence: Pattern description (masters only)
            cancelled_occurrences: Cancellation markers (masters only, NULL = absent)
            exception_event_ids: Linked exception ids (masters only, NULL = absent)

        Workflow Fields:
            status: EventStatus value
            previous_status: Status before the latest transition
            status_history: Append-only list of transition entries
            deleted_at / deleted_by_email: Soft delete metadata

        Concurrency Fields:
            version: Optimistic concurrency counter (NULL = legacy, treated as 1)
            last_modified_by: Email of the last writer

    Indexes:
        - uuid (unique, for GUID lookups)
        - external_id, ical_uid, match_key (identity resolution)
        - series_master_external_id (exception linkage)
        - calendar_id, start_at (range queries)
    """

    __tablename__ = "events"

    GUID_PREFIX = "evt"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Identity
    external_id = Column(String(512), nullable=True, index=True)
    ical_uid = Column(String(512), nullable=True, index=True)
    calendar_id = Column(String(255), nullable=True, index=True)
    match_key = Column(String(1024), nullable=True, index=True)

    # Core fields
    title = Column(String(255), nullable=False, default="")
    description = Column(Text, nullable=True)

    # Time fields
    start_at = Column(DateTime, nullable=True, index=True)
    end_at = Column(DateTime, nullable=True)
    is_all_day = Column(Boolean, default=False, nullable=False)
    timezone = Column(String(64), nullable=True)
    setup_at = Column(DateTime, nullable=True)
    door_open_at = Column(DateTime, nullable=True)
    door_close_at = Column(DateTime, nullable=True)
    teardown_at = Column(DateTime, nullable=True)

    # Classification
    categories = Column(JSONBType(), nullable=True)
    location_ids = Column(JSONBType(), nullable=True)
    location_display = Column(String(1024), nullable=True)

    # Provenance
    creation_source = Column(String(32), nullable=False, default=CreationSource.UNKNOWN.value)
    created_by_id = Column(String(255), nullable=True)
    created_by_email = Column(String(255), nullable=True)
    created_by_name = Column(String(255), nullable=True)
    source_payload = Column(JSONBType(), nullable=True)

    # Recurrence
    event_type = Column(String(32), nullable=False, default=EventType.SINGLE_INSTANCE.value)
    series_master_external_id = Column(String(512), nullable=True, index=True)
    original_start_at = Column(DateTime, nullable=True)
    recurrence = Column(JSONBType(), nullable=True)
    cancelled_occurrences = Column(JSONBType(), nullable=True)
    exception_event_ids = Column(JSONBType(), nullable=True)

    # Workflow
    status = Column(String(32), nullable=False, default=EventStatus.DRAFT.value, index=True)
    previous_status = Column(String(32), nullable=True)
    status_history = Column(JSONBType(), nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by_email = Column(String(255), nullable=True)

    # Concurrency
    version = Column(Integer, nullable=True, default=1)
    last_modified_by = Column(String(255), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_events_calendar_start", "calendar_id", "start_at"),
        Index("idx_events_master_original_start", "series_master_external_id", "original_start_at"),
    )

    @property
    def effective_version(self) -> int:
        """Version counter, with legacy NULL treated as 1."""
        return self.version if self.version is not None else 1

    @property
    def is_deleted(self) -> bool:
        """Check if event is soft-deleted."""
        return self.status == EventStatus.DELETED.value

    @property
    def has_real_external_id(self) -> bool:
        """Check if the record is linked to an event that exists at the provider."""
        return bool(self.external_id) and not is_placeholder_external_id(self.external_id)

    @property
    def stable_id(self) -> str:
        """Identifier used in a master's exception list (provider id, else GUID)."""
        return self.external_id or self.guid

    @property
    def history(self) -> List[dict]:
        """Status history entries (empty list when absent)."""
        return list(self.status_history or [])

    def timing_issues(self) -> List[str]:
        """
        List setup/door/teardown offsets that fall on the wrong side of the event.

        Returns:
            Names of offending fields; an empty list when timing is consistent
        """
        issues = []
        if self.start_at is not None:
            if self.setup_at is not None and self.setup_at > self.start_at:
                issues.append("setup_at")
            if self.door_open_at is not None and self.door_open_at > self.start_at:
                issues.append("door_open_at")
        if self.end_at is not None:
            if self.door_close_at is not None and self.door_close_at < self.end_at:
                issues.append("door_close_at")
            if self.teardown_at is not None and self.teardown_at < self.end_at:
                issues.append("teardown_at")
        return issues

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Event("
            f"id={self.id}, "
            f"title='{self.title}', "
            f"start={self.start_at}, "
            f"status={self.status}, "
            f"version={self.version}"
            f")>"
        )

    def __str__(self) -> str:
        """Human-readable string representation."""
        return f"{self.title} - {self.start_at}"
