"""
Pydantic schemas for event ingestion and the event workflow API.

Provides data validation and serialization for:
- Ingestion candidates (form, CSV import, provider sync, room reservation)
- Status transition, restore and delete requests
- Event and status history responses

Design:
- All instants are normalized to naive UTC on input
- GUIDs are exposed, never internal ids
- Reservation-specific fields only travel inside the provenance payload
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from backend.src.models import CreationSource, Event, EventType
from backend.src.schemas.payload import Contact, SourcePayload
from backend.src.utils.formatting import isoformat, to_utc_naive


# ============================================================================
# Ingestion
# ============================================================================


class EventCandidate(BaseModel):
    """
    Normalized input produced by an ingestion path.

    Required:
        title: Event title
        creation_source: Ingestion path

    Optional:
        start_at / end_at: Instants (converted to naive UTC)
        location: Free-text location string ("; "-delimited room names)
        location_ids: Already resolved Location ids (take precedence)
        categories: Category names
        external_id / ical_uid / calendar_id: Identity fields
        event_type / series_master_external_id / original_start_at: Recurrence
        setup_at / door_open_at / door_close_at / teardown_at: Logistics timing
        payload: Provenance payload matching creation_source
    """

    title: str = Field(default="", max_length=255)
    description: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    is_all_day: bool = False
    timezone: Optional[str] = Field(default=None, max_length=64)

    location: Optional[str] = Field(default=None, description="Free-text location string")
    location_ids: Optional[List[int]] = None
    categories: List[str] = Field(default_factory=list)

    external_id: Optional[str] = Field(default=None, max_length=512)
    ical_uid: Optional[str] = Field(default=None, max_length=512)
    calendar_id: Optional[str] = Field(default=None, max_length=255)

    creation_source: CreationSource = CreationSource.UNKNOWN
    event_type: EventType = EventType.SINGLE_INSTANCE
    series_master_external_id: Optional[str] = None
    original_start_at: Optional[datetime] = None
    recurrence: Optional[dict] = None

    setup_at: Optional[datetime] = None
    door_open_at: Optional[datetime] = None
    door_close_at: Optional[datetime] = None
    teardown_at: Optional[datetime] = None

    created_by_id: Optional[str] = None
    created_by_email: Optional[str] = None
    created_by_name: Optional[str] = None

    payload: Optional[SourcePayload] = None

    @field_validator(
        "start_at", "end_at", "original_start_at",
        "setup_at", "door_open_at", "door_close_at", "teardown_at",
    )
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Store every instant as naive UTC."""
        return to_utc_naive(v)

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        return v.strip()

    @field_validator("categories")
    @classmethod
    def drop_blank_categories(cls, v: List[str]) -> List[str]:
        return [c.strip() for c in v if c and c.strip()]


# ============================================================================
# Request Schemas
# ============================================================================


class TransitionRequest(BaseModel):
    """Body of POST /api/events/{guid}/transitions."""

    target_status: str = Field(..., description="Target workflow status")
    actor_email: str = Field(..., min_length=3, max_length=255)
    reason: Optional[str] = Field(default=None, max_length=2000)
    expected_version: Optional[int] = Field(default=None, ge=1)

    model_config = {
        "json_schema_extra": {
            "example": {
                "target_status": "published",
                "actor_email": "approver@example.org",
                "expected_version": 2,
            }
        }
    }


class RestoreRequest(BaseModel):
    """Body of POST /api/events/{guid}/restore."""

    actor_email: str = Field(..., min_length=3, max_length=255)


class ReservationRequest(BaseModel):
    """
    Body of POST /api/events/reservations.

    The reservation lands as a pending event; contact and logistics details
    are stored in the room-reservation provenance payload.
    """

    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    start_at: datetime
    end_at: datetime
    timezone: Optional[str] = Field(default=None, max_length=64)
    location_guids: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    calendar_id: Optional[str] = None

    setup_at: Optional[datetime] = None
    door_open_at: Optional[datetime] = None
    door_close_at: Optional[datetime] = None
    teardown_at: Optional[datetime] = None

    requested_by: Contact
    on_behalf_of: Optional[Contact] = None
    attendee_count: Optional[int] = Field(default=None, ge=0)
    special_requirements: Optional[str] = None
    submitter_email: str = Field(..., min_length=3, max_length=255)

    @field_validator(
        "start_at", "end_at", "setup_at", "door_open_at", "door_close_at", "teardown_at"
    )
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc_naive(v)

    @field_validator("title")
    @classmethod
    def validate_title_not_whitespace(cls, v: str) -> str:
        """Ensure title is not just whitespace."""
        if not v.strip():
            raise ValueError("Title cannot be empty or whitespace")
        return v.strip()


# ============================================================================
# Response Schemas
# ============================================================================


class StatusHistoryEntry(BaseModel):
    """One entry of an event's status history."""

    status: str
    changed_at: Optional[str] = None
    changed_by: Optional[str] = None
    changed_by_email: Optional[str] = None
    reason: Optional[str] = None


class EventResponse(BaseModel):
    """Schema for event API responses."""

    guid: str = Field(..., description="Event GUID (evt_xxx)")
    title: str
    description: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    is_all_day: bool = False
    timezone: Optional[str] = None

    status: str
    previous_status: Optional[str] = None
    event_type: EventType
    creation_source: CreationSource

    external_id: Optional[str] = None
    ical_uid: Optional[str] = None
    calendar_id: Optional[str] = None
    series_master_external_id: Optional[str] = None

    categories: List[str] = Field(default_factory=list)
    location_display: Optional[str] = None
    timing_issues: List[str] = Field(default_factory=list)

    version: int
    last_modified_by: Optional[str] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @field_serializer("start_at", "end_at", "deleted_at", "created_at", "updated_at")
    @classmethod
    def serialize_datetime_utc(cls, v: Optional[datetime]) -> Optional[str]:
        """Serialize datetime as ISO 8601 with explicit UTC timezone."""
        return v.isoformat() + "Z" if v else None


class StatusHistoryResponse(BaseModel):
    """Response of GET /api/events/{guid}/history."""

    guid: str
    status: str
    version: int
    entries: List[StatusHistoryEntry]


class PermissionsResponse(BaseModel):
    """Response of GET /api/events/permissions."""

    role: str
    department: Optional[str] = None
    department_editable_fields: List[str] = Field(default_factory=list)
    can_edit_department_fields: bool = False
    editable_fields: List[str] = Field(default_factory=list)
    can_view_calendar: bool
    can_submit_reservation: bool
    can_edit_events: bool
    can_delete_events: bool
    can_approve_reservations: bool
    is_admin: bool


def event_to_response(event: Event) -> EventResponse:
    """Build the API response for an event record."""
    return EventResponse(
        guid=event.guid,
        title=event.title,
        description=event.description,
        start_at=event.start_at,
        end_at=event.end_at,
        is_all_day=event.is_all_day,
        timezone=event.timezone,
        status=event.status,
        previous_status=event.previous_status,
        event_type=event.event_type,
        creation_source=event.creation_source,
        external_id=event.external_id,
        ical_uid=event.ical_uid,
        calendar_id=event.calendar_id,
        series_master_external_id=event.series_master_external_id,
        categories=list(event.categories or []),
        location_display=event.location_display,
        timing_issues=event.timing_issues(),
        version=event.effective_version,
        last_modified_by=event.last_modified_by,
        deleted_at=event.deleted_at,
        created_at=event.created_at,
        updated_at=event.updated_at,
    )


def history_to_response(event: Event) -> StatusHistoryResponse:
    """Build the status history response for an event record."""
    return StatusHistoryResponse(
        guid=event.guid,
        status=event.status,
        version=event.effective_version,
        entries=[StatusHistoryEntry(**entry) for entry in event.history],
    )


def history_entry(
    status: str,
    changed_at: datetime,
    changed_by_email: Optional[str],
    changed_by: Optional[str] = None,
    reason: Optional[str] = None,
) -> dict:
    """Build a status history entry as stored in the JSON column."""
    return StatusHistoryEntry(
        status=status,
        changed_at=isoformat(changed_at),
        changed_by=changed_by or changed_by_email,
        changed_by_email=changed_by_email,
        reason=reason,
    ).model_dump()
