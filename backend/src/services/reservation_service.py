"""
Room reservation ingestion path.

A reservation request becomes a pending event. Contact, attendee and review
details are stored only in the room-reservation provenance payload; the top
level of the record carries nothing reservation-specific.
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from backend.src.config.settings import ReconcileConfig
from backend.src.models import CreationSource, Event, EventStatus, Location
from backend.src.schemas.event import EventCandidate, ReservationRequest
from backend.src.schemas.payload import RoomReservationPayload, dump_payload, parse_payload
from backend.src.services.event_service import EventService, IngestResult
from backend.src.services.exceptions import ValidationError
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")


class ReservationService:
    """
    Service for room reservation requests.

    Usage:
        >>> service = ReservationService(db_session)
        >>> result = service.submit(request)
        >>> result.event.status
        'pending'
    """

    def __init__(self, db: Session, config: Optional[ReconcileConfig] = None):
        self.db = db
        self.config = config or ReconcileConfig()
        self.events = EventService(db, self.config)

    def submit(self, request: ReservationRequest) -> IngestResult:
        """
        Store a reservation request as a pending event.

        Raises:
            ValidationError: If times are inverted, a room is not reservable or
                the attendee count exceeds a room's capacity
            NotFoundError: If a location GUID is unknown
        """
        if request.end_at <= request.start_at:
            raise ValidationError("End must be after start", field="end_at")

        rooms = [self.events.locations.get_by_guid(guid) for guid in request.location_guids]
        self._check_rooms(rooms, request.attendee_count)

        payload = RoomReservationPayload(
            requested_by=request.requested_by,
            on_behalf_of=request.on_behalf_of,
            attendee_count=request.attendee_count,
            special_requirements=request.special_requirements,
        )
        candidate = EventCandidate(
            title=request.title,
            description=request.description,
            start_at=request.start_at,
            end_at=request.end_at,
            timezone=request.timezone,
            location_ids=[room.id for room in rooms],
            categories=request.categories,
            calendar_id=request.calendar_id or self.config.default_calendar_id,
            setup_at=request.setup_at,
            door_open_at=request.door_open_at,
            door_close_at=request.door_close_at,
            teardown_at=request.teardown_at,
            creation_source=CreationSource.ROOM_RESERVATION,
            created_by_email=request.submitter_email,
            created_by_name=request.requested_by.name,
            payload=payload,
        )

        result = self.events.ingest(
            candidate,
            actor=request.submitter_email,
            initial_status=EventStatus.PENDING,
        )
        logger.info(
            "Reservation submitted",
            extra={
                "event_guid": result.event.guid,
                "action": result.action,
                "rooms": [room.name for room in rooms],
            }
        )
        return result

    def add_review_notes(self, event: Event, notes: str, actor: str) -> Event:
        """
        Record reviewer notes in the reservation payload.

        Raises:
            ValidationError: If the event is not a room reservation
            ConflictError: If the event changed concurrently
        """
        if event.creation_source != CreationSource.ROOM_RESERVATION.value:
            raise ValidationError("Event is not a room reservation", field="creation_source")

        payload = parse_payload(event.source_payload)
        updated_payload = payload.model_copy(update={"review_notes": notes})
        return self.events.guard.conditional_update(
            event.id,
            self.events.guard.effective_version(event),
            {"source_payload": dump_payload(updated_payload)},
            modified_by=actor,
        )

    @staticmethod
    def _check_rooms(rooms: List[Location], attendee_count: Optional[int]) -> None:
        for room in rooms:
            if not room.is_reservable:
                raise ValidationError(f"Location '{room.name}' is not reservable", field="location_guids")
            if attendee_count is not None and room.capacity is not None and attendee_count > room.capacity:
                raise ValidationError(
                    f"Attendee count {attendee_count} exceeds capacity of '{room.name}' ({room.capacity})",
                    field="attendee_count",
                )
