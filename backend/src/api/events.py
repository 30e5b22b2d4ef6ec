"""
Events API endpoints for the event workflow.

Provides endpoints for:
- Getting event details and status history
- Listing events in a time window
- Status transitions (submit, publish, approve, reject, delete)
- Restoring soft-deleted events
- Submitting room reservation requests
- Reading a user's permission flags

Design:
- Uses dependency injection for services
- All endpoints use GUID format (evt_xxx) for identifiers
- The acting user is identified by email and checked against role tiers
- Error mapping: 400 validation (with field), 403 role not permitted,
  404 not found, 409 version conflict or ambiguous match
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from backend.src.config.settings import ReconcileConfig, get_reconcile_config
from backend.src.db.database import get_db
from backend.src.models import EventStatus, User
from backend.src.schemas.event import (
    EventResponse,
    PermissionsResponse,
    ReservationRequest,
    RestoreRequest,
    StatusHistoryResponse,
    TransitionRequest,
    event_to_response,
    history_to_response,
)
from backend.src.services.event_service import EventService
from backend.src.services.exceptions import (
    AmbiguousMatchError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from backend.src.services.permissions import (
    can_restore,
    can_transition,
    effective_role,
    get_permissions,
)
from backend.src.services.reservation_service import ReservationService
from backend.src.services.status_workflow import StatusWorkflowService, parse_status
from backend.src.services.user_service import UserService
from backend.src.utils.formatting import to_utc_naive
from backend.src.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/events",
    tags=["Events"],
)


# ============================================================================
# Dependencies
# ============================================================================


def get_config() -> ReconcileConfig:
    """Reconciliation settings for request-scoped services."""
    return get_reconcile_config()


def get_event_service(
    db: Session = Depends(get_db),
    config: ReconcileConfig = Depends(get_config),
) -> EventService:
    """Create EventService instance with database session."""
    return EventService(db=db, config=config)


def get_workflow_service(
    db: Session = Depends(get_db),
    config: ReconcileConfig = Depends(get_config),
) -> StatusWorkflowService:
    """Create StatusWorkflowService instance with database session."""
    return StatusWorkflowService(db=db, config=config)


def get_reservation_service(
    db: Session = Depends(get_db),
    config: ReconcileConfig = Depends(get_config),
) -> ReservationService:
    """Create ReservationService instance with database session."""
    return ReservationService(db=db, config=config)


def get_user_service(db: Session = Depends(get_db)) -> UserService:
    """Create UserService instance with database session."""
    return UserService(db=db)


# ============================================================================
# Error mapping
# ============================================================================


def _not_found(e: NotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _bad_request(e: ValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"message": e.message, "field": e.field},
    )


def _conflict(e: ConflictError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"message": e.message, **e.to_dict()},
    )


def _ambiguous(e: AmbiguousMatchError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"message": e.message, "key": e.key, "candidate_guids": e.candidate_guids},
    )


def _forbidden(user: Optional[User], action: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=f"Role '{effective_role(user).value}' may not {action}",
    )


# ============================================================================
# API Endpoints
# ============================================================================


@router.get(
    "",
    response_model=List[EventResponse],
    summary="List events in a window",
)
async def list_events(
    start: datetime = Query(..., description="Window start (inclusive)"),
    end: datetime = Query(..., description="Window end (exclusive)"),
    calendar_id: Optional[str] = Query(None, description="Calendar scope"),
    include_deleted: bool = Query(False),
    event_service: EventService = Depends(get_event_service),
) -> List[EventResponse]:
    """
    List events starting inside [start, end).

    Example:
        GET /api/events?start=2025-03-01T00:00:00Z&end=2025-04-01T00:00:00Z
    """
    start_utc = to_utc_naive(start)
    end_utc = to_utc_naive(end)
    if end_utc <= start_utc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "end must be after start", "field": "end"},
        )
    events = event_service.list_in_window(start_utc, end_utc, calendar_id, include_deleted)
    return [event_to_response(event) for event in events]


@router.post(
    "/reservations",
    response_model=EventResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a room reservation",
)
async def submit_reservation(
    request: ReservationRequest,
    reservation_service: ReservationService = Depends(get_reservation_service),
) -> EventResponse:
    """
    Submit a room reservation request.

    The request is stored as a pending event awaiting review.
    """
    try:
        result = reservation_service.submit(request)
    except NotFoundError as e:
        raise _not_found(e)
    except ValidationError as e:
        raise _bad_request(e)
    except AmbiguousMatchError as e:
        raise _ambiguous(e)
    except ConflictError as e:
        raise _conflict(e)

    logger.info(f"Reservation submitted: {result.event.guid}")
    return event_to_response(result.event)


@router.get(
    "/permissions",
    response_model=PermissionsResponse,
    summary="Get a user's event permissions",
)
async def get_user_permissions(
    actor_email: str = Query(..., min_length=3),
    user_service: UserService = Depends(get_user_service),
) -> PermissionsResponse:
    """
    Permission flags and editable fields of a user.

    Unknown users get viewer permissions.

    Example:
        GET /api/events/permissions?actor_email=security@example.org
    """
    actor = user_service.get_by_email(actor_email)
    return PermissionsResponse(**get_permissions(actor))


@router.get(
    "/{guid}",
    response_model=EventResponse,
    summary="Get event details",
)
async def get_event(
    guid: str,
    workflow: StatusWorkflowService = Depends(get_workflow_service),
) -> EventResponse:
    """Get an event by GUID (soft-deleted events included)."""
    try:
        return event_to_response(workflow.get_by_guid(guid))
    except NotFoundError as e:
        raise _not_found(e)


@router.get(
    "/{guid}/history",
    response_model=StatusHistoryResponse,
    summary="Get event status history",
)
async def get_event_history(
    guid: str,
    workflow: StatusWorkflowService = Depends(get_workflow_service),
) -> StatusHistoryResponse:
    """Status history of an event, oldest entry first."""
    try:
        return history_to_response(workflow.get_by_guid(guid))
    except NotFoundError as e:
        raise _not_found(e)


@router.post(
    "/{guid}/transitions",
    response_model=EventResponse,
    summary="Change event status",
)
async def transition_event(
    guid: str,
    request: TransitionRequest,
    workflow: StatusWorkflowService = Depends(get_workflow_service),
    user_service: UserService = Depends(get_user_service),
) -> EventResponse:
    """
    Move an event to a new workflow status.

    Example:
        POST /api/events/evt_xxx/transitions
        {"target_status": "published", "actor_email": "approver@example.org", "expected_version": 2}
    """
    actor = user_service.get_by_email(request.actor_email)
    try:
        target = parse_status(request.target_status)
        event = workflow.get_by_guid(guid)
        if not can_transition(actor, target, event):
            raise _forbidden(actor, f"move events to '{target.value}'")

        updated = workflow.transition(
            event.id,
            target.value,
            request.actor_email,
            reason=request.reason,
            expected_version=request.expected_version,
            actor_name=actor.name if actor else None,
        )
    except NotFoundError as e:
        raise _not_found(e)
    except ValidationError as e:
        raise _bad_request(e)
    except ConflictError as e:
        raise _conflict(e)

    return event_to_response(updated)


@router.post(
    "/{guid}/restore",
    response_model=EventResponse,
    summary="Restore a deleted event",
)
async def restore_event(
    guid: str,
    request: RestoreRequest,
    workflow: StatusWorkflowService = Depends(get_workflow_service),
    user_service: UserService = Depends(get_user_service),
) -> EventResponse:
    """
    Restore a soft-deleted event to the status it had before deletion.

    Admins restore any event; requesters restore events they created.
    """
    actor = user_service.get_by_email(request.actor_email)
    try:
        event = workflow.get_by_guid(guid)
        if not can_restore(actor, event):
            raise _forbidden(actor, "restore this event")

        restored = workflow.restore(
            event.id,
            request.actor_email,
            actor_name=actor.name if actor else None,
        )
    except NotFoundError as e:
        raise _not_found(e)
    except ValidationError as e:
        raise _bad_request(e)
    except ConflictError as e:
        raise _conflict(e)

    return event_to_response(restored)


@router.delete(
    "/{guid}",
    response_model=EventResponse,
    summary="Soft-delete an event",
)
async def delete_event(
    guid: str,
    actor_email: str = Query(..., min_length=3),
    reason: Optional[str] = Query(None),
    expected_version: Optional[int] = Query(None, ge=1),
    workflow: StatusWorkflowService = Depends(get_workflow_service),
    user_service: UserService = Depends(get_user_service),
) -> EventResponse:
    """
    Soft-delete an event (restorable).

    Approvers delete any event; requesters delete events they created.
    """
    actor = user_service.get_by_email(actor_email)
    try:
        event = workflow.get_by_guid(guid)
        if not can_transition(actor, EventStatus.DELETED, event):
            raise _forbidden(actor, "delete this event")

        deleted = workflow.soft_delete(
            event.id,
            actor_email,
            reason=reason,
            expected_version=expected_version,
            actor_name=actor.name if actor else None,
        )
    except NotFoundError as e:
        raise _not_found(e)
    except ValidationError as e:
        raise _bad_request(e)
    except ConflictError as e:
        raise _conflict(e)

    return event_to_response(deleted)
