"""
Status workflow engine for events.

Owns the event state machine and its audit trail. Every transition appends
exactly one status history entry and updates status / previous_status in the
same version-guarded UPDATE, so the last history entry always matches the
stored status.

State machine:
    draft     -> published | pending | deleted
    pending   -> published | rejected (reason required) | deleted
    published -> deleted
    rejected  -> pending | deleted
    deleted   -> (restore) most recent non-deleted status in history, else draft

Physical deletion (purge) is outside the state machine and only allowed for
records that are already soft-deleted.
"""

from typing import Dict, FrozenSet, List, Optional

from sqlalchemy.orm import Session

from backend.src.config.settings import ReconcileConfig
from backend.src.models import Event, EventStatus
from backend.src.schemas.event import history_entry
from backend.src.services.exceptions import NotFoundError, ValidationError
from backend.src.services.version_guard import VersionGuard
from backend.src.utils.formatting import utcnow
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

ALLOWED_TRANSITIONS: Dict[EventStatus, FrozenSet[EventStatus]] = {
    EventStatus.DRAFT: frozenset({EventStatus.PUBLISHED, EventStatus.PENDING, EventStatus.DELETED}),
    EventStatus.PENDING: frozenset({EventStatus.PUBLISHED, EventStatus.REJECTED, EventStatus.DELETED}),
    EventStatus.PUBLISHED: frozenset({EventStatus.DELETED}),
    EventStatus.REJECTED: frozenset({EventStatus.PENDING, EventStatus.DELETED}),
    EventStatus.DELETED: frozenset(),
}

# Status names written by earlier releases
LEGACY_STATUS_ALIASES = {"approved": EventStatus.PUBLISHED.value}

RESTORE_REASON = "Restored"


def normalize_status(value: Optional[str]) -> Optional[str]:
    """Map legacy status names to their current equivalent."""
    if value is None:
        return None
    return LEGACY_STATUS_ALIASES.get(value, value)


def parse_status(value: str, field: str = "target_status") -> EventStatus:
    """
    Parse a status name.

    Raises:
        ValidationError: If the name is not a known status
    """
    try:
        return EventStatus(normalize_status(value))
    except ValueError:
        raise ValidationError(f"Unknown status '{value}'", field=field)


def resolve_restore_status(history: Optional[List[dict]]) -> str:
    """
    Status a deleted event returns to.

    Walks the history from newest to oldest and returns the first status that
    is not 'deleted'. Falls back to 'draft' when history is absent or holds
    deleted entries only.

    Examples:
        >>> resolve_restore_status([{"status": "pending"}, {"status": "deleted"}])
        'pending'
        >>> resolve_restore_status([])
        'draft'
    """
    valid = {s.value for s in EventStatus}
    for entry in reversed(history or []):
        status = normalize_status((entry or {}).get("status"))
        if status and status != EventStatus.DELETED.value and status in valid:
            return status
    return EventStatus.DRAFT.value


class StatusWorkflowService:
    """
    Service applying status transitions to events.

    Usage:
        >>> workflow = StatusWorkflowService(db_session)
        >>> event = workflow.submit(event.id, "requester@example.org")
        >>> event = workflow.approve(event.id, "approver@example.org")
    """

    def __init__(self, db: Session, config: Optional[ReconcileConfig] = None):
        self.db = db
        self.config = config or ReconcileConfig()
        self.guard = VersionGuard(db)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_event(self, event_id: int) -> Event:
        """
        Get an event by internal id.

        Raises:
            NotFoundError: If the event does not exist
        """
        event = self.db.get(Event, event_id, populate_existing=True)
        if event is None:
            raise NotFoundError("Event", event_id)
        return event

    def get_by_guid(self, guid: str) -> Event:
        """
        Get an event by GUID.

        Raises:
            NotFoundError: If the GUID is malformed or the event does not exist
        """
        try:
            uuid_value = Event.parse_guid(guid)
        except ValueError:
            raise NotFoundError("Event", guid)

        event = self.db.query(Event).populate_existing().filter(Event.uuid == uuid_value).first()
        if event is None:
            raise NotFoundError("Event", guid)
        return event

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @staticmethod
    def initial_history(
        status: str,
        actor: Optional[str],
        reason: Optional[str] = None,
        actor_name: Optional[str] = None,
    ) -> List[dict]:
        """Status history of a newly created record (exactly one entry)."""
        return [history_entry(
            status=parse_status(status, field="status").value,
            changed_at=utcnow(),
            changed_by_email=actor,
            changed_by=actor_name,
            reason=reason,
        )]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(
        self,
        event_id: int,
        target: str,
        actor: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
        actor_name: Optional[str] = None,
    ) -> Event:
        """
        Move an event to a new status.

        Args:
            event_id: Internal event id
            target: Target status name
            actor: Email of the user performing the change
            reason: Reason recorded in history (required when rejecting)
            expected_version: Version the caller read; defaults to the
                version currently stored
            actor_name: Display name recorded in history

        Returns:
            The updated event

        Raises:
            NotFoundError: If the event does not exist
            ValidationError: If the transition is not allowed
            ConflictError: If the event changed since expected_version
        """
        target_status = parse_status(target)
        event = self.get_event(event_id)
        current = parse_status(event.status, field="status")

        if current == EventStatus.DELETED:
            raise ValidationError(
                "Event is deleted; restore it before changing its status",
                field="status",
            )
        if target_status not in ALLOWED_TRANSITIONS[current]:
            raise ValidationError(
                f"Transition from '{current.value}' to '{target_status.value}' is not allowed",
                field="target_status",
            )
        if target_status == EventStatus.REJECTED and not (reason and reason.strip()):
            raise ValidationError("A reason is required to reject an event", field="reason")

        now = utcnow()
        values = {
            "status": target_status.value,
            "previous_status": current.value,
            "status_history": event.history + [history_entry(
                status=target_status.value,
                changed_at=now,
                changed_by_email=actor,
                changed_by=actor_name,
                reason=reason,
            )],
        }
        if target_status == EventStatus.DELETED:
            values["deleted_at"] = now
            values["deleted_by_email"] = actor

        updated = self.guard.conditional_update(
            event.id,
            expected_version if expected_version is not None else self.guard.effective_version(event),
            values,
            modified_by=actor,
        )

        logger.info(
            "Event status changed",
            extra={
                "event_guid": updated.guid,
                "from_status": current.value,
                "to_status": target_status.value,
                "actor": actor,
                "new_version": updated.version,
            }
        )
        return updated

    def publish(self, event_id: int, actor: str, **kwargs) -> Event:
        """Publish a draft or pending event."""
        return self.transition(event_id, EventStatus.PUBLISHED.value, actor, **kwargs)

    def submit(self, event_id: int, actor: str, **kwargs) -> Event:
        """Submit a draft for review."""
        return self.transition(event_id, EventStatus.PENDING.value, actor, **kwargs)

    def approve(self, event_id: int, actor: str, **kwargs) -> Event:
        """
        Approve a pending event (publishes it).

        Raises:
            ValidationError: If the event is not pending
        """
        event = self.get_event(event_id)
        if normalize_status(event.status) != EventStatus.PENDING.value:
            raise ValidationError(
                f"Only pending events can be approved (status is '{event.status}')",
                field="status",
            )
        return self.transition(event_id, EventStatus.PUBLISHED.value, actor, **kwargs)

    def reject(self, event_id: int, actor: str, reason: str, **kwargs) -> Event:
        """Reject a pending event; reason is mandatory."""
        return self.transition(event_id, EventStatus.REJECTED.value, actor, reason=reason, **kwargs)

    def resubmit(self, event_id: int, actor: str, **kwargs) -> Event:
        """
        Send a rejected event back to review.

        Raises:
            ValidationError: If the event is not rejected
        """
        event = self.get_event(event_id)
        if normalize_status(event.status) != EventStatus.REJECTED.value:
            raise ValidationError(
                f"Only rejected events can be resubmitted (status is '{event.status}')",
                field="status",
            )
        return self.transition(event_id, EventStatus.PENDING.value, actor, **kwargs)

    def soft_delete(self, event_id: int, actor: str, **kwargs) -> Event:
        """Soft-delete an event, remembering its previous status."""
        return self.transition(event_id, EventStatus.DELETED.value, actor, **kwargs)

    def restore(
        self,
        event_id: int,
        actor: str,
        expected_version: Optional[int] = None,
        actor_name: Optional[str] = None,
    ) -> Event:
        """
        Restore a soft-deleted event to the status it had before deletion.

        The target status is derived from the event's own history; callers
        never supply it.

        Raises:
            NotFoundError: If the event does not exist
            ValidationError: If the event is not deleted
            ConflictError: If the event changed since expected_version
        """
        event = self.get_event(event_id)
        if normalize_status(event.status) != EventStatus.DELETED.value:
            raise ValidationError(
                f"Only deleted events can be restored (status is '{event.status}')",
                field="status",
            )

        target = resolve_restore_status(event.history)
        values = {
            "status": target,
            "previous_status": EventStatus.DELETED.value,
            "status_history": event.history + [history_entry(
                status=target,
                changed_at=utcnow(),
                changed_by_email=actor,
                changed_by=actor_name,
                reason=RESTORE_REASON,
            )],
            "deleted_at": None,
            "deleted_by_email": None,
        }

        updated = self.guard.conditional_update(
            event.id,
            expected_version if expected_version is not None else self.guard.effective_version(event),
            values,
            modified_by=actor,
        )

        logger.info(
            "Event restored",
            extra={"event_guid": updated.guid, "to_status": target, "actor": actor}
        )
        return updated

    def purge(self, event_id: int, expected_version: int) -> None:
        """
        Physically delete a soft-deleted event.

        Raises:
            NotFoundError: If the event does not exist
            ValidationError: If the event is not soft-deleted
            ConflictError: If the event changed since expected_version
        """
        event = self.get_event(event_id)
        if normalize_status(event.status) != EventStatus.DELETED.value:
            raise ValidationError(
                "Only deleted events can be purged",
                field="status",
            )
        guid = event.guid
        self.guard.conditional_delete(event.id, expected_version)
        logger.info("Event purged", extra={"event_guid": guid})
