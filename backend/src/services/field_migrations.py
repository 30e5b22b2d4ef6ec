"""
Field migrations and normalization passes.

Each pass walks the events table in keyset-paginated chunks, computes the
values a record should have, and writes them through the version guard.
Every pass supports the three batch modes and can resume from a checkpoint.
A pass only writes records whose stored values differ from the target, so
applying it a second time writes nothing.

Passes are registered by name in MIGRATION_PASSES (run order of the list is
the recommended order: location display feeds the match key).
"""

from typing import Dict, List, Optional, Type

from sqlalchemy.orm import Query, Session

from backend.src.config.settings import ReconcileConfig
from backend.src.models import Event, EventStatus, EventType, is_placeholder_external_id
from backend.src.schemas.event import history_entry
from backend.src.services.exceptions import ValidationError
from backend.src.services.identity_resolver import match_key_for_event
from backend.src.services.location_service import LocationService
from backend.src.services.recurrence_reconciler import RecurrenceReconciler
from backend.src.services.status_workflow import LEGACY_STATUS_ALIASES, normalize_status
from backend.src.services.version_guard import VersionGuard
from backend.src.utils.batch_runner import BatchMode, PassReport, RunnerOptions, build_runner
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

BACKFILL_ACTOR = "unknown"


class BatchPass:
    """
    Base class for a chunked maintenance pass.

    Subclasses define name/description, optionally narrow query(), and
    implement plan() returning the values to write (or None).
    """

    name: str = ""
    description: str = ""

    def __init__(
        self,
        db: Session,
        config: Optional[ReconcileConfig] = None,
        options: Optional[RunnerOptions] = None,
    ):
        self.db = db
        self.config = config or ReconcileConfig()
        self.options = options
        self.guard = VersionGuard(db)

    def query(self) -> Query:
        """Records the pass looks at."""
        return self.db.query(Event)

    def plan(self, event: Event) -> Optional[dict]:
        """Values the record should get, or None when it is up to date."""
        raise NotImplementedError

    def write(self, event: Event, values: dict) -> None:
        self.guard.conditional_update(event.id, self.guard.effective_version(event), values)

    def run(self, mode: BatchMode, start_after_id: Optional[int] = None) -> PassReport:
        """
        Run the pass.

        Args:
            mode: preview (no writes), apply, or verify (count what remains)
            start_after_id: Resume after this primary key

        Returns:
            PassReport with last_id as the resume checkpoint
        """
        report = PassReport(self.name, mode)
        runner = build_runner(self.config, self.options, on_item_error=self._rollback)

        def fetch(after_id: Optional[int], limit: int) -> List[Event]:
            query = self.query()
            if after_id is not None:
                query = query.filter(Event.id > after_id)
            return query.order_by(Event.id).limit(limit).all()

        def process(event: Event) -> bool:
            values = self.plan(event)
            if not values:
                return False
            entry = {"event_guid": event.guid, "fields": sorted(values)}
            if mode == BatchMode.APPLY:
                self.write(event, values)
            report.details.append(entry)
            return True

        logger.info(
            f"Running migration pass '{self.name}'",
            extra={"pass_name": self.name, "mode": mode.value, "start_after_id": start_after_id}
        )
        runner.run(report, fetch, process, start_after=start_after_id)
        logger.info(f"Migration pass '{self.name}' finished", extra=report.log_extra())
        return report

    def _rollback(self, error: Exception) -> None:
        self.db.rollback()


class BackfillVersionPass(BatchPass):
    """Give legacy rows without a version counter version 1."""

    name = "backfill-version"
    description = "Set missing version counters to 1 (no increment)"

    def query(self) -> Query:
        return self.db.query(Event).filter(Event.version.is_(None))

    def plan(self, event: Event) -> Optional[dict]:
        if event.version is not None:
            return None
        return {"version": 1}

    def write(self, event: Event, values: dict) -> None:
        self.guard.backfill_version(event.id)


def build_status_history(event: Event) -> List[dict]:
    """
    Reconstruct a status history for a record that has none.

    Live records get one entry for their current status. Deleted records get
    an entry for the status they had before deletion (draft when unknown)
    followed by the deletion entry.
    """
    created_at = event.created_at
    actor = event.created_by_email or BACKFILL_ACTOR

    if event.status == EventStatus.DELETED.value:
        previous = event.previous_status or EventStatus.DRAFT.value
        return [
            history_entry(
                previous,
                created_at,
                actor,
                changed_by=event.created_by_id,
                reason=f"Backfilled: event was {previous} before deletion",
            ),
            history_entry(
                EventStatus.DELETED.value,
                event.deleted_at or event.updated_at or created_at,
                event.deleted_by_email or BACKFILL_ACTOR,
                reason="Backfilled: event was deleted",
            ),
        ]

    status = event.status or EventStatus.DRAFT.value
    return [
        history_entry(
            status,
            created_at,
            actor,
            changed_by=event.created_by_id,
            reason=f"Backfilled: event created with status {status}",
        )
    ]


class BackfillStatusHistoryPass(BatchPass):
    name = "backfill-status-history"
    description = "Create a status history for records that have none"

    def plan(self, event: Event) -> Optional[dict]:
        if event.status_history:
            return None
        return {"status_history": build_status_history(event)}


class RenameApprovedStatusPass(BatchPass):
    """Rewrite the legacy 'approved' status name everywhere it is stored."""

    name = "rename-approved-status"
    description = "Rename legacy 'approved' to 'published' in status, previous status and history"

    def plan(self, event: Event) -> Optional[dict]:
        values = {}
        if event.status in LEGACY_STATUS_ALIASES:
            values["status"] = normalize_status(event.status)
        if event.previous_status in LEGACY_STATUS_ALIASES:
            values["previous_status"] = normalize_status(event.previous_status)

        history = event.history
        if any(entry.get("status") in LEGACY_STATUS_ALIASES for entry in history):
            values["status_history"] = [
                {**entry, "status": normalize_status(entry.get("status"))} for entry in history
            ]
        return values or None


class EnsureSeriesContainersPass(BatchPass):
    name = "ensure-series-containers"
    description = "Give series masters empty exception and cancellation lists"

    def query(self) -> Query:
        return self.db.query(Event).filter(Event.event_type == EventType.SERIES_MASTER.value)

    def plan(self, event: Event) -> Optional[dict]:
        values = {}
        if event.exception_event_ids is None:
            values["exception_event_ids"] = []
        if event.cancelled_occurrences is None:
            values["cancelled_occurrences"] = []
        return values or None


class RecomputeMatchKeysPass(BatchPass):
    name = "recompute-match-keys"
    description = "Refresh the cached identity match key"

    def plan(self, event: Event) -> Optional[dict]:
        key = match_key_for_event(event)
        if key == event.match_key:
            return None
        return {"match_key": key}


class PopulateLocationDisplayPass(BatchPass):
    """Recompute the display string of records whose locations were matched."""

    name = "populate-location-display"
    description = "Recompute location display strings from location ids"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.locations = LocationService(self.db)

    def plan(self, event: Event) -> Optional[dict]:
        if not event.location_ids:
            return None
        display = self.locations.display_names(event.location_ids)
        if not display or display == event.location_display:
            return None
        return {"location_display": display}


class RemovePlaceholderExternalIdsPass(BatchPass):
    """
    Clear system-generated external ids (csv_import_..., evt-...).

    A linked exception is keyed in its master by its stable id, which falls
    back to the GUID once the placeholder is gone; the master entry is
    rewritten accordingly.

    Series masters keep their placeholder while any exception or occurrence
    references it: the placeholder is the only key those children resolve
    their master by.
    """

    name = "remove-placeholder-external-ids"
    description = "Clear placeholder external ids left by imports"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.reconciler = RecurrenceReconciler(self.db, self.config)

    def query(self) -> Query:
        return self.db.query(Event).filter(Event.external_id.isnot(None))

    def plan(self, event: Event) -> Optional[dict]:
        if not is_placeholder_external_id(event.external_id):
            return None
        if event.event_type == EventType.SERIES_MASTER.value and self._has_children(event.external_id):
            logger.info(
                "Placeholder kept on series master referenced by its exceptions",
                extra={"event_guid": event.guid, "external_id": event.external_id}
            )
            return None
        return {"external_id": None}

    def _has_children(self, master_external_id: str) -> bool:
        child = (
            self.db.query(Event.id)
            .filter(
                Event.series_master_external_id == master_external_id,
                Event.event_type.in_([EventType.EXCEPTION.value, EventType.OCCURRENCE.value]),
            )
            .first()
        )
        return child is not None

    def write(self, event: Event, values: dict) -> None:
        old_id = event.external_id
        updated = self.guard.conditional_update(event.id, self.guard.effective_version(event), values)

        if updated.event_type != EventType.EXCEPTION.value:
            return
        master = self.reconciler.find_master(updated.series_master_external_id)
        if master is None or old_id not in (master.exception_event_ids or []):
            return
        linked = [updated.guid if item == old_id else item for item in master.exception_event_ids]
        self.guard.conditional_update(
            master.id, self.guard.effective_version(master), {"exception_event_ids": linked}
        )


MIGRATION_PASSES: List[Type[BatchPass]] = [
    BackfillVersionPass,
    BackfillStatusHistoryPass,
    RenameApprovedStatusPass,
    EnsureSeriesContainersPass,
    PopulateLocationDisplayPass,
    RecomputeMatchKeysPass,
    RemovePlaceholderExternalIdsPass,
]

_REGISTRY: Dict[str, Type[BatchPass]] = {cls.name: cls for cls in MIGRATION_PASSES}


def list_passes() -> List[Type[BatchPass]]:
    """Registered passes in recommended run order."""
    return list(MIGRATION_PASSES)


def get_pass(
    name: str,
    db: Session,
    config: Optional[ReconcileConfig] = None,
    options: Optional[RunnerOptions] = None,
) -> BatchPass:
    """
    Instantiate a registered pass by name.

    Raises:
        ValidationError: If no pass has this name
    """
    cls = _REGISTRY.get(name)
    if cls is None:
        raise ValidationError(
            f"Unknown migration '{name}'. Available: {', '.join(sorted(_REGISTRY))}",
            field="name",
        )
    return cls(db, config, options)
