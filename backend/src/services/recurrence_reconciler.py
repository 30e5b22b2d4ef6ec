"""
Recurrence reconciliation.

Keeps series masters, their exceptions and cancelled occurrences consistent
while records arrive in any order from any ingestion path.

Design:
- Exceptions reference their master weakly (series_master_external_id); the
  master owns the list of linked exception ids and the cancellation markers
- Every operation is keyed by the exception's own stable id (provider id,
  else GUID), so running it again is a no-op
- An exception whose master has not arrived yet is stored standalone and
  linked later by relink_for_master() or the sweep
- Lost version races are retried with fresh data a bounded number of times
- Occurrences of a provider series are represented by the provider itself;
  materialized provider-sync copies under a present master are removed
"""

import enum
from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy.orm import Session

from backend.src.config.settings import ReconcileConfig
from backend.src.models import CreationSource, Event, EventStatus, EventType
from backend.src.services.exceptions import ConflictError, NotFoundError
from backend.src.services.version_guard import VersionGuard
from backend.src.utils.batch_runner import (
    BatchMode,
    PassReport,
    RunnerOptions,
    build_runner,
)
from backend.src.utils.formatting import isoformat, parse_isoformat, utcnow
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

SWEEP_PASS_NAME = "series-sweep"


class LinkOutcome(str, enum.Enum):
    """Result of linking an exception or recording a cancellation."""
    LINKED = "linked"
    ALREADY_LINKED = "already_linked"
    DEFERRED = "deferred"


class RecurrenceReconciler:
    """
    Maintains series master linkage.

    Usage:
        >>> reconciler = RecurrenceReconciler(db_session, config)
        >>> reconciler.link_exception(exception_event)
        <LinkOutcome.LINKED: 'linked'>
    """

    def __init__(
        self,
        db: Session,
        config: Optional[ReconcileConfig] = None,
        options: Optional[RunnerOptions] = None,
    ):
        """
        Initialize the reconciler.

        Args:
            db: SQLAlchemy database session
            config: Reconciliation settings (retry bound, chunking, pacing)
            options: Batch hooks for sweep() (pacing, stop callback, progress)
        """
        self.db = db
        self.config = config or ReconcileConfig()
        self.options = options
        self.guard = VersionGuard(db)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_master(self, master_external_id: Optional[str]) -> Optional[Event]:
        """Live series master with the given provider id, if stored."""
        if not master_external_id:
            return None
        masters = (
            self.db.query(Event)
            .populate_existing()
            .filter(
                Event.external_id == master_external_id,
                Event.event_type == EventType.SERIES_MASTER.value,
                Event.status != EventStatus.DELETED.value,
            )
            .order_by(Event.id)
            .all()
        )
        if len(masters) > 1:
            logger.warning(
                "Several series masters share one external id; using the oldest",
                extra={"master_external_id": master_external_id, "candidates": [m.guid for m in masters]}
            )
        return masters[0] if masters else None

    def series_index(self) -> Dict[str, Set[str]]:
        """Lookup table: master external id -> linked exception ids."""
        masters = (
            self.db.query(Event)
            .filter(
                Event.event_type == EventType.SERIES_MASTER.value,
                Event.external_id.isnot(None),
                Event.status != EventStatus.DELETED.value,
            )
            .order_by(Event.id)
            .all()
        )
        index: Dict[str, Set[str]] = {}
        for master in masters:
            # Oldest master wins, as in find_master
            index.setdefault(master.external_id, set(master.exception_event_ids or []))
        return index

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def ensure_series_containers(self, master: Event) -> bool:
        """
        Create empty exception and cancellation lists on a master when absent.

        Returns:
            True if the master was written
        """
        current = master
        attempt = 0
        while True:
            values = self._missing_containers(current)
            if not values:
                return False
            try:
                self.guard.conditional_update(current.id, self.guard.effective_version(current), values)
                return True
            except ConflictError:
                attempt += 1
                if attempt > self.config.max_conflict_retries:
                    raise
                current = self._reload(master.id)

    def link_exception(self, exception: Event) -> LinkOutcome:
        """
        Add an exception's stable id to its master's exception list.

        Returns:
            LINKED when written, ALREADY_LINKED when present, DEFERRED when
            the master is not stored yet
        """
        stable_id = exception.stable_id
        master_ref = exception.series_master_external_id

        attempt = 0
        while True:
            master = self.find_master(master_ref)
            if master is None:
                logger.info(
                    "Series master not found; exception kept standalone",
                    extra={"exception_guid": exception.guid, "master_external_id": master_ref}
                )
                return LinkOutcome.DEFERRED

            linked = list(master.exception_event_ids or [])
            if stable_id in linked:
                return LinkOutcome.ALREADY_LINKED

            values = self._missing_containers(master)
            values["exception_event_ids"] = linked + [stable_id]
            try:
                self.guard.conditional_update(master.id, self.guard.effective_version(master), values)
            except ConflictError:
                attempt += 1
                if attempt > self.config.max_conflict_retries:
                    raise
                logger.debug(
                    "Lost race linking exception; retrying",
                    extra={"exception_guid": exception.guid, "attempt": attempt}
                )
                continue

            logger.info(
                "Exception linked to series master",
                extra={"exception_guid": exception.guid, "master_guid": master.guid}
            )
            return LinkOutcome.LINKED

    def record_cancellation(
        self,
        master_external_id: str,
        original_start: datetime,
        actor: Optional[str] = None,
    ) -> LinkOutcome:
        """
        Mark one occurrence of a series as cancelled on its master.

        Idempotent per original start; never deletes a record.

        Returns:
            LINKED when recorded, ALREADY_LINKED when already recorded,
            DEFERRED when the master is not stored yet
        """
        marker_start = isoformat(original_start)

        attempt = 0
        while True:
            master = self.find_master(master_external_id)
            if master is None:
                return LinkOutcome.DEFERRED

            markers = list(master.cancelled_occurrences or [])
            if any(self._same_start(m.get("original_start"), marker_start) for m in markers):
                return LinkOutcome.ALREADY_LINKED

            values = self._missing_containers(master)
            values["cancelled_occurrences"] = markers + [{
                "original_start": marker_start,
                "cancelled_at": isoformat(utcnow()),
            }]
            try:
                self.guard.conditional_update(
                    master.id, self.guard.effective_version(master), values, modified_by=actor
                )
            except ConflictError:
                attempt += 1
                if attempt > self.config.max_conflict_retries:
                    raise
                continue

            logger.info(
                "Occurrence cancellation recorded",
                extra={"master_guid": master.guid, "original_start": marker_start}
            )
            return LinkOutcome.LINKED

    def relink_for_master(self, master: Event) -> int:
        """
        Link every standalone exception referencing a newly stored master.

        Returns:
            Number of exceptions newly linked
        """
        if not master.external_id:
            return 0

        exceptions = (
            self.db.query(Event)
            .filter(
                Event.series_master_external_id == master.external_id,
                Event.event_type == EventType.EXCEPTION.value,
                Event.status != EventStatus.DELETED.value,
            )
            .order_by(Event.id)
            .all()
        )
        linked = sum(1 for exception in exceptions if self.link_exception(exception) == LinkOutcome.LINKED)
        if linked:
            logger.info(
                "Relinked standalone exceptions",
                extra={"master_guid": master.guid, "linked": linked}
            )
        return linked

    def sweep(self, mode: BatchMode, start_after_id: Optional[int] = None) -> PassReport:
        """
        Batch pass over all recurrence records.

        - masters: ensure containers
        - exceptions: link to their master when present
        - provider-sync occurrences under a present master: remove

        Returns:
            PassReport (changed = written, would be written, or still pending)
        """
        report = PassReport(SWEEP_PASS_NAME, mode)
        runner = build_runner(self.config, self.options, on_item_error=self._rollback)
        linked = self.series_index()

        def fetch(after_id: Optional[int], limit: int) -> List[Event]:
            query = self.db.query(Event).filter(
                Event.event_type.in_([
                    EventType.SERIES_MASTER.value,
                    EventType.EXCEPTION.value,
                    EventType.OCCURRENCE.value,
                ]),
                Event.status != EventStatus.DELETED.value,
            )
            if after_id is not None:
                query = query.filter(Event.id > after_id)
            return query.order_by(Event.id).limit(limit).all()

        def process(event: Event) -> bool:
            return self._sweep_one(event, mode, report, linked)

        runner.run(report, fetch, process, start_after=start_after_id)
        logger.info("Series sweep finished", extra=report.log_extra())
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _sweep_one(
        self,
        event: Event,
        mode: BatchMode,
        report: PassReport,
        linked: Dict[str, Set[str]],
    ) -> bool:
        apply = mode == BatchMode.APPLY

        if event.event_type == EventType.SERIES_MASTER.value:
            if not self._missing_containers(event):
                return False
            if apply:
                self.ensure_series_containers(event)
            report.details.append({"action": "ensure_containers", "event_guid": event.guid})
            return True

        already_linked = linked.get(event.series_master_external_id, set())
        if event.event_type == EventType.EXCEPTION.value and event.stable_id in already_linked:
            return False

        master = self.find_master(event.series_master_external_id)
        if master is None:
            return False

        if event.event_type == EventType.EXCEPTION.value:
            if event.stable_id in (master.exception_event_ids or []):
                return False
            if apply and self.link_exception(event) != LinkOutcome.LINKED:
                return False
            report.details.append({
                "action": "link_exception",
                "event_guid": event.guid,
                "master_guid": master.guid,
            })
            return True

        if event.creation_source != CreationSource.PROVIDER_SYNC.value:
            return False
        guid = event.guid
        if apply:
            self.guard.conditional_delete(event.id, self.guard.effective_version(event))
        report.details.append({
            "action": "remove_materialized_occurrence",
            "event_guid": guid,
            "master_guid": master.guid,
        })
        return True

    def _reload(self, event_id: int) -> Event:
        current = self.db.get(Event, event_id, populate_existing=True)
        if current is None:
            raise NotFoundError("Event", event_id)
        return current

    @staticmethod
    def _missing_containers(master: Event) -> dict:
        values = {}
        if master.exception_event_ids is None:
            values["exception_event_ids"] = []
        if master.cancelled_occurrences is None:
            values["cancelled_occurrences"] = []
        return values

    @staticmethod
    def _same_start(stored: Optional[str], incoming: Optional[str]) -> bool:
        if stored is None or incoming is None:
            return False
        return parse_isoformat(stored) == parse_isoformat(incoming)

    def _rollback(self, error: Exception) -> None:
        self.db.rollback()
