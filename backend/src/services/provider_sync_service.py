"""
Provider synchronization.

Mirrors a window of the external calendar into the local store through the
common ingestion path, and backfills calendar-wide unique ids that older
records are missing.

Design:
- Series masters are ingested before the rest of the window so exceptions
  can link immediately; exceptions arriving first stay standalone until
  their master shows up
- Plain occurrences are never materialized (the provider represents them);
  cancelled ones are recorded as markers on their master
- A provider failure ends the sync with a report, never with a partial write
- After a successful read, provider-synced records of the calendar that start
  in the window but were not returned are soft-deleted (restorable)
- Provider events matching a soft-deleted record leave it deleted
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Query, Session

from backend.src.config.settings import ReconcileConfig
from backend.src.models import CreationSource, Event, EventStatus, EventType
from backend.src.schemas.event import EventCandidate
from backend.src.schemas.payload import ProviderSyncPayload
from backend.src.schemas.provider import ProviderEvent, ProviderEventType
from backend.src.services.calendar_provider import CalendarProvider
from backend.src.services.event_service import EventService
from backend.src.services.exceptions import (
    AmbiguousMatchError,
    ConflictError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from backend.src.services.field_migrations import BatchPass
from backend.src.services.recurrence_reconciler import LinkOutcome
from backend.src.utils.batch_runner import RunnerOptions
from backend.src.utils.formatting import utcnow
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

SYNC_ACTOR = "provider-sync"

REMOVED_REASON = "Removed at calendar provider"

_EVENT_TYPES: Dict[ProviderEventType, EventType] = {
    ProviderEventType.SINGLE_INSTANCE: EventType.SINGLE_INSTANCE,
    ProviderEventType.SERIES_MASTER: EventType.SERIES_MASTER,
    ProviderEventType.OCCURRENCE: EventType.OCCURRENCE,
    ProviderEventType.EXCEPTION: EventType.EXCEPTION,
}


@dataclass
class SyncStats:
    """
    Statistics from a provider sync.

    Attributes:
        fetched: Provider events in the window
        created / updated / unchanged: Ingestion outcomes
        cancelled: Cancellation markers newly recorded
        skipped: Occurrences not materialized, cancelled singles and
            events whose local record was deleted
        removed: Local records soft-deleted because the provider dropped them
        failed: Events rejected (validation, ambiguity, conflict)
        provider_failed: True when the provider could not be read
    """
    fetched: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    cancelled: int = 0
    skipped: int = 0
    removed: int = 0
    failed: int = 0
    provider_failed: bool = False
    possible_duplicates: List[Dict[str, str]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.provider_failed

    def to_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "cancelled": self.cancelled,
            "skipped": self.skipped,
            "removed": self.removed,
            "failed": self.failed,
            "provider_failed": self.provider_failed,
            "possible_duplicates": list(self.possible_duplicates),
            "errors": list(self.errors),
        }


class ProviderSyncService:
    """
    Imports provider events into the local store.

    Usage:
        >>> service = ProviderSyncService(db_session, provider, config)
        >>> stats = service.sync_window("cal-1", start, end)
    """

    def __init__(
        self,
        db: Session,
        provider: CalendarProvider,
        config: Optional[ReconcileConfig] = None,
    ):
        self.db = db
        self.provider = provider
        self.config = config or ReconcileConfig()
        self.events = EventService(db, self.config)
        self.reconciler = self.events.series

    @property
    def actor(self) -> str:
        return self.config.calendar_owner or SYNC_ACTOR

    def to_candidate(self, item: ProviderEvent, calendar_id: Optional[str]) -> EventCandidate:
        """Convert a provider event to an ingestion candidate."""
        event_type = _EVENT_TYPES[item.type]
        recurring_child = event_type in (EventType.OCCURRENCE, EventType.EXCEPTION)
        return EventCandidate(
            title=item.subject or "",
            start_at=item.start,
            end_at=item.end,
            is_all_day=item.is_all_day,
            location=item.location,
            categories=item.categories,
            external_id=item.id,
            ical_uid=item.ical_uid,
            calendar_id=calendar_id,
            creation_source=CreationSource.PROVIDER_SYNC,
            event_type=event_type,
            series_master_external_id=item.series_master_id if recurring_child else None,
            original_start_at=item.original_start if recurring_child else None,
            created_by_email=self.actor,
            payload=ProviderSyncPayload(
                last_synced_at=utcnow(),
                change_key=item.change_key,
                calendar_owner=self.config.calendar_owner or None,
            ),
        )

    def sync_window(self, calendar_id: str, start: datetime, end: datetime) -> SyncStats:
        """
        Mirror provider events of one calendar in [start, end).

        Returns:
            SyncStats (provider_failed set when the provider could not be read)
        """
        stats = SyncStats()
        try:
            items = self.provider.list_events(calendar_id, start, end)
        except ProviderError as e:
            logger.error(
                "Provider sync aborted: calendar could not be read",
                extra={"calendar_id": calendar_id, "status_code": e.status_code}
            )
            stats.provider_failed = True
            stats.errors.append(str(e))
            return stats

        stats.fetched = len(items)
        masters_first = sorted(items, key=lambda i: i.type != ProviderEventType.SERIES_MASTER)

        for item in masters_first:
            if item.is_cancelled:
                self._sync_cancelled(item, stats)
                continue
            if item.type == ProviderEventType.OCCURRENCE:
                stats.skipped += 1
                continue
            self._sync_one(item, calendar_id, stats)

        self._remove_missing(calendar_id, start, end, {item.id for item in items}, stats)
        logger.info("Provider sync finished", extra={"calendar_id": calendar_id, **_log_counts(stats)})
        return stats

    def _sync_one(self, item: ProviderEvent, calendar_id: str, stats: SyncStats) -> None:
        try:
            candidate = self.to_candidate(item, calendar_id)
            result = self.events.ingest(candidate, actor=self.actor)
        except PydanticValidationError as e:
            stats.failed += 1
            stats.errors.append(f"{item.id}: {e.error_count()} validation error(s)")
            return
        except (ValidationError, AmbiguousMatchError, ConflictError) as e:
            self.db.rollback()
            stats.failed += 1
            stats.errors.append(f"{item.id}: {e}")
            logger.warning(
                "Provider event not synced",
                extra={"external_id": item.id, "error": str(e)}
            )
            return

        if result.action == "created":
            stats.created += 1
        elif result.action == "updated":
            stats.updated += 1
        elif result.action == "skipped":
            stats.skipped += 1
        else:
            stats.unchanged += 1

        if result.possible_duplicate_of:
            stats.possible_duplicates.append({
                "event_guid": result.event.guid,
                "duplicate_of": result.possible_duplicate_of,
            })

    def _remove_missing(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
        returned_ids: Set[str],
        stats: SyncStats,
    ) -> None:
        local = (
            self.db.query(Event)
            .filter(
                Event.creation_source == CreationSource.PROVIDER_SYNC.value,
                Event.calendar_id == calendar_id,
                Event.start_at >= start,
                Event.start_at < end,
                Event.external_id.isnot(None),
                Event.status != EventStatus.DELETED.value,
            )
            .order_by(Event.id)
            .all()
        )
        missing = [e for e in local if e.has_real_external_id and e.external_id not in returned_ids]

        for event in missing:
            external_id = event.external_id
            try:
                self.events.workflow.soft_delete(
                    event.id,
                    self.actor,
                    reason=REMOVED_REASON,
                    expected_version=self.events.guard.effective_version(event),
                )
            except (ValidationError, ConflictError) as e:
                self.db.rollback()
                stats.failed += 1
                stats.errors.append(f"{external_id}: {e}")
                continue

            stats.removed += 1
            logger.info(
                "Event removed at provider; local record soft-deleted",
                extra={"event_guid": event.guid, "external_id": external_id}
            )

    def _sync_cancelled(self, item: ProviderEvent, stats: SyncStats) -> None:
        if not item.series_master_id:
            stats.skipped += 1
            return

        original_start = item.original_start or item.start
        if original_start is None:
            stats.failed += 1
            stats.errors.append(f"{item.id}: cancelled occurrence without a start")
            return

        try:
            outcome = self.reconciler.record_cancellation(item.series_master_id, original_start, actor=self.actor)
        except ConflictError as e:
            stats.failed += 1
            stats.errors.append(f"{item.id}: {e}")
            return

        if outcome == LinkOutcome.LINKED:
            stats.cancelled += 1
        elif outcome == LinkOutcome.DEFERRED:
            stats.skipped += 1
            logger.info(
                "Cancelled occurrence skipped: series master not stored",
                extra={"master_external_id": item.series_master_id}
            )


def _log_counts(stats: SyncStats) -> dict:
    return {
        "fetched_count": stats.fetched,
        "created_count": stats.created,
        "updated_count": stats.updated,
        "unchanged_count": stats.unchanged,
        "cancelled_count": stats.cancelled,
        "skipped_count": stats.skipped,
        "removed_count": stats.removed,
        "failed_count": stats.failed,
    }


class BackfillIcalUidPass(BatchPass):
    """
    Fetch missing calendar-wide unique ids from the provider.

    Only records linked to a provider event (real external id) are looked
    up; records the provider no longer knows are left untouched.
    """

    name = "backfill-ical-uid"
    description = "Fetch missing iCal uids from the calendar provider"

    def __init__(
        self,
        db: Session,
        provider: CalendarProvider,
        config: Optional[ReconcileConfig] = None,
        options: Optional[RunnerOptions] = None,
    ):
        super().__init__(db, config, options)
        self.provider = provider

    def query(self) -> Query:
        return self.db.query(Event).filter(
            Event.ical_uid.is_(None),
            Event.external_id.isnot(None),
            Event.status != EventStatus.DELETED.value,
        )

    def plan(self, event: Event) -> Optional[dict]:
        if not event.has_real_external_id:
            return None
        try:
            remote = self.provider.get_event(event.external_id)
        except NotFoundError:
            logger.info(
                "Provider no longer knows event; iCal uid not backfilled",
                extra={"event_guid": event.guid, "external_id": event.external_id}
            )
            return None
        if not remote.ical_uid:
            return None
        return {"ical_uid": remote.ical_uid}
