"""
Event ingestion service.

Every ingestion path (staff form, CSV import, provider sync, room
reservation) funnels its input through ingest():

    EventCandidate -> location resolution -> IdentityResolver
        -> matched, deleted:     leave deleted, store nothing
        -> matched, same path:   update changed fields (version-guarded)
        -> matched, other path:  store a new record, leave the pair to the
                                 Source Deduplicator
        -> no match:             create with one initial history entry

Form and reservation requests only match on ids; a request for a slot
another record already holds is stored and flagged as a possible duplicate.

Design:
- Status and history on creation come from the workflow engine
- Timing defects (setup after start, teardown before end) are logged as
  data-quality issues, never rejected
- Location ids are only stored when every part of the location string
  matched a room; otherwise the raw text is kept as display string
- Stored exceptions and masters are handed to the recurrence reconciler;
  linkage that loses repeated version races is left to the series sweep
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from backend.src.config.settings import ReconcileConfig
from backend.src.models import CreationSource, Event, EventStatus, EventType
from backend.src.schemas.event import EventCandidate
from backend.src.schemas.payload import CsvImportPayload, FormPayload, dump_payload
from backend.src.services.exceptions import (
    AmbiguousMatchError,
    ConflictError,
    ValidationError,
)
from backend.src.services.identity_resolver import IdentityResolver, MatchSignal
from backend.src.services.location_service import (
    DISPLAY_SEPARATOR,
    LocationService,
    parse_location_string,
)
from backend.src.services.recurrence_reconciler import RecurrenceReconciler
from backend.src.services.status_workflow import StatusWorkflowService
from backend.src.services.version_guard import VersionGuard
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

# Status a new record starts in, by ingestion path
DEFAULT_INITIAL_STATUS: Dict[CreationSource, EventStatus] = {
    CreationSource.FORM: EventStatus.DRAFT,
    CreationSource.CSV_IMPORT: EventStatus.PUBLISHED,
    CreationSource.PROVIDER_SYNC: EventStatus.PUBLISHED,
    CreationSource.ROOM_RESERVATION: EventStatus.PENDING,
    CreationSource.UNKNOWN: EventStatus.DRAFT,
}

# Paths carrying requests from people: two requests for the same slot are
# separate records, so only an id signal refreshes an existing one
_REQUEST_SOURCES = (CreationSource.FORM, CreationSource.ROOM_RESERVATION)

# Fields an owning ingestion path refreshes on an existing record
_SYNCED_FIELDS = (
    "title", "description", "start_at", "end_at", "is_all_day", "timezone",
    "categories", "location_ids", "location_display", "match_key",
    "setup_at", "door_open_at", "door_close_at", "teardown_at",
    "event_type", "series_master_external_id", "original_start_at", "recurrence",
    "source_payload",
)

# Identity fields only filled in when the stored record lacks them
_FILL_ONLY_FIELDS = ("external_id", "ical_uid", "calendar_id")

# Payload keys that change on every sync without changing the event
_VOLATILE_PAYLOAD_KEYS = ("last_synced_at",)


def _stable_payload(payload: dict) -> dict:
    return {k: v for k, v in payload.items() if k not in _VOLATILE_PAYLOAD_KEYS}


def _same_value(name: str, stored: Any, incoming: Any) -> bool:
    if name == "source_payload" and stored and incoming:
        return _stable_payload(stored) == _stable_payload(incoming)
    return stored == incoming


@dataclass
class IngestResult:
    """
    Outcome of ingesting one candidate.

    Attributes:
        event: Stored record
        action: "created", "updated", "unchanged" or "skipped" (matched
            a soft-deleted record, which stays deleted)
        signal: Identity signal that matched (NONE when created)
        possible_duplicate_of: GUID of another record the new one may
            duplicate (deduplication or a reviewer decides)
    """
    event: Event
    action: str
    signal: MatchSignal = MatchSignal.NONE
    possible_duplicate_of: Optional[str] = None


@dataclass
class ImportStats:
    """
    Statistics from a CSV import.

    Attributes:
        created: Rows stored as new records
        updated: Rows that refreshed an earlier import of the same event
        unchanged: Rows identical to the stored record
        skipped: Rows matching a deleted record
        failed: Rows rejected (validation, ambiguity, conflict)
        possible_duplicates: GUID pairs (new, existing) left for deduplication
        errors: Error messages by row
    """
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    possible_duplicates: List[Dict[str, str]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged + self.skipped + self.failed


class EventService:
    """
    Service ingesting events from the form and CSV paths.

    Usage:
        >>> service = EventService(db_session)
        >>> result = service.create_from_form(candidate, actor="staff@example.org")
        >>> result.event.status
        'draft'
    """

    def __init__(self, db: Session, config: Optional[ReconcileConfig] = None):
        """
        Initialize event service.

        Args:
            db: SQLAlchemy database session
            config: Reconciliation settings (defaults when omitted)
        """
        self.db = db
        self.config = config or ReconcileConfig()
        self.resolver = IdentityResolver(db)
        self.workflow = StatusWorkflowService(db, self.config)
        self.guard = VersionGuard(db)
        self.locations = LocationService(db)
        self.series = RecurrenceReconciler(db, self.config)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_by_guid(self, guid: str) -> Event:
        """Get an event by GUID (raises NotFoundError)."""
        return self.workflow.get_by_guid(guid)

    def list_in_window(
        self,
        start: datetime,
        end: datetime,
        calendar_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> List[Event]:
        """
        Events starting inside [start, end), ordered by start.

        Args:
            start: Window start (naive UTC)
            end: Window end (naive UTC, exclusive)
            calendar_id: Optional calendar scope
            include_deleted: Include soft-deleted records
        """
        query = self.db.query(Event).filter(Event.start_at >= start, Event.start_at < end)
        if calendar_id:
            query = query.filter(Event.calendar_id == calendar_id)
        if not include_deleted:
            query = query.filter(Event.status != EventStatus.DELETED.value)
        return query.order_by(Event.start_at, Event.id).all()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(
        self,
        candidate: EventCandidate,
        actor: Optional[str] = None,
        initial_status: Optional[EventStatus] = None,
    ) -> IngestResult:
        """
        Store a candidate, matching it against existing records first.

        Args:
            candidate: Normalized ingestion candidate
            actor: Email recorded in history and last_modified_by
            initial_status: Status for a new record (defaults by creation source)

        Returns:
            IngestResult describing what was stored

        Raises:
            ValidationError: If recurrence fields or payload are inconsistent
            AmbiguousMatchError: If several records match the candidate
            ConflictError: If the matched record changed during the update
        """
        self._validate_candidate(candidate)

        location_ids, location_display = self._resolve_locations(candidate)
        request_path = candidate.creation_source in _REQUEST_SOURCES
        resolution = self.resolver.resolve(
            candidate, location_text=location_display, strong_only=request_path
        )
        values = self._candidate_values(candidate, location_ids, location_display, resolution.match_key)

        if resolution.matched:
            existing = resolution.event
            if existing.status == EventStatus.DELETED.value:
                logger.info(
                    "Candidate matches a deleted event; left deleted",
                    extra={
                        "event_guid": existing.guid,
                        "incoming_source": candidate.creation_source.value,
                        "signal": resolution.signal.value,
                    }
                )
                return IngestResult(event=existing, action="skipped", signal=resolution.signal)

            if existing.creation_source == candidate.creation_source.value:
                result = self._refresh(existing, values, actor, resolution.signal)
                self._reconcile_series(result.event)
                return result

            logger.info(
                "Candidate matches a record from another ingestion path",
                extra={
                    "existing_guid": existing.guid,
                    "existing_source": existing.creation_source,
                    "incoming_source": candidate.creation_source.value,
                    "signal": resolution.signal.value,
                }
            )
            result = self._create(candidate, values, actor, initial_status)
            result.signal = resolution.signal
            result.possible_duplicate_of = existing.guid
            self._reconcile_series(result.event)
            return result

        result = self._create(candidate, values, actor, initial_status)
        if request_path:
            self._flag_same_slot(result, candidate)
        self._reconcile_series(result.event)
        return result

    def create_from_form(
        self,
        candidate: EventCandidate,
        actor: str,
        publish: bool = False,
        actor_name: Optional[str] = None,
    ) -> IngestResult:
        """
        Ingest an event entered through the staff form.

        The event starts as a draft unless publish is set.
        """
        form_candidate = candidate.model_copy(update={
            "creation_source": CreationSource.FORM,
            "created_by_email": candidate.created_by_email or actor,
            "created_by_name": candidate.created_by_name or actor_name,
            "payload": candidate.payload or FormPayload(submitted_via="staff-form"),
        })
        status = EventStatus.PUBLISHED if publish else EventStatus.DRAFT
        return self.ingest(form_candidate, actor=actor, initial_status=status)

    def import_csv_rows(
        self,
        rows: Iterable[Dict[str, Any]],
        actor: str,
        import_batch: Optional[str] = None,
        source_file: Optional[str] = None,
    ) -> ImportStats:
        """
        Ingest already-parsed CSV rows.

        Each row is a dict of EventCandidate fields; "categories" may be a
        comma-separated string. Row failures are tallied, never abort the import.

        Returns:
            ImportStats with per-outcome counts
        """
        stats = ImportStats()

        for row_number, row in enumerate(rows, start=1):
            try:
                candidate = self._csv_candidate(row, row_number, import_batch, source_file, actor)
                result = self.ingest(candidate, actor=actor)
            except PydanticValidationError as e:
                stats.failed += 1
                stats.errors.append(f"Row {row_number}: invalid data: {e.error_count()} error(s)")
                continue
            except (ValidationError, AmbiguousMatchError, ConflictError) as e:
                self.db.rollback()
                stats.failed += 1
                stats.errors.append(f"Row {row_number}: {e}")
                continue

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
                    "new": result.event.guid,
                    "existing": result.possible_duplicate_of,
                })

        logger.info(
            "CSV import finished",
            extra={
                "import_batch": import_batch,
                "created_count": stats.created,
                "updated_count": stats.updated,
                "unchanged_count": stats.unchanged,
                "skipped_count": stats.skipped,
                "failed_count": stats.failed,
                "possible_duplicates": len(stats.possible_duplicates),
            }
        )
        return stats

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_candidate(self, candidate: EventCandidate) -> None:
        master_ref = candidate.series_master_external_id
        if candidate.event_type in (EventType.OCCURRENCE, EventType.EXCEPTION):
            if not master_ref:
                raise ValidationError(
                    f"An {candidate.event_type.value} requires a series master reference",
                    field="series_master_external_id",
                )
            if candidate.external_id and master_ref == candidate.external_id:
                raise ValidationError(
                    "An event cannot reference itself as series master",
                    field="series_master_external_id",
                )
        elif master_ref:
            raise ValidationError(
                f"A {candidate.event_type.value} event cannot reference a series master",
                field="series_master_external_id",
            )

        if candidate.payload is not None and candidate.payload.source != candidate.creation_source.value:
            raise ValidationError(
                f"Payload for '{candidate.payload.source}' does not match "
                f"creation source '{candidate.creation_source.value}'",
                field="payload",
            )

    def _resolve_locations(self, candidate: EventCandidate):
        if candidate.location_ids:
            ids = list(candidate.location_ids)
            return ids, self.locations.display_names(ids)

        if not candidate.location:
            return [], ""

        ids, unmatched = self.locations.resolve_location_ids(candidate.location)
        if ids and not unmatched:
            return ids, self.locations.display_names(ids)
        return [], DISPLAY_SEPARATOR.join(parse_location_string(candidate.location))

    @staticmethod
    def _candidate_values(
        candidate: EventCandidate,
        location_ids: List[int],
        location_display: str,
        match_key: Optional[str],
    ) -> Dict[str, Any]:
        return {
            "title": candidate.title,
            "description": candidate.description,
            "start_at": candidate.start_at,
            "end_at": candidate.end_at,
            "is_all_day": candidate.is_all_day,
            "timezone": candidate.timezone,
            "categories": list(candidate.categories),
            "location_ids": location_ids,
            "location_display": location_display or None,
            "match_key": match_key,
            "setup_at": candidate.setup_at,
            "door_open_at": candidate.door_open_at,
            "door_close_at": candidate.door_close_at,
            "teardown_at": candidate.teardown_at,
            "event_type": candidate.event_type.value,
            "series_master_external_id": candidate.series_master_external_id,
            "original_start_at": candidate.original_start_at,
            "recurrence": candidate.recurrence,
            "source_payload": dump_payload(candidate.payload) if candidate.payload else None,
            "external_id": candidate.external_id,
            "ical_uid": candidate.ical_uid,
            "calendar_id": candidate.calendar_id,
        }

    def _create(
        self,
        candidate: EventCandidate,
        values: Dict[str, Any],
        actor: Optional[str],
        initial_status: Optional[EventStatus],
    ) -> IngestResult:
        status = initial_status or DEFAULT_INITIAL_STATUS[candidate.creation_source]
        event = Event(
            **values,
            creation_source=candidate.creation_source.value,
            created_by_id=candidate.created_by_id,
            created_by_email=candidate.created_by_email or actor,
            created_by_name=candidate.created_by_name,
            status=status.value,
            status_history=self.workflow.initial_history(
                status.value, actor, actor_name=candidate.created_by_name
            ),
            version=1,
            last_modified_by=actor,
        )
        if event.event_type == EventType.SERIES_MASTER.value:
            event.exception_event_ids = []
            event.cancelled_occurrences = []

        self.db.add(event)
        self.db.commit()
        self.db.refresh(event)

        self._report_timing(event)
        logger.info(
            "Event created",
            extra={
                "event_guid": event.guid,
                "creation_source": event.creation_source,
                "status": event.status,
            }
        )
        return IngestResult(event=event, action="created")

    def _refresh(
        self,
        existing: Event,
        values: Dict[str, Any],
        actor: Optional[str],
        signal: MatchSignal,
    ) -> IngestResult:
        changes = {
            name: values[name] for name in _SYNCED_FIELDS
            if not _same_value(name, getattr(existing, name), values[name])
        }
        for name in _FILL_ONLY_FIELDS:
            if values[name] and not getattr(existing, name):
                changes[name] = values[name]

        if not changes:
            return IngestResult(event=existing, action="unchanged", signal=signal)

        event = self.guard.conditional_update(
            existing.id,
            self.guard.effective_version(existing),
            changes,
            modified_by=actor,
        )
        self._report_timing(event)
        logger.info(
            "Event refreshed from its ingestion path",
            extra={"event_guid": event.guid, "fields": sorted(changes), "signal": signal.value}
        )
        return IngestResult(event=event, action="updated", signal=signal)

    def _csv_candidate(
        self,
        row: Dict[str, Any],
        row_number: int,
        import_batch: Optional[str],
        source_file: Optional[str],
        actor: str,
    ) -> EventCandidate:
        data = dict(row)
        categories = data.get("categories")
        if isinstance(categories, str):
            data["categories"] = [c for c in categories.split(",")]
        data.update({
            "creation_source": CreationSource.CSV_IMPORT,
            "created_by_email": data.get("created_by_email") or actor,
            "payload": CsvImportPayload(
                import_batch=import_batch,
                row_number=row_number,
                source_file=source_file,
            ),
        })
        return EventCandidate(**data)

    def _flag_same_slot(self, result: IngestResult, candidate: EventCandidate) -> None:
        event = result.event
        same_slot = self.resolver.key_matches(event.match_key, candidate.calendar_id, event.ical_uid)
        others = [record for record in same_slot if record.id != event.id]
        if not others:
            return
        result.signal = MatchSignal.MATCH_KEY
        result.possible_duplicate_of = others[0].guid
        logger.info(
            "Request stored for a slot another record already holds",
            extra={
                "event_guid": event.guid,
                "existing_guid": others[0].guid,
                "incoming_source": event.creation_source,
            }
        )

    def _reconcile_series(self, event: Event) -> None:
        """Link a stored exception to its master, or standalone exceptions to a new master."""
        try:
            if event.event_type == EventType.EXCEPTION.value:
                self.series.link_exception(event)
            elif event.event_type == EventType.SERIES_MASTER.value:
                self.series.relink_for_master(event)
        except ConflictError as e:
            # The sweep links what is left standalone here
            logger.warning(
                "Series linkage deferred after repeated version conflicts",
                extra={"event_guid": event.guid, "current_version": e.current_version}
            )

    @staticmethod
    def _report_timing(event: Event) -> None:
        issues = event.timing_issues()
        if issues:
            logger.warning(
                "Event timing inconsistent with its start/end",
                extra={"event_guid": event.guid, "timing_fields": issues}
            )
