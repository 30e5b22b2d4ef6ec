"""
Cross-source duplicate detection and removal.

The same real-world event can arrive through several ingestion paths (a CSV
import and a provider sync, a form and a reservation). This module pairs
such records and keeps the one with the strongest provenance.

Matching:
- (calendar, ical_uid): same calendar-wide unique id
- (calendar, normalized title, start minute, end minute): never pairs two
  records whose ical_uids differ
- Only records of differing creation source form a pair; same-source
  repeats are the identity resolver's concern

Survivor policy:
- Provenance rank first (2 provider-linked, 1 imported or entered,
  0 system placeholder)
- Payload richness breaks ties; a full tie is reported as ambiguous
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from backend.src.config.settings import ReconcileConfig
from backend.src.models import CreationSource, Event, EventStatus, is_placeholder_external_id
from backend.src.schemas.payload import payload_richness
from backend.src.services.version_guard import VersionGuard
from backend.src.utils.batch_runner import BatchMode, PassReport, RunnerOptions, build_runner
from backend.src.utils.formatting import collapse_whitespace, minute_key
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

DEDUPE_PASS_NAME = "dedupe"

SIGNAL_ICAL_UID = "ical_uid"
SIGNAL_TITLE_TIME = "title_time"


def provenance_rank(event: Event) -> int:
    """
    Trust level of a record's origin.

    Returns:
        2 for provider-linked records (real external id), 1 for csv-import,
        form and room-reservation records, 0 for system placeholders
        (unknown source or placeholder external id)
    """
    if event.creation_source == CreationSource.UNKNOWN.value:
        return 0
    if is_placeholder_external_id(event.external_id):
        return 0
    if event.has_real_external_id:
        return 2
    return 1


@dataclass
class DuplicatePair:
    """Two records of different origin describing the same event."""
    survivor: Event
    loser: Event
    signal: str

    def to_dict(self) -> dict:
        return {
            "action": "remove_duplicate",
            "signal": self.signal,
            "survivor_guid": self.survivor.guid,
            "survivor_source": self.survivor.creation_source,
            "survivor_rank": provenance_rank(self.survivor),
            "loser_guid": self.loser.guid,
            "loser_source": self.loser.creation_source,
            "loser_rank": provenance_rank(self.loser),
        }


@dataclass
class AmbiguousGroup:
    """Records that look duplicated but need a human decision."""
    event_guids: List[str]
    reason: str
    signal: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "action": "ambiguous",
            "signal": self.signal,
            "reason": self.reason,
            "event_guids": list(self.event_guids),
        }


@dataclass
class DedupReport:
    pairs: List[DuplicatePair] = field(default_factory=list)
    ambiguous: List[AmbiguousGroup] = field(default_factory=list)

    @property
    def loser_guids(self) -> List[str]:
        return [pair.loser.guid for pair in self.pairs]


class SourceDeduplicator:
    """
    Finds and removes cross-source duplicates.

    Usage:
        >>> dedup = SourceDeduplicator(db_session, config)
        >>> report = dedup.run(BatchMode.PREVIEW)
        >>> report.changed
        1
    """

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

    def find_duplicates(self, calendar_id: Optional[str] = None) -> DedupReport:
        """
        Pair cross-source duplicates among live records.

        Args:
            calendar_id: Restrict the scan to one calendar (default: all)
        """
        events = self._live_events(calendar_id)

        by_uid: Dict[Tuple, List[Event]] = defaultdict(list)
        by_title_time: Dict[Tuple, List[Event]] = defaultdict(list)
        for event in events:
            if event.ical_uid:
                by_uid[(event.calendar_id, event.ical_uid)].append(event)
            start = minute_key(event.start_at)
            if start is not None:
                key = (event.calendar_id, collapse_whitespace(event.title), start, minute_key(event.end_at))
                by_title_time[key].append(event)

        result = DedupReport()
        candidates: Dict[frozenset, Tuple[Event, Event, str]] = {}

        for signal, groups in ((SIGNAL_ICAL_UID, by_uid), (SIGNAL_TITLE_TIME, by_title_time)):
            for members in groups.values():
                self._collect(members, signal, candidates, result)

        # A record in several pairs cannot be resolved pairwise
        participation: Dict[int, int] = defaultdict(int)
        for pair_ids in candidates:
            for event_id in pair_ids:
                participation[event_id] += 1

        for pair_ids, (first, second, signal) in candidates.items():
            if any(participation[event_id] > 1 for event_id in pair_ids):
                result.ambiguous.append(AmbiguousGroup(
                    [first.guid, second.guid], "record takes part in several pairs", signal
                ))
                continue

            pair = self._decide(first, second, signal)
            if pair is None:
                result.ambiguous.append(AmbiguousGroup(
                    [first.guid, second.guid], "equal provenance rank and payload richness", signal
                ))
                continue
            result.pairs.append(pair)

        result.pairs.sort(key=lambda p: p.loser.id)
        logger.info(
            "Duplicate scan finished",
            extra={
                "calendar_id": calendar_id,
                "scanned": len(events),
                "pairs": len(result.pairs),
                "ambiguous": len(result.ambiguous),
            }
        )
        return result

    def run(self, mode: BatchMode, calendar_id: Optional[str] = None) -> PassReport:
        """
        Run deduplication.

        - preview: report pairs, write nothing
        - apply: delete the loser of every pair in paced chunks
        - verify: report pairs that remain

        Returns:
            PassReport; changed counts pairs removed (apply) or found
        """
        found = self.find_duplicates(calendar_id)
        report = PassReport(DEDUPE_PASS_NAME, mode)
        report.details.extend(group.to_dict() for group in found.ambiguous)

        if mode != BatchMode.APPLY:
            report.scanned = len(found.pairs)
            report.changed = len(found.pairs)
            report.details.extend(pair.to_dict() for pair in found.pairs)
            logger.info("Deduplication finished", extra=report.log_extra())
            return report

        runner = build_runner(self.config, self.options, on_item_error=self._rollback)

        def remove(pair: DuplicatePair) -> bool:
            entry = pair.to_dict()
            self.guard.conditional_delete(pair.loser.id, self.guard.effective_version(pair.loser))
            report.details.append(entry)
            return True

        runner.run_items(report, found.pairs, remove, key=lambda p: p.loser.id)
        logger.info("Deduplication finished", extra=report.log_extra())
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _live_events(self, calendar_id: Optional[str]) -> List[Event]:
        query = self.db.query(Event).filter(Event.status != EventStatus.DELETED.value)
        if calendar_id is not None:
            query = query.filter(Event.calendar_id == calendar_id)
        return query.order_by(Event.id).all()

    @staticmethod
    def _collect(
        members: List[Event],
        signal: str,
        candidates: Dict[frozenset, Tuple[Event, Event, str]],
        result: DedupReport,
    ) -> None:
        if len({event.creation_source for event in members}) < 2:
            return

        if len(members) > 2:
            guids = [event.guid for event in members]
            if not any(set(guids) == set(group.event_guids) for group in result.ambiguous):
                result.ambiguous.append(AmbiguousGroup(guids, "more than two cross-source records", signal))
            return

        first, second = members
        if signal == SIGNAL_TITLE_TIME and _uids_conflict(first, second):
            return

        pair_ids = frozenset((first.id, second.id))
        candidates.setdefault(pair_ids, (first, second, signal))

    @staticmethod
    def _decide(first: Event, second: Event, signal: str) -> Optional[DuplicatePair]:
        first_score = (provenance_rank(first), payload_richness(first.source_payload))
        second_score = (provenance_rank(second), payload_richness(second.source_payload))
        if first_score == second_score:
            return None
        if first_score > second_score:
            return DuplicatePair(survivor=first, loser=second, signal=signal)
        return DuplicatePair(survivor=second, loser=first, signal=signal)

    def _rollback(self, error: Exception) -> None:
        self.db.rollback()


def _uids_conflict(first: Event, second: Event) -> bool:
    return bool(first.ical_uid and second.ical_uid and first.ical_uid != second.ical_uid)

