"""
Optimistic concurrency for event writes.

Every mutation of an event goes through a single conditional statement:

    UPDATE events SET ..., version = coalesce(version, 1) + 1
    WHERE id = :id AND coalesce(version, 1) = :expected

A write that matches no row either targets a missing record (NotFoundError)
or lost against a concurrent writer (ConflictError carrying the state the
caller needs to refresh and retry). Legacy rows with a NULL version are
treated as version 1.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, func, update
from sqlalchemy.orm import Session

from backend.src.models import Event
from backend.src.services.exceptions import ConflictError, NotFoundError
from backend.src.utils.formatting import utcnow
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

# Columns managed by the guard itself; callers may not set them
_GUARDED_COLUMNS = frozenset({"id", "version", "updated_at"})


@dataclass
class VersionedWrite:
    """One item of a batch conditional update."""
    event_id: int
    expected_version: int
    values: Dict[str, Any]
    modified_by: Optional[str] = None


@dataclass
class BatchWriteResult:
    """
    Outcome of batch_conditional_update.

    Attributes:
        updated: Ids written successfully
        conflicts: (id, ConflictError) for writes that lost a race
        missing: Ids that no longer exist
    """
    updated: List[int] = field(default_factory=list)
    conflicts: List[Tuple[int, ConflictError]] = field(default_factory=list)
    missing: List[int] = field(default_factory=list)


class VersionGuard:
    """
    Compare-and-swap writes on the events table.

    Usage:
        >>> guard = VersionGuard(db_session)
        >>> event = guard.conditional_update(event.id, 3, {"title": "New"}, "a@b.org")
    """

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def effective_version(event: Event) -> int:
        """Current version with legacy NULL treated as 1."""
        return event.version if event.version is not None else 1

    def conditional_update(
        self,
        event_id: int,
        expected_version: int,
        values: Dict[str, Any],
        modified_by: Optional[str] = None,
    ) -> Event:
        """
        Apply values only if the stored version still equals expected_version.

        Args:
            event_id: Internal event id
            expected_version: Version the caller read
            values: Column values to set
            modified_by: Email recorded as last_modified_by

        Returns:
            The refreshed event (version incremented by one)

        Raises:
            NotFoundError: If the event does not exist
            ConflictError: If the stored version differs
        """
        illegal = _GUARDED_COLUMNS.intersection(values)
        if illegal:
            raise ValueError(f"Columns managed by the version guard: {sorted(illegal)}")

        row_values = dict(values)
        row_values["version"] = func.coalesce(Event.version, 1) + 1
        row_values["updated_at"] = utcnow()
        if modified_by is not None:
            row_values["last_modified_by"] = modified_by

        stmt = (
            update(Event)
            .where(
                Event.id == event_id,
                func.coalesce(Event.version, 1) == expected_version,
            )
            .values(**row_values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount == 0:
            self.db.rollback()
            raise self._write_failure(event_id, expected_version)

        self.db.commit()
        event = self.db.get(Event, event_id, populate_existing=True)

        logger.debug(
            "Conditional update applied",
            extra={
                "event_guid": event.guid,
                "fields": sorted(values.keys()),
                "new_version": event.version,
            }
        )
        return event

    def batch_conditional_update(self, items: Iterable[VersionedWrite]) -> BatchWriteResult:
        """
        Apply each write independently; conflicts do not abort the batch.

        Returns:
            BatchWriteResult listing updated, conflicting and missing ids
        """
        outcome = BatchWriteResult()
        for item in items:
            try:
                self.conditional_update(
                    item.event_id,
                    item.expected_version,
                    item.values,
                    modified_by=item.modified_by,
                )
            except ConflictError as e:
                outcome.conflicts.append((item.event_id, e))
                continue
            except NotFoundError:
                outcome.missing.append(item.event_id)
                continue
            outcome.updated.append(item.event_id)

        if outcome.conflicts or outcome.missing:
            logger.info(
                "Batch conditional update finished with rejected writes",
                extra={
                    "updated": len(outcome.updated),
                    "conflicts": len(outcome.conflicts),
                    "missing": len(outcome.missing),
                }
            )
        return outcome

    def conditional_delete(self, event_id: int, expected_version: int) -> None:
        """
        Physically delete an event if its version still matches.

        Raises:
            NotFoundError: If the event does not exist
            ConflictError: If the stored version differs
        """
        stmt = (
            delete(Event)
            .where(
                Event.id == event_id,
                func.coalesce(Event.version, 1) == expected_version,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount == 0:
            self.db.rollback()
            raise self._write_failure(event_id, expected_version)

        self.db.commit()
        # Drop the stale instance from the identity map
        stale = self.db.identity_map.get(self.db.identity_key(Event, event_id))
        if stale is not None:
            self.db.expunge(stale)

        logger.info(
            "Event physically deleted",
            extra={"event_id": event_id, "expected_version": expected_version}
        )

    def append_unique(
        self,
        event: Event,
        column: str,
        item: Any,
        modified_by: Optional[str] = None,
    ) -> Tuple[Event, bool]:
        """
        Append item to a JSON list column unless already present.

        The complete new list is written under the version precondition of
        the event as read by the caller.

        Returns:
            (event, appended) - the unchanged event and False when item was present
        """
        current = list(getattr(event, column) or [])
        if item in current:
            return event, False

        current.append(item)
        updated = self.conditional_update(
            event.id,
            self.effective_version(event),
            {column: current},
            modified_by=modified_by,
        )
        return updated, True

    def backfill_version(self, event_id: int) -> bool:
        """
        Set a legacy NULL version to 1 without incrementing.

        Returns:
            True if the row was written, False if it already had a version
        """
        stmt = (
            update(Event)
            .where(Event.id == event_id, Event.version.is_(None))
            .values(version=1)
            .execution_options(synchronize_session=False)
        )
        written = self.db.execute(stmt).rowcount == 1
        self.db.commit()
        return written

    def _write_failure(self, event_id: int, expected_version: int) -> Exception:
        current = self.db.get(Event, event_id, populate_existing=True)
        if current is None:
            return NotFoundError("Event", event_id)

        current_version = self.effective_version(current)
        logger.info(
            "Version conflict",
            extra={
                "event_guid": current.guid,
                "expected_version": expected_version,
                "current_version": current_version,
            }
        )
        return ConflictError(
            f"Event {current.guid} was modified concurrently "
            f"(expected version {expected_version}, found {current_version})",
            current_version=current_version,
            expected_version=expected_version,
            current_status=current.status,
            last_modified_by=current.last_modified_by,
        )
