"""
Chunked, paced execution of batch passes.

Every maintenance pass (field migrations, deduplication, series sweeps)
walks records in bounded chunks and pauses between chunks so a long pass
never saturates the store. Pacing is a policy object separate from the chunk
work; tests inject NoPacing.

Design:
- Keyset pagination by primary key (start_after_id resumes a pass)
- Per-item failures are tallied, never abort the pass
- A failed chunk is counted and the runner moves on to the next chunk
- A stop callback is consulted between chunks only
"""

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Protocol, Sequence, TypeVar

from backend.src.config.settings import ReconcileConfig
from backend.src.services.exceptions import PartialBatchFailure
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

# Records per chunk when no configuration is supplied
DEFAULT_BATCH_SIZE = 100

T = TypeVar("T")


class BatchMode(str, enum.Enum):
    """
    Execution mode shared by every batch pass.

    - PREVIEW: report what would change, write nothing
    - APPLY: perform the writes
    - VERIFY: re-scan and report what still needs a change
    """
    PREVIEW = "preview"
    APPLY = "apply"
    VERIFY = "verify"


class PacingPolicy(Protocol):
    """Decides how long to wait between two chunks."""

    def pause(self) -> None:
        ...


class NoPacing:
    """Pacing policy that never waits (tests, small passes)."""

    def pause(self) -> None:
        return None


class FixedDelayPacing:
    """Wait a fixed number of seconds between chunks."""

    def __init__(self, seconds: float, sleep: Callable[[float], None] = time.sleep):
        self.seconds = seconds
        self._sleep = sleep

    def pause(self) -> None:
        if self.seconds > 0:
            self._sleep(self.seconds)


@dataclass
class PassReport:
    """
    Outcome of a batch pass.

    Attributes:
        name: Pass name
        mode: Mode the pass ran in
        scanned: Items examined
        changed: Items written (apply), would be written (preview) or
            still needing a write (verify)
        unchanged: Items already in the target state
        failed: Items whose processing raised
        chunks: Chunks processed
        failed_chunks: Chunks that failed as a whole
        last_id: Checkpoint; pass start_after_id=last_id to resume
        stopped: True when a stop request ended the pass early
        errors: Error messages (item and chunk level)
        details: Pass-specific entries (pairs found, ids changed, ...)
    """
    name: str
    mode: BatchMode
    scanned: int = 0
    changed: int = 0
    unchanged: int = 0
    failed: int = 0
    chunks: int = 0
    failed_chunks: int = 0
    last_id: Optional[Any] = None
    stopped: bool = False
    errors: List[str] = field(default_factory=list)
    details: List[dict] = field(default_factory=list)

    @property
    def has_failures(self) -> bool:
        return self.failed > 0 or self.failed_chunks > 0

    @property
    def is_clean(self) -> bool:
        """No failures, and nothing left to do when verifying."""
        if self.has_failures:
            return False
        if self.mode == BatchMode.VERIFY:
            return self.changed == 0
        return True

    def merge(self, other: "PassReport") -> "PassReport":
        """Merge counts from another report (checkpoint of the other wins)."""
        return PassReport(
            name=self.name,
            mode=self.mode,
            scanned=self.scanned + other.scanned,
            changed=self.changed + other.changed,
            unchanged=self.unchanged + other.unchanged,
            failed=self.failed + other.failed,
            chunks=self.chunks + other.chunks,
            failed_chunks=self.failed_chunks + other.failed_chunks,
            last_id=other.last_id if other.last_id is not None else self.last_id,
            stopped=self.stopped or other.stopped,
            errors=self.errors + other.errors,
            details=self.details + other.details,
        )

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure if any item or chunk failed."""
        if self.has_failures:
            raise PartialBatchFailure(self)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "mode": self.mode.value,
            "scanned": self.scanned,
            "changed": self.changed,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "chunks": self.chunks,
            "failed_chunks": self.failed_chunks,
            "last_id": self.last_id,
            "stopped": self.stopped,
            "errors": list(self.errors),
            "details": list(self.details),
        }

    def log_extra(self) -> dict:
        """Summary fields safe to pass as logging extra."""
        return {
            "pass_name": self.name,
            "mode": self.mode.value,
            "scanned": self.scanned,
            "changed": self.changed,
            "failed": self.failed,
            "last_id": self.last_id,
            "stopped": self.stopped,
        }


def _default_key(item: Any) -> Any:
    return item.id


class ChunkedBatchRunner:
    """
    Runs per-item work over bounded chunks with pacing between chunks.

    Usage:
        >>> runner = ChunkedBatchRunner(batch_size=100, pacing=NoPacing())
        >>> report = runner.run(
        ...     PassReport("backfill-version", BatchMode.APPLY),
        ...     fetch_chunk=lambda after, limit: query_after(after, limit),
        ...     process_item=backfill_one,
        ... )
    """

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        pacing: Optional[PacingPolicy] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        on_item_error: Optional[Callable[[Exception], None]] = None,
        on_chunk_done: Optional[Callable[[Sequence[Any]], None]] = None,
    ):
        """
        Initialize the runner.

        Args:
            batch_size: Items per chunk (at least 1)
            pacing: Policy invoked between chunks (default: no pacing)
            should_stop: Consulted before each chunk; True ends the run
            on_item_error: Called after an item raised (e.g. session rollback)
            on_chunk_done: Called after each chunk (e.g. release the identity map)
        """
        self.batch_size = max(1, int(batch_size))
        self.pacing = pacing or NoPacing()
        self.should_stop = should_stop or (lambda: False)
        self.on_item_error = on_item_error
        self.on_chunk_done = on_chunk_done

    def run(
        self,
        report: PassReport,
        fetch_chunk: Callable[[Optional[Any], int], List[T]],
        process_item: Callable[[T], bool],
        start_after: Optional[Any] = None,
        key: Callable[[T], Any] = _default_key,
    ) -> PassReport:
        """
        Walk records with keyset pagination.

        Args:
            report: Report to fill in
            fetch_chunk: (after_key, limit) -> items ordered by key
            process_item: Returns True when the item changed (or would change)
            start_after: Resume checkpoint (exclusive)
            key: Extracts the pagination key from an item

        Returns:
            The filled-in report
        """
        last_key = start_after
        report.last_id = start_after

        while True:
            if self.should_stop():
                report.stopped = True
                logger.info(
                    "Batch pass stopped on request",
                    extra={"pass_name": report.name, "last_id": report.last_id}
                )
                break

            try:
                items = fetch_chunk(last_key, self.batch_size)
            except Exception as e:
                # Without the chunk the next key is unknown; the checkpoint allows resuming
                error_msg = f"Failed to fetch chunk after {last_key}: {e}"
                logger.error(error_msg, extra={"pass_name": report.name})
                report.failed_chunks += 1
                report.errors.append(error_msg)
                break

            if not items:
                break

            if report.chunks > 0 or report.failed_chunks > 0:
                self.pacing.pause()

            # Checkpoint read before the chunk runs; items may be deleted by it
            last_key = key(items[-1])
            self._process_chunk(report, items, process_item)
            report.last_id = last_key

            if len(items) < self.batch_size:
                break

        return report

    def run_items(
        self,
        report: PassReport,
        items: Iterable[T],
        process_item: Callable[[T], bool],
        key: Callable[[T], Any] = _default_key,
    ) -> PassReport:
        """
        Process a precomputed list of items in paced chunks.

        Used when the work list is derived up front (e.g. dedup losers).
        """
        items = list(items)
        for start in range(0, len(items), self.batch_size):
            if self.should_stop():
                report.stopped = True
                logger.info(
                    "Batch pass stopped on request",
                    extra={"pass_name": report.name, "last_id": report.last_id}
                )
                break

            chunk = items[start:start + self.batch_size]
            if start > 0:
                self.pacing.pause()

            chunk_key = key(chunk[-1])
            self._process_chunk(report, chunk, process_item)
            report.last_id = chunk_key

        return report

    def _process_chunk(
        self,
        report: PassReport,
        items: Sequence[T],
        process_item: Callable[[T], bool],
    ) -> None:
        try:
            for item in items:
                report.scanned += 1
                try:
                    changed = process_item(item)
                except Exception as e:
                    error_msg = f"Item {self._describe(item)} failed: {e}"
                    logger.warning(error_msg, extra={"pass_name": report.name})
                    report.failed += 1
                    report.errors.append(error_msg)
                    if self.on_item_error is not None:
                        self.on_item_error(e)
                    continue

                if changed:
                    report.changed += 1
                else:
                    report.unchanged += 1

            if self.on_chunk_done is not None:
                self.on_chunk_done(items)
            report.chunks += 1
        except Exception as e:
            error_msg = f"Chunk ending at {self._describe(items[-1])} failed: {e}"
            logger.error(error_msg, extra={"pass_name": report.name})
            report.failed_chunks += 1
            report.errors.append(error_msg)

        logger.debug(
            "Batch chunk processed",
            extra={
                "pass_name": report.name,
                "chunk_size": len(items),
                "scanned": report.scanned,
                "changed": report.changed,
                "failed": report.failed,
            }
        )

    @staticmethod
    def _describe(item: Any) -> str:
        guid = getattr(item, "guid", None)
        if guid:
            return guid
        item_id = getattr(item, "id", None)
        return str(item_id if item_id is not None else item)


@dataclass
class RunnerOptions:
    """
    Caller-side hooks for a batch pass.

    Attributes:
        pacing: Pacing policy (default: fixed delay from configuration)
        should_stop: Stop callback consulted between chunks
        on_chunk_done: Progress callback invoked after each chunk
    """
    pacing: Optional[PacingPolicy] = None
    should_stop: Optional[Callable[[], bool]] = None
    on_chunk_done: Optional[Callable[[Sequence[Any]], None]] = None


def build_runner(
    config: ReconcileConfig,
    options: Optional[RunnerOptions] = None,
    on_item_error: Optional[Callable[[Exception], None]] = None,
) -> ChunkedBatchRunner:
    """Build a runner from configuration and caller hooks."""
    options = options or RunnerOptions()
    return ChunkedBatchRunner(
        batch_size=config.batch_size,
        pacing=options.pacing or FixedDelayPacing(config.batch_pause_seconds),
        should_stop=options.should_stop,
        on_item_error=on_item_error,
        on_chunk_done=options.on_chunk_done,
    )
