"""
Unit tests for the chunked batch runner.

Tests cover:
- Keyset pagination and checkpoints
- Pacing between chunks only
- Item and chunk failure accounting
- Stop requests between chunks
- Report helpers (merge, is_clean, raise_for_failures)
"""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from backend.src.config.settings import ReconcileConfig
from backend.src.services.exceptions import PartialBatchFailure
from backend.src.utils.batch_runner import (
    BatchMode,
    ChunkedBatchRunner,
    FixedDelayPacing,
    NoPacing,
    PassReport,
    RunnerOptions,
    build_runner,
)


def make_items(count):
    return [SimpleNamespace(id=i) for i in range(1, count + 1)]


def keyset_fetcher(items):
    """Return a fetch_chunk callable paging over items by id."""
    def fetch(after, limit):
        remaining = [item for item in items if after is None or item.id > after]
        return remaining[:limit]
    return fetch


class RecordingPacing:
    def __init__(self):
        self.pauses = 0

    def pause(self):
        self.pauses += 1


class TestChunkedBatchRunner:
    """Tests for ChunkedBatchRunner.run."""

    def test_processes_every_item_in_chunks(self):
        items = make_items(7)
        runner = ChunkedBatchRunner(batch_size=3, pacing=NoPacing())

        report = runner.run(
            PassReport("demo", BatchMode.APPLY),
            fetch_chunk=keyset_fetcher(items),
            process_item=lambda item: item.id % 2 == 0,
        )

        assert report.scanned == 7
        assert report.changed == 3
        assert report.unchanged == 4
        assert report.chunks == 3
        assert report.last_id == 7
        assert report.is_clean

    def test_pacing_only_between_chunks(self):
        """Test that a pass of three chunks pauses exactly twice."""
        pacing = RecordingPacing()
        runner = ChunkedBatchRunner(batch_size=2, pacing=pacing)

        runner.run(
            PassReport("demo", BatchMode.APPLY),
            fetch_chunk=keyset_fetcher(make_items(6)),
            process_item=lambda item: True,
        )

        assert pacing.pauses == 2

    def test_single_chunk_never_pauses(self):
        pacing = RecordingPacing()
        runner = ChunkedBatchRunner(batch_size=10, pacing=pacing)

        runner.run(
            PassReport("demo", BatchMode.APPLY),
            fetch_chunk=keyset_fetcher(make_items(4)),
            process_item=lambda item: True,
        )

        assert pacing.pauses == 0

    def test_failing_item_does_not_abort_pass(self):
        """Test that an item error is tallied and the remaining items are processed."""
        on_item_error = Mock()
        runner = ChunkedBatchRunner(batch_size=2, on_item_error=on_item_error)

        def process(item):
            if item.id == 2:
                raise RuntimeError("boom")
            return True

        report = runner.run(
            PassReport("demo", BatchMode.APPLY),
            fetch_chunk=keyset_fetcher(make_items(5)),
            process_item=process,
        )

        assert report.scanned == 5
        assert report.changed == 4
        assert report.failed == 1
        assert "boom" in report.errors[0]
        on_item_error.assert_called_once()
        assert report.has_failures
        assert not report.is_clean

    def test_stop_request_checked_between_chunks(self):
        processed = []
        runner = ChunkedBatchRunner(
            batch_size=2,
            should_stop=lambda: len(processed) >= 2,
        )

        report = runner.run(
            PassReport("demo", BatchMode.APPLY),
            fetch_chunk=keyset_fetcher(make_items(6)),
            process_item=lambda item: processed.append(item.id) or True,
        )

        assert processed == [1, 2]
        assert report.stopped is True
        assert report.last_id == 2

    def test_resume_from_checkpoint(self):
        """Test that start_after skips items up to and including the checkpoint."""
        processed = []
        runner = ChunkedBatchRunner(batch_size=2)

        report = runner.run(
            PassReport("demo", BatchMode.APPLY),
            fetch_chunk=keyset_fetcher(make_items(5)),
            process_item=lambda item: processed.append(item.id) or True,
            start_after=3,
        )

        assert processed == [4, 5]
        assert report.last_id == 5

    def test_fetch_failure_counts_failed_chunk(self):
        def fetch(after, limit):
            raise RuntimeError("store unavailable")

        runner = ChunkedBatchRunner(batch_size=2)
        report = runner.run(
            PassReport("demo", BatchMode.APPLY),
            fetch_chunk=fetch,
            process_item=lambda item: True,
            start_after=10,
        )

        assert report.failed_chunks == 1
        assert report.last_id == 10
        assert "store unavailable" in report.errors[0]

    def test_chunk_hook_failure_counts_failed_chunk_and_continues(self):
        calls = []

        def on_chunk_done(items):
            calls.append(items[-1].id)
            if len(calls) == 1:
                raise RuntimeError("flush failed")

        runner = ChunkedBatchRunner(batch_size=2, on_chunk_done=on_chunk_done)
        report = runner.run(
            PassReport("demo", BatchMode.APPLY),
            fetch_chunk=keyset_fetcher(make_items(4)),
            process_item=lambda item: True,
        )

        assert calls == [2, 4]
        assert report.failed_chunks == 1
        assert report.chunks == 1
        assert report.scanned == 4

    def test_run_items_processes_precomputed_list(self):
        pacing = RecordingPacing()
        runner = ChunkedBatchRunner(batch_size=2, pacing=pacing)

        report = runner.run_items(
            PassReport("demo", BatchMode.APPLY),
            make_items(5),
            process_item=lambda item: True,
        )

        assert report.scanned == 5
        assert report.changed == 5
        assert report.chunks == 3
        assert report.last_id == 5
        assert pacing.pauses == 2


class TestPacing:
    """Tests for pacing policies."""

    def test_fixed_delay_sleeps_configured_seconds(self):
        sleep = Mock()
        FixedDelayPacing(1.5, sleep=sleep).pause()
        sleep.assert_called_once_with(1.5)

    def test_fixed_delay_zero_never_sleeps(self):
        sleep = Mock()
        FixedDelayPacing(0, sleep=sleep).pause()
        sleep.assert_not_called()

    def test_build_runner_uses_config_and_options(self):
        pacing = NoPacing()
        runner = build_runner(
            ReconcileConfig(batch_size=25, batch_pause_seconds=2.0),
            RunnerOptions(pacing=pacing),
        )

        assert runner.batch_size == 25
        assert runner.pacing is pacing

    def test_build_runner_defaults_to_fixed_delay(self):
        runner = build_runner(ReconcileConfig(batch_pause_seconds=2.0))

        assert isinstance(runner.pacing, FixedDelayPacing)
        assert runner.pacing.seconds == 2.0


class TestPassReport:
    """Tests for PassReport helpers."""

    def test_verify_with_remaining_work_is_not_clean(self):
        report = PassReport("demo", BatchMode.VERIFY, scanned=3, changed=1)
        assert not report.is_clean

    def test_preview_with_changes_is_clean(self):
        report = PassReport("demo", BatchMode.PREVIEW, scanned=3, changed=3)
        assert report.is_clean

    def test_merge_sums_counts_and_keeps_latest_checkpoint(self):
        first = PassReport("demo", BatchMode.APPLY, scanned=2, changed=1, last_id=2)
        second = PassReport("demo", BatchMode.APPLY, scanned=3, failed=1, last_id=5, errors=["x"])

        merged = first.merge(second)

        assert merged.scanned == 5
        assert merged.changed == 1
        assert merged.failed == 1
        assert merged.last_id == 5
        assert merged.errors == ["x"]

    def test_raise_for_failures(self):
        report = PassReport("demo", BatchMode.APPLY, failed=2)

        with pytest.raises(PartialBatchFailure) as exc_info:
            report.raise_for_failures()

        assert exc_info.value.report is report
        assert "2 failed item(s)" in str(exc_info.value)

    def test_log_extra_avoids_reserved_keys(self):
        extra = PassReport("demo", BatchMode.APPLY).log_extra()

        assert extra["pass_name"] == "demo"
        assert "name" not in extra
