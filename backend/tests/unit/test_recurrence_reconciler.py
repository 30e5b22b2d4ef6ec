"""
Unit tests for RecurrenceReconciler.

Tests cover:
- Exception linking (idempotent, deferred until the master arrives)
- Cancellation markers
- Retry after a lost version race
- The series sweep in preview, apply and verify modes
"""

from datetime import datetime, timedelta

import pytest

from backend.src.config.settings import ReconcileConfig
from backend.src.models import Event
from backend.src.services.exceptions import ConflictError
from backend.src.services.recurrence_reconciler import LinkOutcome, RecurrenceReconciler
from backend.src.utils.batch_runner import BatchMode, NoPacing, RunnerOptions


MASTER_ID = "AAMk-master"
SERIES_START = datetime(2025, 3, 3, 9, 0)


@pytest.fixture
def reconciler(test_db_session, reconcile_config, runner_options):
    return RecurrenceReconciler(test_db_session, reconcile_config, runner_options)


@pytest.fixture
def make_master(sample_event):
    def _create(**kwargs):
        return sample_event(
            title="Staff Standup",
            start_at=SERIES_START,
            event_type="series_master",
            external_id=MASTER_ID,
            creation_source="provider-sync",
            **kwargs
        )
    return _create


@pytest.fixture
def make_exception(sample_event):
    def _create(external_id="AAMk-exc-1", week=1, **kwargs):
        original = SERIES_START + timedelta(weeks=week)
        return sample_event(
            title="Staff Standup",
            start_at=original + timedelta(hours=1),
            event_type="exception",
            external_id=external_id,
            series_master_external_id=MASTER_ID,
            original_start_at=original,
            creation_source="provider-sync",
            **kwargs
        )
    return _create


def reload(session, event):
    return session.get(Event, event.id, populate_existing=True)


class TestLinkException:
    """Tests for RecurrenceReconciler.link_exception."""

    def test_link_is_idempotent(self, reconciler, test_db_session, make_master, make_exception):
        master = make_master()
        exception = make_exception()

        assert reconciler.link_exception(exception) == LinkOutcome.LINKED
        assert reconciler.link_exception(exception) == LinkOutcome.ALREADY_LINKED

        master = reload(test_db_session, master)
        assert master.exception_event_ids == ["AAMk-exc-1"]
        assert master.cancelled_occurrences == []
        assert master.version == 2

    def test_missing_master_defers(self, reconciler, make_exception):
        assert reconciler.link_exception(make_exception()) == LinkOutcome.DEFERRED

    def test_exception_without_provider_id_links_by_guid(
        self, reconciler, test_db_session, make_master, make_exception
    ):
        master = make_master()
        exception = make_exception(external_id=None)

        reconciler.link_exception(exception)

        assert reload(test_db_session, master).exception_event_ids == [exception.guid]

    def test_relink_for_master_links_standalone_exceptions(
        self, reconciler, test_db_session, make_master, make_exception
    ):
        make_exception(external_id="AAMk-exc-1", week=1)
        make_exception(external_id="AAMk-exc-2", week=2)
        master = make_master()

        assert reconciler.relink_for_master(master) == 2
        assert reconciler.relink_for_master(master) == 0
        assert reload(test_db_session, master).exception_event_ids == ["AAMk-exc-1", "AAMk-exc-2"]

    def test_lost_race_is_retried(self, reconciler, test_db_session, make_master, make_exception, mocker):
        master = make_master()
        exception = make_exception()
        real_update = reconciler.guard.conditional_update
        attempts = []

        def flaky_update(*args, **kwargs):
            attempts.append(args)
            if len(attempts) == 1:
                raise ConflictError("lost race", current_version=2, expected_version=1)
            return real_update(*args, **kwargs)

        mocker.patch.object(reconciler.guard, "conditional_update", side_effect=flaky_update)

        assert reconciler.link_exception(exception) == LinkOutcome.LINKED
        assert len(attempts) == 2
        assert reload(test_db_session, master).exception_event_ids == ["AAMk-exc-1"]

    def test_conflicts_beyond_retry_bound_raise(self, test_db_session, make_master, make_exception, mocker):
        reconciler = RecurrenceReconciler(test_db_session, ReconcileConfig(max_conflict_retries=1))
        make_master()
        exception = make_exception()
        mocker.patch.object(
            reconciler.guard,
            "conditional_update",
            side_effect=ConflictError("lost race", current_version=5, expected_version=1),
        )

        with pytest.raises(ConflictError):
            reconciler.link_exception(exception)

        assert reconciler.guard.conditional_update.call_count == 2


class TestCancellations:
    """Tests for RecurrenceReconciler.record_cancellation."""

    def test_cancellation_recorded_once(self, reconciler, test_db_session, make_master):
        master = make_master()
        slot = SERIES_START + timedelta(weeks=2)

        assert reconciler.record_cancellation(MASTER_ID, slot) == LinkOutcome.LINKED
        assert reconciler.record_cancellation(MASTER_ID, slot) == LinkOutcome.ALREADY_LINKED

        markers = reload(test_db_session, master).cancelled_occurrences
        assert len(markers) == 1
        assert markers[0]["original_start"] == "2025-03-17T09:00:00"

    def test_cancellation_without_master_defers(self, reconciler):
        assert reconciler.record_cancellation(MASTER_ID, SERIES_START) == LinkOutcome.DEFERRED

    def test_ensure_containers_only_once(self, reconciler, make_master):
        master = make_master()

        assert reconciler.ensure_series_containers(master) is True
        master = reconciler.find_master(MASTER_ID)
        assert reconciler.ensure_series_containers(master) is False


class TestSeriesIndex:
    """Tests for the master -> exceptions lookup table."""

    def test_index_lists_live_masters(self, reconciler, make_master, sample_event):
        make_master(exception_event_ids=["AAMk-exc-1", "AAMk-exc-2"])
        sample_event(event_type="series_master", external_id="AAMk-gone", status="deleted")
        sample_event(event_type="series_master", external_id=None)

        index = reconciler.series_index()

        assert index == {MASTER_ID: {"AAMk-exc-1", "AAMk-exc-2"}}

    def test_master_without_list_indexed_empty(self, reconciler, make_master):
        make_master()
        assert reconciler.series_index() == {MASTER_ID: set()}

    def test_sweep_skips_indexed_exceptions_without_lookup(
        self, reconciler, make_master, make_exception, mocker
    ):
        make_master(exception_event_ids=["AAMk-exc-1"], cancelled_occurrences=[])
        make_exception()
        find_master = mocker.spy(reconciler, "find_master")

        report = reconciler.sweep(BatchMode.VERIFY)

        assert report.changed == 0
        find_master.assert_not_called()


class TestSweep:
    """Tests for the batch sweep."""

    def _seed(self, make_master, make_exception, sample_event):
        make_master()
        make_exception()
        sample_event(
            title="Staff Standup",
            start_at=SERIES_START + timedelta(weeks=3),
            event_type="occurrence",
            series_master_external_id=MASTER_ID,
            creation_source="provider-sync",
        )

    def test_preview_reports_without_writing(
        self, reconciler, test_db_session, make_master, make_exception, sample_event
    ):
        self._seed(make_master, make_exception, sample_event)

        report = reconciler.sweep(BatchMode.PREVIEW)

        assert report.scanned == 3
        assert report.changed == 3
        assert sorted(d["action"] for d in report.details) == [
            "ensure_containers", "link_exception", "remove_materialized_occurrence"
        ]
        assert test_db_session.query(Event).count() == 3
        assert reconciler.find_master(MASTER_ID).exception_event_ids is None

    def test_apply_then_verify_is_clean(
        self, reconciler, test_db_session, make_master, make_exception, sample_event
    ):
        self._seed(make_master, make_exception, sample_event)

        applied = reconciler.sweep(BatchMode.APPLY)
        verified = reconciler.sweep(BatchMode.VERIFY)

        assert applied.changed == 3
        assert applied.failed == 0
        master = reconciler.find_master(MASTER_ID)
        assert master.exception_event_ids == ["AAMk-exc-1"]
        assert test_db_session.query(Event).count() == 2
        assert verified.changed == 0
        assert verified.is_clean

    def test_form_occurrence_is_kept(self, reconciler, test_db_session, make_master, sample_event):
        make_master(exception_event_ids=[], cancelled_occurrences=[])
        sample_event(
            start_at=SERIES_START + timedelta(weeks=1),
            event_type="occurrence",
            series_master_external_id=MASTER_ID,
            creation_source="form",
        )

        report = reconciler.sweep(BatchMode.APPLY)

        assert report.changed == 0
        assert test_db_session.query(Event).count() == 2

    def test_sweep_resumes_after_checkpoint(self, test_db_session, make_master, make_exception, sample_event):
        self._seed(make_master, make_exception, sample_event)
        reconciler = RecurrenceReconciler(
            test_db_session,
            ReconcileConfig(batch_size=1, batch_pause_seconds=0),
            RunnerOptions(pacing=NoPacing()),
        )
        first_id = test_db_session.query(Event).order_by(Event.id).first().id

        report = reconciler.sweep(BatchMode.PREVIEW, start_after_id=first_id)

        assert report.scanned == 2
        assert report.chunks == 2
