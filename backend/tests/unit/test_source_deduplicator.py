"""
Unit tests for SourceDeduplicator.

Tests cover:
- Provenance ranking
- Pairing by ical_uid and by title/time
- Preview deleting nothing and matching apply exactly
- Survivor selection and ambiguous groups
- Idempotence of a second apply
"""

import pytest

from backend.src.models import Event
from backend.src.services.source_deduplicator import (
    SIGNAL_ICAL_UID,
    SIGNAL_TITLE_TIME,
    SourceDeduplicator,
    provenance_rank,
)
from backend.src.utils.batch_runner import BatchMode


@pytest.fixture
def dedup(test_db_session, reconcile_config, runner_options):
    return SourceDeduplicator(test_db_session, reconcile_config, runner_options)


@pytest.fixture
def csv_and_synced(sample_event):
    """The canonical pair: a CSV placeholder later captured by provider sync."""
    def _create(**csv_kwargs):
        csv_record = sample_event(
            creation_source="csv-import",
            external_id="csv_import_17",
            ical_uid="uid-board",
            calendar_id="main",
            source_payload={"source": "csv-import", "import_batch": "b1", "row_number": 17},
            **csv_kwargs
        )
        synced = sample_event(
            creation_source="provider-sync",
            external_id="AAMkADExample",
            ical_uid="uid-board",
            calendar_id="main",
            source_payload={"source": "provider-sync", "change_key": "ck-1"},
        )
        return csv_record, synced
    return _create


class TestProvenanceRank:
    """Tests for provenance_rank."""

    def test_ranks(self, sample_event):
        assert provenance_rank(sample_event(creation_source="provider-sync", external_id="AAMk-1")) == 2
        assert provenance_rank(sample_event(creation_source="csv-import")) == 1
        assert provenance_rank(sample_event(creation_source="form")) == 1
        assert provenance_rank(sample_event(creation_source="csv-import", external_id="csv_import_3")) == 0
        assert provenance_rank(sample_event(creation_source="unknown", external_id="AAMk-2")) == 0


class TestFindDuplicates:
    """Tests for SourceDeduplicator.find_duplicates."""

    def test_provider_record_survives_csv_placeholder(self, dedup, csv_and_synced):
        csv_record, synced = csv_and_synced()

        found = dedup.find_duplicates()

        assert len(found.pairs) == 1
        pair = found.pairs[0]
        assert pair.survivor.id == synced.id
        assert pair.loser.id == csv_record.id
        assert pair.signal == SIGNAL_ICAL_UID
        assert found.loser_guids == [csv_record.guid]

    def test_title_time_match_without_ical_uid(self, dedup, sample_event):
        form = sample_event(
            creation_source="form",
            title="Choir  Rehearsal",
            source_payload={"source": "form", "submitted_via": "staff-form"},
        )
        csv_record = sample_event(creation_source="csv-import", title="choir rehearsal")

        found = dedup.find_duplicates()

        assert len(found.pairs) == 1
        assert found.pairs[0].survivor.id == form.id
        assert found.pairs[0].loser.id == csv_record.id
        assert found.pairs[0].signal == SIGNAL_TITLE_TIME

    def test_differing_ical_uids_never_pair(self, dedup, sample_event):
        sample_event(creation_source="form", ical_uid="uid-a")
        sample_event(creation_source="csv-import", ical_uid="uid-b")

        assert dedup.find_duplicates().pairs == []

    def test_same_source_records_never_pair(self, dedup, sample_event):
        sample_event(creation_source="csv-import")
        sample_event(creation_source="csv-import")

        found = dedup.find_duplicates()

        assert found.pairs == []
        assert found.ambiguous == []

    def test_different_calendars_never_pair(self, dedup, sample_event):
        sample_event(creation_source="form", calendar_id="main")
        sample_event(creation_source="csv-import", calendar_id="youth")

        assert dedup.find_duplicates().pairs == []

    def test_equal_rank_and_richness_is_ambiguous(self, dedup, sample_event):
        first = sample_event(creation_source="form")
        second = sample_event(creation_source="csv-import")

        found = dedup.find_duplicates()

        assert found.pairs == []
        assert len(found.ambiguous) == 1
        assert set(found.ambiguous[0].event_guids) == {first.guid, second.guid}

    def test_three_cross_source_records_are_ambiguous(self, dedup, sample_event):
        sample_event(creation_source="form", ical_uid="uid-1")
        sample_event(creation_source="csv-import", ical_uid="uid-1")
        sample_event(creation_source="provider-sync", external_id="AAMk-1", ical_uid="uid-1")

        found = dedup.find_duplicates()

        assert found.pairs == []
        assert any(group.reason == "more than two cross-source records" for group in found.ambiguous)

    def test_deleted_records_ignored(self, dedup, csv_and_synced):
        csv_and_synced(status="deleted")

        assert dedup.find_duplicates().pairs == []


class TestRun:
    """Tests for SourceDeduplicator.run."""

    def test_preview_deletes_nothing(self, dedup, test_db_session, csv_and_synced):
        csv_and_synced()

        report = dedup.run(BatchMode.PREVIEW)

        assert report.changed == 1
        assert report.details[0]["action"] == "remove_duplicate"
        assert test_db_session.query(Event).count() == 2

    def test_apply_removes_exactly_the_previewed_losers(self, dedup, test_db_session, csv_and_synced):
        csv_record, synced = csv_and_synced()
        csv_id, synced_id = csv_record.id, synced.id

        preview = dedup.run(BatchMode.PREVIEW)
        applied = dedup.run(BatchMode.APPLY)

        previewed = [d["loser_guid"] for d in preview.details if d["action"] == "remove_duplicate"]
        removed = [d["loser_guid"] for d in applied.details if d["action"] == "remove_duplicate"]
        assert previewed == removed
        assert applied.changed == 1
        assert applied.failed == 0
        remaining = [event.id for event in test_db_session.query(Event).all()]
        assert remaining == [synced_id]
        assert csv_id not in remaining

    def test_second_apply_writes_nothing(self, dedup, csv_and_synced):
        csv_and_synced()
        dedup.run(BatchMode.APPLY)

        again = dedup.run(BatchMode.APPLY)
        verified = dedup.run(BatchMode.VERIFY)

        assert again.changed == 0
        assert verified.is_clean

    def test_ambiguous_groups_reported_in_every_mode(self, dedup, test_db_session, sample_event):
        sample_event(creation_source="form")
        sample_event(creation_source="csv-import")

        for mode in (BatchMode.PREVIEW, BatchMode.APPLY):
            report = dedup.run(mode)
            assert report.changed == 0
            assert [d["action"] for d in report.details] == ["ambiguous"]

        assert test_db_session.query(Event).count() == 2

    def test_calendar_scope(self, dedup, csv_and_synced):
        csv_and_synced()

        assert dedup.run(BatchMode.PREVIEW, calendar_id="youth").changed == 0
        assert dedup.run(BatchMode.PREVIEW, calendar_id="main").changed == 1
