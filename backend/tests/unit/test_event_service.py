"""
Unit tests for EventService ingestion.

Tests cover:
- Staff form creation (draft status, single history entry, payload)
- CSV import counts, refresh and unchanged rows
- Cross-source matches stored as possible duplicates
- Location string resolution
- Recurrence validation and exception linking on ingest
"""

from datetime import datetime, timedelta

import pytest

from backend.src.models import CreationSource, Event, EventType
from backend.src.schemas.event import EventCandidate
from backend.src.services.event_service import EventService
from backend.src.services.exceptions import ValidationError
from backend.src.services.identity_resolver import MatchSignal


STAFF = "staff@example.org"
START = datetime(2025, 3, 1, 18, 0)


@pytest.fixture
def event_service(test_db_session, reconcile_config):
    return EventService(test_db_session, reconcile_config)


def board_meeting(**kwargs):
    values = {
        "title": "Board Meeting",
        "start_at": START,
        "end_at": START + timedelta(hours=2),
        "location": "Room 402",
    }
    values.update(kwargs)
    return EventCandidate(**values)


def csv_row(**kwargs):
    row = {
        "title": "Board Meeting",
        "start_at": "2025-03-01T18:00:00",
        "end_at": "2025-03-01T20:00:00",
        "location": "Room 402",
        "categories": "Governance, Finance",
    }
    row.update(kwargs)
    return row


class TestFormIngestion:
    """Tests for the staff form path."""

    def test_form_event_starts_as_draft(self, event_service):
        result = event_service.create_from_form(board_meeting(), actor=STAFF)

        event = result.event
        assert result.action == "created"
        assert event.status == "draft"
        assert event.creation_source == "form"
        assert event.version == 1
        assert len(event.status_history) == 1
        assert event.status_history[0]["changed_by_email"] == STAFF
        assert event.source_payload == {"source": "form", "submitted_via": "staff-form"}
        assert event.created_by_email == STAFF

    def test_form_event_can_publish_immediately(self, event_service):
        result = event_service.create_from_form(board_meeting(), actor=STAFF, publish=True)
        assert result.event.status == "published"

    def test_unmatched_location_kept_as_display_text(self, event_service):
        result = event_service.create_from_form(board_meeting(location="Garden ; Room 402"), actor=STAFF)

        assert result.event.location_ids == []
        assert result.event.location_display == "Garden; Room 402"

    def test_matched_locations_resolved_to_ids(self, event_service, sample_location):
        room = sample_location(name="Room 402")
        chapel = sample_location(name="Chapel", display_name="Main Chapel", aliases=["Sanctuary"])

        result = event_service.create_from_form(
            board_meeting(location="room 402; sanctuary"), actor=STAFF
        )

        assert result.event.location_ids == [room.id, chapel.id]
        assert result.event.location_display == "Room 402; Main Chapel"

    def test_timing_issues_stored_not_rejected(self, event_service):
        result = event_service.create_from_form(
            board_meeting(setup_at=START + timedelta(minutes=30)), actor=STAFF
        )

        assert result.event.timing_issues() == ["setup_at"]

    def test_payload_must_match_creation_source(self, event_service):
        from backend.src.schemas.payload import CsvImportPayload

        candidate = board_meeting(
            creation_source=CreationSource.PROVIDER_SYNC,
            payload=CsvImportPayload(import_batch="b1"),
        )

        with pytest.raises(ValidationError) as exc_info:
            event_service.ingest(candidate)

        assert exc_info.value.field == "payload"


class TestCsvImport:
    """Tests for CSV row ingestion."""

    def test_import_creates_published_records(self, event_service):
        stats = event_service.import_csv_rows(
            [csv_row(), csv_row(title="Choir Rehearsal")], actor=STAFF, import_batch="batch-1"
        )

        assert stats.created == 2
        assert stats.failed == 0
        assert stats.total == 2

        event = event_service.db.query(Event).filter(Event.title == "Board Meeting").one()
        assert event.status == "published"
        assert event.categories == ["Governance", "Finance"]
        assert event.source_payload["import_batch"] == "batch-1"
        assert event.source_payload["row_number"] == 1

    def test_reimport_is_unchanged(self, event_service):
        event_service.import_csv_rows([csv_row()], actor=STAFF, import_batch="batch-1")

        stats = event_service.import_csv_rows([csv_row()], actor=STAFF, import_batch="batch-1")

        assert stats.unchanged == 1
        assert stats.created == 0
        assert event_service.db.query(Event).count() == 1

    def test_reimport_with_new_description_updates(self, event_service):
        event_service.import_csv_rows([csv_row()], actor=STAFF, import_batch="batch-1")

        stats = event_service.import_csv_rows(
            [csv_row(description="Quarterly review")], actor=STAFF, import_batch="batch-1"
        )

        assert stats.updated == 1
        event = event_service.db.query(Event).one()
        assert event.description == "Quarterly review"
        assert event.version == 2

    def test_invalid_rows_counted_not_fatal(self, event_service):
        stats = event_service.import_csv_rows(
            [csv_row(title="x" * 300), csv_row(event_type="occurrence"), csv_row()],
            actor=STAFF,
        )

        assert stats.failed == 2
        assert stats.created == 1
        assert len(stats.errors) == 2
        assert stats.errors[0].startswith("Row 1:")

    def test_cross_source_match_recorded_as_possible_duplicate(self, event_service):
        """Test that a CSV row matching a form event is stored and flagged for deduplication."""
        form = event_service.create_from_form(
            board_meeting(categories=["Governance", "Finance"]), actor=STAFF
        ).event

        stats = event_service.import_csv_rows([csv_row()], actor=STAFF)

        assert stats.created == 1
        assert stats.possible_duplicates[0]["existing"] == form.guid
        assert event_service.db.query(Event).count() == 2


class TestIngestIdentity:
    """Tests for identity resolution during ingest."""

    def test_same_source_external_id_refreshes(self, event_service):
        first = event_service.ingest(board_meeting(
            creation_source=CreationSource.PROVIDER_SYNC, external_id="AAMk-1"
        ))

        second = event_service.ingest(board_meeting(
            creation_source=CreationSource.PROVIDER_SYNC, external_id="AAMk-1",
            title="Board Meeting (rescheduled)", start_at=START + timedelta(days=7),
        ))

        assert second.action == "updated"
        assert second.signal == MatchSignal.EXTERNAL_ID
        assert second.event.id == first.event.id
        assert second.event.title == "Board Meeting (rescheduled)"

    def test_identity_fields_filled_only_when_missing(self, event_service):
        first = event_service.ingest(board_meeting(creation_source=CreationSource.PROVIDER_SYNC))

        second = event_service.ingest(board_meeting(
            creation_source=CreationSource.PROVIDER_SYNC, ical_uid="uid-1"
        ))

        assert second.event.id == first.event.id
        assert second.event.ical_uid == "uid-1"

    def test_deleted_match_stays_deleted(self, event_service, sample_event):
        deleted = sample_event(
            creation_source="provider-sync", external_id="AAMk-1", status="deleted"
        )

        result = event_service.ingest(board_meeting(
            creation_source=CreationSource.PROVIDER_SYNC, external_id="AAMk-1",
            title="Board Meeting (moved)",
        ))

        assert result.action == "skipped"
        assert result.event.id == deleted.id
        assert result.event.status == "deleted"
        assert result.event.title == "Board Meeting"
        assert event_service.db.query(Event).count() == 1

    def test_repeated_form_entry_stored_separately(self, event_service):
        first = event_service.create_from_form(board_meeting(), actor=STAFF).event

        second = event_service.create_from_form(
            board_meeting(description="Second copy"), actor="other@example.org"
        )

        assert second.action == "created"
        assert second.signal == MatchSignal.MATCH_KEY
        assert second.possible_duplicate_of == first.guid
        assert event_service.db.get(Event, first.id).description is None

    def test_form_entry_refreshed_by_external_id(self, event_service):
        first = event_service.create_from_form(board_meeting(external_id="evt-1700000000"), actor=STAFF)

        second = event_service.create_from_form(
            board_meeting(external_id="evt-1700000000", description="Updated"), actor=STAFF
        )

        assert second.action == "updated"
        assert second.event.id == first.event.id


class TestRecurrenceIngest:
    """Tests for recurrence fields during ingest."""

    def test_occurrence_requires_master_reference(self, event_service):
        with pytest.raises(ValidationError) as exc_info:
            event_service.ingest(board_meeting(event_type=EventType.OCCURRENCE))

        assert exc_info.value.field == "series_master_external_id"

    def test_single_instance_cannot_reference_master(self, event_service):
        with pytest.raises(ValidationError):
            event_service.ingest(board_meeting(series_master_external_id="AAMk-master"))

    def test_exception_cannot_reference_itself(self, event_service):
        with pytest.raises(ValidationError):
            event_service.ingest(board_meeting(
                event_type=EventType.EXCEPTION,
                external_id="AAMk-1",
                series_master_external_id="AAMk-1",
            ))

    def test_new_master_gets_empty_containers(self, event_service):
        result = event_service.ingest(board_meeting(
            creation_source=CreationSource.PROVIDER_SYNC,
            event_type=EventType.SERIES_MASTER,
            external_id="AAMk-master",
        ))

        assert result.event.exception_event_ids == []
        assert result.event.cancelled_occurrences == []

    def test_exception_linked_on_ingest(self, event_service):
        master = event_service.ingest(board_meeting(
            creation_source=CreationSource.PROVIDER_SYNC,
            event_type=EventType.SERIES_MASTER,
            external_id="AAMk-master",
        )).event

        event_service.ingest(board_meeting(
            creation_source=CreationSource.PROVIDER_SYNC,
            event_type=EventType.EXCEPTION,
            external_id="AAMk-exc-1",
            series_master_external_id="AAMk-master",
            original_start_at=START + timedelta(days=7),
            start_at=START + timedelta(days=7, hours=1),
        ))

        master = event_service.db.get(Event, master.id, populate_existing=True)
        assert master.exception_event_ids == ["AAMk-exc-1"]

    def test_exception_before_master_linked_when_master_arrives(self, event_service):
        event_service.ingest(board_meeting(
            creation_source=CreationSource.PROVIDER_SYNC,
            event_type=EventType.EXCEPTION,
            external_id="AAMk-exc-1",
            series_master_external_id="AAMk-master",
        ))

        master = event_service.ingest(board_meeting(
            creation_source=CreationSource.PROVIDER_SYNC,
            event_type=EventType.SERIES_MASTER,
            external_id="AAMk-master",
            title="Weekly Board Meeting",
        )).event

        master = event_service.db.get(Event, master.id, populate_existing=True)
        assert master.exception_event_ids == ["AAMk-exc-1"]


class TestListInWindow:
    """Tests for window listing."""

    def test_window_excludes_deleted_by_default(self, event_service, sample_event):
        live = sample_event(start_at=START)
        deleted = sample_event(start_at=START + timedelta(hours=1), status="deleted")
        sample_event(start_at=START + timedelta(days=2))

        window = (START - timedelta(hours=1), START + timedelta(days=1))

        assert [e.id for e in event_service.list_in_window(*window)] == [live.id]
        assert [e.id for e in event_service.list_in_window(*window, include_deleted=True)] == [
            live.id, deleted.id
        ]
