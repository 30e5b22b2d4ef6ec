"""
Unit tests for StatusWorkflowService.

Tests cover:
- The draft -> pending -> published lifecycle and its history
- Transition validation (disallowed moves, reject reason)
- Soft delete and restore to the pre-deletion status
- Purge of soft-deleted records
- Legacy 'approved' status handling
"""

from datetime import datetime

import pytest
from freezegun import freeze_time

from backend.src.models import Event
from backend.src.services.exceptions import ConflictError, NotFoundError, ValidationError
from backend.src.services.status_workflow import (
    StatusWorkflowService,
    parse_status,
    resolve_restore_status,
)


REQUESTER = "requester@example.org"
APPROVER = "approver@example.org"


@pytest.fixture
def workflow(test_db_session, reconcile_config):
    return StatusWorkflowService(test_db_session, reconcile_config)


class TestLifecycle:
    """Tests for the normal approval lifecycle."""

    def test_board_meeting_submitted_and_approved(self, workflow, sample_event):
        """Test that submit then approve leaves three history entries and version 3."""
        event = sample_event(title="Board Meeting", status="draft")

        event = workflow.submit(event.id, REQUESTER)
        event = workflow.approve(event.id, APPROVER)

        assert event.status == "published"
        assert event.previous_status == "pending"
        assert event.version == 3
        assert [entry["status"] for entry in event.status_history] == ["draft", "pending", "published"]
        assert event.status_history[-1]["changed_by_email"] == APPROVER
        assert event.last_modified_by == APPROVER

    def test_draft_can_publish_directly(self, workflow, sample_event):
        event = workflow.publish(sample_event().id, APPROVER)
        assert event.status == "published"

    def test_reject_requires_reason(self, workflow, sample_event):
        event = sample_event(status="pending")

        with pytest.raises(ValidationError) as exc_info:
            workflow.reject(event.id, APPROVER, reason="  ")

        assert exc_info.value.field == "reason"

    def test_reject_records_reason_and_resubmit(self, workflow, sample_event):
        event = sample_event(status="pending")

        event = workflow.reject(event.id, APPROVER, reason="Room double-booked")
        assert event.status == "rejected"
        assert event.status_history[-1]["reason"] == "Room double-booked"

        event = workflow.resubmit(event.id, REQUESTER)
        assert event.status == "pending"

    def test_published_cannot_go_back_to_pending(self, workflow, sample_event):
        event = sample_event(status="published")

        with pytest.raises(ValidationError) as exc_info:
            workflow.submit(event.id, REQUESTER)

        assert "not allowed" in exc_info.value.message

    def test_approve_requires_pending(self, workflow, sample_event):
        with pytest.raises(ValidationError):
            workflow.approve(sample_event(status="draft").id, APPROVER)

    def test_stale_expected_version_conflicts(self, workflow, sample_event):
        event = sample_event(status="pending")
        workflow.reject(event.id, APPROVER, reason="No room")

        with pytest.raises(ConflictError) as exc_info:
            workflow.soft_delete(event.id, APPROVER, expected_version=1)

        assert exc_info.value.current_version == 2

    def test_unknown_status_rejected(self, workflow, sample_event):
        with pytest.raises(ValidationError) as exc_info:
            workflow.transition(sample_event().id, "archived", APPROVER)
        assert exc_info.value.field == "target_status"

    def test_missing_event_raises_not_found(self, workflow):
        with pytest.raises(NotFoundError):
            workflow.publish(12345, APPROVER)


class TestDeleteAndRestore:
    """Tests for soft delete, restore and purge."""

    def test_restore_returns_to_pre_deletion_status(self, workflow, sample_event):
        event = sample_event(status="pending")

        event = workflow.soft_delete(event.id, APPROVER)
        assert event.status == "deleted"
        assert event.previous_status == "pending"
        assert event.deleted_by_email == APPROVER
        assert event.deleted_at is not None

        event = workflow.restore(event.id, APPROVER)
        assert event.status == "pending"
        assert event.deleted_at is None
        assert event.deleted_by_email is None
        assert event.status_history[-1]["reason"] == "Restored"

    def test_restore_without_history_falls_back_to_draft(self, workflow, sample_event):
        event = sample_event(status="deleted", with_history=False)

        event = workflow.restore(event.id, APPROVER)

        assert event.status == "draft"

    def test_restore_requires_deleted(self, workflow, sample_event):
        with pytest.raises(ValidationError):
            workflow.restore(sample_event().id, APPROVER)

    def test_deleted_event_cannot_transition(self, workflow, sample_event):
        event = sample_event(status="deleted")

        with pytest.raises(ValidationError) as exc_info:
            workflow.publish(event.id, APPROVER)

        assert "restore" in exc_info.value.message

    def test_soft_delete_stamps_time_and_actor(self, workflow, sample_event):
        event = sample_event(status="published")

        with freeze_time("2025-03-02 09:15:00"):
            deleted = workflow.soft_delete(event.id, APPROVER, reason="cancelled")

        assert deleted.deleted_at == datetime(2025, 3, 2, 9, 15)
        assert deleted.deleted_by_email == APPROVER
        assert deleted.status_history[-1]["changed_at"] == "2025-03-02T09:15:00"
        assert deleted.status_history[-1]["reason"] == "cancelled"

    def test_purge_only_soft_deleted(self, workflow, test_db_session, sample_event):
        live = sample_event()
        with pytest.raises(ValidationError):
            workflow.purge(live.id, 1)

        gone = workflow.soft_delete(sample_event().id, APPROVER)
        gone_id = gone.id
        workflow.purge(gone_id, gone.version)

        assert test_db_session.query(Event).filter(Event.id == gone_id).first() is None


class TestLegacyStatus:
    """Tests for records written by earlier releases."""

    def test_legacy_approved_maps_to_published(self):
        assert parse_status("approved").value == "published"

    def test_restore_target_maps_legacy_approved(self):
        history = [{"status": "draft"}, {"status": "approved"}, {"status": "deleted"}]
        assert resolve_restore_status(history) == "published"

    def test_restore_target_ignores_unknown_entries(self):
        assert resolve_restore_status([{"status": "archived"}, {"status": "deleted"}]) == "draft"
        assert resolve_restore_status(None) == "draft"

    def test_legacy_approved_record_can_be_deleted(self, workflow, sample_event):
        event = sample_event(status="approved", version=None)

        event = workflow.soft_delete(event.id, APPROVER)

        assert event.status == "deleted"
        assert event.previous_status == "published"
        assert event.version == 2

    def test_initial_history_has_single_entry(self):
        history = StatusWorkflowService.initial_history("draft", REQUESTER)

        assert len(history) == 1
        assert history[0]["status"] == "draft"
        assert history[0]["changed_by"] == REQUESTER
