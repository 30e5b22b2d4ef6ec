"""
Unit tests for GuidService.

Tests cover:
- UUID encoding with entity prefixes
- GUID decoding and validation
- Prefix checking on parse
- GuidMixin integration on persisted models
"""

import uuid

import pytest

from backend.src.models import Event, Location
from backend.src.services.guid import GuidService, ENTITY_PREFIXES, GUID_PATTERN


class TestGuidEncoding:
    """Tests for GUID encoding."""

    def test_encode_uuid_with_valid_prefix(self):
        """Test encoding with every entity prefix."""
        test_uuid = uuid.uuid4()

        for prefix in ENTITY_PREFIXES.keys():
            result = GuidService.encode_uuid(test_uuid, prefix)
            assert result.startswith(f"{prefix}_")
            assert len(result) == 30  # 3 (prefix) + 1 (_) + 26 (base32)

    def test_encode_uuid_is_lowercase(self):
        result = GuidService.encode_uuid(uuid.uuid4(), "evt")
        assert result == result.lower()

    def test_encode_uuid_invalid_prefix(self):
        """Test that an unknown prefix raises ValueError."""
        with pytest.raises(ValueError) as exc_info:
            GuidService.encode_uuid(uuid.uuid4(), "xyz")

        assert "Invalid prefix" in str(exc_info.value)

    def test_encode_uuid_bytes(self):
        test_uuid = uuid.uuid4()
        assert GuidService.encode_uuid(test_uuid.bytes, "loc") == GuidService.encode_uuid(test_uuid, "loc")

    def test_encoded_guid_matches_pattern(self):
        assert GUID_PATTERN.match(GuidService.encode_uuid(uuid.uuid4(), "usr"))


class TestGuidDecoding:
    """Tests for GUID decoding and parsing."""

    def test_decode_returns_prefix_and_uuid(self):
        test_uuid = uuid.uuid4()
        guid = GuidService.encode_uuid(test_uuid, "evt")

        prefix, decoded = GuidService.decode_guid(guid)

        assert prefix == "evt"
        assert decoded == test_uuid

    def test_decode_accepts_uppercase(self):
        test_uuid = uuid.uuid4()
        guid = GuidService.encode_uuid(test_uuid, "evt").upper()

        _, decoded = GuidService.decode_guid(guid)
        assert decoded == test_uuid

    def test_decode_empty_raises(self):
        with pytest.raises(ValueError) as exc_info:
            GuidService.decode_guid("")
        assert "cannot be empty" in str(exc_info.value)

    @pytest.mark.parametrize("guid", [
        "evt_short",
        "xyz_01hgw2bbg0000000000000000",
        "evt-01hgw2bbg00000000000000000",
        "01hgw2bbg00000000000000000",
    ])
    def test_decode_invalid_format_raises(self, guid):
        with pytest.raises(ValueError):
            GuidService.decode_guid(guid)

    def test_parse_guid_prefix_mismatch(self):
        """Test that a location GUID is rejected where an event GUID is expected."""
        guid = GuidService.encode_uuid(uuid.uuid4(), "loc")

        with pytest.raises(ValueError) as exc_info:
            GuidService.parse_guid(guid, "evt")

        assert "prefix mismatch" in str(exc_info.value)

    def test_validate_guid(self):
        guid = GuidService.encode_uuid(uuid.uuid4(), "evt")

        assert GuidService.validate_guid(guid) is True
        assert GuidService.validate_guid(guid, "evt") is True
        assert GuidService.validate_guid(guid, "loc") is False
        assert GuidService.validate_guid("not-a-guid") is False
        assert GuidService.validate_guid("") is False


class TestGuidMixin:
    """Tests for GUID properties on persisted models."""

    def test_event_guid_round_trips(self, sample_event):
        event = sample_event()

        assert event.guid.startswith("evt_")
        assert Event.parse_guid(event.guid) == event.uuid

    def test_location_guid_rejected_for_event(self, sample_location):
        location = sample_location()

        assert location.guid.startswith("loc_")
        with pytest.raises(ValueError):
            Event.parse_guid(location.guid)

    def test_guid_is_none_before_uuid_assigned(self):
        location = Location(name="Unsaved")
        location.uuid = None
        assert location.guid is None
