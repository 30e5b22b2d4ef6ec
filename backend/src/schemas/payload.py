"""
Provenance payload schemas.

Each ingestion path stores its own provenance fields in Event.source_payload.
The payload is a tagged union discriminated by ``source``; fields of one path
never appear on records created by another, and reservation-specific data
never leaks to the top level of the event record.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class Contact(BaseModel):
    """Person attached to a room reservation."""

    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    department: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=64)


class FormPayload(BaseModel):
    """Created through the staff event form."""

    source: Literal["form"] = "form"
    submitted_via: Optional[str] = Field(default=None, description="Form or client name")
    notes: Optional[str] = None


class CsvImportPayload(BaseModel):
    """Created from a row of an uploaded CSV file."""

    source: Literal["csv-import"] = "csv-import"
    import_batch: Optional[str] = Field(default=None, description="Import run identifier")
    row_number: Optional[int] = Field(default=None, ge=1)
    source_file: Optional[str] = None


class ProviderSyncPayload(BaseModel):
    """Mirrored from the calendar provider."""

    source: Literal["provider-sync"] = "provider-sync"
    last_synced_at: Optional[datetime] = None
    change_key: Optional[str] = Field(default=None, description="Provider change key at last sync")
    calendar_owner: Optional[str] = None


class RoomReservationPayload(BaseModel):
    """Submitted through the room reservation workflow."""

    source: Literal["room-reservation"] = "room-reservation"
    requested_by: Contact
    on_behalf_of: Optional[Contact] = None
    attendee_count: Optional[int] = Field(default=None, ge=0)
    special_requirements: Optional[str] = None
    review_notes: Optional[str] = None


class UnknownPayload(BaseModel):
    """Legacy record whose ingestion path cannot be determined."""

    source: Literal["unknown"] = "unknown"


SourcePayload = Annotated[
    Union[
        FormPayload,
        CsvImportPayload,
        ProviderSyncPayload,
        RoomReservationPayload,
        UnknownPayload,
    ],
    Field(discriminator="source"),
]

_payload_adapter = TypeAdapter(SourcePayload)


def parse_payload(data: Optional[dict]) -> SourcePayload:
    """
    Validate a stored payload dict into its tagged model.

    Missing payloads parse as UnknownPayload.

    Raises:
        pydantic.ValidationError: If the payload does not match its tag
    """
    if not data:
        return UnknownPayload()
    return _payload_adapter.validate_python(data)


def dump_payload(payload: SourcePayload) -> dict:
    """Serialize a payload for the JSON column (unset optionals dropped)."""
    return payload.model_dump(mode="json", exclude_none=True)


def payload_richness(data: Optional[dict]) -> int:
    """
    Count populated provenance fields of a stored payload.

    Used to break ties between records of equal provenance rank.
    """
    if not data:
        return 0
    count = 0
    for key, value in data.items():
        if key == "source":
            continue
        if isinstance(value, dict):
            count += sum(1 for v in value.values() if v not in (None, "", [], {}))
        elif value not in (None, "", [], {}):
            count += 1
    return count
