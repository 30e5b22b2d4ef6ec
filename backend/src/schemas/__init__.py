"""
Pydantic schemas for API request/response validation.

This module exports all schema classes for use in API endpoints and services.
"""

from backend.src.schemas.payload import (
    Contact,
    FormPayload,
    CsvImportPayload,
    ProviderSyncPayload,
    RoomReservationPayload,
    UnknownPayload,
    SourcePayload,
    parse_payload,
    dump_payload,
    payload_richness,
)
from backend.src.schemas.event import (
    EventCandidate,
    TransitionRequest,
    RestoreRequest,
    ReservationRequest,
    StatusHistoryEntry,
    EventResponse,
    StatusHistoryResponse,
    PermissionsResponse,
    event_to_response,
    history_to_response,
    history_entry,
)
from backend.src.schemas.provider import ProviderEvent, ProviderEventType

__all__ = [
    # Provenance payloads
    "Contact",
    "FormPayload",
    "CsvImportPayload",
    "ProviderSyncPayload",
    "RoomReservationPayload",
    "UnknownPayload",
    "SourcePayload",
    "parse_payload",
    "dump_payload",
    "payload_richness",
    # Events
    "EventCandidate",
    "TransitionRequest",
    "RestoreRequest",
    "ReservationRequest",
    "StatusHistoryEntry",
    "EventResponse",
    "StatusHistoryResponse",
    "PermissionsResponse",
    "event_to_response",
    "history_to_response",
    "history_entry",
    # Provider
    "ProviderEvent",
    "ProviderEventType",
]
