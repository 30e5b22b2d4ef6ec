"""
Calendar provider client.

The external calendar is consumed through the CalendarProvider protocol,
which returns ProviderEvent records carrying only identifying fields.
GraphCalendarProvider implements it against the Microsoft Graph REST API.

Provider calls are made before or after local conditional writes, never
inside them.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from backend.src.config.settings import AppSettings
from backend.src.schemas.provider import ProviderEvent
from backend.src.services.exceptions import NotFoundError, ProviderError
from backend.src.utils.logging_config import get_logger


logger = get_logger("services")

DEFAULT_TIMEOUT = 30.0  # seconds
USER_AGENT = "RoomCal-Backend"

# Only identifying fields are requested from the provider
SELECT_FIELDS = ",".join([
    "id", "iCalUId", "seriesMasterId", "subject", "start", "end",
    "originalStart", "location", "categories", "type", "isAllDay",
    "isCancelled", "changeKey",
])


class CalendarProvider(Protocol):
    """Read access to the external calendar."""

    def get_event(self, external_id: str) -> ProviderEvent:
        """Fetch one event by provider id (NotFoundError when absent)."""
        ...

    def list_events(self, calendar_id: str, start: datetime, end: datetime) -> List[ProviderEvent]:
        """Expanded events of a calendar whose occurrences fall in [start, end)."""
        ...


class GraphCalendarProvider:
    """
    CalendarProvider over the Graph REST API.

    Attributes:
        owner: Mailbox owning the calendars (users/{owner})
        base_url: API root (https://graph.microsoft.com/v1.0)
    """

    def __init__(
        self,
        base_url: str,
        owner: str,
        access_token: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the Graph client.

        Args:
            base_url: API root URL
            owner: Calendar owner mailbox
            access_token: Bearer token (acquired by the caller)
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)

        Raises:
            ValueError: If base_url or owner is empty
        """
        if not base_url:
            raise ValueError("base_url is required")
        if not owner:
            raise ValueError("owner is required")

        self.base_url = base_url.rstrip("/")
        self.owner = owner

        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
            "Prefer": 'outlook.timezone="UTC"',
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: AppSettings, **kwargs) -> "GraphCalendarProvider":
        """Build a client from application settings."""
        return cls(
            base_url=settings.provider_base_url,
            owner=settings.calendar_owner,
            access_token=settings.provider_access_token,
            timeout=settings.provider_timeout_seconds,
            **kwargs,
        )

    def close(self) -> None:
        self._client.close()

    def get_event(self, external_id: str) -> ProviderEvent:
        """
        Fetch one event by provider id.

        Raises:
            NotFoundError: If the provider does not know the id
            ProviderError: On communication failures
        """
        response = self._request(
            "GET",
            f"/users/{self.owner}/events/{external_id}",
            params={"$select": SELECT_FIELDS},
        )
        if response.status_code == 404:
            raise NotFoundError("ProviderEvent", external_id)
        self._raise_for_status(response)
        return self._parse(response.json())

    def list_events(self, calendar_id: str, start: datetime, end: datetime) -> List[ProviderEvent]:
        """
        List calendar view events in a window, following pagination links.

        Raises:
            ProviderError: On communication failures
        """
        params: Optional[Dict[str, Any]] = {
            "startDateTime": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "endDateTime": end.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "$select": SELECT_FIELDS,
            "$top": 100,
        }
        url = f"/users/{self.owner}/calendars/{calendar_id}/calendarView"

        events: List[ProviderEvent] = []
        while url:
            response = self._request("GET", url, params=params)
            self._raise_for_status(response)
            body = response.json()
            events.extend(self._parse(item) for item in body.get("value", []))
            url = body.get("@odata.nextLink")
            params = None  # nextLink carries its own query string

        logger.info(
            "Fetched provider calendar view",
            extra={"calendar_id": calendar_id, "event_count": len(events)}
        )
        return events

    def _request(self, method: str, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            return self._client.request(method, url, params=params)
        except httpx.ConnectError as e:
            raise ProviderError(f"Failed to connect to calendar provider: {e}")
        except httpx.TimeoutException as e:
            raise ProviderError(f"Calendar provider request timed out: {e}")

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise ProviderError(
                f"Calendar provider returned status {response.status_code}",
                status_code=response.status_code,
            )

    @staticmethod
    def _parse(item: Dict[str, Any]) -> ProviderEvent:
        try:
            return ProviderEvent.model_validate(item)
        except PydanticValidationError as e:
            raise ProviderError(f"Unexpected provider event shape: {e.error_count()} error(s)")
