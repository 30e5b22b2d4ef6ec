"""
Calendar provider event schema.

Only the identifying fields of provider events are modeled: stable id,
series master id, calendar-wide unique id, start/end instants, location
string, categories, subject and type. Field aliases follow the Graph REST
representation so raw responses validate directly.
"""

import enum
import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from backend.src.utils.formatting import to_utc_naive

# Graph returns seven fractional digits; datetime holds six
_EXTRA_FRACTION = re.compile(r"(\.\d{6})\d+")


class ProviderEventType(str, enum.Enum):
    """Provider-side recurrence role."""
    SINGLE_INSTANCE = "singleInstance"
    SERIES_MASTER = "seriesMaster"
    OCCURRENCE = "occurrence"
    EXCEPTION = "exception"


class ProviderEvent(BaseModel):
    """Event as returned by the calendar provider (all fields except id optional)."""

    id: str
    ical_uid: Optional[str] = Field(default=None, alias="iCalUId")
    series_master_id: Optional[str] = Field(default=None, alias="seriesMasterId")
    subject: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    original_start: Optional[datetime] = Field(default=None, alias="originalStart")
    location: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    type: ProviderEventType = ProviderEventType.SINGLE_INSTANCE
    is_all_day: bool = Field(default=False, alias="isAllDay")
    is_cancelled: bool = Field(default=False, alias="isCancelled")
    change_key: Optional[str] = Field(default=None, alias="changeKey")

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def flatten_graph_shapes(cls, data):
        """Accept Graph's nested {dateTime, timeZone} and {displayName} objects."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ("start", "end"):
            value = data.get(key)
            if isinstance(value, dict):
                raw = value.get("dateTime")
                if raw:
                    raw = _EXTRA_FRACTION.sub(r"\1", raw)
                if raw and value.get("timeZone", "UTC").upper() == "UTC" and not raw.endswith("Z"):
                    raw = raw + "Z"
                data[key] = raw
        location = data.get("location")
        if isinstance(location, dict):
            data["location"] = location.get("displayName")
        return data

    @field_validator("start", "end", "original_start")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc_naive(v)
