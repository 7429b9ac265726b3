"""Event and accumulation records."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field


class EventType(str, Enum):
    OPEN_TIME_START = "open_time_start"
    OPEN_TIME_END = "open_time_end"
    ACTIVE_TIME_START = "active_time_start"
    ACTIVE_TIME_END = "active_time_end"
    CHECKPOINT = "checkpoint"


class Event(BaseModel):
    """A tab lifecycle event.

    Events are append-only. The only field that ever changes after insert is
    ``is_processed``, and only the aggregation engine flips it.

    ``activity_id`` is None for events on the open-time timeline of a visit.
    ``resolution`` marks events synthesized by crash recovery rather than
    captured live.

    Both snake_case and the camelCase names used by the capture side are
    accepted on input.
    """

    id: int | None = None
    timestamp: int
    event_type: EventType = Field(
        validation_alias=AliasChoices("event_type", "eventType", "type")
    )
    tab_id: int = Field(validation_alias=AliasChoices("tab_id", "tabId"))
    url: str
    visit_id: str = Field(validation_alias=AliasChoices("visit_id", "visitId"))
    activity_id: str | None = Field(
        default=None, validation_alias=AliasChoices("activity_id", "activityId")
    )
    is_processed: bool = Field(
        default=False, validation_alias=AliasChoices("is_processed", "isProcessed")
    )
    resolution: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> Event:
        """Build an event from a SQLite row (or any mapping)."""
        return cls.model_validate(dict(row))

    @property
    def timeline_key(self) -> tuple[str, str | None]:
        """(visit_id, activity_id) pair identifying this event's timeline."""
        return (self.visit_id, self.activity_id)


class AccumulationDelta(BaseModel):
    """Time to add to one (date, url) accumulation record."""

    date: str
    url: str
    hostname: str
    parent_domain: str
    open_time_to_add: int = 0
    active_time_to_add: int = 0

    @property
    def total(self) -> int:
        return self.open_time_to_add + self.active_time_to_add


class AggregationResult(BaseModel):
    """Outcome of one engine run."""

    success: bool
    processed_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


def now_ms() -> int:
    """Current wall-clock time in milliseconds since epoch."""
    return int(time.time() * 1000)


def utc_date_string(timestamp_ms: int) -> str:
    """UTC calendar day (YYYY-MM-DD) of a millisecond timestamp."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%d")


def accumulation_key(date: str, url: str) -> str:
    return f"{date}:{url}"
