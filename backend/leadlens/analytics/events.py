"""
Event Store

Append-only log of user events:
- Event model and JSON wire form
- Date-range and recency queries
- Capped durable mirror through a storage backend
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from ..core.storage import StorageBackend

logger = structlog.get_logger(__name__)

EVENTS_KEY = "analytics_events"

# Metadata keys read by the analytics core. The bag itself stays open.
METADATA_KEYS = frozenset({
    "page",
    "tool",
    "content",
    "source",
    "medium",
    "campaign",
    "device",
    "browser",
    "location",
    "duration",
    "scrollDepth",
    "exitIntent",
    "abTest",
    "abVariant",
})

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def check_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Reject non-scalar values under the keys the analytics core reads."""
    for key in METADATA_KEYS & metadata.keys():
        value = metadata[key]
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise ValueError(f"metadata.{key} must be a string, number or boolean")
    return metadata


class EventType(str, Enum):
    PAGE_VIEW = "page_view"
    TOOL_USE = "tool_use"
    CONTENT_VIEW = "content_view"
    CTA_CLICK = "cta_click"
    FORM_SUBMIT = "form_submit"
    CONVERSION = "conversion"
    EXIT = "exit"


class EventCategory(str, Enum):
    ENGAGEMENT = "engagement"
    CONVERSION = "conversion"
    RETENTION = "retention"
    ACQUISITION = "acquisition"


class NewEvent(BaseModel):
    """Event fields supplied by the caller; id and timestamp are assigned on tracking."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    session_id: str = Field(alias="sessionId", min_length=1)
    type: EventType
    category: EventCategory
    action: str
    label: Optional[str] = None
    value: Optional[float] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata")
    @classmethod
    def _check_metadata(cls, value: dict[str, Any]) -> dict[str, Any]:
        return check_metadata(value)

    @property
    def actor_id(self) -> str:
        """Identity used wherever unique users are counted."""
        return self.user_id or self.session_id


class UserEvent(NewEvent):
    """A tracked event. Immutable once created."""

    id: str
    timestamp: datetime

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        # Persisted buffers carry epoch milliseconds
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_serializer("timestamp", when_used="json")
    def _serialize_timestamp(self, value: datetime) -> int:
        return to_millis(value)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class DateRange(BaseModel):
    """Inclusive time window."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= timestamp <= self.end


def filter_by_date(events: list[UserEvent], date_range: Optional[DateRange]) -> list[UserEvent]:
    if date_range is None:
        return list(events)
    return [e for e in events if date_range.contains(e.timestamp)]


def generate_event_id(now: datetime) -> str:
    return f"event_{to_millis(now)}_{uuid.uuid4().hex[:11]}"


class EventStore:
    """In-memory event log with a capped durable mirror."""

    def __init__(
        self,
        storage: Optional[StorageBackend] = None,
        buffer_cap: int = 1000,
        clock: Optional[Clock] = None,
    ):
        self.storage = storage
        self.buffer_cap = buffer_cap
        self._clock = clock or utc_now
        self._events: list[UserEvent] = []

    def __len__(self) -> int:
        return len(self._events)

    def append(self, new_event: NewEvent) -> UserEvent:
        """Assign id and timestamp, then append to the log."""
        now = self._clock()
        event = UserEvent(
            **new_event.model_dump(),
            id=generate_event_id(now),
            timestamp=now,
        )
        self._events.append(event)

        logger.debug(
            "event_appended",
            event_id=event.id,
            event_type=event.type.value,
            actor_id=event.actor_id,
        )
        return event

    def events(self, date_range: Optional[DateRange] = None) -> list[UserEvent]:
        """Snapshot of the log, optionally restricted to a date range."""
        return filter_by_date(self._events, date_range)

    def recent(self, since: datetime) -> list[UserEvent]:
        """Events strictly newer than ``since``, oldest first.

        Walks backwards and stops at the first older event, relying on
        non-decreasing insertion timestamps.
        """
        window: list[UserEvent] = []
        for event in reversed(self._events):
            if event.timestamp <= since:
                break
            window.append(event)
        window.reverse()
        return window

    def persisted_buffer(self) -> list[UserEvent]:
        """The most recent ``buffer_cap`` events, in insertion order."""
        return self._events[-self.buffer_cap:]

    async def persist(self) -> None:
        """Write the capped buffer to storage. Storage errors propagate."""
        if self.storage is None:
            return
        await self.storage.save(EVENTS_KEY, [e.to_json() for e in self.persisted_buffer()])

    async def load(self) -> int:
        """Restore the persisted buffer into memory. Returns the number of events loaded."""
        if self.storage is None:
            return 0

        stored = await self.storage.load(EVENTS_KEY) or []
        loaded = [UserEvent.model_validate(item) for item in stored]
        self._events = loaded + self._events

        logger.info("events_loaded", count=len(loaded))
        return len(loaded)
