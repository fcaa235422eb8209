"""
Real-time Monitor

Live view over the most recent events:
- Rolling mirror of the last events for dashboards
- Windowed snapshot (active users, page views, conversions)
- Top pages and traffic sources
- Dashboard widgets
"""

from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import structlog
from pydantic import BaseModel, Field

from ..core.storage import StorageBackend
from .events import EventType, UserEvent, to_millis
from .metrics import unique_users

logger = structlog.get_logger(__name__)

REALTIME_KEY = "analytics_realtime"
TOP_N = 10


class PageViews(BaseModel):
    page: str
    views: int


class SourceUsers(BaseModel):
    source: str
    users: int


class RealTimeSnapshot(BaseModel):
    """What is happening right now."""
    active_users: int
    current_page_views: int
    realtime_conversions: int
    top_pages: list[PageViews] = Field(default_factory=list)
    top_sources: list[SourceUsers] = Field(default_factory=list)


class DashboardWidget(BaseModel):
    """Dashboard widget data."""
    widget_id: str
    title: str
    type: str  # counter, gauge, table
    value: Optional[float] = None
    data: Optional[list] = None
    config: dict = Field(default_factory=dict)


def top_pages(events: Iterable[UserEvent], limit: int = TOP_N) -> list[PageViews]:
    counts = Counter(
        e.metadata.get("page") or "unknown"
        for e in events
        if e.type == EventType.PAGE_VIEW
    )
    return [PageViews(page=page, views=views) for page, views in counts.most_common(limit)]


def top_sources(events: Iterable[UserEvent], limit: int = TOP_N) -> list[SourceUsers]:
    actors: dict[str, set[str]] = {}
    for event in events:
        actors.setdefault(event.metadata.get("source") or "direct", set()).add(event.actor_id)

    ranked = sorted(actors.items(), key=lambda item: len(item[1]), reverse=True)
    return [SourceUsers(source=source, users=len(users)) for source, users in ranked[:limit]]


def build_snapshot(events: list[UserEvent]) -> RealTimeSnapshot:
    return RealTimeSnapshot(
        active_users=unique_users(events),
        current_page_views=sum(1 for e in events if e.type == EventType.PAGE_VIEW),
        realtime_conversions=sum(1 for e in events if e.type == EventType.CONVERSION),
        top_pages=top_pages(events),
        top_sources=top_sources(events),
    )


class RealTimeMonitor:
    """Rolling mirror of recent events plus windowed snapshots."""

    def __init__(
        self,
        storage: Optional[StorageBackend] = None,
        buffer_cap: int = 100,
        window_minutes: int = 30,
    ):
        self.storage = storage
        self.window = timedelta(minutes=window_minutes)
        self._recent: deque[UserEvent] = deque(maxlen=buffer_cap)
        self._last_update: Optional[datetime] = None

    @property
    def recent_events(self) -> list[UserEvent]:
        return list(self._recent)

    @property
    def last_update(self) -> Optional[datetime]:
        return self._last_update

    def record(self, event: UserEvent, now: datetime) -> None:
        """Add an event to the mirror, evicting the oldest past the cap."""
        self._recent.append(event)
        self._last_update = now

    def window_start(self, now: datetime) -> datetime:
        return now - self.window

    def snapshot(self, events: list[UserEvent]) -> RealTimeSnapshot:
        """Snapshot over events already restricted to the live window."""
        return build_snapshot(events)

    def get_widgets(self, snapshot: RealTimeSnapshot) -> list[DashboardWidget]:
        """Dashboard widgets for a snapshot."""
        return [
            DashboardWidget(
                widget_id="active_users",
                title="Active Users (30m)",
                type="counter",
                value=snapshot.active_users,
            ),
            DashboardWidget(
                widget_id="page_views",
                title="Page Views (30m)",
                type="counter",
                value=snapshot.current_page_views,
            ),
            DashboardWidget(
                widget_id="conversions",
                title="Conversions (30m)",
                type="counter",
                value=snapshot.realtime_conversions,
            ),
            DashboardWidget(
                widget_id="top_pages",
                title="Top Pages",
                type="table",
                data=[p.model_dump() for p in snapshot.top_pages],
            ),
            DashboardWidget(
                widget_id="top_sources",
                title="Top Sources",
                type="table",
                data=[s.model_dump() for s in snapshot.top_sources],
            ),
        ]

    async def persist(self) -> None:
        """Write ``{lastUpdate, recentEvents}``. Storage errors propagate."""
        if self.storage is None:
            return
        await self.storage.save(REALTIME_KEY, {
            "lastUpdate": to_millis(self._last_update) if self._last_update else None,
            "recentEvents": [e.to_json() for e in self._recent],
        })

    async def load(self) -> int:
        if self.storage is None:
            return 0

        stored = await self.storage.load(REALTIME_KEY) or {}
        for item in stored.get("recentEvents", []):
            self._recent.append(UserEvent.model_validate(item))
        if stored.get("lastUpdate"):
            self._last_update = datetime.fromtimestamp(stored["lastUpdate"] / 1000, tz=timezone.utc)

        logger.debug("realtime_mirror_loaded", count=len(self._recent))
        return len(self._recent)
