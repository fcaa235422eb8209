"""Shared fixtures: a controllable clock, event factories and an offline engine."""
from datetime import datetime, timedelta, timezone

import pytest

from leadlens.analytics.engine import AnalyticsEngine, PlatformCapabilities
from leadlens.analytics.events import EventCategory, EventType, UserEvent
from leadlens.core.config import Settings
from leadlens.core.storage import MemoryStorage

T0 = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def settings():
    return Settings(collector_url="")


@pytest.fixture
def engine(settings, storage, clock):
    return AnalyticsEngine(
        settings=settings,
        storage=storage,
        clock=clock,
        capabilities=PlatformCapabilities(network=False),
    )


@pytest.fixture
def make_event():
    counter = {"n": 0}

    def factory(
        event_type: EventType = EventType.PAGE_VIEW,
        session_id: str = "s1",
        user_id=None,
        timestamp: datetime = T0,
        action: str = "view",
        category: EventCategory = EventCategory.ENGAGEMENT,
        value=None,
        **metadata,
    ) -> UserEvent:
        counter["n"] += 1
        return UserEvent(
            id=f"event_{counter['n']}",
            timestamp=timestamp,
            user_id=user_id,
            session_id=session_id,
            type=event_type,
            category=category,
            action=action,
            value=value,
            metadata=metadata,
        )

    return factory
