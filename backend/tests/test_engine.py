"""Tests for the analytics engine service."""
import httpx
import pytest

from leadlens.analytics import tracking
from leadlens.analytics.ab_testing import TestStatus
from leadlens.analytics.collector import RemoteCollector
from leadlens.analytics.engine import AnalyticsEngine, PlatformCapabilities
from leadlens.analytics.events import EVENTS_KEY, EventType
from leadlens.core.exceptions import InvalidTestDefinitionError, TestNotFoundError
from leadlens.core.storage import StorageBackend


class FailingStorage(StorageBackend):
    name = "failing"

    async def load(self, key):
        raise RuntimeError("storage offline")

    async def save(self, key, value):
        raise RuntimeError("quota exceeded")


def _experiment(**overrides):
    definition = {
        "id": "hero_copy",
        "name": "Hero copy",
        "status": "draft",
        "variants": [
            {"id": "control", "name": "Control", "traffic": 50},
            {"id": "bold", "name": "Bold", "traffic": 50},
        ],
    }
    definition.update(overrides)
    return definition


@pytest.mark.asyncio
async def test_track_event_accepts_wire_dict(engine, clock):
    event = await engine.track_event({
        "userId": "u1",
        "sessionId": "s1",
        "type": "cta_click",
        "category": "engagement",
        "action": "start_assessment",
        "metadata": {"page": "tools"},
    })

    assert event.timestamp == clock.now
    assert event.user_id == "u1"
    assert engine.get_events() == [event]


@pytest.mark.asyncio
async def test_storage_failures_do_not_reach_caller(settings, clock):
    engine = AnalyticsEngine(
        settings=settings,
        storage=FailingStorage(),
        clock=clock,
        capabilities=PlatformCapabilities(network=False),
    )
    await engine.init()

    event = await tracking.track_page_view(engine, "s1", "home")
    assert engine.get_events() == [event]
    assert engine.get_real_time_metrics().active_users == 1

    assert await engine.create_ab_test(_experiment()) == "hero_copy"


@pytest.mark.asyncio
async def test_forwarding_failures_do_not_reach_caller(settings, storage, clock):
    collector = RemoteCollector(
        "https://collector.test/api/analytics",
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503))),
    )
    engine = AnalyticsEngine(settings=settings, storage=storage, collector=collector, clock=clock)

    event = await tracking.track_cta_click(engine, "s1", "start_assessment")
    assert engine.get_events() == [event]
    await engine.dispose()


@pytest.mark.asyncio
async def test_state_survives_restart(settings, storage, clock):
    first = AnalyticsEngine(settings=settings, storage=storage, clock=clock,
                            capabilities=PlatformCapabilities(network=False))
    await first.init()
    await tracking.track_page_view(first, "s1", "home", user_id="u1")
    await tracking.track_conversion(first, "s1", "soft_member", value=25, user_id="u1")
    await first.pause_ab_test("tool_landing_cta")
    await first.dispose()

    second = AnalyticsEngine(settings=settings, storage=storage, clock=clock,
                             capabilities=PlatformCapabilities(network=False))
    await second.init()

    assert len(second.get_events()) == 2
    assert second.get_metrics().revenue_attribution == 25
    assert second.ab_tests.get_test("tool_landing_cta").status == TestStatus.PAUSED
    assert len(second.realtime.recent_events) == 2


@pytest.mark.asyncio
async def test_without_durable_storage(settings, clock):
    engine = AnalyticsEngine(
        settings=settings,
        clock=clock,
        capabilities=PlatformCapabilities(durable_storage=False, network=False),
    )
    await engine.init()

    assert engine.storage is None
    assert engine.collector is None
    await tracking.track_page_view(engine, "s1", "home")
    assert engine.get_metrics().page_views == 1


@pytest.mark.asyncio
async def test_experiment_lifecycle(engine):
    test_id = await engine.create_ab_test(_experiment())
    assert engine.get_ab_test_assignment(test_id, "abc") is None

    await engine.start_ab_test(test_id)
    variant = engine.get_ab_test_assignment(test_id, "abc")
    assert variant in {"control", "bold"}

    await tracking.track_cta_click(engine, "s1", "hero", user_id="abc", ab_test=test_id, ab_variant=variant)
    await tracking.track_conversion(engine, "s1", "soft_member", user_id="abc", ab_test=test_id, ab_variant=variant)

    results = engine.get_ab_test_results(test_id)
    winner = next(v for v in results.variants if v.is_winner)
    assert winner.id == variant
    assert winner.participants == 1
    assert winner.conversion_rate == 100

    completed = await engine.complete_ab_test(test_id)
    assert completed.status == TestStatus.COMPLETED
    assert engine.get_ab_test_assignment(test_id, "abc") is None


@pytest.mark.asyncio
async def test_experiment_errors(engine):
    with pytest.raises(InvalidTestDefinitionError):
        await engine.create_ab_test(_experiment(variants=[
            {"id": "control", "name": "Control", "traffic": 70},
        ]))
    with pytest.raises(TestNotFoundError):
        await engine.start_ab_test("missing")


@pytest.mark.asyncio
async def test_webinar_events(engine):
    registration = await tracking.track_webinar_registration(engine, "s1", "web_42", user_id="u1", source="email")
    attendance = await tracking.track_webinar_attendance(engine, "s1", "web_42", 45, user_id="u1")

    assert registration.type == EventType.FORM_SUBMIT
    assert registration.label == "web_42"
    assert registration.metadata == {"page": "webinar", "source": "email"}
    assert attendance.type == EventType.CONVERSION
    assert attendance.metadata == {"duration": 45}
    assert engine.get_metrics().goal_completions == {"webinar_attended": 1}


@pytest.mark.asyncio
async def test_export_data(engine):
    await tracking.track_page_view(engine, "s1", "home", user_id="u1")

    export = engine.export_data()
    assert len(export.events) == 1
    assert export.metrics.page_views == 1
    assert [c.size for c in export.cohorts] == [1]
    assert "tool_landing_cta" in [t.id for t in export.ab_tests]


@pytest.mark.asyncio
async def test_init_is_idempotent(engine):
    await engine.init()
    await tracking.track_page_view(engine, "s1", "home")
    await engine.init()
    assert len(engine.get_events()) == 1


@pytest.mark.asyncio
async def test_persisted_events_hold_last_1000_tracked(engine, storage):
    for i in range(1005):
        await tracking.track_page_view(engine, "s1", f"p{i}")

    stored = await storage.load(EVENTS_KEY)
    assert len(stored) == 1000
    assert [e["metadata"]["page"] for e in stored] == [f"p{i}" for i in range(5, 1005)]
    assert len(engine.get_events()) == 1005


@pytest.mark.asyncio
async def test_corrupt_events_key_does_not_block_other_loads(settings, storage, clock):
    first = AnalyticsEngine(settings=settings, storage=storage, clock=clock,
                            capabilities=PlatformCapabilities(network=False))
    await tracking.track_page_view(first, "s1", "home")
    await first.pause_ab_test("tool_landing_cta")
    await storage.save(EVENTS_KEY, [{"id": "broken"}])

    second = AnalyticsEngine(settings=settings, storage=storage, clock=clock,
                             capabilities=PlatformCapabilities(network=False))
    await second.init()

    assert second.get_events() == []
    assert second.ab_tests.get_test("tool_landing_cta").status == TestStatus.PAUSED
    assert second.get_ab_test_assignment("tool_landing_cta", "abc") is None
    assert len(second.realtime.recent_events) == 1


@pytest.mark.asyncio
async def test_non_scalar_experiment_tag_is_rejected_before_tracking(engine):
    with pytest.raises(ValueError):
        await engine.track_event({
            "sessionId": "s1",
            "type": "cta_click",
            "category": "engagement",
            "action": "hero",
            "metadata": {"abTest": ["tool_landing_cta"]},
        })
    assert engine.get_events() == []


@pytest.mark.asyncio
async def test_attribution_failure_does_not_reach_caller(engine, monkeypatch):
    def broken(event):
        raise TypeError("bad tag")

    monkeypatch.setattr(engine.ab_tests, "record_event", broken)

    event = await tracking.track_cta_click(engine, "s1", "hero", ab_test="tool_landing_cta", ab_variant="control")
    assert engine.get_events() == [event]
    assert engine.realtime.recent_events == [event]
