"""
Analytics Engine

Service object tying the analytics core together. One instance is built and
owned by the application's composition root, which calls ``init`` on startup
and ``dispose`` on shutdown.

Tracking is best-effort: persistence and forwarding failures are logged and
counted, never raised to the caller. Caller mistakes (unknown funnel,
malformed test definition) do raise.
"""

from datetime import datetime
from typing import Any, Optional

import structlog
from prometheus_client import Counter
from pydantic import BaseModel

from ..core.config import Settings, get_settings
from ..core.storage import StorageBackend, build_storage
from .ab_testing import ABTest, ABTestDefinition, ABTestManager, TestStatus, setup_default_tests
from .cohorts import CohortAnalysis, CohortGranularity, generate_cohort_analysis
from .collector import RemoteCollector
from .events import Clock, DateRange, EventStore, NewEvent, UserEvent, utc_now
from .funnels import DEFAULT_FUNNELS, ConversionFunnel, FunnelAnalysis, FunnelRegistry, analyze_funnel
from .metrics import AnalyticsMetrics, calculate_metrics
from .realtime import DashboardWidget, RealTimeMonitor, RealTimeSnapshot

logger = structlog.get_logger(__name__)

EVENTS_TRACKED = Counter(
    "leadlens_events_tracked_total",
    "Events accepted by the analytics engine",
    ["event_type"],
)
FORWARD_FAILURES = Counter(
    "leadlens_event_forward_failures_total",
    "Events the remote collector did not accept",
)
PERSISTENCE_FAILURES = Counter(
    "leadlens_persistence_failures_total",
    "Failed writes to durable storage",
    ["key"],
)
LOAD_FAILURES = Counter(
    "leadlens_load_failures_total",
    "Persisted keys that could not be restored on startup",
    ["key"],
)


class PlatformCapabilities(BaseModel):
    """What the hosting platform offers the engine."""
    durable_storage: bool = True
    network: bool = True


class AnalyticsExport(BaseModel):
    """Events plus every derived view, for offline analysis."""
    events: list[UserEvent]
    metrics: AnalyticsMetrics
    cohorts: list[CohortAnalysis]
    ab_tests: list[ABTest]


class AnalyticsEngine:
    """Event store, metrics, funnels, A/B tests, cohorts and real-time view."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Optional[StorageBackend] = None,
        collector: Optional[RemoteCollector] = None,
        clock: Optional[Clock] = None,
        capabilities: Optional[PlatformCapabilities] = None,
        funnels: Optional[list[ConversionFunnel]] = None,
        default_tests: bool = True,
    ):
        self.settings = settings or get_settings()
        self.capabilities = capabilities or PlatformCapabilities()
        self._clock = clock or utc_now

        if self.capabilities.durable_storage:
            self.storage = storage if storage is not None else build_storage(self.settings)
        else:
            self.storage = None

        if self.capabilities.network:
            self.collector = collector or RemoteCollector(
                self.settings.collector_url,
                timeout=self.settings.collector_timeout,
            )
        else:
            self.collector = None

        self.store = EventStore(
            storage=self.storage,
            buffer_cap=self.settings.event_buffer_cap,
            clock=self._clock,
        )
        self.ab_tests = ABTestManager(storage=self.storage)
        self.realtime = RealTimeMonitor(
            storage=self.storage,
            buffer_cap=self.settings.realtime_buffer_cap,
            window_minutes=self.settings.realtime_window_minutes,
        )
        self.funnels = FunnelRegistry([*DEFAULT_FUNNELS, *(funnels or [])])

        if default_tests:
            setup_default_tests(self.ab_tests)

        self._initialized = False

    # ==================== LIFECYCLE ====================

    async def init(self) -> None:
        """Load persisted events, tests and the real-time mirror."""
        if self._initialized:
            return

        await self._load("analytics_events", self.store.load)
        await self._load("ab_tests", self.ab_tests.load)
        await self._load("analytics_realtime", self.realtime.load)

        self._initialized = True
        logger.info(
            "analytics_engine_initialized",
            events=len(self.store),
            ab_tests=len(self.ab_tests.list_tests()),
            storage=self.storage.name if self.storage else None,
            collector_enabled=bool(self.collector and self.collector.enabled),
        )

    async def dispose(self) -> None:
        """Release network and storage resources."""
        if self.collector is not None:
            await self.collector.close()
        if self.storage is not None:
            try:
                await self.storage.close()
            except Exception as e:
                logger.warning("storage_close_failed", error=str(e))

        self._initialized = False
        logger.info("analytics_engine_disposed")

    async def _load(self, key: str, load) -> None:
        # A failed key leaves its in-memory state as constructed
        try:
            await load()
        except Exception as e:
            LOAD_FAILURES.labels(key=key).inc()
            logger.error("persisted_data_load_failed", key=key, error=str(e))

    async def _persist(self, key: str, persist) -> None:
        try:
            await persist()
        except Exception as e:
            PERSISTENCE_FAILURES.labels(key=key).inc()
            logger.error("persistence_failed", key=key, error=str(e))

    # ==================== EVENT TRACKING ====================

    async def track_event(self, new_event: NewEvent | dict[str, Any]) -> UserEvent:
        """Record an event. Persistence and forwarding failures never reach the caller."""
        if isinstance(new_event, dict):
            new_event = NewEvent.model_validate(new_event)

        event = self.store.append(new_event)
        EVENTS_TRACKED.labels(event_type=event.type.value).inc()

        await self._persist("analytics_events", self.store.persist)

        if self.collector is not None and self.collector.enabled:
            try:
                forwarded = await self.collector.send(event)
            except Exception as e:
                logger.error("event_forward_error", event_id=event.id, error=str(e))
                forwarded = False
            if not forwarded:
                FORWARD_FAILURES.inc()

        try:
            self.ab_tests.record_event(event)
        except Exception as e:
            logger.error("ab_event_attribution_failed", event_id=event.id, error=str(e))

        self.realtime.record(event, self._clock())
        await self._persist("analytics_realtime", self.realtime.persist)

        logger.debug(
            "event_tracked",
            event_id=event.id,
            event_type=event.type.value,
            action=event.action,
        )
        return event

    def get_events(self, date_range: Optional[DateRange] = None) -> list[UserEvent]:
        return self.store.events(date_range)

    # ==================== METRICS ====================

    def get_metrics(self, date_range: Optional[DateRange] = None) -> AnalyticsMetrics:
        return calculate_metrics(
            self.store.events(date_range),
            self.store.events(),
            now=self._clock(),
            churn_window_days=self.settings.churn_window_days,
        )

    # ==================== FUNNELS ====================

    def list_funnels(self) -> list[str]:
        return self.funnels.names()

    def analyze_funnel(self, funnel_name: str, date_range: Optional[DateRange] = None) -> FunnelAnalysis:
        """Step-by-step conversion table. Raises FunnelNotFoundError for unknown names."""
        funnel = self.funnels.get(funnel_name)
        return analyze_funnel(funnel, self.store.events(date_range))

    # ==================== A/B TESTING ====================

    async def create_ab_test(self, definition: ABTestDefinition | dict[str, Any]) -> str:
        if isinstance(definition, dict):
            definition = ABTestDefinition.model_validate(definition)

        test_id = self.ab_tests.create_test(definition)
        await self._persist("ab_tests", self.ab_tests.persist)
        return test_id

    async def start_ab_test(self, test_id: str) -> ABTest:
        test = self.ab_tests.start_test(test_id)
        await self._persist("ab_tests", self.ab_tests.persist)
        return test

    async def pause_ab_test(self, test_id: str) -> ABTest:
        test = self.ab_tests.pause_test(test_id)
        await self._persist("ab_tests", self.ab_tests.persist)
        return test

    async def complete_ab_test(self, test_id: str) -> ABTest:
        test = self.ab_tests.complete_test(test_id)
        await self._persist("ab_tests", self.ab_tests.persist)
        return test

    def list_ab_tests(self, status: Optional[TestStatus] = None) -> list[ABTest]:
        return self.ab_tests.list_tests(status)

    def get_ab_test_assignment(self, test_id: str, user_id: str) -> Optional[str]:
        return self.ab_tests.get_assignment(test_id, user_id)

    def get_ab_test_results(self, test_id: str) -> Optional[ABTest]:
        return self.ab_tests.get_results(test_id, self.store.events())

    # ==================== COHORTS ====================

    def generate_cohort_analysis(
        self,
        granularity: CohortGranularity | str = CohortGranularity.MONTHLY,
    ) -> list[CohortAnalysis]:
        return generate_cohort_analysis(self.store.events(), granularity)

    # ==================== REAL-TIME ====================

    def get_real_time_metrics(self) -> RealTimeSnapshot:
        now: datetime = self._clock()
        return self.realtime.snapshot(self.store.recent(self.realtime.window_start(now)))

    def get_dashboard_widgets(self) -> list[DashboardWidget]:
        return self.realtime.get_widgets(self.get_real_time_metrics())

    # ==================== EXPORT ====================

    def export_data(self, date_range: Optional[DateRange] = None) -> AnalyticsExport:
        return AnalyticsExport(
            events=self.store.events(date_range),
            metrics=self.get_metrics(date_range),
            cohorts=self.generate_cohort_analysis(),
            ab_tests=self.ab_tests.list_tests(),
        )
