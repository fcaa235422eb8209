# Analytics core: event store, metrics, funnels, A/B tests, cohorts, real-time

from .events import (
    EventStore,
    UserEvent,
    NewEvent,
    EventType,
    EventCategory,
    DateRange,
    METADATA_KEYS,
)

from .metrics import (
    AnalyticsMetrics,
    calculate_metrics,
)

from .funnels import (
    ConversionFunnel,
    FunnelStep,
    FunnelAnalysis,
    DEFAULT_FUNNELS,
    analyze_funnel,
)

from .ab_testing import (
    ABTestManager,
    ABTest,
    ABTestDefinition,
    Variant,
    VariantDefinition,
    TestStatus,
    setup_default_tests,
)

from .cohorts import (
    CohortAnalysis,
    CohortGranularity,
    generate_cohort_analysis,
)

from .realtime import (
    RealTimeMonitor,
    RealTimeSnapshot,
    DashboardWidget,
)

from .collector import RemoteCollector

from .engine import (
    AnalyticsEngine,
    AnalyticsExport,
    PlatformCapabilities,
)

__all__ = [
    # Events
    "EventStore",
    "UserEvent",
    "NewEvent",
    "EventType",
    "EventCategory",
    "DateRange",
    "METADATA_KEYS",
    # Metrics
    "AnalyticsMetrics",
    "calculate_metrics",
    # Funnels
    "ConversionFunnel",
    "FunnelStep",
    "FunnelAnalysis",
    "DEFAULT_FUNNELS",
    "analyze_funnel",
    # A/B Testing
    "ABTestManager",
    "ABTest",
    "ABTestDefinition",
    "Variant",
    "VariantDefinition",
    "TestStatus",
    "setup_default_tests",
    # Cohorts
    "CohortAnalysis",
    "CohortGranularity",
    "generate_cohort_analysis",
    # Real-time
    "RealTimeMonitor",
    "RealTimeSnapshot",
    "DashboardWidget",
    # Transport
    "RemoteCollector",
    # Engine
    "AnalyticsEngine",
    "AnalyticsExport",
    "PlatformCapabilities",
]
