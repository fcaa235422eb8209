"""
A/B Testing (Experiment Analysis)

Implements experiment management over the shared event log:
- Test creation, validation and lifecycle
- Deterministic, stateless variant assignment
- Results recomputed from tagged events
- Simplified significance estimate
"""

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

import structlog
from pydantic import BaseModel, Field

from ..core.exceptions import InvalidTestDefinitionError, InvalidTestTransitionError, TestNotFoundError
from ..core.storage import StorageBackend
from .events import EventType, UserEvent, to_millis
from .metrics import round_half_up, unique_users

logger = structlog.get_logger(__name__)

AB_TESTS_KEY = "ab_tests"
MIN_SAMPLE_SIZE = 100


class TestStatus(str, Enum):
    __test__ = False  # keep pytest from collecting this class

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class Variant(BaseModel):
    """Experiment variant. Counters are derived on each results read."""
    id: str
    name: str
    description: str = ""
    traffic: float  # percentage 0-100
    participants: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    confidence: float = 0.0
    is_winner: bool = False


class ABTest(BaseModel):
    """A/B test experiment."""
    id: str
    name: str
    description: str = ""
    status: TestStatus = TestStatus.DRAFT
    start_date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    end_date: Optional[datetime] = None
    goal: str = ""
    variants: list[Variant]
    significance: float = 0.0
    duration_days: int = 30


class VariantDefinition(BaseModel):
    id: str
    name: str
    description: str = ""
    traffic: float


class ABTestDefinition(BaseModel):
    """Input for creating a test."""
    id: Optional[str] = None
    name: str
    description: str = ""
    status: TestStatus = TestStatus.DRAFT
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    goal: str = ""
    variants: list[VariantDefinition]
    duration_days: int = 30


def string_hash(value: str) -> int:
    """Non-negative 32-bit ``h = 31*h + c`` hash over UTF-16 code units.

    Same hash the web client buckets with.
    """
    h = 0
    data = value.encode("utf-16-le")
    for i in range(0, len(data), 2):
        code_unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + code_unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def assign_bucket(user_id: str, test_id: str) -> int:
    return string_hash(user_id + test_id) % 100


def calculate_significance(variants: list[Variant]) -> int:
    """Approximate confidence (%) that the first two variants differ.

    Pooled two-proportion z-score mapped onto fixed confidence steps. This
    is a coarse approximation, not a rigorous test.
    """
    if len(variants) < 2:
        return 0

    control, variant = variants[0], variants[1]
    if control.participants < MIN_SAMPLE_SIZE or variant.participants < MIN_SAMPLE_SIZE:
        return 0

    control_rate = control.conversion_rate / 100
    variant_rate = variant.conversion_rate / 100
    diff = abs(variant_rate - control_rate)

    pooled_rate = (control.conversions + variant.conversions) / (
        control.participants + variant.participants
    )
    variance = pooled_rate * (1 - pooled_rate) * (
        1 / control.participants + 1 / variant.participants
    )
    # Conversions are event counts and may exceed participants
    if variance <= 0:
        return 0

    z_score = diff / math.sqrt(variance)

    if z_score > 2.58:
        return 99
    if z_score > 1.96:
        return 95
    if z_score > 1.645:
        return 90
    return round_half_up(min(z_score * 50, 85))


def validate_definition(definition: ABTestDefinition) -> None:
    if not definition.variants:
        raise InvalidTestDefinitionError("A/B test needs at least one variant")

    ids = [v.id for v in definition.variants]
    if len(set(ids)) != len(ids):
        raise InvalidTestDefinitionError(f"Duplicate variant ids: {ids}")

    for v in definition.variants:
        if not 0 <= v.traffic <= 100:
            raise InvalidTestDefinitionError(
                f"Variant {v.id} traffic must be between 0 and 100, got {v.traffic}"
            )

    total_traffic = sum(v.traffic for v in definition.variants)
    if abs(total_traffic - 100.0) > 0.01:
        raise InvalidTestDefinitionError(
            f"Variant traffic must sum to 100, got {total_traffic}"
        )


class ABTestManager:
    """A/B test registry, assignment and analysis."""

    def __init__(self, storage: Optional[StorageBackend] = None):
        self.storage = storage
        self._tests: dict[str, ABTest] = {}

    def create_test(self, definition: ABTestDefinition) -> str:
        """Validate and register a test. Returns its id."""
        validate_definition(definition)

        # Variant lists are fixed once a test exists
        if definition.id is not None and definition.id in self._tests:
            raise InvalidTestDefinitionError(f"A/B test {definition.id} already exists")

        test_id = definition.id or (
            f"test_{to_millis(datetime.now(timezone.utc))}_{uuid.uuid4().hex[:11]}"
        )
        test = ABTest(
            id=test_id,
            name=definition.name,
            description=definition.description,
            status=definition.status,
            start_date=definition.start_date or datetime.now(timezone.utc),
            end_date=definition.end_date,
            goal=definition.goal,
            variants=[Variant(**v.model_dump()) for v in definition.variants],
            duration_days=definition.duration_days,
        )
        self._tests[test_id] = test

        logger.info(
            "ab_test_created",
            test_id=test_id,
            status=test.status.value,
            variants=[v.id for v in test.variants],
        )
        return test_id

    def get_test(self, test_id: str) -> Optional[ABTest]:
        return self._tests.get(test_id)

    def list_tests(self, status: Optional[TestStatus] = None) -> list[ABTest]:
        tests = list(self._tests.values())
        if status:
            tests = [t for t in tests if t.status == status]
        return tests

    def _set_status(self, test_id: str, status: TestStatus) -> ABTest:
        test = self._tests.get(test_id)
        if test is None:
            raise TestNotFoundError(test_id)
        if test.status == TestStatus.COMPLETED:
            raise InvalidTestTransitionError(test_id, test.status.value, status.value)

        update: dict = {"status": status}
        if status == TestStatus.COMPLETED:
            update["end_date"] = datetime.now(timezone.utc)
        test = test.model_copy(update=update)
        self._tests[test_id] = test

        logger.info("ab_test_status_changed", test_id=test_id, status=status.value)
        return test

    def start_test(self, test_id: str) -> ABTest:
        return self._set_status(test_id, TestStatus.RUNNING)

    def pause_test(self, test_id: str) -> ABTest:
        return self._set_status(test_id, TestStatus.PAUSED)

    def complete_test(self, test_id: str) -> ABTest:
        return self._set_status(test_id, TestStatus.COMPLETED)

    def get_assignment(self, test_id: str, user_id: str) -> Optional[str]:
        """Variant id for a user in a running test, derived from a hash of user and test."""
        test = self._tests.get(test_id)
        if test is None or test.status != TestStatus.RUNNING:
            return None

        bucket = assign_bucket(user_id, test_id)

        cumulative = 0.0
        for variant in test.variants:
            cumulative += variant.traffic
            if bucket < cumulative:
                return variant.id

        # Fallback to first variant
        return test.variants[0].id if test.variants else None

    def record_event(self, event: UserEvent) -> bool:
        """Check experiment tagging on a tracked event.

        Returns True when the event is attributed to a known variant of a
        running test. Nothing is counted here; results are derived on read.
        """
        test_id = event.metadata.get("abTest")
        if not event.user_id or not test_id:
            return False

        test = self._tests.get(test_id)
        variant_id = event.metadata.get("abVariant")
        if test is None or not any(v.id == variant_id for v in test.variants):
            logger.warning(
                "ab_event_untracked",
                event_id=event.id,
                test_id=test_id,
                variant_id=variant_id,
            )
            return False

        if test.status != TestStatus.RUNNING:
            return False

        logger.debug(
            "ab_event_recorded",
            test_id=test_id,
            variant_id=variant_id,
            event_type=event.type.value,
        )
        return True

    def get_results(self, test_id: str, events: Iterable[UserEvent]) -> Optional[ABTest]:
        """Recompute variant counters, winner and confidence from the event log."""
        test = self._tests.get(test_id)
        if test is None:
            return None

        tagged = [e for e in events if e.metadata.get("abTest") == test_id]

        variants = []
        for variant in test.variants:
            variant_events = [e for e in tagged if e.metadata.get("abVariant") == variant.id]
            participants = unique_users(variant_events)
            conversions = sum(1 for e in variant_events if e.type == EventType.CONVERSION)
            conversion_rate = conversions / participants * 100 if participants > 0 else 0.0

            variants.append(variant.model_copy(update={
                "participants": participants,
                "conversions": conversions,
                "conversion_rate": conversion_rate,
            }))

        # Highest rate wins; the earlier variant keeps ties
        best = variants[0] if variants else None
        for variant in variants[1:]:
            if variant.conversion_rate > best.conversion_rate:
                best = variant

        confidence = calculate_significance(variants)
        result = test.model_copy(update={
            "variants": [
                v.model_copy(update={"is_winner": best is not None and v.id == best.id, "confidence": confidence})
                for v in variants
            ],
            "significance": confidence,
        })

        # Keep the last computed counters as a snapshot for persistence
        self._tests[test_id] = result
        return result

    async def persist(self) -> None:
        """Write test definitions to storage. Storage errors propagate."""
        if self.storage is None:
            return
        await self.storage.save(
            AB_TESTS_KEY,
            [t.model_dump(mode="json") for t in self._tests.values()],
        )

    async def load(self) -> int:
        """Load persisted tests; they replace registered tests with the same id."""
        if self.storage is None:
            return 0

        stored = await self.storage.load(AB_TESTS_KEY) or []
        for item in stored:
            test = ABTest.model_validate(item)
            self._tests[test.id] = test

        logger.info("ab_tests_loaded", count=len(stored))
        return len(stored)


def setup_default_tests(manager: ABTestManager) -> None:
    """Register the platform's default experiments."""
    manager.create_test(ABTestDefinition(
        id="tool_landing_cta",
        name="Tool Landing CTA Test",
        description="Testing different CTA buttons on tool landing pages",
        status=TestStatus.RUNNING,
        goal="tool_start",
        variants=[
            VariantDefinition(
                id="control",
                name='Control - "Start Assessment"',
                description="Original CTA button text",
                traffic=50,
            ),
            VariantDefinition(
                id="variant_a",
                name='Variant A - "Discover Your Potential"',
                description="More aspirational CTA text",
                traffic=50,
            ),
        ],
        duration_days=30,
    ))
