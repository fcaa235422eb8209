"""
Funnel Analyzer

Evaluates named, ordered step sequences against the event log and reports
per-step users, conversion and drop-off.
"""

from typing import Any, Iterable

from pydantic import BaseModel, Field, field_validator

from ..core.exceptions import FunnelNotFoundError
from .events import EventType, UserEvent
from .metrics import unique_users

_MISSING = object()

# Wire names accepted in criteria for top-level fields
_FIELD_ALIASES = {"userId": "user_id", "sessionId": "session_id"}


class FunnelStep(BaseModel):
    """One funnel step: an event type plus equality constraints."""
    name: str
    event_type: EventType
    criteria: dict[str, Any] = Field(default_factory=dict)

    @field_validator("criteria", mode="before")
    @classmethod
    def _flatten_metadata(cls, criteria: Any) -> Any:
        # {"metadata": {"page": "tool"}} is shorthand for {"metadata.page": "tool"}
        if not isinstance(criteria, dict):
            return criteria
        flat = {}
        for key, value in criteria.items():
            if key == "metadata" and isinstance(value, dict):
                for sub_key, sub_value in value.items():
                    flat[f"metadata.{sub_key}"] = sub_value
            else:
                flat[key] = value
        return flat


class ConversionFunnel(BaseModel):
    name: str
    steps: list[FunnelStep]


class FunnelStepResult(BaseModel):
    step: str
    users: int
    conversions: int
    conversion_rate: float
    drop_off: int
    drop_off_rate: float


class FunnelAnalysis(BaseModel):
    funnel: ConversionFunnel
    analysis: list[FunnelStepResult]
    total_conversion_rate: float


DEFAULT_FUNNELS = [
    ConversionFunnel(
        name="Tool Conversion",
        steps=[
            FunnelStep(name="Landing", event_type=EventType.PAGE_VIEW, criteria={"category": "acquisition"}),
            FunnelStep(name="Tool View", event_type=EventType.PAGE_VIEW, criteria={"metadata.page": "tool"}),
            FunnelStep(name="Tool Start", event_type=EventType.TOOL_USE, criteria={"action": "start"}),
            FunnelStep(name="Tool Complete", event_type=EventType.TOOL_USE, criteria={"action": "complete"}),
            FunnelStep(name="Soft Registration", event_type=EventType.CONVERSION, criteria={"action": "soft_member"}),
        ],
    ),
    ConversionFunnel(
        name="Content Engagement",
        steps=[
            FunnelStep(name="Content Discovery", event_type=EventType.CONTENT_VIEW, criteria={"action": "view"}),
            FunnelStep(name="Content Engagement", event_type=EventType.CONTENT_VIEW, criteria={"metadata.duration": 30}),
            FunnelStep(name="CTA Click", event_type=EventType.CTA_CLICK),
            FunnelStep(name="Lead Capture", event_type=EventType.FORM_SUBMIT, criteria={"action": "lead_form"}),
        ],
    ),
    ConversionFunnel(
        name="Full Membership",
        steps=[
            FunnelStep(name="Soft Member", event_type=EventType.CONVERSION, criteria={"action": "soft_member"}),
            FunnelStep(name="Tool Usage", event_type=EventType.TOOL_USE, criteria={"value": 3}),
            FunnelStep(name="Premium Content", event_type=EventType.CONTENT_VIEW, criteria={"metadata.content": "premium"}),
            FunnelStep(name="Upgrade Intent", event_type=EventType.CTA_CLICK, criteria={"action": "upgrade"}),
            FunnelStep(name="Full Member", event_type=EventType.CONVERSION, criteria={"action": "full_member"}),
        ],
    ),
]


def _criterion_value(event: UserEvent, key: str) -> Any:
    if key.startswith("metadata."):
        return event.metadata.get(key[len("metadata."):], _MISSING)
    return getattr(event, _FIELD_ALIASES.get(key, key), _MISSING)


def match_step(event: UserEvent, step: FunnelStep) -> bool:
    """True when the event has the step's type and satisfies every criterion."""
    if event.type != step.event_type:
        return False
    return all(_criterion_value(event, key) == value for key, value in step.criteria.items())


def analyze_funnel(funnel: ConversionFunnel, events: Iterable[UserEvent]) -> FunnelAnalysis:
    events = list(events)
    analysis: list[FunnelStepResult] = []
    previous_users = 0

    for index, step in enumerate(funnel.steps):
        users = unique_users(e for e in events if match_step(e, step))

        if index == 0:
            rate, drop_off, drop_off_rate = 100.0, 0, 0.0
        elif previous_users > 0:
            rate = users / previous_users * 100
            drop_off = previous_users - users
            drop_off_rate = drop_off / previous_users * 100
        else:
            rate, drop_off, drop_off_rate = 0.0, 0, 0.0

        analysis.append(FunnelStepResult(
            step=step.name,
            users=users,
            conversions=users,
            conversion_rate=rate,
            drop_off=drop_off,
            drop_off_rate=drop_off_rate,
        ))
        previous_users = users

    first_users = analysis[0].users if analysis else 0
    final_users = analysis[-1].users if analysis else 0
    total_rate = final_users / first_users * 100 if first_users > 0 else 0.0

    return FunnelAnalysis(funnel=funnel, analysis=analysis, total_conversion_rate=total_rate)


class FunnelRegistry:
    """Named funnel configuration."""

    def __init__(self, funnels: Iterable[ConversionFunnel] = ()):
        self._funnels: dict[str, ConversionFunnel] = {}
        for funnel in funnels:
            self.register(funnel)

    def register(self, funnel: ConversionFunnel) -> None:
        self._funnels[funnel.name] = funnel

    def get(self, name: str) -> ConversionFunnel:
        try:
            return self._funnels[name]
        except KeyError:
            raise FunnelNotFoundError(name) from None

    def names(self) -> list[str]:
        return list(self._funnels)
