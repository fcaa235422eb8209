"""
Metrics Calculator

Pure derivations over a list of events:
- Traffic (users, sessions, bounce rate, session duration)
- Conversions and revenue attribution
- Tool usage and content performance
- User journeys
- Predictive heuristics (lead score, churn risk, lifetime value)

The predictive figures are fixed heuristics, not statistical models.
"""

import math
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Iterable

from pydantic import BaseModel, Field

from .events import EventType, UserEvent

LEAD_SCORE_WEIGHTS = {
    EventType.PAGE_VIEW: 1,
    EventType.CONTENT_VIEW: 3,
    EventType.TOOL_USE: 5,
    EventType.CTA_CLICK: 7,
    EventType.FORM_SUBMIT: 10,
}
LEAD_SCORE_CAP = 100

JOURNEY_TOP_N = 5


class ToolMetrics(BaseModel):
    users: int
    sessions: int
    completions: int
    avg_duration: float
    drop_off_rate: float


class ContentMetrics(BaseModel):
    views: int
    unique_views: int
    avg_time_spent: float
    share_rate: float
    engagement_score: int


class UserJourney(BaseModel):
    common_paths: list[list[str]] = Field(default_factory=list)
    drop_off_points: list[str] = Field(default_factory=list)
    conversion_paths: list[list[str]] = Field(default_factory=list)


class AnalyticsMetrics(BaseModel):
    """Aggregate metrics for a set of events."""
    # Traffic
    total_users: int
    new_users: int
    returning_users: int
    sessions: int
    page_views: int
    avg_session_duration: float  # seconds
    bounce_rate: float

    # Conversion
    conversions: int
    conversion_rate: float
    goal_completions: dict[str, int]
    revenue_attribution: float

    # Tools and content
    tool_usage: dict[str, ToolMetrics]
    content_performance: dict[str, ContentMetrics]

    # Behaviour
    user_journey: UserJourney

    # Predictive
    lead_score: int
    churn_risk: int
    lifetime_value: int


def _ratio(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return numerator / denominator * 100


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def round_half_up(value: float) -> int:
    """Round halves upwards."""
    return math.floor(value + 0.5)


# ==================== TRAFFIC ====================

def unique_users(events: Iterable[UserEvent]) -> int:
    """Distinct actors: user id, or session id for anonymous visitors."""
    return len({e.actor_id for e in events})


def first_seen(events: Iterable[UserEvent]) -> dict[str, datetime]:
    """Earliest timestamp per actor."""
    seen: dict[str, datetime] = {}
    for event in events:
        actor = event.actor_id
        if actor not in seen or event.timestamp < seen[actor]:
            seen[actor] = event.timestamp
    return seen


def new_users(events: list[UserEvent], history: Iterable[UserEvent]) -> int:
    """Actors whose all-time first event falls inside the span of ``events``."""
    if not events:
        return 0

    period_start = min(e.timestamp for e in events)
    period_end = max(e.timestamp for e in events)

    return sum(
        1 for ts in first_seen(history).values()
        if period_start <= ts <= period_end
    )


def returning_users(events: list[UserEvent], history: Iterable[UserEvent]) -> int:
    return unique_users(events) - new_users(events, history)


def sessions(events: Iterable[UserEvent]) -> int:
    return len({e.session_id for e in events})


def page_views(events: Iterable[UserEvent]) -> int:
    return sum(1 for e in events if e.type == EventType.PAGE_VIEW)


def avg_session_duration(events: Iterable[UserEvent]) -> float:
    """Mean of (last - first) event time per session, in seconds."""
    bounds: dict[str, list[datetime]] = {}
    for event in events:
        span = bounds.get(event.session_id)
        if span is None:
            bounds[event.session_id] = [event.timestamp, event.timestamp]
        else:
            span[0] = min(span[0], event.timestamp)
            span[1] = max(span[1], event.timestamp)

    durations = [(end - start).total_seconds() for start, end in bounds.values()]
    return _mean(durations)


def bounce_rate(events: Iterable[UserEvent]) -> float:
    """Share of sessions (with page views) that saw exactly one page view."""
    views_per_session = Counter(e.session_id for e in events if e.type == EventType.PAGE_VIEW)
    bounced = sum(1 for count in views_per_session.values() if count == 1)
    return _ratio(bounced, len(views_per_session))


# ==================== CONVERSIONS ====================

def conversions(events: Iterable[UserEvent]) -> int:
    return sum(1 for e in events if e.type == EventType.CONVERSION)


def conversion_rate(events: list[UserEvent]) -> float:
    return _ratio(conversions(events), unique_users(events))


def goal_completions(events: Iterable[UserEvent]) -> dict[str, int]:
    """Conversion count per conversion action."""
    return dict(Counter(e.action for e in events if e.type == EventType.CONVERSION))


def revenue_attribution(events: Iterable[UserEvent]) -> float:
    return sum(e.value for e in events if e.type == EventType.CONVERSION and e.value)


# ==================== TOOLS & CONTENT ====================

def tool_metrics(events: Iterable[UserEvent]) -> dict[str, ToolMetrics]:
    by_tool: dict[str, list[UserEvent]] = defaultdict(list)
    for event in events:
        if event.type == EventType.TOOL_USE:
            by_tool[event.metadata.get("tool") or "unknown"].append(event)

    result = {}
    for tool, tool_events in by_tool.items():
        completions = sum(1 for e in tool_events if e.action == "complete")
        starts = sum(1 for e in tool_events if e.action == "start")
        durations = [e.metadata["duration"] for e in tool_events if e.metadata.get("duration")]

        result[tool] = ToolMetrics(
            users=unique_users(tool_events),
            sessions=sessions(tool_events),
            completions=completions,
            avg_duration=_mean(durations),
            drop_off_rate=_ratio(starts - completions, starts),
        )
    return result


def engagement_score(avg_time_spent: float) -> int:
    """Coarse bucket on average time spent, in seconds."""
    if avg_time_spent > 60:
        return 85
    if avg_time_spent > 30:
        return 65
    return 45


def content_metrics(events: Iterable[UserEvent]) -> dict[str, ContentMetrics]:
    by_content: dict[str, list[UserEvent]] = defaultdict(list)
    for event in events:
        if event.type == EventType.CONTENT_VIEW:
            by_content[event.metadata.get("content") or "unknown"].append(event)

    result = {}
    for content, content_events in by_content.items():
        durations = [e.metadata["duration"] for e in content_events if e.metadata.get("duration")]
        avg_time_spent = _mean(durations)
        shares = sum(1 for e in content_events if e.action == "share")

        result[content] = ContentMetrics(
            views=len(content_events),
            unique_views=unique_users(content_events),
            avg_time_spent=avg_time_spent,
            share_rate=_ratio(shares, len(content_events)),
            engagement_score=engagement_score(avg_time_spent),
        )
    return result


# ==================== BEHAVIOUR ====================

def _session_paths(events: Iterable[UserEvent]) -> dict[str, list[UserEvent]]:
    grouped: dict[str, list[UserEvent]] = defaultdict(list)
    for event in events:
        grouped[event.session_id].append(event)
    for session_events in grouped.values():
        session_events.sort(key=lambda e: e.timestamp)
    return grouped


def _step_label(event: UserEvent) -> str:
    return event.metadata.get("page") or event.action or event.type.value


def user_journey(events: Iterable[UserEvent]) -> UserJourney:
    grouped = _session_paths(events)

    paths: list[tuple[str, ...]] = []
    conversion_paths: list[list[str]] = []
    for session_events in grouped.values():
        path = tuple(_step_label(e) for e in session_events)
        paths.append(path)
        if any(e.type == EventType.CONVERSION for e in session_events):
            conversion_paths.append(list(path))

    # Counter.most_common keeps first-seen order among equal counts
    common_paths = [list(path) for path, _ in Counter(paths).most_common(JOURNEY_TOP_N)]

    # A page view that ends its session counts as an exit from that page
    page_views_count: Counter = Counter()
    page_exits: Counter = Counter()
    for session_events in grouped.values():
        last_index = len(session_events) - 1
        for index, event in enumerate(session_events):
            if event.type != EventType.PAGE_VIEW:
                continue
            page = event.metadata.get("page") or "unknown"
            page_views_count[page] += 1
            if index == last_index:
                page_exits[page] += 1

    exit_rates = [
        (page, _ratio(exits, page_views_count[page]))
        for page, exits in page_exits.items()
    ]
    exit_rates.sort(key=lambda item: item[1], reverse=True)

    return UserJourney(
        common_paths=common_paths,
        drop_off_points=[page for page, _ in exit_rates[:JOURNEY_TOP_N]],
        conversion_paths=conversion_paths[:JOURNEY_TOP_N],
    )


# ==================== PREDICTIVE ====================

def lead_score(events: Iterable[UserEvent]) -> int:
    score = sum(LEAD_SCORE_WEIGHTS.get(e.type, 0) for e in events)
    return min(score, LEAD_SCORE_CAP)


def churn_risk(events: Iterable[UserEvent], now: datetime, window_days: int = 7) -> int:
    """Recency/frequency heuristic over the last ``window_days``."""
    cutoff = now - timedelta(days=window_days)
    recent_count = sum(1 for e in events if e.timestamp > cutoff)

    if recent_count == 0:
        return 85
    if recent_count > 10:
        return 15
    return max(10, 60 - recent_count * 5)


def lifetime_value(events: list[UserEvent]) -> int:
    return round_half_up(revenue_attribution(events) + lead_score(events) * 2)


def calculate_metrics(
    events: list[UserEvent],
    history: list[UserEvent],
    now: datetime,
    churn_window_days: int = 7,
) -> AnalyticsMetrics:
    """Derive the full metrics aggregate.

    ``events`` is the (optionally date-filtered) set being reported on;
    ``history`` is the full log, needed to tell new actors from returning ones.
    """
    total_users = unique_users(events)
    new = new_users(events, history)

    return AnalyticsMetrics(
        total_users=total_users,
        new_users=new,
        returning_users=total_users - new,
        sessions=sessions(events),
        page_views=page_views(events),
        avg_session_duration=avg_session_duration(events),
        bounce_rate=bounce_rate(events),
        conversions=conversions(events),
        conversion_rate=conversion_rate(events),
        goal_completions=goal_completions(events),
        revenue_attribution=revenue_attribution(events),
        tool_usage=tool_metrics(events),
        content_performance=content_metrics(events),
        user_journey=user_journey(events),
        lead_score=lead_score(events),
        churn_risk=churn_risk(events, now, churn_window_days),
        lifetime_value=lifetime_value(events),
    )
