"""
Cohort Analyzer

Groups identified users by the period of their first event and reports
retention and revenue per cohort.

Retention at a checkpoint is cumulative: the share of the cohort with any
event up to ``cohort start + offset``. Monthly revenue is a fixed 40/30/30
split of the cohort total, not a measured figure.
"""

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable

from pydantic import BaseModel

from .events import UserEvent
from .metrics import revenue_attribution, unique_users

RETENTION_CHECKPOINTS = {
    "week1": 7,
    "week2": 14,
    "week3": 21,
    "week4": 28,
    "month2": 60,
    "month3": 90,
    "month6": 180,
}

REVENUE_SPLIT = {"month1": 0.4, "month2": 0.3, "month3": 0.3}


class CohortGranularity(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class CohortRetention(BaseModel):
    week1: float
    week2: float
    week3: float
    week4: float
    month2: float
    month3: float
    month6: float


class CohortRevenue(BaseModel):
    total: float
    per_user: float
    month1: float
    month2: float
    month3: float


class CohortAnalysis(BaseModel):
    cohort_date: str
    size: int
    retention: CohortRetention
    revenue: CohortRevenue


def cohort_key(timestamp: datetime, granularity: CohortGranularity) -> str:
    """Week start (Sunday) as YYYY-MM-DD, or calendar month as YYYY-MM, in UTC."""
    day = timestamp.astimezone(timezone.utc).date()
    if granularity == CohortGranularity.WEEKLY:
        # weekday(): Monday=0 .. Sunday=6
        week_start = day - timedelta(days=(day.weekday() + 1) % 7)
        return week_start.isoformat()
    return f"{day.year}-{day.month:02d}"


def cohort_start(key: str) -> datetime:
    if len(key) == 7:
        key = f"{key}-01"
    return datetime.fromisoformat(key).replace(tzinfo=timezone.utc)


def cohort_retention(events: list[UserEvent], start: datetime) -> CohortRetention:
    size = unique_users(events)
    values = {}
    for name, days in RETENTION_CHECKPOINTS.items():
        checkpoint = start + timedelta(days=days)
        active = unique_users(e for e in events if e.timestamp <= checkpoint)
        values[name] = active / size * 100 if size else 0.0
    return CohortRetention(**values)


def cohort_revenue(events: list[UserEvent]) -> CohortRevenue:
    total = revenue_attribution(events)
    users = unique_users(events)
    return CohortRevenue(
        total=total,
        per_user=total / users if users > 0 else 0.0,
        **{month: total * share for month, share in REVENUE_SPLIT.items()},
    )


def generate_cohort_analysis(
    events: Iterable[UserEvent],
    granularity: CohortGranularity | str = CohortGranularity.MONTHLY,
) -> list[CohortAnalysis]:
    """Cohort rows, newest cohort first. Anonymous events are not part of any cohort."""
    granularity = CohortGranularity(granularity)

    by_user: dict[str, list[UserEvent]] = defaultdict(list)
    for event in events:
        if event.user_id:
            by_user[event.user_id].append(event)

    cohorts: dict[str, list[UserEvent]] = defaultdict(list)
    for user_events in by_user.values():
        first_seen = min(e.timestamp for e in user_events)
        cohorts[cohort_key(first_seen, granularity)].extend(user_events)

    results = [
        CohortAnalysis(
            cohort_date=key,
            size=unique_users(cohort_events),
            retention=cohort_retention(cohort_events, cohort_start(key)),
            revenue=cohort_revenue(cohort_events),
        )
        for key, cohort_events in cohorts.items()
    ]
    results.sort(key=lambda c: cohort_start(c.cohort_date), reverse=True)
    return results
