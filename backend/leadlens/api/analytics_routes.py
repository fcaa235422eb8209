"""
Analytics API Routes

Implements endpoints for:
- Event ingestion
- Metrics, funnels and cohorts
- A/B testing
- Real-time dashboard
- Data export
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..analytics.ab_testing import ABTest, ABTestDefinition, TestStatus
from ..analytics.cohorts import CohortAnalysis, CohortGranularity
from ..analytics.engine import AnalyticsEngine, AnalyticsExport
from ..analytics.events import DateRange, EventCategory, EventType, NewEvent, check_metadata
from ..analytics.funnels import FunnelAnalysis
from ..analytics.metrics import AnalyticsMetrics
from ..analytics.realtime import DashboardWidget, RealTimeSnapshot
from ..core.exceptions import (
    FunnelNotFoundError,
    InvalidTestDefinitionError,
    InvalidTestTransitionError,
    TestNotFoundError,
)

router = APIRouter(prefix="/analytics", tags=["analytics"])


def get_engine(request: Request) -> AnalyticsEngine:
    return request.app.state.engine


def get_date_range(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Optional[DateRange]:
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise HTTPException(status_code=400, detail="Both start and end are required")
    return DateRange(start=start, end=end)


# ==================== EVENT TRACKING ====================

class TrackEventRequest(BaseModel):
    """Event tracking request. The session id may come from the X-Session-ID header."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
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


@router.post("/track")
async def track_event(
    request: TrackEventRequest,
    http_request: Request,
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Track an analytics event."""
    session_id = request.session_id or http_request.headers.get("X-Session-ID")
    if not session_id:
        raise HTTPException(status_code=422, detail="sessionId is required")

    event = await engine.track_event(NewEvent(
        user_id=request.user_id,
        session_id=session_id,
        type=request.type,
        category=request.category,
        action=request.action,
        label=request.label,
        value=request.value,
        metadata=request.metadata,
    ))
    return {"tracked": True, "event_id": event.id}


@router.get("/metrics", response_model=AnalyticsMetrics)
async def get_metrics(
    date_range: Optional[DateRange] = Depends(get_date_range),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Aggregate metrics, optionally for a date range."""
    return engine.get_metrics(date_range)


# ==================== FUNNELS ====================

@router.get("/funnels")
async def list_funnels(engine: AnalyticsEngine = Depends(get_engine)):
    return {"funnels": engine.list_funnels()}


@router.get("/funnels/{funnel_name}", response_model=FunnelAnalysis)
async def analyze_funnel(
    funnel_name: str,
    date_range: Optional[DateRange] = Depends(get_date_range),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Step-by-step conversion for a funnel."""
    try:
        return engine.analyze_funnel(funnel_name, date_range)
    except FunnelNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ==================== A/B TESTING ====================

@router.post("/experiments")
async def create_experiment(
    request: ABTestDefinition,
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Create a new A/B test."""
    try:
        test_id = await engine.create_ab_test(request)
    except InvalidTestDefinitionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"test_id": test_id}


@router.get("/experiments")
async def list_experiments(
    status: Optional[TestStatus] = None,
    engine: AnalyticsEngine = Depends(get_engine),
):
    """List all experiments."""
    return {"experiments": [t.model_dump(mode="json") for t in engine.list_ab_tests(status)]}


@router.get("/experiments/{test_id}/results", response_model=ABTest)
async def get_experiment_results(
    test_id: str,
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Variant counters, winner and confidence recomputed from events."""
    results = engine.get_ab_test_results(test_id)
    if results is None:
        raise HTTPException(status_code=404, detail="Experiment not found")
    return results


@router.get("/experiments/{test_id}/variant")
async def get_user_variant(
    test_id: str,
    user_id: str = Query(..., min_length=1),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Get the variant assignment for a user."""
    variant = engine.get_ab_test_assignment(test_id, user_id)
    if not variant:
        raise HTTPException(status_code=404, detail="Experiment not found or not running")
    return {"test_id": test_id, "variant": variant}


@router.post("/experiments/{test_id}/start", response_model=ABTest)
async def start_experiment(test_id: str, engine: AnalyticsEngine = Depends(get_engine)):
    try:
        return await engine.start_ab_test(test_id)
    except TestNotFoundError:
        raise HTTPException(status_code=404, detail="Experiment not found")
    except InvalidTestTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/experiments/{test_id}/pause", response_model=ABTest)
async def pause_experiment(test_id: str, engine: AnalyticsEngine = Depends(get_engine)):
    try:
        return await engine.pause_ab_test(test_id)
    except TestNotFoundError:
        raise HTTPException(status_code=404, detail="Experiment not found")
    except InvalidTestTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/experiments/{test_id}/stop", response_model=ABTest)
async def stop_experiment(test_id: str, engine: AnalyticsEngine = Depends(get_engine)):
    try:
        return await engine.complete_ab_test(test_id)
    except TestNotFoundError:
        raise HTTPException(status_code=404, detail="Experiment not found")
    except InvalidTestTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


# ==================== COHORTS ====================

@router.get("/cohorts", response_model=list[CohortAnalysis])
async def get_cohorts(
    granularity: CohortGranularity = CohortGranularity.MONTHLY,
    engine: AnalyticsEngine = Depends(get_engine),
):
    return engine.generate_cohort_analysis(granularity)


# ==================== REAL-TIME ====================

@router.get("/realtime", response_model=RealTimeSnapshot)
async def get_realtime(engine: AnalyticsEngine = Depends(get_engine)):
    """Activity over the last 30 minutes."""
    return engine.get_real_time_metrics()


@router.get("/realtime/widgets", response_model=list[DashboardWidget])
async def get_realtime_widgets(engine: AnalyticsEngine = Depends(get_engine)):
    return engine.get_dashboard_widgets()


# ==================== EXPORT ====================

@router.get("/export", response_model=AnalyticsExport)
async def export_data(
    date_range: Optional[DateRange] = Depends(get_date_range),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Events plus all derived views."""
    return engine.export_data(date_range)
