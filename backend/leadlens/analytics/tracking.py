"""Convenience tracking functions for pages, tools, forms and webinars."""

from typing import Optional

from .engine import AnalyticsEngine
from .events import EventCategory, EventType, NewEvent, UserEvent


async def _track(
    engine: AnalyticsEngine,
    session_id: str,
    event_type: EventType,
    category: EventCategory,
    action: str,
    user_id: Optional[str] = None,
    label: Optional[str] = None,
    value: Optional[float] = None,
    **metadata,
) -> UserEvent:
    return await engine.track_event(NewEvent(
        user_id=user_id,
        session_id=session_id,
        type=event_type,
        category=category,
        action=action,
        label=label,
        value=value,
        metadata={k: v for k, v in metadata.items() if v is not None},
    ))


async def track_page_view(
    engine: AnalyticsEngine,
    session_id: str,
    page: str,
    user_id: Optional[str] = None,
    source: Optional[str] = None,
    medium: Optional[str] = None,
    campaign: Optional[str] = None,
    landing: bool = False,
) -> UserEvent:
    """Track a page view. Landing views count as acquisition."""
    return await _track(
        engine,
        session_id,
        EventType.PAGE_VIEW,
        EventCategory.ACQUISITION if landing else EventCategory.ENGAGEMENT,
        "view",
        user_id=user_id,
        page=page,
        source=source,
        medium=medium,
        campaign=campaign,
    )


async def track_tool_start(
    engine: AnalyticsEngine,
    session_id: str,
    tool: str,
    user_id: Optional[str] = None,
) -> UserEvent:
    return await _track(
        engine, session_id, EventType.TOOL_USE, EventCategory.ENGAGEMENT, "start",
        user_id=user_id, tool=tool,
    )


async def track_tool_complete(
    engine: AnalyticsEngine,
    session_id: str,
    tool: str,
    duration: Optional[float] = None,
    user_id: Optional[str] = None,
) -> UserEvent:
    """Track a finished tool run; ``duration`` is in seconds."""
    return await _track(
        engine, session_id, EventType.TOOL_USE, EventCategory.ENGAGEMENT, "complete",
        user_id=user_id, tool=tool, duration=duration,
    )


async def track_content_view(
    engine: AnalyticsEngine,
    session_id: str,
    content: str,
    duration: Optional[float] = None,
    scroll_depth: Optional[float] = None,
    user_id: Optional[str] = None,
) -> UserEvent:
    return await _track(
        engine, session_id, EventType.CONTENT_VIEW, EventCategory.ENGAGEMENT, "view",
        user_id=user_id, content=content, duration=duration, scrollDepth=scroll_depth,
    )


async def track_cta_click(
    engine: AnalyticsEngine,
    session_id: str,
    action: str,
    page: Optional[str] = None,
    user_id: Optional[str] = None,
    ab_test: Optional[str] = None,
    ab_variant: Optional[str] = None,
) -> UserEvent:
    return await _track(
        engine, session_id, EventType.CTA_CLICK, EventCategory.ENGAGEMENT, action,
        user_id=user_id, page=page, abTest=ab_test, abVariant=ab_variant,
    )


async def track_form_submit(
    engine: AnalyticsEngine,
    session_id: str,
    form: str,
    user_id: Optional[str] = None,
    page: Optional[str] = None,
) -> UserEvent:
    return await _track(
        engine, session_id, EventType.FORM_SUBMIT, EventCategory.CONVERSION, form,
        user_id=user_id, page=page,
    )


async def track_conversion(
    engine: AnalyticsEngine,
    session_id: str,
    goal: str,
    value: Optional[float] = None,
    user_id: Optional[str] = None,
    ab_test: Optional[str] = None,
    ab_variant: Optional[str] = None,
) -> UserEvent:
    """Track a goal completion; ``value`` is attributed revenue."""
    return await _track(
        engine, session_id, EventType.CONVERSION, EventCategory.CONVERSION, goal,
        user_id=user_id, value=value, abTest=ab_test, abVariant=ab_variant,
    )


async def track_exit(
    engine: AnalyticsEngine,
    session_id: str,
    page: str,
    exit_intent: bool = False,
    user_id: Optional[str] = None,
) -> UserEvent:
    return await _track(
        engine, session_id, EventType.EXIT, EventCategory.RETENTION, "exit",
        user_id=user_id, page=page, exitIntent=exit_intent,
    )


async def track_webinar_registration(
    engine: AnalyticsEngine,
    session_id: str,
    webinar_id: str,
    user_id: Optional[str] = None,
    source: Optional[str] = None,
) -> UserEvent:
    return await _track(
        engine, session_id, EventType.FORM_SUBMIT, EventCategory.CONVERSION,
        "webinar_registration",
        user_id=user_id, label=webinar_id, page="webinar", source=source,
    )


async def track_webinar_attendance(
    engine: AnalyticsEngine,
    session_id: str,
    webinar_id: str,
    minutes_watched: float,
    user_id: Optional[str] = None,
) -> UserEvent:
    return await _track(
        engine, session_id, EventType.CONVERSION, EventCategory.RETENTION,
        "webinar_attended",
        user_id=user_id, label=webinar_id, duration=minutes_watched,
    )
