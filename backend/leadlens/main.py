from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from .analytics.engine import AnalyticsEngine
from .api.analytics_routes import router as analytics_router
from .api.middleware import RequestLoggingMiddleware
from .core.config import get_settings
from .core.logging import setup_logging

settings = get_settings()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    setup_logging(settings)

    engine = AnalyticsEngine(settings)
    await engine.init()
    app.state.engine = engine
    logger.info("application_started", environment=settings.environment.value)

    yield

    # Cleanup
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Lead-generation analytics: events, funnels, A/B tests and cohorts",
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID", "X-Session-ID"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)

# Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# API routes
app.include_router(analytics_router, prefix="/api/v1")


@app.get("/", tags=["health"])
async def root():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "operational",
    }


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        return {"status": "starting"}

    return {
        "status": "healthy",
        "events": len(engine.store),
        "storage": engine.storage.name if engine.storage else None,
        "collector_enabled": bool(engine.collector and engine.collector.enabled),
    }
