"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, Sentry, the
SyncError exception handler, lifespan events that build the engine, Redis
client and sync services, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from types import SimpleNamespace

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncEngine

from src.tenantsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.tenantsync.api.v1.router import router as v1_router
from src.tenantsync.config import Settings, get_settings
from src.tenantsync.core.database import close_db, create_engine, init_db
from src.tenantsync.core.errors import SyncError
from src.tenantsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.tenantsync.core.redis import close_redis, create_redis
from src.tenantsync.sync.admin import TenantAdmin
from src.tenantsync.sync.cache import ChartCache
from src.tenantsync.sync.catalog import SchemaCatalog
from src.tenantsync.sync.column_access import ColumnAccessTracker
from src.tenantsync.sync.dispatcher import BackgroundDispatcher
from src.tenantsync.sync.pipeline import SyncPipeline
from src.tenantsync.sync.push_log import PushLog, SyncSummaryRepository, WebhookLogRepository
from src.tenantsync.sync.store import TargetStore
from src.tenantsync.sync.tenants import TenantRegistry
from src.tenantsync.sync.views import ViewGenerator


def build_services(
    settings: Settings,
    engine: AsyncEngine,
    redis: aioredis.Redis | None = None,
) -> SimpleNamespace:
    """Construct every sync service around one engine and Redis client."""
    registry = TenantRegistry(engine, settings, redis)
    tracker = ColumnAccessTracker(engine)
    catalog = SchemaCatalog(engine)
    views = ViewGenerator(registry, tracker, catalog, settings)
    store = TargetStore(engine, settings)
    cache = ChartCache(engine, default_schema=settings.BASE_SCHEMA)
    push_log = PushLog(engine)
    webhook_logs = WebhookLogRepository(engine)
    summaries = SyncSummaryRepository(engine)
    dispatcher = BackgroundDispatcher(
        max_concurrency=settings.DISPATCH_MAX_CONCURRENCY,
        retry_attempts=settings.DISPATCH_RETRY_ATTEMPTS,
    )
    pipeline = SyncPipeline(
        store=store,
        views=views,
        cache=cache,
        push_log=push_log,
        webhook_logs=webhook_logs,
        summaries=summaries,
        dispatcher=dispatcher,
        webhook_secret=settings.WEBHOOK_SECRET,
    )
    admin = TenantAdmin(
        registry=registry,
        tracker=tracker,
        push_log=push_log,
        summaries=summaries,
        cache=cache,
        store=store,
        catalog=catalog,
    )
    return SimpleNamespace(
        registry=registry,
        tracker=tracker,
        catalog=catalog,
        views=views,
        store=store,
        cache=cache,
        push_log=push_log,
        webhook_logs=webhook_logs,
        summaries=summaries,
        dispatcher=dispatcher,
        pipeline=pipeline,
        admin=admin,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: build engine, Redis and services; drain and close on shutdown."""
    log = structlog.get_logger(__name__)
    settings: Settings = app.state.settings
    configure_structlog(settings)

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    engine = create_engine(settings)
    await init_db(engine, settings)
    redis = create_redis(settings)

    services = build_services(settings, engine, redis)
    app.state.engine = engine
    app.state.redis = redis
    for name, service in vars(services).items():
        setattr(app.state, name, service)
    log.info(
        "app.started",
        environment=settings.ENVIRONMENT.value,
        shared_schema=settings.SHARED_SCHEMA,
        base_schema=settings.BASE_SCHEMA,
        signature_check=bool(settings.WEBHOOK_SECRET),
    )

    yield

    await services.dispatcher.shutdown()
    await close_redis(redis)
    await close_db(engine)
    log.info("app.stopped")


async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Tenant Sync API",
        version="0.1.0",
        description="Multi-tenant data sync, tenant views and chart cache invalidation",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_exception_handler(SyncError, sync_error_handler)

    # Middleware is added in reverse order (last added = outermost)

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, sync webhook, tenants, cache)
    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
