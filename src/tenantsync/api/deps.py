"""FastAPI dependency injection for sync services and admin authentication.

Services are built once in the application lifespan and stored on
app.state; these dependencies hand them to endpoint functions.
"""

from __future__ import annotations

import hmac

from fastapi import Depends, Request

from src.tenantsync.config import Settings
from src.tenantsync.core.errors import AuthError
from src.tenantsync.sync.admin import TenantAdmin
from src.tenantsync.sync.cache import ChartCache
from src.tenantsync.sync.column_access import ColumnAccessTracker
from src.tenantsync.sync.dispatcher import BackgroundDispatcher
from src.tenantsync.sync.pipeline import SyncPipeline
from src.tenantsync.sync.push_log import WebhookLogRepository
from src.tenantsync.sync.tenants import TenantRegistry
from src.tenantsync.sync.views import ViewGenerator


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_pipeline(request: Request) -> SyncPipeline:
    return request.app.state.pipeline


def get_registry(request: Request) -> TenantRegistry:
    return request.app.state.registry


def get_view_generator(request: Request) -> ViewGenerator:
    return request.app.state.views


def get_tracker(request: Request) -> ColumnAccessTracker:
    return request.app.state.tracker


def get_cache(request: Request) -> ChartCache:
    return request.app.state.cache


def get_webhook_logs(request: Request) -> WebhookLogRepository:
    return request.app.state.webhook_logs


def get_admin(request: Request) -> TenantAdmin:
    return request.app.state.admin


def get_dispatcher(request: Request) -> BackgroundDispatcher:
    return request.app.state.dispatcher


async def require_admin(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Reject requests without a matching X-Admin-Key header.

    Admin endpoints are closed entirely while ADMIN_API_KEY is unset.

    Raises:
        AuthError: If the key is missing, wrong, or not configured.
    """
    expected = settings.ADMIN_API_KEY
    provided = request.headers.get("X-Admin-Key", "")
    if not expected or not provided:
        raise AuthError("Admin key required")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError("Invalid admin key")
