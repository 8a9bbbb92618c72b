"""Multi-tenant data sync: ingestion, tenant views and chart cache upkeep.

Change events from the source system are written to the shared base
schema, then projected into per-tenant views that expose only the columns
that tenant pushes. Cached chart results are invalidated by the tables each
event touched.

Exports:
    SyncPipeline: Applies one inbound event and schedules downstream work.
    BackgroundDispatcher: Supervised, bounded runner for downstream tasks.
    TenantRegistry: Short-name assignment and schema/role provisioning.
    ViewGenerator: Keeps tenant views in step with pushed column sets.
    ColumnAccessTracker: Records the column set behind each tenant view.
    ChartCache: Content-addressed chart result cache.
    TargetStore: Upserts, deletes and clears rows in base tables.
    TenantAdmin: Tenant purge and reset.
"""

from __future__ import annotations

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

__all__ = [
    "BackgroundDispatcher",
    "ChartCache",
    "ColumnAccessTracker",
    "PushLog",
    "SchemaCatalog",
    "SyncPipeline",
    "SyncSummaryRepository",
    "TargetStore",
    "TenantAdmin",
    "TenantRegistry",
    "ViewGenerator",
    "WebhookLogRepository",
]
