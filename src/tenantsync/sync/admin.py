"""Tenant administration: purge and reset.

Purge removes everything the sync subsystem holds for a tenant: its schema
(with all views), its role, column access records, push log, sync summaries,
cache entries and finally its short name. Synced base-table rows are kept
unless explicitly requested. Purge previews by default and only executes
with an explicit confirmation.

Reset returns a tenant to a freshly-registered state: bookkeeping and synced
rows are cleared, cache entries are invalidated, but the short name and
schema stay so the next sync rebuilds views in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from src.tenantsync.core.errors import SyncError, TenantNotFoundError, ValidationError
from src.tenantsync.sync.cache import ChartCache
from src.tenantsync.sync.catalog import SchemaCatalog
from src.tenantsync.sync.column_access import ColumnAccessTracker
from src.tenantsync.sync.push_log import PushLog, SyncSummaryRepository
from src.tenantsync.sync.store import TargetStore
from src.tenantsync.sync.tables import (
    DEVICE_BASED_TABLES,
    DEVICE_OWNERSHIP_TABLE,
    PARENT_RELATION_TABLES,
    tenant_scoped_targets,
)
from src.tenantsync.sync.tenants import TenantRegistry

logger = structlog.get_logger(__name__)


def clear_order() -> list[str]:
    """Tenant-scoped tables ordered so dependents are cleared before what they join through.

    Parent-relation tables resolve ownership through their parent and
    device tables through device_tenants, so both go before the direct
    tables, and device_tenants itself goes last.
    """
    targets = tenant_scoped_targets()
    parents = [t for t in targets if t in PARENT_RELATION_TABLES]
    devices = [t for t in targets if t in DEVICE_BASED_TABLES]
    direct = [
        t
        for t in targets
        if t not in PARENT_RELATION_TABLES
        and t not in DEVICE_BASED_TABLES
        and t != DEVICE_OWNERSHIP_TABLE
    ]
    return parents + devices + direct + [DEVICE_OWNERSHIP_TABLE]


@dataclass
class PurgeReport:
    tenant_id: str
    short_name: str
    schema_name: str
    role_name: str
    dry_run: bool
    executed: bool = False
    views: list[str] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ResetReport:
    tenant_id: str
    column_access_rows: int = 0
    push_log_rows: int = 0
    sync_summary_rows: int = 0
    cache_entries_invalidated: int = 0
    cleared_rows: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


class TenantAdmin:
    """Destructive per-tenant maintenance operations."""

    def __init__(
        self,
        registry: TenantRegistry,
        tracker: ColumnAccessTracker,
        push_log: PushLog,
        summaries: SyncSummaryRepository,
        cache: ChartCache,
        store: TargetStore,
        catalog: SchemaCatalog,
    ) -> None:
        self._registry = registry
        self._tracker = tracker
        self._push_log = push_log
        self._summaries = summaries
        self._cache = cache
        self._store = store
        self._catalog = catalog

    async def purge_tenant(
        self,
        tenant_id: str,
        *,
        dry_run: bool = True,
        confirm: bool = False,
        delete_synced_data: bool = False,
    ) -> PurgeReport:
        """Delete a tenant and everything derived from it.

        Args:
            tenant_id: Tenant to purge.
            dry_run: Only count what would be removed.
            confirm: Must be True to execute when dry_run is False.
            delete_synced_data: Also delete the tenant's rows in base tables.

        Raises:
            TenantNotFoundError: If the tenant has no short name.
            ValidationError: If execution was requested without confirm.
        """
        tenant = await self._registry.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} is not registered")

        report = PurgeReport(
            tenant_id=tenant_id,
            short_name=tenant.short_name,
            schema_name=tenant.schema_name,
            role_name=tenant.role_name,
            dry_run=dry_run,
        )
        report.views = await self._catalog.list_views(tenant.schema_name)
        report.counts = {
            "views": len(report.views),
            "column_access_rows": await self._tracker.count_for_tenant(tenant_id),
            "push_log_rows": await self._push_log.count_for_tenant(tenant_id),
            "cache_entries": await self._cache.count_for_tenant(tenant_id),
        }
        if not delete_synced_data:
            report.warnings.append("Synced base-table rows are kept")

        if dry_run:
            logger.info("tenant_purge_preview", tenant_id=tenant_id, **report.counts)
            return report
        if not confirm:
            raise ValidationError("Purge requires confirm=true when dry_run is false")

        await self._registry.drop_schema_and_role(tenant.short_name)
        report.counts["column_access_rows"] = await self._tracker.delete_for_tenant(tenant_id)
        report.counts["push_log_rows"] = await self._push_log.delete_for_tenant(tenant_id)
        report.counts["sync_summary_rows"] = await self._summaries.delete_for_tenant(tenant_id)
        report.counts["cache_entries"] = await self._cache.delete_for_tenant(tenant_id)
        if delete_synced_data:
            cleared, warnings = await self._clear_synced_rows(tenant_id)
            report.counts["synced_rows"] = sum(cleared.values())
            report.warnings.extend(warnings)
        await self._registry.forget_tenant(tenant_id)

        report.executed = True
        logger.info("tenant_purged", tenant_id=tenant_id, short_name=tenant.short_name, **report.counts)
        return report

    async def reset_tenant(self, tenant_id: str) -> ResetReport:
        """Clear a tenant's synced data and bookkeeping, keeping its registration."""
        report = ResetReport(tenant_id=tenant_id)
        report.column_access_rows = await self._tracker.delete_for_tenant(tenant_id)
        report.push_log_rows = await self._push_log.delete_for_tenant(tenant_id)
        report.sync_summary_rows = await self._summaries.delete_for_tenant(tenant_id)
        report.cleared_rows, report.warnings = await self._clear_synced_rows(tenant_id)
        report.cache_entries_invalidated = await self._cache.invalidate_all_for_tenant(tenant_id)

        logger.info(
            "tenant_reset",
            tenant_id=tenant_id,
            tables_cleared=len(report.cleared_rows),
            rows_cleared=sum(report.cleared_rows.values()),
            warnings=len(report.warnings),
        )
        return report

    async def _clear_synced_rows(self, tenant_id: str) -> tuple[dict[str, int], list[str]]:
        cleared: dict[str, int] = {}
        warnings: list[str] = []
        for table in clear_order():
            try:
                cleared[table] = await self._store.clear_tenant_rows(table, tenant_id)
            except SyncError as exc:
                logger.warning("tenant_table_clear_failed", tenant_id=tenant_id, table=table, error=exc.message)
                warnings.append(f"{table}: {exc.message}")
        return cleared, warnings
