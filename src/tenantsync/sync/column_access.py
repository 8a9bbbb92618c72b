"""Column access tracker.

Records, per (tenant, table), the sorted column set the tenant's view
exposes and when data was last pushed for it. Comparing an incoming column
set against the recorded one tells the view generator whether the view
definition has drifted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncEngine

from src.tenantsync.models.shared import TenantColumnAccess

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DriftResult:
    changed: bool
    columns: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ColumnAccessEntry:
    tenant_id: str
    table_name: str
    columns: list[str]
    last_push_at: datetime | None


def normalize_columns(columns) -> list[str]:
    """Deduplicate and sort a column list."""
    return sorted(set(columns))


class ColumnAccessTracker:
    """Upsert-only store of the column set behind each tenant view."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def get_columns(self, tenant_id: str, table_name: str) -> list[str] | None:
        """Return the recorded sorted column list, or None if never recorded."""
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(TenantColumnAccess.columns).where(
                    TenantColumnAccess.tenant_id == tenant_id,
                    TenantColumnAccess.table_name == table_name,
                )
            )
            columns = result.scalar_one_or_none()
        return list(columns) if columns is not None else None

    async def update_and_check_drift(
        self,
        tenant_id: str,
        table_name: str,
        columns: list[str],
    ) -> DriftResult:
        """Record the column set and report whether it differs from the last one.

        The record is upserted with a fresh last_push_at even when nothing
        changed, so freshness can be diagnosed independently of drift.
        """
        new_columns = normalize_columns(columns)
        previous = await self.get_columns(tenant_id, table_name)
        changed = previous is None or sorted(previous) != new_columns

        now = datetime.now(timezone.utc)
        stmt = pg_insert(TenantColumnAccess).values(
            tenant_id=tenant_id,
            table_name=table_name,
            columns=new_columns,
            last_push_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "table_name"],
            set_={
                "columns": stmt.excluded.columns,
                "last_push_at": stmt.excluded.last_push_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        async with self._engine.begin() as conn:
            await conn.execute(stmt)

        if changed:
            logger.info(
                "column_drift_detected",
                tenant_id=tenant_id,
                table=table_name,
                previous=previous,
                columns=new_columns,
            )
        return DriftResult(changed=changed, columns=new_columns)

    async def list_for_tenant(self, tenant_id: str) -> list[ColumnAccessEntry]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(
                    TenantColumnAccess.tenant_id,
                    TenantColumnAccess.table_name,
                    TenantColumnAccess.columns,
                    TenantColumnAccess.last_push_at,
                )
                .where(TenantColumnAccess.tenant_id == tenant_id)
                .order_by(TenantColumnAccess.table_name)
            )
            rows = result.fetchall()
        return [
            ColumnAccessEntry(
                tenant_id=r.tenant_id,
                table_name=r.table_name,
                columns=list(r.columns),
                last_push_at=r.last_push_at,
            )
            for r in rows
        ]

    async def delete_for_tenant(self, tenant_id: str) -> int:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(TenantColumnAccess).where(TenantColumnAccess.tenant_id == tenant_id)
            )
        return result.rowcount or 0

    async def count_for_tenant(self, tenant_id: str) -> int:
        return len(await self.list_for_tenant(tenant_id))
