"""Push log, webhook audit log and full-sync summaries.

All three are append-only from the ingestion path. Rows are removed only by
tenant purge or reset.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncEngine

from src.tenantsync.models.shared import SyncSummary, TenantDataPushLog, WebhookLog

logger = structlog.get_logger(__name__)

MAX_SUMMARY_PRIMARY_KEYS = 1000


def coerce_push_id(value: Any) -> uuid.UUID:
    """Use value as the push id when it is a UUID, otherwise mint a fresh one."""
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str):
        try:
            return uuid.UUID(value)
        except ValueError:
            pass
    return uuid.uuid4()


@dataclass(frozen=True)
class PushLogEntry:
    tenant_id: str
    push_id: uuid.UUID
    affected_tables: list[str]
    pushed_at: datetime
    record_counts: dict[str, int]


# ── Push Log ────────────────────────────────────────────────────────────────


class PushLog:
    """Append-only history of sync events that wrote data."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def append(
        self,
        tenant_id: str,
        push_id: Any,
        affected_tables: list[str],
        record_counts: dict[str, int],
    ) -> uuid.UUID:
        resolved = coerce_push_id(push_id)
        async with self._engine.begin() as conn:
            await conn.execute(
                insert(TenantDataPushLog).values(
                    tenant_id=tenant_id,
                    push_id=resolved,
                    affected_tables=list(affected_tables),
                    pushed_at=datetime.now(timezone.utc),
                    record_counts=dict(record_counts),
                )
            )
        logger.debug("push_logged", tenant_id=tenant_id, push_id=str(resolved), tables=affected_tables)
        return resolved

    async def list_for_tenant(self, tenant_id: str, limit: int = 100) -> list[PushLogEntry]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(
                    TenantDataPushLog.tenant_id,
                    TenantDataPushLog.push_id,
                    TenantDataPushLog.affected_tables,
                    TenantDataPushLog.pushed_at,
                    TenantDataPushLog.record_counts,
                )
                .where(TenantDataPushLog.tenant_id == tenant_id)
                .order_by(TenantDataPushLog.pushed_at.desc())
                .limit(limit)
            )
            rows = result.fetchall()
        return [
            PushLogEntry(
                tenant_id=r.tenant_id,
                push_id=r.push_id,
                affected_tables=list(r.affected_tables),
                pushed_at=r.pushed_at,
                record_counts=dict(r.record_counts or {}),
            )
            for r in rows
        ]

    async def count_for_tenant(self, tenant_id: str) -> int:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(func.count()).select_from(TenantDataPushLog).where(
                    TenantDataPushLog.tenant_id == tenant_id
                )
            )
            return int(result.scalar_one())

    async def delete_for_tenant(self, tenant_id: str) -> int:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(TenantDataPushLog).where(TenantDataPushLog.tenant_id == tenant_id)
            )
        return result.rowcount or 0


# ── Webhook audit log ───────────────────────────────────────────────────────


class WebhookLogRepository:
    """One audit row per inbound sync event."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def record(
        self,
        *,
        operation: str,
        success: bool,
        tenant_id: str | None = None,
        table_name: str | None = None,
        target_table: str | None = None,
        error_message: str | None = None,
        duration_ms: int | None = None,
        client_ip: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                insert(WebhookLog).values(
                    tenant_id=tenant_id,
                    operation=operation,
                    table_name=table_name,
                    target_table=target_table,
                    success=success,
                    error_message=error_message,
                    duration_ms=duration_ms,
                    client_ip=client_ip,
                    user_agent=user_agent,
                    metadata_json=metadata or {},
                )
            )

    async def list(
        self,
        tenant_id: str | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[dict[str, Any]], int]:
        """Page through audit rows, newest first.

        Args:
            tenant_id: Only rows for this tenant.
            status: "success" or "error" to filter on outcome.
            page: 1-based page number.
            limit: Page size.

        Returns:
            (rows, total) where total counts every matching row.
        """
        conditions = []
        if tenant_id:
            conditions.append(WebhookLog.tenant_id == tenant_id)
        if status == "success":
            conditions.append(WebhookLog.success.is_(True))
        elif status == "error":
            conditions.append(WebhookLog.success.is_(False))

        page = max(page, 1)
        offset = (page - 1) * limit

        async with self._engine.connect() as conn:
            total = (
                await conn.execute(select(func.count()).select_from(WebhookLog).where(*conditions))
            ).scalar_one()
            result = await conn.execute(
                select(
                    WebhookLog.id,
                    WebhookLog.tenant_id,
                    WebhookLog.operation,
                    WebhookLog.table_name,
                    WebhookLog.target_table,
                    WebhookLog.success,
                    WebhookLog.error_message,
                    WebhookLog.duration_ms,
                    WebhookLog.client_ip,
                    WebhookLog.user_agent,
                    WebhookLog.metadata_json,
                    WebhookLog.created_at,
                )
                .where(*conditions)
                .order_by(WebhookLog.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            rows = [
                {
                    "id": str(r.id),
                    "tenant_id": r.tenant_id,
                    "operation": r.operation,
                    "table_name": r.table_name,
                    "target_table": r.target_table,
                    "success": r.success,
                    "error_message": r.error_message,
                    "duration_ms": r.duration_ms,
                    "client_ip": r.client_ip,
                    "user_agent": r.user_agent,
                    "metadata": r.metadata_json or {},
                    "created_at": r.created_at.isoformat() if r.created_at else None,
                }
                for r in result
            ]
        return rows, int(total)


# ── Full-sync summaries ─────────────────────────────────────────────────────


class SyncSummaryRepository:
    """Per-batch summaries for FULL_SYNC events that carry a sync_id."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def record(
        self,
        *,
        sync_id: str,
        tenant_id: str,
        table_name: str,
        operation: str,
        primary_keys: list[Any],
        started_at: datetime,
        success: bool,
        sync_type: str = "full",
    ) -> None:
        keys = [str(k) for k in primary_keys if k is not None]
        async with self._engine.begin() as conn:
            await conn.execute(
                insert(SyncSummary).values(
                    sync_id=sync_id,
                    sync_type=sync_type,
                    tenant_id=tenant_id,
                    table_name=table_name,
                    operation=operation,
                    record_count=len(primary_keys),
                    primary_keys=keys[:MAX_SUMMARY_PRIMARY_KEYS],
                    primary_keys_overflow=len(keys) > MAX_SUMMARY_PRIMARY_KEYS,
                    started_at=started_at,
                    completed_at=datetime.now(timezone.utc),
                    success=success,
                )
            )

    async def delete_for_tenant(self, tenant_id: str) -> int:
        async with self._engine.begin() as conn:
            result = await conn.execute(delete(SyncSummary).where(SyncSummary.tenant_id == tenant_id))
        return result.rowcount or 0
