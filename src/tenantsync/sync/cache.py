"""Chart result cache with table-dependency invalidation.

Entries never expire by time. Each entry records the tables its query read
(source_tables); a sync that touches any of those tables for the same
tenant marks the entry invalid in one set-based UPDATE. An incomplete
source_tables list therefore means stale results, so callers should derive
it from the chart definition (see extract_tables_from_state).
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncEngine

from src.tenantsync.models.shared import ChartDataCache, ChartTableDependency

logger = structlog.get_logger(__name__)

RELATIVE_DATE_OPERATORS = frozenset({
    "last_n_days",
    "last_n_weeks",
    "last_n_months",
    "this_week",
    "this_month",
    "today",
    "yesterday",
})
DYNAMIC_FILTER_TYPES = frozenset({"relative", "dynamic"})


@dataclass(frozen=True)
class CacheHit:
    data: Any
    hit: bool = True
    cached_at: datetime | None = None


# ── Pure helpers ────────────────────────────────────────────────────────────


def cache_key(chart_id: int, params: dict[str, Any]) -> str:
    """SHA-256 fingerprint of a chart query.

    Keys are sorted at every nesting level, so the result does not depend on
    the insertion order of params.
    """
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(f"{chart_id}:{canonical}".encode("utf-8")).hexdigest()


def extract_tables_from_state(state: dict[str, Any]) -> list[str]:
    """Collect every table a chart definition references.

    Looks at selectedColumns[].table, filters[].table,
    joins[].leftTable / joins[].rightTable and the top-level table field.
    """
    tables: list[str] = []

    def add(name: Any) -> None:
        if isinstance(name, str) and name and name not in tables:
            tables.append(name)

    for column in state.get("selectedColumns") or []:
        if isinstance(column, dict):
            add(column.get("table"))
    for flt in state.get("filters") or []:
        if isinstance(flt, dict):
            add(flt.get("table"))
    for join in state.get("joins") or []:
        if isinstance(join, dict):
            add(join.get("leftTable"))
            add(join.get("rightTable"))
    add(state.get("table"))
    return tables


def has_relative_date_filters(state: dict[str, Any]) -> bool:
    """True if any filter is relative to the current date."""
    filters = state.get("filters")
    if not isinstance(filters, list):
        return False
    for flt in filters:
        if not isinstance(flt, dict):
            continue
        if flt.get("operator") in RELATIVE_DATE_OPERATORS:
            return True
        if flt.get("filterType") in DYNAMIC_FILTER_TYPES:
            return True
    return False


# ── Cache ───────────────────────────────────────────────────────────────────


class ChartCache:
    """Read, write and invalidate cached chart results per tenant."""

    def __init__(self, engine: AsyncEngine, default_schema: str = "base") -> None:
        self._engine = engine
        self._default_schema = default_schema

    async def get(self, chart_id: int, tenant_id: str, key: str) -> CacheHit | None:
        """Return the cached payload, or None on a miss or an invalidated entry."""
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(ChartDataCache.cached_data, ChartDataCache.cached_at).where(
                    ChartDataCache.chart_id == chart_id,
                    ChartDataCache.tenant_id == tenant_id,
                    ChartDataCache.cache_key == key,
                    ChartDataCache.is_valid.is_(True),
                )
            )
            row = result.first()
        if row is None:
            return None
        return CacheHit(data=row.cached_data, cached_at=row.cached_at)

    async def set(
        self,
        chart_id: int,
        tenant_id: str,
        key: str,
        data: Any,
        source_tables: list[str],
        duration_ms: int | None = None,
    ) -> None:
        """Store a chart result, replacing any entry under the same key."""
        now = datetime.now(timezone.utc)
        row_count = len(data) if isinstance(data, list) else 1
        stmt = pg_insert(ChartDataCache).values(
            chart_id=chart_id,
            tenant_id=tenant_id,
            cache_key=key,
            cached_data=data,
            row_count=row_count,
            source_tables=sorted(set(source_tables)),
            query_duration_ms=duration_ms,
            cached_at=now,
            is_valid=True,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_cache_chart_tenant_key",
            set_={
                "cached_data": stmt.excluded.cached_data,
                "row_count": stmt.excluded.row_count,
                "source_tables": stmt.excluded.source_tables,
                "query_duration_ms": stmt.excluded.query_duration_ms,
                "cached_at": stmt.excluded.cached_at,
                "is_valid": True,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        async with self._engine.begin() as conn:
            await conn.execute(stmt)

    async def invalidate_for_tables(self, tenant_id: str, tables: list[str]) -> int:
        """Mark invalid every valid entry of tenant_id that reads any of tables.

        Returns:
            Number of entries invalidated.
        """
        if not tables:
            return 0
        stmt = (
            update(ChartDataCache)
            .where(
                ChartDataCache.tenant_id == tenant_id,
                ChartDataCache.is_valid.is_(True),
                ChartDataCache.source_tables.overlap(sorted(set(tables))),
            )
            .values(is_valid=False, updated_at=func.now())
        )
        async with self._engine.begin() as conn:
            result = await conn.execute(stmt)
        count = result.rowcount or 0
        logger.info("cache_invalidated", tenant_id=tenant_id, tables=tables, entries=count)
        return count

    async def invalidate_all_for_tenant(self, tenant_id: str) -> int:
        stmt = (
            update(ChartDataCache)
            .where(ChartDataCache.tenant_id == tenant_id, ChartDataCache.is_valid.is_(True))
            .values(is_valid=False, updated_at=func.now())
        )
        async with self._engine.begin() as conn:
            result = await conn.execute(stmt)
        return result.rowcount or 0

    async def delete_for_tenant(self, tenant_id: str) -> int:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(ChartDataCache).where(ChartDataCache.tenant_id == tenant_id)
            )
        return result.rowcount or 0

    async def count_for_tenant(self, tenant_id: str) -> int:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(func.count()).select_from(ChartDataCache).where(
                    ChartDataCache.tenant_id == tenant_id
                )
            )
            return int(result.scalar_one())

    # ── Chart dependencies ──────────────────────────────────────────────

    async def upsert_dependencies(self, chart_id: int, tables: list[str | dict[str, str]]) -> int:
        """Replace the recorded table dependencies of a chart.

        Args:
            chart_id: Chart whose dependencies are replaced.
            tables: Table names, or dicts with "name" and optional "schema"
                and "type" keys.

        Returns:
            Number of dependency rows written.
        """
        records = []
        seen = set()
        for entry in tables:
            if isinstance(entry, str):
                entry = {"name": entry}
            name = entry.get("name")
            schema = entry.get("schema") or self._default_schema
            if not name or (name, schema) in seen:
                continue
            seen.add((name, schema))
            records.append({
                "chart_id": chart_id,
                "table_name": name,
                "schema_name": schema,
                "dependency_type": entry.get("type") or "query",
            })

        async with self._engine.begin() as conn:
            await conn.execute(
                delete(ChartTableDependency).where(ChartTableDependency.chart_id == chart_id)
            )
            if records:
                await conn.execute(pg_insert(ChartTableDependency).values(records))
        return len(records)

    async def get_dependencies(self, chart_id: int) -> list[str]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                select(ChartTableDependency.table_name)
                .where(ChartTableDependency.chart_id == chart_id)
                .order_by(ChartTableDependency.table_name)
            )
            return [row.table_name for row in result]
