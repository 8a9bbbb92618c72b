"""Target store: writes synced rows into the shared base schema.

Rows arrive as JSON objects whose shape is owned by the source system, so
there is no ORM mapping for base tables. Payloads are handed to Postgres as
a single jsonb parameter and expanded with jsonb_populate_recordset against
the target table's own row type, which lets the server coerce every value
to the column's declared type.

Only registered target tables and plain identifier column names ever reach
the SQL text.
"""

from __future__ import annotations

import json
from collections import defaultdict
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from src.tenantsync.config import Settings
from src.tenantsync.core.errors import UpsertFailure, ValidationError
from src.tenantsync.sync.tables import (
    DEVICE_OWNERSHIP_TABLE,
    FilterStrategy,
    classify,
    conflict_columns,
    quote_ident,
    require_target_table,
    validate_identifier,
)

logger = structlog.get_logger(__name__)


def _json_default(value: Any) -> str:
    return str(value)


class TargetStore:
    """Idempotent upsert, delete-by-key and per-tenant clear on base tables."""

    def __init__(self, engine: AsyncEngine, settings: Settings) -> None:
        self._engine = engine
        self._base = quote_ident(settings.BASE_SCHEMA)

    def _qualified(self, table_name: str) -> str:
        return f"{self._base}.{quote_ident(require_target_table(table_name))}"

    # ── Upsert ──────────────────────────────────────────────────────────

    def _upsert_sql(self, table_name: str, columns: tuple[str, ...]) -> str:
        qualified = self._qualified(table_name)
        keys = conflict_columns(table_name)
        col_list = ", ".join(quote_ident(c) for c in columns)
        conflict = ", ".join(quote_ident(k) for k in keys)
        updates = [c for c in columns if c not in keys]

        sql = (
            f"INSERT INTO {qualified} ({col_list}) "
            f"SELECT {col_list} FROM jsonb_populate_recordset(NULL::{qualified}, CAST(:rows AS jsonb)) "
            f"ON CONFLICT ({conflict}) "
        )
        if updates:
            assignments = ", ".join(f"{quote_ident(c)} = EXCLUDED.{quote_ident(c)}" for c in updates)
            sql += f"DO UPDATE SET {assignments}"
        else:
            sql += "DO NOTHING"
        return sql

    def _group_rows(
        self,
        table_name: str,
        rows: list[dict[str, Any]],
    ) -> dict[tuple[str, ...], list[dict[str, Any]]]:
        """Validate rows and group them by their exact key set.

        Raises:
            ValidationError: If a row is not an object, lacks a conflict
                column or carries an invalid column name.
        """
        require_target_table(table_name)
        keys = conflict_columns(table_name)

        groups: dict[tuple[str, ...], list[dict[str, Any]]] = defaultdict(list)
        for row in rows:
            if not isinstance(row, dict):
                raise ValidationError(f"Rows for {table_name} must be objects")
            missing = [k for k in keys if row.get(k) is None]
            if missing:
                raise ValidationError(f"Row for {table_name} is missing key column(s): {missing}")
            columns = tuple(sorted(validate_identifier(c) for c in row))
            groups[columns].append(row)
        return groups

    async def _write_groups(
        self,
        conn: AsyncConnection,
        table_name: str,
        groups: dict[tuple[str, ...], list[dict[str, Any]]],
    ) -> None:
        for columns, group in groups.items():
            await conn.execute(
                text(self._upsert_sql(table_name, columns)),
                {"rows": json.dumps(group, default=_json_default)},
            )

    async def upsert_rows(self, table_name: str, rows: list[dict[str, Any]]) -> int:
        """Insert or update rows keyed on the table's conflict columns.

        Rows are grouped by their exact key set so a column missing from
        one row is never overwritten with NULL on another.

        Returns:
            Number of rows submitted.

        Raises:
            ValidationError: If a row lacks a conflict column or carries an
                invalid column name.
            UpsertFailure: If the database rejects the write.
        """
        if not rows:
            return 0
        groups = self._group_rows(table_name, rows)

        try:
            async with self._engine.begin() as conn:
                await self._write_groups(conn, table_name, groups)
        except DBAPIError as exc:
            logger.error("upsert_failed", table=table_name, rows=len(rows), error=str(exc))
            raise UpsertFailure(table_name, str(exc.orig or exc)) from exc

        return len(rows)

    async def replace_tenant_rows(
        self,
        table_name: str,
        tenant_id: str,
        rows: list[dict[str, Any]],
        *,
        clear: bool = True,
    ) -> tuple[int, int]:
        """Optionally clear a tenant's rows, then upsert rows, atomically.

        Every row is validated before anything is sent to the database, and
        the clear and the upsert share one transaction: a rejected batch
        leaves the tenant's existing rows in place. Global tables are never
        cleared.

        Returns:
            (rows cleared, rows submitted).

        Raises:
            ValidationError: If any row is malformed. Nothing is written.
            UpsertFailure: If the database rejects the clear or the write.
                The transaction is rolled back.
        """
        groups = self._group_rows(table_name, rows) if rows else {}
        clear_sql = self._clear_sql(table_name) if clear else None
        if clear_sql is None and not groups:
            return 0, 0

        cleared = 0
        try:
            async with self._engine.begin() as conn:
                if clear_sql is not None:
                    result = await conn.execute(text(clear_sql), {"tenant_id": tenant_id})
                    cleared = result.rowcount or 0
                await self._write_groups(conn, table_name, groups)
        except DBAPIError as exc:
            logger.error(
                "replace_failed",
                table=table_name,
                tenant_id=tenant_id,
                rows=len(rows),
                error=str(exc),
            )
            raise UpsertFailure(table_name, str(exc.orig or exc)) from exc

        if clear_sql is not None:
            logger.info("tenant_rows_cleared", table=table_name, tenant_id=tenant_id, deleted=cleared)
        return cleared, len(rows)

    # ── Delete ──────────────────────────────────────────────────────────

    async def delete_row(self, table_name: str, row: dict[str, Any]) -> int:
        """Delete the row identified by the table's conflict columns in row."""
        qualified = self._qualified(table_name)
        keys = conflict_columns(table_name)
        if not isinstance(row, dict) or any(row.get(k) is None for k in keys):
            raise ValidationError(f"DELETE on {table_name} requires {', '.join(keys)}")

        match = " AND ".join(f"t.{quote_ident(k)} = k.{quote_ident(k)}" for k in keys)
        sql = (
            f"DELETE FROM {qualified} t "
            f"USING jsonb_populate_record(NULL::{qualified}, CAST(:key AS jsonb)) k "
            f"WHERE {match}"
        )
        key = {k: row[k] for k in keys}
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(text(sql), {"key": json.dumps(key, default=_json_default)})
        except DBAPIError as exc:
            logger.error("delete_failed", table=table_name, key=key, error=str(exc))
            raise UpsertFailure(table_name, str(exc.orig or exc)) from exc
        return result.rowcount or 0

    # ── Per-tenant scope ────────────────────────────────────────────────

    def _tenant_scope(self, table_name: str) -> tuple[str, str] | None:
        """Return (USING clause, WHERE clause) selecting a tenant's rows, or None for global tables."""
        classification = classify(table_name)
        if classification.strategy is FilterStrategy.GLOBAL:
            return None
        if classification.strategy is FilterStrategy.DIRECT:
            return "", "t.tenant_id = :tenant_id"
        if classification.strategy is FilterStrategy.DEVICE:
            ownership = f"{self._base}.{quote_ident(DEVICE_OWNERSHIP_TABLE)}"
            join_column = quote_ident(classification.join_column)
            return (
                f"{ownership} dt",
                f"dt.device_id = t.{join_column} AND dt.tenant_id = :tenant_id "
                f"AND dt.is_current_owner = true",
            )
        parent = f"{self._base}.{quote_ident(classification.parent_table)}"
        foreign_key = quote_ident(classification.foreign_key)
        return f"{parent} p", f"p.id = t.{foreign_key} AND p.tenant_id = :tenant_id"

    def _clear_sql(self, table_name: str) -> str | None:
        qualified = self._qualified(table_name)
        scope = self._tenant_scope(table_name)
        if scope is None:
            return None
        using, where = scope
        sql = f"DELETE FROM {qualified} t "
        if using:
            sql += f"USING {using} "
        return sql + f"WHERE {where}"

    async def clear_tenant_rows(self, table_name: str, tenant_id: str) -> int:
        """Delete every row of table_name belonging to tenant_id.

        Global tables hold shared reference data and are never cleared.
        """
        sql = self._clear_sql(table_name)
        if sql is None:
            return 0
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(text(sql), {"tenant_id": tenant_id})
        except DBAPIError as exc:
            logger.error("clear_failed", table=table_name, tenant_id=tenant_id, error=str(exc))
            raise UpsertFailure(table_name, str(exc.orig or exc)) from exc

        deleted = result.rowcount or 0
        logger.info("tenant_rows_cleared", table=table_name, tenant_id=tenant_id, deleted=deleted)
        return deleted

    async def count_rows(self, table_name: str, tenant_id: str | None = None) -> int:
        """Count rows in a base table, optionally only those belonging to tenant_id."""
        qualified = self._qualified(table_name)
        params: dict[str, Any] = {}
        sql = f"SELECT count(*) FROM {qualified} t"
        if tenant_id is not None:
            scope = self._tenant_scope(table_name)
            if scope is None:
                return 0
            using, where = scope
            if using:
                sql += f", {using}"
            sql += f" WHERE {where}"
            params["tenant_id"] = tenant_id
        async with self._engine.connect() as conn:
            result = await conn.execute(text(sql), params)
            return int(result.scalar_one())
