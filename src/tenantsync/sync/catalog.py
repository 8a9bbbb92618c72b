"""Postgres DDL surface for tenant views.

Keeps every statement the view generator issues against pg_catalog in one
place, so the generator itself stays a pure function of (tenant, table,
columns) plus a handful of calls on this object.
"""

from __future__ import annotations

import structlog
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine

from src.tenantsync.sync.tables import quote_ident

logger = structlog.get_logger(__name__)


class SchemaCatalog:
    """Inspect and replace views inside tenant schemas."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def view_exists(self, schema: str, view: str) -> bool:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text(
                    "SELECT 1 FROM pg_catalog.pg_views "
                    "WHERE schemaname = :schema AND viewname = :view"
                ),
                {"schema": schema, "view": view},
            )
            return result.first() is not None

    async def list_views(self, schema: str) -> list[str]:
        async with self._engine.connect() as conn:
            result = await conn.execute(
                text(
                    "SELECT viewname FROM pg_catalog.pg_views "
                    "WHERE schemaname = :schema ORDER BY viewname"
                ),
                {"schema": schema},
            )
            return [row.viewname for row in result]

    async def create_or_replace_view(self, schema: str, view: str, select_sql: str) -> None:
        """Point schema.view at select_sql in a single transaction.

        CREATE OR REPLACE VIEW cannot drop or reorder existing columns. When
        Postgres refuses the replace, the view is dropped and recreated
        inside the same transaction, so concurrent readers see either the
        old definition or the new one.
        """
        qualified = f"{quote_ident(schema)}.{quote_ident(view)}"
        async with self._engine.begin() as conn:
            try:
                async with conn.begin_nested():
                    await conn.execute(text(f"CREATE OR REPLACE VIEW {qualified} AS {select_sql}"))
                return
            except DBAPIError as exc:
                logger.info(
                    "view_replace_refused",
                    view=f"{schema}.{view}",
                    reason=str(exc.orig) if exc.orig is not None else str(exc),
                )
            await conn.execute(text(f"DROP VIEW IF EXISTS {qualified}"))
            await conn.execute(text(f"CREATE VIEW {qualified} AS {select_sql}"))

    async def drop_view(self, schema: str, view: str) -> None:
        qualified = f"{quote_ident(schema)}.{quote_ident(view)}"
        async with self._engine.begin() as conn:
            await conn.execute(text(f"DROP VIEW IF EXISTS {qualified}"))
