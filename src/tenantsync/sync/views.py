"""Tenant view generator.

Each tenant sees a synced base table through a view in its own schema:

    tenant_<short_name>."<table>"

The view exposes exactly the columns last pushed for that table and filters
rows according to the table's classification. Generated SQL is a
deterministic function of (tenant, table, column set), so racing
regenerations converge on the same definition.

Identifiers are never taken verbatim from payloads: the table must be a
registered sync target, every column must be a plain identifier, and the
tenant id literal must match a strict pattern before interpolation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog
from sqlalchemy.exc import DBAPIError

from src.tenantsync.config import Settings
from src.tenantsync.core.errors import (
    InvalidIdentifierError,
    ViewRegenerationError,
)
from src.tenantsync.sync.catalog import SchemaCatalog
from src.tenantsync.sync.column_access import ColumnAccessTracker, normalize_columns
from src.tenantsync.sync.tables import (
    DEVICE_OWNERSHIP_TABLE,
    FilterStrategy,
    classify,
    quote_ident,
    require_target_table,
    validate_identifier,
)
from src.tenantsync.sync.tenants import TenantRegistry, schema_name_for

logger = structlog.get_logger(__name__)

TENANT_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_-]{0,63}")


@dataclass(frozen=True)
class ViewResult:
    regenerated: bool
    changed: bool
    view_name: str | None = None


def validate_tenant_id(tenant_id: str) -> str:
    """Return tenant_id if it is safe to embed as a SQL string literal."""
    if not isinstance(tenant_id, str) or not TENANT_ID_PATTERN.fullmatch(tenant_id):
        raise InvalidIdentifierError(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id


# ── SQL Generation ──────────────────────────────────────────────────────────


def build_view_sql(
    table_name: str,
    columns: list[str],
    tenant_id: str,
    base_schema: str = "base",
) -> str:
    """Build the SELECT behind a tenant view.

    Args:
        table_name: Registered target table.
        columns: Columns to expose, emitted in sorted order.
        tenant_id: Tenant whose rows the view returns.
        base_schema: Schema holding the synced tables.

    Returns:
        A SELECT statement suitable for CREATE VIEW ... AS.

    Raises:
        InvalidIdentifierError: If the table, any column or the tenant id
            fails validation, or the column list is empty.
    """
    require_target_table(table_name)
    cols = normalize_columns(validate_identifier(c) for c in columns)
    if not cols:
        raise InvalidIdentifierError(f"No columns to expose for {table_name}")
    tenant_literal = f"'{validate_tenant_id(tenant_id)}'"

    base = quote_ident(base_schema)
    source = f"{base}.{quote_ident(table_name)}"
    classification = classify(table_name)

    if classification.strategy is FilterStrategy.GLOBAL:
        col_list = ", ".join(quote_ident(c) for c in cols)
        return f"SELECT {col_list} FROM {source}"

    if classification.strategy is FilterStrategy.DIRECT:
        col_list = ", ".join(quote_ident(c) for c in cols)
        return f"SELECT {col_list} FROM {source} WHERE tenant_id = {tenant_literal}"

    prefixed = ", ".join(f"t.{quote_ident(c)}" for c in cols)

    if classification.strategy is FilterStrategy.DEVICE:
        ownership = f"{base}.{quote_ident(DEVICE_OWNERSHIP_TABLE)}"
        join_column = quote_ident(classification.join_column)
        return (
            f"SELECT {prefixed} FROM {source} t "
            f"JOIN {ownership} dt ON dt.device_id = t.{join_column} "
            f"WHERE dt.tenant_id = {tenant_literal} AND dt.is_current_owner = true"
        )

    # FilterStrategy.PARENT
    parent = f"{base}.{quote_ident(classification.parent_table)}"
    foreign_key = quote_ident(classification.foreign_key)
    return (
        f"SELECT {prefixed} FROM {source} t "
        f"JOIN {parent} p ON p.id = t.{foreign_key} "
        f"WHERE p.tenant_id = {tenant_literal}"
    )


# ── Generator ───────────────────────────────────────────────────────────────


class ViewGenerator:
    """Keeps each tenant view in step with the columns pushed for its table."""

    def __init__(
        self,
        registry: TenantRegistry,
        tracker: ColumnAccessTracker,
        catalog: SchemaCatalog,
        settings: Settings,
    ) -> None:
        self._registry = registry
        self._tracker = tracker
        self._catalog = catalog
        self._settings = settings

    async def regenerate_if_needed(
        self,
        tenant_id: str,
        table_name: str,
        columns: list[str],
    ) -> ViewResult:
        """Regenerate the tenant's view when columns drifted or the view is missing.

        The column record is written only after the view DDL succeeds, so a
        failed regeneration leaves both the old record and the old view in
        place. A record that somehow outlives its view is healed by the
        existence check on the next call.

        Raises:
            InvalidIdentifierError: If the table, a column or the tenant id
                is not acceptable for SQL generation.
            RegistrationFailure: If the tenant schema or role can't be set up.
            ViewRegenerationError: If the view DDL fails.
        """
        if not columns:
            return ViewResult(regenerated=False, changed=False)

        require_target_table(table_name)
        new_columns = normalize_columns(validate_identifier(c) for c in columns)
        validate_tenant_id(tenant_id)

        short_name = await self._registry.resolve_short_name(tenant_id)
        if short_name is None:
            display_name = await self._registry.lookup_display_name(tenant_id)
            short_name = await self._registry.register_tenant(tenant_id, display_name)
        schema = schema_name_for(short_name)
        view_name = f"{schema}.{table_name}"

        recorded = await self._tracker.get_columns(tenant_id, table_name)
        drifted = recorded is None or sorted(recorded) != new_columns
        exists = await self._catalog.view_exists(schema, table_name)

        regenerated = False
        if drifted or not exists:
            await self._registry.ensure_schema_and_role(short_name)
            select_sql = build_view_sql(
                table_name,
                new_columns,
                tenant_id,
                base_schema=self._settings.BASE_SCHEMA,
            )
            try:
                await self._catalog.create_or_replace_view(schema, table_name, select_sql)
            except DBAPIError as exc:
                logger.error(
                    "view_regeneration_failed",
                    tenant_id=tenant_id,
                    view=view_name,
                    error=str(exc),
                )
                raise ViewRegenerationError(f"Failed to regenerate {view_name}: {exc}") from exc
            regenerated = True
            logger.info(
                "view_regenerated",
                tenant_id=tenant_id,
                view=view_name,
                drifted=drifted,
                columns=len(new_columns),
            )

        await self._tracker.update_and_check_drift(tenant_id, table_name, new_columns)
        return ViewResult(regenerated=regenerated, changed=drifted, view_name=view_name)

    async def regenerate_for_tenant(self, tenant_id: str) -> list[ViewResult]:
        """Re-materialize every tracked view for a tenant (used after provisioning)."""
        results = []
        for entry in await self._tracker.list_for_tenant(tenant_id):
            results.append(
                await self.regenerate_if_needed(tenant_id, entry.table_name, entry.columns)
            )
        return results

    async def drop_view(self, tenant_id: str, table_name: str) -> bool:
        """Drop one tenant view. Returns False when the tenant isn't registered."""
        require_target_table(table_name)
        short_name = await self._registry.resolve_short_name(tenant_id)
        if short_name is None:
            return False
        await self._catalog.drop_view(schema_name_for(short_name), table_name)
        logger.info("view_dropped", tenant_id=tenant_id, view=f"{schema_name_for(short_name)}.{table_name}")
        return True
