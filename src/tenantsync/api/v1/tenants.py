"""Tenant administration API endpoints.

All routes require the X-Admin-Key header.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request

from src.tenantsync.api.deps import (
    get_admin,
    get_registry,
    get_tracker,
    get_view_generator,
    require_admin,
)
from src.tenantsync.core.errors import TenantNotFoundError
from src.tenantsync.schemas.tenant import (
    ColumnAccessResponse,
    PurgeResponse,
    ResetResponse,
    TenantRegister,
    TenantResponse,
)
from src.tenantsync.sync.admin import TenantAdmin
from src.tenantsync.sync.column_access import ColumnAccessTracker
from src.tenantsync.sync.tenants import TenantRegistry
from src.tenantsync.sync.views import ViewGenerator

router = APIRouter(
    prefix="/api/v1/tenants",
    tags=["tenants"],
    dependencies=[Depends(require_admin)],
)


@router.post("/{tenant_id}/register", response_model=TenantResponse)
async def register_tenant(
    tenant_id: str,
    request: Request,
    body: TenantRegister | None = None,
    registry: TenantRegistry = Depends(get_registry),
    views: ViewGenerator = Depends(get_view_generator),
):
    """Assign a short name, provision schema and role, and rebuild tracked views."""
    request.state.tenant_id = tenant_id
    short_name = await registry.register_tenant(tenant_id, body.display_name if body else None)
    await registry.ensure_schema_and_role(short_name)
    results = await views.regenerate_for_tenant(tenant_id)

    tenant = await registry.get_tenant(tenant_id)
    return TenantResponse(
        tenant_id=tenant.tenant_id,
        short_name=tenant.short_name,
        schema_name=tenant.schema_name,
        role_name=tenant.role_name,
        display_name=tenant.display_name,
        views_regenerated=sum(1 for r in results if r.regenerated),
    )


@router.get("/{tenant_id}/column-access", response_model=list[ColumnAccessResponse])
async def get_column_access(
    tenant_id: str,
    request: Request,
    tracker: ColumnAccessTracker = Depends(get_tracker),
    registry: TenantRegistry = Depends(get_registry),
):
    """List the columns each of the tenant's views currently exposes."""
    request.state.tenant_id = tenant_id
    if await registry.resolve_short_name(tenant_id) is None:
        raise TenantNotFoundError(f"Tenant {tenant_id} is not registered")
    entries = await tracker.list_for_tenant(tenant_id)
    return [
        ColumnAccessResponse(
            table_name=e.table_name,
            columns=e.columns,
            last_push_at=e.last_push_at,
        )
        for e in entries
    ]


@router.post("/{tenant_id}/reset", response_model=ResetResponse)
async def reset_tenant(
    tenant_id: str,
    request: Request,
    admin: TenantAdmin = Depends(get_admin),
):
    """Clear synced rows and bookkeeping for a tenant, keeping its registration."""
    request.state.tenant_id = tenant_id
    report = await admin.reset_tenant(tenant_id)
    return ResetResponse(**asdict(report))


@router.delete("/{tenant_id}", response_model=PurgeResponse)
async def purge_tenant(
    tenant_id: str,
    request: Request,
    dry_run: bool = Query(True),
    confirm: bool = Query(False),
    delete_synced_data: bool = Query(False),
    admin: TenantAdmin = Depends(get_admin),
):
    """Delete a tenant's schema, role and bookkeeping.

    Defaults to a dry run that only reports counts; pass dry_run=false and
    confirm=true to execute.
    """
    request.state.tenant_id = tenant_id
    report = await admin.purge_tenant(
        tenant_id,
        dry_run=dry_run,
        confirm=confirm,
        delete_synced_data=delete_synced_data,
    )
    return PurgeResponse(**asdict(report))
