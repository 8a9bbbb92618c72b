"""Manual cache invalidation endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from src.tenantsync.api.deps import get_cache, require_admin
from src.tenantsync.core.monitoring import cache_invalidations_total
from src.tenantsync.schemas.cache import CacheInvalidateRequest, CacheInvalidateResponse
from src.tenantsync.sync.cache import ChartCache

router = APIRouter(
    prefix="/api/v1/cache",
    tags=["cache"],
    dependencies=[Depends(require_admin)],
)


@router.post("/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_cache(
    body: CacheInvalidateRequest,
    request: Request,
    cache: ChartCache = Depends(get_cache),
):
    """Invalidate a tenant's cached chart results by table, or all of them."""
    request.state.tenant_id = body.tenant_id
    if body.tables:
        count = await cache.invalidate_for_tables(body.tenant_id, body.tables)
    else:
        count = await cache.invalidate_all_for_tenant(body.tenant_id)
    cache_invalidations_total.inc(count)
    return CacheInvalidateResponse(tenant_id=body.tenant_id, invalidated=count)
