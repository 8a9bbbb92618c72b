"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.tenantsync.api.v1 import cache, health, tenants, webhook

router = APIRouter()

router.include_router(health.router)
router.include_router(webhook.router)
router.include_router(tenants.router)
router.include_router(cache.router)
