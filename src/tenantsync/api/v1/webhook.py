"""Inbound sync webhook and its audit log.

The webhook reads the raw body so the HMAC signature is checked over the
exact bytes the source system signed, before the body is parsed.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from src.tenantsync.api.deps import (
    get_app_settings,
    get_pipeline,
    get_webhook_logs,
    require_admin,
)
from src.tenantsync.config import Settings
from src.tenantsync.schemas.sync import WebhookLogPage, WebhookResponse
from src.tenantsync.sync.pipeline import SyncPipeline
from src.tenantsync.sync.push_log import WebhookLogRepository

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


@router.post("/webhook", response_model=WebhookResponse, response_model_exclude_none=True)
async def receive_webhook(
    request: Request,
    pipeline: SyncPipeline = Depends(get_pipeline),
    settings: Settings = Depends(get_app_settings),
):
    """Apply one change event pushed by the source system.

    Responds once the primary write is durable. Column tracking, view
    regeneration, cache invalidation and push logging continue in the
    background.
    """
    body = await request.body()
    result = await pipeline.handle(
        body,
        signature=request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER),
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return result.response


@router.get("/logs", response_model=WebhookLogPage, dependencies=[Depends(require_admin)])
async def list_webhook_logs(
    tenant_id: str | None = None,
    status: str | None = Query(None, pattern="^(success|error)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    logs: WebhookLogRepository = Depends(get_webhook_logs),
):
    """Page through webhook audit rows, newest first."""
    rows, total = await logs.list(tenant_id=tenant_id, status=status, page=page, limit=limit)
    return WebhookLogPage(logs=rows, total=total, page=page, limit=limit)
