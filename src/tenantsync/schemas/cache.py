"""Pydantic schemas for cache maintenance endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field


class CacheInvalidateRequest(BaseModel):
    """Invalidate a tenant's cache entries that read any of tables.

    With no tables, every entry of the tenant is invalidated.
    """

    tenant_id: str = Field(..., min_length=1, max_length=64)
    tables: list[str] = Field(default_factory=list)


class CacheInvalidateResponse(BaseModel):
    tenant_id: str
    invalidated: int
