"""Pydantic schemas for tenant administration endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class TenantRegister(BaseModel):
    """Request schema for registering a tenant ahead of its first sync."""

    display_name: str | None = Field(
        None,
        max_length=200,
        description="Human-readable name the short name is derived from",
        examples=["Acme Cleaning AB"],
    )


class TenantResponse(BaseModel):
    """Registered tenant with derived schema and role names."""

    tenant_id: str
    short_name: str
    schema_name: str
    role_name: str
    display_name: str | None = None
    views_regenerated: int = 0


class ColumnAccessResponse(BaseModel):
    table_name: str
    columns: list[str]
    last_push_at: datetime | None = None


class PurgeResponse(BaseModel):
    tenant_id: str
    short_name: str
    schema_name: str
    role_name: str
    dry_run: bool
    executed: bool
    views: list[str] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)


class ResetResponse(BaseModel):
    tenant_id: str
    column_access_rows: int
    push_log_rows: int
    sync_summary_rows: int
    cache_entries_invalidated: int
    cleared_rows: dict[str, int] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
