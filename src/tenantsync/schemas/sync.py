"""Pydantic schemas for inbound sync events and webhook responses."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SyncOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    FULL_SYNC = "FULL_SYNC"
    MULTI_TABLE_SYNC = "MULTI_TABLE_SYNC"
    TEST = "TEST"


ROW_OPERATIONS = frozenset({SyncOperation.INSERT, SyncOperation.UPDATE, SyncOperation.DELETE})


class SyncBatch(BaseModel):
    """One page of a full-table resync. Only offset 0 clears existing rows."""

    offset: int = Field(0, ge=0)
    data: list[dict[str, Any]] = Field(default_factory=list)


class TableSync(BaseModel):
    """Per-table payload of a MULTI_TABLE_SYNC event."""

    model_config = ConfigDict(populate_by_name=True)

    data: list[dict[str, Any]] = Field(default_factory=list)
    clear_existing: bool = Field(True, alias="clearExisting")


class SyncEvent(BaseModel):
    """Change notification pushed by the source system.

    Required fields depend on the operation: row operations need table,
    tenant_id and data; FULL_SYNC needs table, tenant_id and batch;
    MULTI_TABLE_SYNC needs tenant_id and tables; TEST needs nothing.
    """

    model_config = ConfigDict(extra="ignore")

    operation: SyncOperation
    table: str | None = Field(None, max_length=128)
    tenant_id: str | None = Field(None, min_length=1, max_length=64)
    data: dict[str, Any] | None = None
    old_data: dict[str, Any] | None = None
    batch: SyncBatch | None = None
    tables: dict[str, TableSync] | None = None
    sync_id: str | None = Field(None, max_length=200)

    @model_validator(mode="after")
    def check_required_fields(self) -> SyncEvent:
        op = self.operation
        if op is SyncOperation.TEST:
            return self
        if not self.tenant_id:
            raise ValueError(f"{op.value} requires tenant_id")
        if op in ROW_OPERATIONS:
            if not self.table:
                raise ValueError(f"{op.value} requires table")
            if self.data is None:
                raise ValueError(f"{op.value} requires data")
        elif op is SyncOperation.FULL_SYNC:
            if not self.table:
                raise ValueError("FULL_SYNC requires table")
            if self.batch is None:
                raise ValueError("FULL_SYNC requires batch")
        elif op is SyncOperation.MULTI_TABLE_SYNC:
            if not self.tables:
                raise ValueError("MULTI_TABLE_SYNC requires tables")
        return self


class TableResult(BaseModel):
    """Outcome of one table within a MULTI_TABLE_SYNC event."""

    source_table: str
    target_table: str | None = None
    success: bool
    skipped: bool = False
    cleared: int = 0
    records: int = 0
    error: str | None = None


class WebhookResponse(BaseModel):
    received: bool = True
    duration_ms: int | None = None
    skipped: bool | None = None
    test: bool | None = None
    records: int | None = None
    results: list[TableResult] | None = None


class WebhookLogEntry(BaseModel):
    id: str
    tenant_id: str | None = None
    operation: str
    table_name: str | None = None
    target_table: str | None = None
    success: bool
    error_message: str | None = None
    duration_ms: int | None = None
    client_ip: str | None = None
    user_agent: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str | None = None


class WebhookLogPage(BaseModel):
    logs: list[WebhookLogEntry]
    total: int
    page: int
    limit: int
