"""Shared schema models -- bookkeeping tables that exist once for all tenants.

Synced rows themselves live in the base schema and are not mapped here;
their shape is whatever the source system pushes.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.tenantsync.core.database import SharedBase


class TenantShortName(SharedBase):
    """Stable short name assigned to a tenant at first registration.

    schema_name and role_name are derived from short_name and never stored.
    """

    __tablename__ = "tenant_short_names"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    short_name: Mapped[str] = mapped_column(String(63), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class TenantColumnAccess(SharedBase):
    """Columns a tenant's view currently exposes for one table."""

    __tablename__ = "tenant_column_access"
    __table_args__ = (
        UniqueConstraint("tenant_id", "table_name", name="uq_column_access_tenant_table"),
        Index("idx_column_access_tenant", "tenant_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    table_name: Mapped[str] = mapped_column(String(63), nullable=False)
    columns: Mapped[list[str]] = mapped_column(ARRAY(Text), nullable=False)
    last_push_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TenantDataPushLog(SharedBase):
    """Append-only record of each ingestion event that touched data."""

    __tablename__ = "tenant_data_push_log"
    __table_args__ = (
        Index("idx_push_log_tenant_time", "tenant_id", "pushed_at"),
        Index("idx_push_log_push_id", "push_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    push_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    affected_tables: Mapped[list[str]] = mapped_column(ARRAY(Text), nullable=False)
    pushed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    record_counts: Mapped[dict] = mapped_column(JSONB, server_default=text("'{}'::jsonb"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ChartDataCache(SharedBase):
    """Pre-computed chart results, invalidated by table dependency."""

    __tablename__ = "chart_data_cache"
    __table_args__ = (
        UniqueConstraint("chart_id", "tenant_id", "cache_key", name="uq_cache_chart_tenant_key"),
        Index("idx_cache_chart_tenant", "chart_id", "tenant_id"),
        Index("idx_cache_tenant", "tenant_id"),
        Index("idx_cache_source_tables", "source_tables", postgresql_using="gin"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    chart_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    cache_key: Mapped[str] = mapped_column(Text, nullable=False)
    cached_data: Mapped[object] = mapped_column(JSONB, nullable=False)
    row_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source_tables: Mapped[list[str]] = mapped_column(ARRAY(Text), nullable=False)
    query_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cached_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    is_valid: Mapped[bool] = mapped_column(Boolean, server_default=text("true"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ChartTableDependency(SharedBase):
    """Tables a chart's query reads, recorded by the chart-serving path."""

    __tablename__ = "chart_table_dependencies"
    __table_args__ = (
        UniqueConstraint("chart_id", "table_name", "schema_name", name="uq_deps_chart_table_schema"),
        Index("idx_deps_table", "table_name"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    chart_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    table_name: Mapped[str] = mapped_column(Text, nullable=False)
    schema_name: Mapped[str] = mapped_column(Text, nullable=False)
    dependency_type: Mapped[str] = mapped_column(String(20), server_default=text("'query'"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class WebhookLog(SharedBase):
    """Audit row for every inbound sync event, successful or not."""

    __tablename__ = "webhook_logs"
    __table_args__ = (Index("idx_webhook_logs_tenant_time", "tenant_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    table_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_table: Mapped[str | None] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSONB, server_default=text("'{}'::jsonb"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SyncSummary(SharedBase):
    """Per-batch summary of a FULL_SYNC carrying a sync_id."""

    __tablename__ = "sync_summary"
    __table_args__ = (Index("idx_sync_summary_sync_id", "sync_id"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    sync_id: Mapped[str] = mapped_column(Text, nullable=False)
    sync_type: Mapped[str] = mapped_column(String(32), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    table_name: Mapped[str] = mapped_column(Text, nullable=False)
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    record_count: Mapped[int] = mapped_column(Integer, nullable=False)
    primary_keys: Mapped[list[str]] = mapped_column(ARRAY(Text), nullable=False)
    primary_keys_overflow: Mapped[bool] = mapped_column(Boolean, server_default=text("false"))
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
