"""Initial shared schema: tenant registry, column access, push log, cache, audit.

Revision ID: 001_initial_shared
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_initial_shared"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = ("shared",)
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "tenant_short_names",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("short_name", sa.String(63), unique=True, nullable=False),
        sa.Column("display_name", sa.String(200), nullable=True),
        _created_at(),
        schema="shared",
    )

    op.create_table(
        "tenant_column_access",
        _id(),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("table_name", sa.String(63), nullable=False),
        sa.Column("columns", ARRAY(sa.Text()), nullable=False),
        sa.Column("last_push_at", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "table_name", name="uq_column_access_tenant_table"),
        schema="shared",
    )
    op.create_index("idx_column_access_tenant", "tenant_column_access", ["tenant_id"], schema="shared")

    op.create_table(
        "tenant_data_push_log",
        _id(),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("push_id", UUID(as_uuid=True), nullable=False),
        sa.Column("affected_tables", ARRAY(sa.Text()), nullable=False),
        sa.Column("pushed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("record_counts", JSONB(), server_default=sa.text("'{}'::jsonb")),
        _created_at(),
        schema="shared",
    )
    op.create_index(
        "idx_push_log_tenant_time", "tenant_data_push_log", ["tenant_id", "pushed_at"], schema="shared"
    )
    op.create_index("idx_push_log_push_id", "tenant_data_push_log", ["push_id"], schema="shared")

    op.create_table(
        "chart_data_cache",
        _id(),
        sa.Column("chart_id", sa.BigInteger(), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("cache_key", sa.Text(), nullable=False),
        sa.Column("cached_data", JSONB(), nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=True),
        sa.Column("source_tables", ARRAY(sa.Text()), nullable=False),
        sa.Column("query_duration_ms", sa.Integer(), nullable=True),
        sa.Column("cached_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("is_valid", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("chart_id", "tenant_id", "cache_key", name="uq_cache_chart_tenant_key"),
        schema="shared",
    )
    op.create_index("idx_cache_chart_tenant", "chart_data_cache", ["chart_id", "tenant_id"], schema="shared")
    op.create_index("idx_cache_tenant", "chart_data_cache", ["tenant_id"], schema="shared")
    op.create_index(
        "idx_cache_source_tables",
        "chart_data_cache",
        ["source_tables"],
        schema="shared",
        postgresql_using="gin",
    )

    op.create_table(
        "chart_table_dependencies",
        _id(),
        sa.Column("chart_id", sa.BigInteger(), nullable=False),
        sa.Column("table_name", sa.Text(), nullable=False),
        sa.Column("schema_name", sa.Text(), nullable=False),
        sa.Column("dependency_type", sa.String(20), server_default=sa.text("'query'")),
        _created_at(),
        sa.UniqueConstraint("chart_id", "table_name", "schema_name", name="uq_deps_chart_table_schema"),
        schema="shared",
    )
    op.create_index("idx_deps_table", "chart_table_dependencies", ["table_name"], schema="shared")

    op.create_table(
        "webhook_logs",
        _id(),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("operation", sa.String(32), nullable=False),
        sa.Column("table_name", sa.Text(), nullable=True),
        sa.Column("target_table", sa.Text(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB(), server_default=sa.text("'{}'::jsonb")),
        _created_at(),
        schema="shared",
    )
    op.create_index(
        "idx_webhook_logs_tenant_time", "webhook_logs", ["tenant_id", "created_at"], schema="shared"
    )

    op.create_table(
        "sync_summary",
        _id(),
        sa.Column("sync_id", sa.Text(), nullable=False),
        sa.Column("sync_type", sa.String(32), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("table_name", sa.Text(), nullable=False),
        sa.Column("operation", sa.String(32), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("primary_keys", ARRAY(sa.Text()), nullable=False),
        sa.Column("primary_keys_overflow", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        schema="shared",
    )
    op.create_index("idx_sync_summary_sync_id", "sync_summary", ["sync_id"], schema="shared")


def downgrade() -> None:
    op.drop_table("sync_summary", schema="shared")
    op.drop_table("webhook_logs", schema="shared")
    op.drop_table("chart_table_dependencies", schema="shared")
    op.drop_table("chart_data_cache", schema="shared")
    op.drop_table("tenant_data_push_log", schema="shared")
    op.drop_table("tenant_column_access", schema="shared")
    op.drop_table("tenant_short_names", schema="shared")
