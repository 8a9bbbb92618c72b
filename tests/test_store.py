"""Tests for the target store's SQL and validation (no database)."""

from __future__ import annotations

import json

import pytest

from conftest import db_error, mock_engine
from src.tenantsync.config import Settings
from src.tenantsync.core.errors import InvalidIdentifierError, UpsertFailure, ValidationError
from src.tenantsync.sync.store import TargetStore


@pytest.fixture
def store_and_conn():
    engine, conn = mock_engine(rowcount=1)
    return TargetStore(engine, Settings(_env_file=None)), conn


def _sql(conn, call: int = -1) -> str:
    return str(conn.execute.await_args_list[call].args[0])


class TestUpsertSql:
    """Shape of the generated INSERT ... ON CONFLICT statement."""

    def test_updates_non_key_columns(self, store_and_conn):
        store, _ = store_and_conn
        sql = store._upsert_sql("quotes", ("id", "tenant_id", "total"))
        assert sql.startswith('INSERT INTO "base"."quotes" ("id", "tenant_id", "total") ')
        assert 'jsonb_populate_recordset(NULL::"base"."quotes", CAST(:rows AS jsonb))' in sql
        assert 'ON CONFLICT ("id") DO UPDATE SET "tenant_id" = EXCLUDED."tenant_id", "total" = EXCLUDED."total"' in sql

    def test_key_only_rows_do_nothing_on_conflict(self, store_and_conn):
        store, _ = store_and_conn
        sql = store._upsert_sql("device_tenants", ("device_id", "tenant_id"))
        assert sql.endswith('ON CONFLICT ("device_id", "tenant_id") DO NOTHING')


class TestUpsertRows:
    """Batch upserts: grouping, key checks and error mapping."""

    @pytest.mark.asyncio
    async def test_rows_grouped_by_key_set(self, store_and_conn):
        """Rows with different column sets go out as separate statements."""
        store, conn = store_and_conn
        rows = [
            {"id": 1, "tenant_id": "T1", "total": 10},
            {"id": 2, "tenant_id": "T1"},
            {"id": 3, "tenant_id": "T1", "total": 30},
        ]
        assert await store.upsert_rows("quotes", rows) == 3
        assert conn.execute.await_count == 2
        payloads = [json.loads(c.args[1]["rows"]) for c in conn.execute.await_args_list]
        assert sorted(len(p) for p in payloads) == [1, 2]

    @pytest.mark.asyncio
    async def test_empty_batch_skips_database(self, store_and_conn):
        store, conn = store_and_conn
        assert await store.upsert_rows("quotes", []) == 0
        conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_key_is_rejected_before_write(self, store_and_conn):
        store, conn = store_and_conn
        with pytest.raises(ValidationError):
            await store.upsert_rows("quotes", [{"id": 1}, {"total": 5}])
        conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_composite_key_required(self, store_and_conn):
        """device_tenants needs both halves of its key."""
        store, _ = store_and_conn
        with pytest.raises(ValidationError):
            await store.upsert_rows("device_tenants", [{"device_id": "D1"}])

    @pytest.mark.asyncio
    async def test_invalid_column_is_rejected(self, store_and_conn):
        store, conn = store_and_conn
        with pytest.raises(InvalidIdentifierError):
            await store.upsert_rows("quotes", [{"id": 1, "total; DROP TABLE x": 1}])
        conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_unregistered_table_is_rejected(self, store_and_conn):
        store, _ = store_and_conn
        with pytest.raises(InvalidIdentifierError):
            await store.upsert_rows("pg_authid", [{"id": 1}])

    @pytest.mark.asyncio
    async def test_database_error_becomes_upsert_failure(self, store_and_conn):
        store, conn = store_and_conn
        conn.execute.side_effect = db_error("invalid input syntax for type integer")
        with pytest.raises(UpsertFailure) as exc_info:
            await store.upsert_rows("quotes", [{"id": 1, "total": "abc"}])
        assert exc_info.value.table == "quotes"

    @pytest.mark.asyncio
    async def test_non_json_values_are_stringified(self, store_and_conn):
        """Dates and decimals survive the trip through jsonb_populate_recordset."""
        from datetime import datetime, timezone

        store, conn = store_and_conn
        at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        await store.upsert_rows("quotes", [{"id": 1, "created_at": at}])
        payload = json.loads(conn.execute.await_args.args[1]["rows"])
        assert payload[0]["created_at"] == str(at)


class TestDeleteAndClear:
    @pytest.mark.asyncio
    async def test_delete_by_id(self, store_and_conn):
        store, conn = store_and_conn
        assert await store.delete_row("quotes", {"id": 7, "total": 1}) == 1
        assert json.loads(conn.execute.await_args.args[1]["key"]) == {"id": 7}
        assert 'WHERE t."id" = k."id"' in _sql(conn)

    @pytest.mark.asyncio
    async def test_delete_requires_key(self, store_and_conn):
        store, _ = store_and_conn
        with pytest.raises(ValidationError):
            await store.delete_row("quotes", {"total": 1})

    @pytest.mark.asyncio
    async def test_clear_direct_table(self, store_and_conn):
        store, conn = store_and_conn
        await store.clear_tenant_rows("quotes", "T1")
        assert _sql(conn) == 'DELETE FROM "base"."quotes" t WHERE t.tenant_id = :tenant_id'
        assert conn.execute.await_args.args[1] == {"tenant_id": "T1"}

    @pytest.mark.asyncio
    async def test_clear_device_table_uses_current_ownership(self, store_and_conn):
        store, conn = store_and_conn
        await store.clear_tenant_rows("device_configs", "T1")
        sql = _sql(conn)
        assert 'USING "base"."device_tenants" dt' in sql
        assert 'dt.device_id = t."device_id"' in sql
        assert "dt.is_current_owner = true" in sql

    @pytest.mark.asyncio
    async def test_clear_parent_table_joins_parent(self, store_and_conn):
        store, conn = store_and_conn
        await store.clear_tenant_rows("route_waypoints", "T1")
        sql = _sql(conn)
        assert 'USING "base"."optimized_routes" p' in sql
        assert 'p.id = t."route_id" AND p.tenant_id = :tenant_id' in sql

    @pytest.mark.asyncio
    async def test_global_table_never_cleared(self, store_and_conn):
        """Shared reference tables belong to no tenant."""
        store, conn = store_and_conn
        assert await store.clear_tenant_rows("tenants", "T1") == 0
        conn.execute.assert_not_called()


class TestReplaceTenantRows:
    """Clear-then-upsert for FULL_SYNC and MULTI_TABLE_SYNC batches."""

    @pytest.mark.asyncio
    async def test_clear_and_upsert_share_one_transaction(self, store_and_conn):
        store, conn = store_and_conn

        result = await store.replace_tenant_rows("quotes", "T1", [{"id": 1, "tenant_id": "T1"}])

        assert result == (1, 1)
        assert store._engine.begin.call_count == 1
        assert _sql(conn, 0).startswith('DELETE FROM "base"."quotes" t')
        assert _sql(conn, 1).startswith('INSERT INTO "base"."quotes"')

    @pytest.mark.asyncio
    async def test_invalid_row_is_rejected_before_clearing(self, store_and_conn):
        """A row without its key fails validation before any statement runs."""
        store, conn = store_and_conn

        with pytest.raises(ValidationError):
            await store.replace_tenant_rows("sites", "T2", [{"id": 1}, {"name": "no id"}])

        store._engine.begin.assert_not_called()
        conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_column_is_rejected_before_clearing(self, store_and_conn):
        store, conn = store_and_conn

        with pytest.raises(InvalidIdentifierError):
            await store.replace_tenant_rows("sites", "T2", [{"id": 1, 'name"': "x"}])

        conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_write_failure_rolls_back_the_clear(self, store_and_conn):
        """The upsert error propagates through the transaction, undoing the DELETE."""
        store, conn = store_and_conn
        conn.execute.side_effect = [
            conn.execute.return_value,
            db_error("value too long for type character varying(20)"),
        ]

        with pytest.raises(UpsertFailure):
            await store.replace_tenant_rows("sites", "T2", [{"id": 1, "tenant_id": "T2"}])

        exit_args = store._engine.begin.return_value.__aexit__.await_args.args
        assert exit_args[0] is not None

    @pytest.mark.asyncio
    async def test_without_clear_only_upserts(self, store_and_conn):
        store, conn = store_and_conn

        result = await store.replace_tenant_rows("quotes", "T1", [{"id": 1}], clear=False)

        assert result == (0, 1)
        assert conn.execute.await_count == 1
        assert _sql(conn).startswith("INSERT INTO")

    @pytest.mark.asyncio
    async def test_empty_batch_still_clears(self, store_and_conn):
        store, conn = store_and_conn

        assert await store.replace_tenant_rows("quotes", "T1", []) == (1, 0)
        assert conn.execute.await_count == 1
        assert _sql(conn).startswith("DELETE FROM")

    @pytest.mark.asyncio
    async def test_global_table_is_upserted_not_cleared(self, store_and_conn):
        store, conn = store_and_conn

        assert await store.replace_tenant_rows("service_types", "T1", [{"id": 1}]) == (0, 1)
        assert conn.execute.await_count == 1
        assert _sql(conn).startswith('INSERT INTO "base"."service_types"')

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, store_and_conn):
        store, conn = store_and_conn

        assert await store.replace_tenant_rows("quotes", "T1", [], clear=False) == (0, 0)
        conn.execute.assert_not_called()
