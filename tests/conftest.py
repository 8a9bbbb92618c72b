"""Test fixtures for the sync subsystem.

Provides:
- In-memory fakes for the database-backed services (target store, schema
  catalog, tenant registry, column tracker, chart cache, push log, audit
  log, sync summaries) that mirror the real classes' signatures
- A real ViewGenerator, BackgroundDispatcher and SyncPipeline wired to the
  fakes, so pipeline behaviour is exercised end to end without Postgres
- FastAPI test app with services placed on app.state and an async client
- A mock AsyncEngine helper for unit tests of SQL-issuing classes
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import DBAPIError

from src.tenantsync.config import Settings
from src.tenantsync.core.errors import UpsertFailure, ValidationError
from src.tenantsync.sync.admin import TenantAdmin
from src.tenantsync.sync.column_access import ColumnAccessEntry, DriftResult, normalize_columns
from src.tenantsync.sync.dispatcher import BackgroundDispatcher
from src.tenantsync.sync.pipeline import SyncPipeline
from src.tenantsync.sync.tables import conflict_columns, is_global, require_target_table
from src.tenantsync.sync.tenants import TenantRecord, derive_short_name
from src.tenantsync.sync.views import ViewGenerator

WEBHOOK_SECRET = "test-webhook-secret"
ADMIN_KEY = "test-admin-key"


def db_error(message: str = "boom") -> DBAPIError:
    """A DBAPIError as SQLAlchemy raises it for a failed statement."""
    return DBAPIError("SQL", {}, Exception(message))


def mock_engine(rowcount: int = 0) -> tuple[MagicMock, MagicMock]:
    """Return (engine, conn) where engine.begin()/connect() yield conn."""
    conn = MagicMock()
    conn.execute = AsyncMock(return_value=MagicMock(rowcount=rowcount))
    conn.begin_nested = MagicMock()
    conn.begin_nested.return_value.__aenter__ = AsyncMock(return_value=None)
    conn.begin_nested.return_value.__aexit__ = AsyncMock(return_value=False)

    engine = MagicMock()
    for method in ("begin", "connect"):
        ctx = getattr(engine, method).return_value
        ctx.__aenter__ = AsyncMock(return_value=conn)
        ctx.__aexit__ = AsyncMock(return_value=False)
    return engine, conn


# ── Fakes ───────────────────────────────────────────────────────────────────


class FakeStore:
    """Dict-backed TargetStore. Ownership is read from each row's tenant_id."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[tuple, dict]] = {}
        self.fail_tables: set[str] = set()
        self.writes = 0

    def _key(self, table: str, row: dict) -> tuple:
        return tuple(row[k] for k in conflict_columns(table))

    async def upsert_rows(self, table_name: str, rows: list[dict]) -> int:
        if not rows:
            return 0
        require_target_table(table_name)
        if table_name in self.fail_tables:
            raise UpsertFailure(table_name, "simulated failure")
        keys = conflict_columns(table_name)
        for row in rows:
            if any(row.get(k) is None for k in keys):
                raise ValidationError(f"Row for {table_name} is missing key column(s)")
        table = self.tables.setdefault(table_name, {})
        for row in rows:
            table.setdefault(self._key(table_name, row), {}).update(row)
            self.writes += 1
        return len(rows)

    async def delete_row(self, table_name: str, row: dict) -> int:
        require_target_table(table_name)
        if table_name in self.fail_tables:
            raise UpsertFailure(table_name, "simulated failure")
        keys = conflict_columns(table_name)
        if any(row.get(k) is None for k in keys):
            raise ValidationError(f"DELETE on {table_name} requires {', '.join(keys)}")
        self.writes += 1
        removed = self.tables.get(table_name, {}).pop(self._key(table_name, row), None)
        return 1 if removed is not None else 0

    async def clear_tenant_rows(self, table_name: str, tenant_id: str) -> int:
        require_target_table(table_name)
        if table_name in self.fail_tables:
            raise UpsertFailure(table_name, "simulated failure")
        if is_global(table_name):
            return 0
        table = self.tables.get(table_name, {})
        doomed = [k for k, row in table.items() if row.get("tenant_id") == tenant_id]
        for key in doomed:
            del table[key]
        self.writes += len(doomed)
        return len(doomed)

    async def replace_tenant_rows(
        self,
        table_name: str,
        tenant_id: str,
        rows: list[dict],
        *,
        clear: bool = True,
    ) -> tuple[int, int]:
        # validated and failed up front so nothing changes on error, like the
        # real store's single transaction
        require_target_table(table_name)
        keys = conflict_columns(table_name)
        for row in rows:
            if any(row.get(k) is None for k in keys):
                raise ValidationError(f"Row for {table_name} is missing key column(s)")
        if table_name in self.fail_tables:
            raise UpsertFailure(table_name, "simulated failure")
        cleared = await self.clear_tenant_rows(table_name, tenant_id) if clear else 0
        written = await self.upsert_rows(table_name, rows)
        return cleared, written

    async def count_rows(self, table_name: str, tenant_id: str | None = None) -> int:
        rows = self.tables.get(table_name, {}).values()
        if tenant_id is None:
            return len(rows)
        return sum(1 for r in rows if r.get("tenant_id") == tenant_id)

    def rows(self, table_name: str) -> list[dict]:
        return list(self.tables.get(table_name, {}).values())


class FakeCatalog:
    """Records view DDL. Set fail=True to make create_or_replace_view raise."""

    def __init__(self) -> None:
        self.views: dict[tuple[str, str], str] = {}
        self.create_calls: list[tuple[str, str, str]] = []
        self.fail = False

    async def view_exists(self, schema: str, view: str) -> bool:
        return (schema, view) in self.views

    async def list_views(self, schema: str) -> list[str]:
        return sorted(v for s, v in self.views if s == schema)

    async def create_or_replace_view(self, schema: str, view: str, select_sql: str) -> None:
        self.create_calls.append((schema, view, select_sql))
        if self.fail:
            raise db_error("cannot drop columns from view")
        self.views[(schema, view)] = select_sql

    async def drop_view(self, schema: str, view: str) -> None:
        self.views.pop((schema, view), None)

    def drop_schema(self, schema: str) -> None:
        for key in [k for k in self.views if k[0] == schema]:
            del self.views[key]


class FakeRegistry:
    """Short names in a dict. names holds what base.tenants would return."""

    def __init__(self, catalog: FakeCatalog) -> None:
        self._catalog = catalog
        self.tenants: dict[str, TenantRecord] = {}
        self.provisioned: set[str] = set()
        self.names: dict[str, str] = {}

    async def resolve_short_name(self, tenant_id: str) -> str | None:
        record = self.tenants.get(tenant_id)
        return record.short_name if record else None

    async def get_tenant(self, tenant_id: str) -> TenantRecord | None:
        return self.tenants.get(tenant_id)

    async def list_tenants(self) -> list[TenantRecord]:
        return sorted(self.tenants.values(), key=lambda r: r.short_name)

    async def lookup_display_name(self, tenant_id: str) -> str | None:
        return self.names.get(tenant_id)

    async def register_tenant(self, tenant_id: str, display_name: str | None = None) -> str:
        if tenant_id in self.tenants:
            return self.tenants[tenant_id].short_name
        taken = {r.short_name for r in self.tenants.values()}
        base = derive_short_name(display_name, tenant_id)
        candidate, attempt = base, 1
        while candidate in taken:
            attempt += 1
            candidate = f"{base}_{attempt}"
        self.tenants[tenant_id] = TenantRecord(tenant_id, candidate, display_name)
        return candidate

    async def forget_tenant(self, tenant_id: str) -> int:
        return 1 if self.tenants.pop(tenant_id, None) else 0

    async def ensure_schema_and_role(self, short_name: str) -> None:
        self.provisioned.add(short_name)

    async def drop_schema_and_role(self, short_name: str) -> None:
        self.provisioned.discard(short_name)
        self._catalog.drop_schema(f"tenant_{short_name}")


class FakeTracker:
    def __init__(self) -> None:
        self.records: dict[tuple[str, str], list[str]] = {}
        self.updates = 0

    async def get_columns(self, tenant_id: str, table_name: str) -> list[str] | None:
        columns = self.records.get((tenant_id, table_name))
        return list(columns) if columns is not None else None

    async def update_and_check_drift(self, tenant_id: str, table_name: str, columns: list[str]) -> DriftResult:
        new_columns = normalize_columns(columns)
        previous = self.records.get((tenant_id, table_name))
        self.records[(tenant_id, table_name)] = new_columns
        self.updates += 1
        return DriftResult(changed=previous != new_columns, columns=new_columns)

    async def list_for_tenant(self, tenant_id: str) -> list[ColumnAccessEntry]:
        return [
            ColumnAccessEntry(tenant_id=t, table_name=table, columns=list(cols), last_push_at=None)
            for (t, table), cols in sorted(self.records.items())
            if t == tenant_id
        ]

    async def delete_for_tenant(self, tenant_id: str) -> int:
        doomed = [k for k in self.records if k[0] == tenant_id]
        for key in doomed:
            del self.records[key]
        return len(doomed)

    async def count_for_tenant(self, tenant_id: str) -> int:
        return sum(1 for k in self.records if k[0] == tenant_id)


class FakeCache:
    def __init__(self) -> None:
        self.entries: list[dict] = []
        self.invalidation_calls: list[tuple[str, list[str]]] = []

    def add(self, chart_id: int, tenant_id: str, source_tables: list[str]) -> dict:
        entry = {
            "chart_id": chart_id,
            "tenant_id": tenant_id,
            "source_tables": sorted(set(source_tables)),
            "is_valid": True,
        }
        self.entries.append(entry)
        return entry

    async def invalidate_for_tables(self, tenant_id: str, tables: list[str]) -> int:
        self.invalidation_calls.append((tenant_id, list(tables)))
        count = 0
        for entry in self.entries:
            if entry["tenant_id"] == tenant_id and entry["is_valid"] and set(entry["source_tables"]) & set(tables):
                entry["is_valid"] = False
                count += 1
        return count

    async def invalidate_all_for_tenant(self, tenant_id: str) -> int:
        count = 0
        for entry in self.entries:
            if entry["tenant_id"] == tenant_id and entry["is_valid"]:
                entry["is_valid"] = False
                count += 1
        return count

    async def delete_for_tenant(self, tenant_id: str) -> int:
        before = len(self.entries)
        self.entries = [e for e in self.entries if e["tenant_id"] != tenant_id]
        return before - len(self.entries)

    async def count_for_tenant(self, tenant_id: str) -> int:
        return sum(1 for e in self.entries if e["tenant_id"] == tenant_id)


class FakePushLog:
    def __init__(self) -> None:
        self.entries: list[dict] = []

    async def append(self, tenant_id: str, push_id, affected_tables: list[str], record_counts: dict[str, int]):
        resolved = push_id or uuid.uuid4()
        self.entries.append({
            "tenant_id": tenant_id,
            "push_id": resolved,
            "affected_tables": list(affected_tables),
            "record_counts": dict(record_counts),
        })
        return resolved

    async def count_for_tenant(self, tenant_id: str) -> int:
        return sum(1 for e in self.entries if e["tenant_id"] == tenant_id)

    async def delete_for_tenant(self, tenant_id: str) -> int:
        before = len(self.entries)
        self.entries = [e for e in self.entries if e["tenant_id"] != tenant_id]
        return before - len(self.entries)


class FakeWebhookLogs:
    def __init__(self) -> None:
        self.rows: list[dict] = []

    async def record(self, **fields) -> None:
        self.rows.append(fields)

    async def list(self, tenant_id=None, status=None, page=1, limit=50):
        rows = [
            r for r in self.rows
            if (tenant_id is None or r.get("tenant_id") == tenant_id)
            and (status is None or r["success"] == (status == "success"))
        ]
        page_rows = rows[(page - 1) * limit: page * limit]
        return (
            [
                {
                    "id": str(i),
                    "tenant_id": r.get("tenant_id"),
                    "operation": r["operation"],
                    "table_name": r.get("table_name"),
                    "target_table": r.get("target_table"),
                    "success": r["success"],
                    "error_message": r.get("error_message"),
                    "duration_ms": r.get("duration_ms"),
                    "metadata": r.get("metadata") or {},
                }
                for i, r in enumerate(page_rows)
            ],
            len(rows),
        )


class FakeSummaries:
    def __init__(self) -> None:
        self.rows: list[dict] = []

    async def record(self, **fields) -> None:
        self.rows.append(fields)

    async def delete_for_tenant(self, tenant_id: str) -> int:
        before = len(self.rows)
        self.rows = [r for r in self.rows if r["tenant_id"] != tenant_id]
        return before - len(self.rows)


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return Settings(
        WEBHOOK_SECRET=WEBHOOK_SECRET,
        ADMIN_API_KEY=ADMIN_KEY,
        DISPATCH_RETRY_ATTEMPTS=2,
        _env_file=None,
    )


@pytest.fixture
def services(settings) -> SimpleNamespace:
    """Every sync service, with fakes standing in for the database layer."""
    catalog = FakeCatalog()
    registry = FakeRegistry(catalog)
    tracker = FakeTracker()
    store = FakeStore()
    cache = FakeCache()
    push_log = FakePushLog()
    webhook_logs = FakeWebhookLogs()
    summaries = FakeSummaries()
    dispatcher = BackgroundDispatcher(max_concurrency=4, retry_attempts=2, retry_wait_max=0.01)
    views = ViewGenerator(registry, tracker, catalog, settings)
    pipeline = SyncPipeline(
        store=store,
        views=views,
        cache=cache,
        push_log=push_log,
        webhook_logs=webhook_logs,
        summaries=summaries,
        dispatcher=dispatcher,
        webhook_secret=settings.WEBHOOK_SECRET,
    )
    admin = TenantAdmin(
        registry=registry,
        tracker=tracker,
        push_log=push_log,
        summaries=summaries,
        cache=cache,
        store=store,
        catalog=catalog,
    )
    return SimpleNamespace(
        registry=registry,
        tracker=tracker,
        catalog=catalog,
        views=views,
        store=store,
        cache=cache,
        push_log=push_log,
        webhook_logs=webhook_logs,
        summaries=summaries,
        dispatcher=dispatcher,
        pipeline=pipeline,
        admin=admin,
    )


@pytest.fixture
def app(settings, services):
    """FastAPI app with fake services on app.state (lifespan is not run)."""
    from src.tenantsync.main import create_app

    application = create_app(settings)
    for name, service in vars(services).items():
        setattr(application.state, name, service)
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}
