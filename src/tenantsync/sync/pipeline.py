"""Sync ingestion pipeline.

Takes one inbound change event from the source system through

    received -> validated -> applied -> downstream-dispatched -> logged

with any failure after receipt ending in error-logged. The primary write
(upsert, delete, clear) completes before downstream work is scheduled.
Downstream work runs on the background dispatcher and never changes the
outcome reported to the caller:

- column tracking + view regeneration, per affected table, using the
  columns of the first row written
- one cache invalidation covering every affected table
- one push log entry
- a sync summary for FULL_SYNC events carrying a sync_id
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Any

import pydantic
import structlog

from src.tenantsync.core.errors import AuthError, SyncError, ValidationError
from src.tenantsync.core.monitoring import (
    cache_invalidations_total,
    sync_events_total,
    sync_rows_written_total,
)
from src.tenantsync.schemas.sync import SyncEvent, SyncOperation, TableResult
from src.tenantsync.sync.cache import ChartCache
from src.tenantsync.sync.dispatcher import BackgroundDispatcher
from src.tenantsync.sync.push_log import PushLog, SyncSummaryRepository, WebhookLogRepository
from src.tenantsync.sync.signature import verify_signature
from src.tenantsync.sync.store import TargetStore
from src.tenantsync.sync.tables import conflict_columns, map_source_to_target
from src.tenantsync.sync.views import ViewGenerator

logger = structlog.get_logger(__name__)


class SyncState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    APPLIED = "applied"
    DISPATCHED = "downstream-dispatched"
    LOGGED = "logged"
    ERROR_LOGGED = "error-logged"


@dataclass
class AffectedTable:
    """A target table whose contents changed during one event."""

    target: str
    count: int
    columns: list[str] | None = None
    primary_keys: list[Any] = field(default_factory=list)


@dataclass
class SyncResult:
    state: SyncState
    response: dict[str, Any]
    affected: list[AffectedTable] = field(default_factory=list)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _operation_label(value: Any) -> str:
    """Known operation name, or UNKNOWN for anything else."""
    if isinstance(value, str) and value in SyncOperation._value2member_map_:
        return value
    return "UNKNOWN"


def _peek_operation(raw: bytes) -> Any:
    # Read for the audit row only; an unauthenticated body is never applied.
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    return payload.get("operation") if isinstance(payload, dict) else None


class SyncPipeline:
    """Applies sync events to the target store and schedules upkeep.

    Args:
        store: Base-table writer.
        views: Tenant view generator.
        cache: Chart cache (invalidated per affected table).
        push_log: Push history.
        webhook_logs: Audit log, one row per event.
        summaries: FULL_SYNC summary writer.
        dispatcher: Background task runner for downstream work.
        webhook_secret: Shared HMAC secret; empty disables verification.
    """

    def __init__(
        self,
        store: TargetStore,
        views: ViewGenerator,
        cache: ChartCache,
        push_log: PushLog,
        webhook_logs: WebhookLogRepository,
        summaries: SyncSummaryRepository,
        dispatcher: BackgroundDispatcher,
        webhook_secret: str = "",
    ) -> None:
        self._store = store
        self._views = views
        self._cache = cache
        self._push_log = push_log
        self._webhook_logs = webhook_logs
        self._summaries = summaries
        self._dispatcher = dispatcher
        self._webhook_secret = webhook_secret

    # ── Parsing ─────────────────────────────────────────────────────────

    @staticmethod
    def decode_body(body: bytes | str | dict[str, Any]) -> dict[str, Any]:
        if isinstance(body, dict):
            return body
        try:
            payload = json.loads(body or b"{}")
        except (TypeError, ValueError) as exc:
            raise ValidationError("Request body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")
        return payload

    @staticmethod
    def parse_event(payload: dict[str, Any]) -> SyncEvent:
        try:
            return SyncEvent.model_validate(payload)
        except pydantic.ValidationError as exc:
            errors = exc.errors()
            first = errors[0] if errors else {}
            location = ".".join(str(part) for part in first.get("loc", ()))
            detail = first.get("msg", "invalid event")
            raise ValidationError(f"{location}: {detail}" if location else detail) from exc

    # ── Entry point ─────────────────────────────────────────────────────

    async def handle(
        self,
        body: bytes | str | dict[str, Any],
        *,
        signature: str | None = None,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> SyncResult:
        """Process one inbound event end to end.

        Args:
            body: Raw request body (or an already-decoded payload).
            signature: Value of the signature header, if sent.
            client_ip: Caller address for the audit log.
            user_agent: Caller user agent for the audit log.

        Returns:
            The terminal state, the response body and the tables changed.

        Raises:
            AuthError: Signature mismatch. Audited without tenant or payload
                details, nothing else written.
            ValidationError: Malformed event. Audited, nothing else written.
            UpsertFailure: Primary write failed for a single-table event.
        """
        start = time.monotonic()
        audit = {"client_ip": client_ip, "user_agent": user_agent}

        raw = body.encode("utf-8") if isinstance(body, str) else body
        if isinstance(raw, bytes):
            try:
                verify_signature(raw, signature, self._webhook_secret)
            except AuthError as exc:
                operation = _operation_label(_peek_operation(raw))
                await self._write_audit(
                    operation=operation,
                    success=False,
                    error_message=exc.message,
                    duration_ms=_elapsed_ms(start),
                    **audit,
                )
                sync_events_total.labels(operation=operation, outcome="unauthorized").inc()
                raise

        payload: dict[str, Any] = {}
        state = SyncState.RECEIVED
        try:
            payload = self.decode_body(body)
            event = self.parse_event(payload)
            state = SyncState.VALIDATED
            if event.tenant_id:
                structlog.contextvars.bind_contextvars(tenant_id=event.tenant_id)
            log = logger.bind(
                operation=event.operation.value,
                tenant_id=event.tenant_id,
                table=event.table,
            )

            if event.operation is SyncOperation.TEST:
                response = {"received": True, "test": True}
                await self._audit(event, None, True, start, audit, metadata={"test": True})
                sync_events_total.labels(operation="TEST", outcome="test").inc()
                log.info("sync_test_received")
                return SyncResult(SyncState.LOGGED, response)

            if event.operation is SyncOperation.MULTI_TABLE_SYNC:
                return await self._handle_multi(event, start, audit, log)

            target = map_source_to_target(event.table)
            if target is None:
                log.info("sync_table_unmapped")
                await self._audit(event, None, True, start, audit, metadata={"skipped": True})
                sync_events_total.labels(operation=event.operation.value, outcome="skipped").inc()
                return SyncResult(SyncState.LOGGED, {"received": True, "skipped": True})

            started_at = datetime.now(timezone.utc)
            affected = await self._apply_single(event, target)
            state = SyncState.APPLIED

            self._dispatch(event, affected, started_at)
            state = SyncState.DISPATCHED

            records = sum(a.count for a in affected)
            await self._audit(event, target, True, start, audit, metadata={"records": records})
            sync_events_total.labels(operation=event.operation.value, outcome="success").inc()
            log.info("sync_applied", target_table=target, records=records)
            return SyncResult(
                SyncState.LOGGED,
                {"received": True, "duration_ms": _elapsed_ms(start)},
                affected,
            )
        except Exception as exc:
            message = exc.message if isinstance(exc, SyncError) else str(exc)
            logger.error(
                "sync_failed",
                state=state.value,
                operation=payload.get("operation"),
                tenant_id=payload.get("tenant_id"),
                table=payload.get("table"),
                error=message,
            )
            await self._audit_failure(payload, message, start, audit)
            sync_events_total.labels(operation=_operation_label(payload.get("operation")), outcome="error").inc()
            raise

    # ── Application ─────────────────────────────────────────────────────

    async def _apply_single(self, event: SyncEvent, target: str) -> list[AffectedTable]:
        op = event.operation
        tenant_id = event.tenant_id

        if op in (SyncOperation.INSERT, SyncOperation.UPDATE):
            count = await self._store.upsert_rows(target, [event.data])
            sync_rows_written_total.labels(table=target).inc(count)
            return [AffectedTable(target, count, columns=list(event.data))]

        if op is SyncOperation.DELETE:
            deleted = await self._store.delete_row(target, event.data)
            if not deleted:
                return []
            sync_rows_written_total.labels(table=target).inc(deleted)
            return [AffectedTable(target, deleted)]

        # FULL_SYNC
        batch = event.batch
        cleared, written = await self._store.replace_tenant_rows(
            target,
            tenant_id,
            batch.data,
            clear=batch.offset == 0,
        )
        sync_rows_written_total.labels(table=target).inc(written)

        if not (cleared or written):
            return []
        key = conflict_columns(target)[0]
        return [
            AffectedTable(
                target,
                written or cleared,
                columns=list(batch.data[0]) if batch.data else None,
                primary_keys=[row.get(key) for row in batch.data],
            )
        ]

    async def _handle_multi(
        self,
        event: SyncEvent,
        start: float,
        audit: dict[str, Any],
        log: Any,
    ) -> SyncResult:
        tenant_id = event.tenant_id
        results: list[TableResult] = []
        affected: list[AffectedTable] = []

        for source, payload in event.tables.items():
            target = map_source_to_target(source)
            if target is None:
                log.info("sync_table_unmapped", source_table=source)
                results.append(TableResult(source_table=source, success=True, skipped=True))
                continue
            try:
                cleared, written = await self._store.replace_tenant_rows(
                    target,
                    tenant_id,
                    payload.data,
                    clear=payload.clear_existing,
                )
            except SyncError as exc:
                log.error("sync_table_failed", source_table=source, target_table=target, error=exc.message)
                results.append(
                    TableResult(source_table=source, target_table=target, success=False, error=exc.message)
                )
                continue

            sync_rows_written_total.labels(table=target).inc(written)
            results.append(
                TableResult(
                    source_table=source,
                    target_table=target,
                    success=True,
                    cleared=cleared,
                    records=written,
                )
            )
            if cleared or written:
                affected.append(
                    AffectedTable(
                        target,
                        written or cleared,
                        columns=list(payload.data[0]) if payload.data else None,
                    )
                )

        self._dispatch(event, affected, None)

        failed = [r for r in results if not r.success]
        records = sum(r.records for r in results)
        await self._audit(
            event,
            None,
            not failed,
            start,
            audit,
            error_message="; ".join(f"{r.source_table}: {r.error}" for r in failed) or None,
            metadata={
                "records": records,
                "tables": len(results),
                "failed": [r.source_table for r in failed],
            },
        )
        outcome = "partial" if failed else "success"
        sync_events_total.labels(operation="MULTI_TABLE_SYNC", outcome=outcome).inc()
        log.info("multi_table_sync_applied", tables=len(results), failed=len(failed), records=records)

        return SyncResult(
            SyncState.LOGGED,
            {
                "received": True,
                "duration_ms": _elapsed_ms(start),
                "results": [r.model_dump() for r in results],
            },
            affected,
        )

    # ── Downstream ──────────────────────────────────────────────────────

    def _dispatch(
        self,
        event: SyncEvent,
        affected: list[AffectedTable],
        started_at: datetime | None,
    ) -> None:
        if not affected:
            return
        tenant_id = event.tenant_id
        operation = event.operation.value
        tables = [a.target for a in affected]

        for entry in affected:
            if entry.columns:
                self._dispatcher.spawn(
                    "view_update",
                    partial(self._views.regenerate_if_needed, tenant_id, entry.target, entry.columns),
                    tenant_id=tenant_id,
                    table=entry.target,
                    operation=operation,
                )

        self._dispatcher.spawn(
            "cache_invalidation",
            partial(self._invalidate_cache, tenant_id, tables),
            tenant_id=tenant_id,
            tables=tables,
            operation=operation,
        )
        self._dispatcher.spawn(
            "push_log",
            partial(
                self._push_log.append,
                tenant_id,
                event.sync_id,
                tables,
                {a.target: a.count for a in affected},
            ),
            tenant_id=tenant_id,
            tables=tables,
            operation=operation,
        )

        if event.operation is SyncOperation.FULL_SYNC and event.sync_id and started_at:
            entry = affected[0]
            self._dispatcher.spawn(
                "sync_summary",
                partial(
                    self._summaries.record,
                    sync_id=event.sync_id,
                    sync_type="full_sync",
                    tenant_id=tenant_id,
                    table_name=entry.target,
                    operation=operation,
                    primary_keys=entry.primary_keys,
                    started_at=started_at,
                    success=True,
                ),
                tenant_id=tenant_id,
                table=entry.target,
                operation=operation,
            )

    async def _invalidate_cache(self, tenant_id: str, tables: list[str]) -> int:
        count = await self._cache.invalidate_for_tables(tenant_id, tables)
        cache_invalidations_total.inc(count)
        return count

    # ── Audit ───────────────────────────────────────────────────────────

    async def _audit(
        self,
        event: SyncEvent,
        target: str | None,
        success: bool,
        start: float,
        audit: dict[str, Any],
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        meta = dict(metadata or {})
        if event.sync_id:
            meta["sync_id"] = event.sync_id
        await self._write_audit(
            operation=event.operation.value,
            success=success,
            tenant_id=event.tenant_id,
            table_name=event.table,
            target_table=target,
            error_message=error_message,
            duration_ms=_elapsed_ms(start),
            metadata=meta,
            **audit,
        )

    async def _audit_failure(
        self,
        payload: dict[str, Any],
        message: str,
        start: float,
        audit: dict[str, Any],
    ) -> None:
        table = payload.get("table") if isinstance(payload.get("table"), str) else None
        tenant_id = payload.get("tenant_id") if isinstance(payload.get("tenant_id"), str) else None
        await self._write_audit(
            operation=str(payload.get("operation") or "UNKNOWN")[:32],
            success=False,
            tenant_id=tenant_id[:64] if tenant_id else None,
            table_name=table,
            target_table=map_source_to_target(table),
            error_message=message,
            duration_ms=_elapsed_ms(start),
            **audit,
        )

    async def _write_audit(self, **fields: Any) -> None:
        try:
            await self._webhook_logs.record(**fields)
        except Exception as exc:
            logger.error(
                "webhook_audit_failed",
                operation=fields.get("operation"),
                tenant_id=fields.get("tenant_id"),
                error=str(exc),
            )
