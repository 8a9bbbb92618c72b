"""Supervised background dispatcher for downstream sync tasks.

After a sync event's primary write commits, column tracking, view
regeneration, cache invalidation and push logging run as background tasks.
They are best-effort consistency maintenance: a failure is retried on
transient database errors, then logged with its context and counted, but
never propagated to the request that scheduled it.

The dispatcher holds a reference to every task it starts (so none are
garbage-collected mid-flight), bounds how many run at once with a
semaphore, and exposes drain() so tests and shutdown can wait for them.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.tenantsync.core.errors import DownstreamTaskFailure
from src.tenantsync.core.monitoring import dispatch_tasks_in_flight, dispatch_tasks_total

logger = structlog.get_logger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


def is_transient(exc: BaseException) -> bool:
    """True for errors worth retrying: lost connections, timeouts, invalidated pools."""
    if isinstance(exc, (OperationalError, InterfaceError, ConnectionError, TimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


class BackgroundDispatcher:
    """Runs downstream tasks with bounded concurrency and retries.

    Args:
        max_concurrency: Upper bound on tasks executing at the same time.
        retry_attempts: Attempts per task (including the first) for
            transient errors.
        retry_wait_max: Ceiling in seconds for exponential backoff.
    """

    def __init__(
        self,
        max_concurrency: int = 8,
        retry_attempts: int = 3,
        retry_wait_max: float = 10.0,
    ) -> None:
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._retry_attempts = max(1, retry_attempts)
        self._retry_wait_max = retry_wait_max
        self._tasks: set[asyncio.Task] = set()
        self.failures: deque[DownstreamTaskFailure] = deque(maxlen=100)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, name: str, factory: TaskFactory, **context: Any) -> asyncio.Task:
        """Schedule factory() as a supervised background task.

        Args:
            name: Task kind (used for logs and metrics), e.g. "view_update".
            factory: Zero-argument callable returning a fresh awaitable per
                attempt.
            **context: Extra log context (tenant_id, table, operation...).

        Returns:
            The created task. Callers normally don't await it.
        """
        task = asyncio.create_task(self._run(name, factory, context), name=f"dispatch:{name}")
        self._tasks.add(task)
        dispatch_tasks_in_flight.inc()
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        dispatch_tasks_in_flight.dec()

    async def _run(self, name: str, factory: TaskFactory, context: dict[str, Any]) -> Any:
        async with self._semaphore:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self._retry_attempts),
                    wait=wait_exponential(multiplier=0.5, max=self._retry_wait_max),
                    retry=retry_if_exception(is_transient),
                    reraise=True,
                ):
                    with attempt:
                        result = await factory()
            except asyncio.CancelledError:
                dispatch_tasks_total.labels(task=name, outcome="cancelled").inc()
                raise
            except Exception as exc:
                failure = DownstreamTaskFailure(name, str(exc))
                self.failures.append(failure)
                dispatch_tasks_total.labels(task=name, outcome="error").inc()
                logger.error(
                    "downstream_task_failed",
                    task=name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                    **context,
                )
                return None

        dispatch_tasks_total.labels(task=name, outcome="success").inc()
        logger.debug("downstream_task_completed", task=name, **context)
        return result

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until every scheduled task (including ones spawned meanwhile) finishes."""
        while self._tasks:
            pending = list(self._tasks)
            done, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning("dispatcher_drain_timeout", pending=len(not_done))
                return

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Drain with a deadline, then cancel whatever is left."""
        await self.drain(timeout=timeout)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
