"""
Detached task runner for work that must outlive the HTTP request.

The webhook answers Apple before reconciliation finishes. Tasks started here
are held by strong reference until they complete, and anything they raise is
routed to the logs and metrics instead of vanishing.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from structlog import get_logger

from app.observability.metrics import metrics

logger = get_logger(__name__)


class BackgroundTaskRunner:
    """Spawns fire-and-forget asyncio tasks with an error sink."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        """Number of tasks not yet finished."""
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Start coro without awaiting it. Must be called from a running event loop."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        metrics.background_tasks_in_progress.inc()
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        metrics.background_tasks_in_progress.dec()

        if task.cancelled():
            logger.warning("background_task_cancelled", task=task.get_name())
            return

        exc = task.exception()
        if exc is not None:
            metrics.record_error(type(exc).__name__, "background_task")
            logger.error(
                "background_task_failed",
                task=task.get_name(),
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=exc,
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding tasks; cancel whatever is left after timeout."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        logger.info("background_tasks_draining", count=len(tasks))
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
