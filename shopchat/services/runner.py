"""
Turn Runner - Supervised background execution for fire-and-forget turns.

Tasks are strongly referenced until done, failures are logged from a
done-callback, and shutdown drains or cancels what is still running.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from structlog import get_logger

from shopchat.observability import metrics

logger = get_logger(__name__)


class TurnRunner:
    """Owns background chat turns for the lifetime of the application."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closing = False

    @property
    def pending(self) -> int:
        """Number of tasks still running."""
        return len(self._tasks)

    def submit(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """
        Schedule a coroutine in the background.

        Raises:
            RuntimeError: Runner is shutting down
        """
        if self._closing:
            coro.close()
            raise RuntimeError("TurnRunner is shutting down")

        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        metrics.background_turns_in_progress.inc()
        task.add_done_callback(self._on_done)
        return task

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Wait up to timeout for running tasks, then cancel the rest."""
        self._closing = True
        if not self._tasks:
            return

        logger.info("turn_runner_draining", pending=len(self._tasks), timeout=timeout)
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("turn_runner_cancelled_tasks", cancelled=len(still_running))

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        metrics.background_turns_in_progress.dec()
        if task.cancelled():
            logger.warning("background_turn_cancelled", task=task.get_name())
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "background_turn_failed",
                task=task.get_name(),
                error=str(error),
                error_type=type(error).__name__,
                exc_info=error,
            )
            metrics.record_error(type(error).__name__, "background_turn")
