"""Best-effort background side effects.

Audit writes triggered by outbound Bridge calls must never delay or fail the
call itself. They are scheduled here as tasks on the running loop (the write
runs in a worker thread because the sinks are synchronous), and a done
callback logs any failure so nothing disappears silently.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class BestEffortRunner:
    """Supervises fire-and-forget work items."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, fn: Callable[..., Any], *args: Any, label: str) -> Optional[asyncio.Task]:
        """Schedule ``fn(*args)`` without waiting for it.

        Outside a running loop the call runs inline, still failure-isolated.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            try:
                fn(*args)
            except Exception as exc:
                self._log_failure(label, exc)
            return None

        task = loop.create_task(asyncio.to_thread(fn, *args), name=label)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("BEST_EFFORT_TASK_CANCELLED", extra={"task": task.get_name()})
            return
        exc = task.exception()
        if exc is not None:
            self._log_failure(task.get_name(), exc)

    @staticmethod
    def _log_failure(label: str, exc: BaseException) -> None:
        logger.error(
            "BEST_EFFORT_TASK_FAILED",
            extra={"task": label, "error_type": type(exc).__name__, "error_msg": str(exc)},
        )

    async def drain(self) -> None:
        """Wait for every scheduled task (used at shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
