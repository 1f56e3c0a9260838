"""Fire-and-forget task tracking.

Work that must never delay or fail the request path (audit writes,
``last_used_at`` touches) is scheduled with ``asyncio.create_task`` through a
``TaskTracker``. The tracker holds a strong reference to every pending task
until it finishes, so the event loop cannot garbage-collect it mid-flight, and
``drain()`` lets shutdown (and tests) wait for the backlog.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Coroutine, Optional

from keyward.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BestEffort:
    """Result of scheduling a best-effort operation.

    ``scheduled`` is False only when the work could not even be queued (no
    running loop); the outcome of the work itself is never reported back.
    """

    task: Optional["asyncio.Task[Any]"] = None

    @property
    def scheduled(self) -> bool:
        return self.task is not None

    @classmethod
    def skipped(cls) -> "BestEffort":
        return cls(task=None)


class TaskTracker:
    """Owns background tasks spawned from the request path."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> BestEffort:
        try:
            task = asyncio.get_running_loop().create_task(coro, name=name)
        except RuntimeError as exc:
            coro.close()
            logger.warning("background_task_not_scheduled", task_name=name, error=str(exc))
            return BestEffort.skipped()
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return BestEffort(task=task)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task spawned so far (and any they spawn) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
