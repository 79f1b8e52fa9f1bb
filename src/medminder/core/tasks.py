"""Fire-and-forget task tracking for timer-driven work.

Timers and callbacks run synchronously on the event loop, so any async work
they start is spawned as a task. ``BackgroundTasks`` keeps a strong reference
to each task until it finishes and logs failures instead of letting them
surface as "Task exception was never retrieved".
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """A set of in-flight tasks owned by one component."""

    def __init__(self, owner: str) -> None:
        self._owner = owner
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "%s background task %s failed",
                self._owner,
                task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    def invoke(self, callback: Callable[..., Any] | None, *args: Any, label: str) -> None:
        """Call a sync-or-async callback without awaiting it.

        Sync callbacks run inline. An awaitable result is scheduled as a task.
        Errors from either are logged and never propagate.
        """
        if callback is None:
            return
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Error in %s callback", label)
            return
        if inspect.isawaitable(result):
            self.spawn(_await_logged(result, label), name=f"{self._owner}-{label}")

    async def wait_idle(self) -> None:
        """Wait until every task, including ones spawned meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def _await_logged(awaitable: Any, label: str) -> None:
    try:
        await awaitable
    except Exception:
        logger.exception("Error in %s callback", label)
