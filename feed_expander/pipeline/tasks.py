from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Optional, Set


class TaskTracker:
    """Owns every coroutine the pipeline spawns so teardown can cancel them together."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self.closed = False

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: Optional[str] = None) -> Optional[asyncio.Task]:
        if self.closed:
            coro.close()
            return None
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
            logging.error("pipeline_task_failed task=%s error=%r", task.get_name(), exc, exc_info=exc)

    def cancel_all(self) -> None:
        self.closed = True
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def __len__(self) -> int:
        return len(self._tasks)
