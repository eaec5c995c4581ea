from __future__ import annotations

import logging
from typing import Awaitable, Callable

from ..hosts.base import Host
from .registry import PendingSet
from .tasks import TaskTracker
from .timers import AfterCancelFn, AfterFn, IntervalTimer, loop_after, loop_after_cancel


class BackupScanner:
    """Periodic safety net: prune detached pending elements, then rescan."""

    def __init__(
        self,
        host: Host,
        pending: PendingSet,
        rescan: Callable[[str], Awaitable[object]],
        tasks: TaskTracker,
        *,
        interval_ms: int = 3000,
        after: AfterFn = loop_after,
        after_cancel: AfterCancelFn = loop_after_cancel,
        on_pruned: Callable[[int], None] | None = None,
    ) -> None:
        self.host = host
        self.pending = pending
        self._rescan = rescan
        self.tasks = tasks
        self._on_pruned = on_pruned
        self._in_flight = False
        self._timer = IntervalTimer(interval_ms, self._tick, after=after, after_cancel=after_cancel)

    def start(self) -> None:
        self._timer.start()

    def stop(self) -> None:
        self._timer.stop()

    def _tick(self) -> None:
        if self._in_flight:
            logging.debug("backup_scan_skipped reason=in_progress")
            return
        self.tasks.spawn(self.run_once(), name="backup-scan")

    async def prune(self) -> int:
        pruned = 0
        for element in self.pending.elements():
            try:
                connected = await self.host.is_connected(element)
            except Exception as exc:
                logging.debug("pending_connectivity_check_failed error=%r", exc)
                connected = False
            if connected:
                continue
            subscription = self.pending.discard(element)
            if subscription is not None:
                subscription.close()
            pruned += 1
        if pruned:
            logging.debug("pending_pruned count=%s remaining=%s", pruned, len(self.pending))
            if self._on_pruned is not None:
                self._on_pruned(pruned)
        return pruned

    async def run_once(self) -> int:
        self._in_flight = True
        try:
            pruned = await self.prune()
            released = await self.host.release_disconnected()
            if released:
                logging.debug("host_handles_released count=%s", released)
            await self._rescan("backup")
        finally:
            self._in_flight = False
        return pruned
