from __future__ import annotations

import logging
from typing import Any, Callable

from ..hosts.base import Host, VisibilityEntry
from .registry import PendingSet
from .tasks import TaskTracker


class VisibilityGate:
    """Holds pending elements until they first cross the visibility threshold.

    The margin widens the viewport so elements just below the fold qualify
    slightly before they scroll in.
    """

    def __init__(
        self,
        host: Host,
        pending: PendingSet,
        on_release: Callable[[Any], None],
        tasks: TaskTracker,
        *,
        threshold: float = 0.1,
        margin_px: int = 100,
    ) -> None:
        self.host = host
        self.pending = pending
        self._on_release = on_release
        self.tasks = tasks
        self.threshold = threshold
        self.margin_px = margin_px
        self.released = 0
        self._closed = False

    def watch(self, element: Any) -> None:
        self.tasks.spawn(self.subscribe(element), name="visibility-subscribe")

    async def subscribe(self, element: Any) -> None:
        if self._closed or element not in self.pending:
            return
        try:
            subscription = await self.host.observe_visibility(
                element, self.threshold, self.margin_px, self._on_entry
            )
        except Exception as exc:
            logging.warning("visibility_subscribe_failed error=%r", exc)
            self.pending.discard(element)
            return
        if self._closed or not self.pending.attach(element, subscription):
            # Released, pruned or torn down while the subscription was being set up.
            subscription.close()

    def _on_entry(self, entry: VisibilityEntry) -> None:
        if self._closed:
            return
        element = entry.target
        if element not in self.pending:
            return
        if not entry.is_intersecting or entry.intersection_ratio < self.threshold:
            return
        subscription = self.pending.discard(element)
        if subscription is not None:
            subscription.close()
        self.released += 1
        logging.debug("visibility_released ratio=%.2f", entry.intersection_ratio)
        self._on_release(element)

    def close(self) -> None:
        self._closed = True
        for subscription in self.pending.clear():
            subscription.close()
