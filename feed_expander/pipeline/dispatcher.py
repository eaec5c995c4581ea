from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Set

from ..errors import ActionFailed
from ..hosts.base import Host
from .element_state import TargetSignature
from .scanner import is_dispatchable
from .tasks import TaskTracker
from .timers import AfterCancelFn, AfterFn, loop_after, loop_after_cancel


class ActionDispatcher:
    """Fires the activation on released elements after a short delay.

    The element is re-described right before firing because the tree may have
    changed since admission. A failed activation is logged and contained here.
    """

    def __init__(
        self,
        host: Host,
        signature: TargetSignature,
        tasks: TaskTracker,
        *,
        delay_ms: int = 300,
        after: AfterFn = loop_after,
        after_cancel: AfterCancelFn = loop_after_cancel,
        on_outcome: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.host = host
        self.signature = signature
        self.tasks = tasks
        self.delay_ms = delay_ms
        self._after = after
        self._after_cancel = after_cancel
        self._on_outcome = on_outcome
        self._handles: Set[object] = set()
        self._closed = False

    def dispatch(self, element: Any, extra_delay_ms: int = 0) -> None:
        if self._closed:
            return
        handle: object = None

        def fire() -> None:
            self._handles.discard(handle)
            if self._closed:
                return
            self.tasks.spawn(self.fire(element), name="dispatch")

        handle = self._after(self.delay_ms + max(0, extra_delay_ms), fire)
        self._handles.add(handle)

    @property
    def scheduled(self) -> int:
        return len(self._handles)

    async def fire(self, element: Any) -> str:
        try:
            state = await self.host.describe(element, self.signature)
        except Exception as exc:
            logging.debug("dispatch_skipped_stale reason=describe_failed error=%r", exc)
            return self._outcome("skipped_stale")
        if not is_dispatchable(state):
            logging.debug(
                "dispatch_skipped_stale connected=%s disabled=%s", state.connected, state.disabled
            )
            return self._outcome("skipped_stale")
        if self._closed:
            return "cancelled"
        try:
            await self.host.activate(element)
        except Exception as exc:
            failure = ActionFailed(element, exc)
            logging.error("action_failed error=%s", failure, exc_info=exc)
            return self._outcome("failed")
        logging.info("Expanded truncated post")
        return self._outcome("dispatched")

    def _outcome(self, outcome: str) -> str:
        if self._on_outcome is not None:
            self._on_outcome(outcome)
        return outcome

    def close(self) -> None:
        self._closed = True
        for handle in list(self._handles):
            self._after_cancel(handle)
        self._handles.clear()
