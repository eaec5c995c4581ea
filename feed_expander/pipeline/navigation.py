from __future__ import annotations

import logging
from typing import Callable, Optional
from urllib.parse import urlsplit

from .timers import AfterCancelFn, AfterFn, IntervalTimer, loop_after, loop_after_cancel


def _route_of(url: str) -> str:
    return urlsplit(url).path or "/"


class NavigationMonitor:
    """Polls the page location and forces one rescan once a route change settles.

    Single-page apps swap routes without a document load, so this runs beside
    the change watcher rather than through it. Changes inside the settle window
    restart the settle timer.
    """

    def __init__(
        self,
        location: Callable[[], str],
        on_navigate: Callable[[], None],
        *,
        poll_ms: int = 500,
        settle_ms: int = 800,
        after: AfterFn = loop_after,
        after_cancel: AfterCancelFn = loop_after_cancel,
    ) -> None:
        self._location = location
        self._on_navigate = on_navigate
        self.settle_ms = settle_ms
        self._after = after
        self._after_cancel = after_cancel
        self._poll = IntervalTimer(poll_ms, self.check, after=after, after_cancel=after_cancel)
        self._settle_handle: Optional[object] = None
        self.current_route: Optional[str] = None
        self.navigations = 0

    def start(self) -> None:
        self.current_route = _route_of(self._location())
        self._poll.start()

    def check(self) -> bool:
        route = _route_of(self._location())
        if route == self.current_route:
            return False
        logging.info("navigation_detected from=%s to=%s", self.current_route, route)
        self.current_route = route
        self.navigations += 1
        self._cancel_settle()
        self._settle_handle = self._after(self.settle_ms, self._settled)
        return True

    def _settled(self) -> None:
        self._settle_handle = None
        self._on_navigate()

    def _cancel_settle(self) -> None:
        handle, self._settle_handle = self._settle_handle, None
        if handle is not None:
            self._after_cancel(handle)

    def stop(self) -> None:
        self._poll.stop()
        self._cancel_settle()
