from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

AfterFn = Callable[[int, Callable[[], None]], object]
AfterCancelFn = Callable[[object], None]


def loop_after(ms: int, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(ms / 1000.0, callback)


def loop_after_cancel(handle: object) -> None:
    handle.cancel()  # type: ignore[attr-defined]


class Debouncer:
    """Single-slot quiet-period timer: only the last `signal()` in a burst fires."""

    def __init__(
        self,
        delay_ms: int,
        callback: Callable[[], None],
        *,
        after: AfterFn = loop_after,
        after_cancel: AfterCancelFn = loop_after_cancel,
    ) -> None:
        self.delay_ms = delay_ms
        self._callback = callback
        self._after = after
        self._after_cancel = after_cancel
        self._handle: Optional[object] = None
        self.signals = 0
        self.fired = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def signal(self) -> None:
        self.signals += 1
        self.cancel()
        self._handle = self._after(self.delay_ms, self._fire)

    def cancel(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            self._after_cancel(handle)

    def _fire(self) -> None:
        self._handle = None
        self.fired += 1
        self._callback()


class IntervalTimer:
    def __init__(
        self,
        interval_ms: int,
        callback: Callable[[], None],
        *,
        after: AfterFn = loop_after,
        after_cancel: AfterCancelFn = loop_after_cancel,
    ) -> None:
        self.interval_ms = interval_ms
        self._callback = callback
        self._after = after
        self._after_cancel = after_cancel
        self._handle: Optional[object] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._handle = self._after(self.interval_ms, self._tick)

    def stop(self) -> None:
        self._running = False
        handle, self._handle = self._handle, None
        if handle is not None:
            self._after_cancel(handle)

    def _tick(self) -> None:
        self._handle = None
        if not self._running:
            return
        try:
            self._callback()
        except Exception:
            logging.exception("interval_callback_failed interval_ms=%s", self.interval_ms)
        finally:
            if self._running:
                self._handle = self._after(self.interval_ms, self._tick)
