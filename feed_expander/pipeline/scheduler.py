from __future__ import annotations

import logging
from typing import Any, Callable, List, Sequence, Set

from ..hosts.base import Host
from .registry import DedupRegistry, PendingSet


class BatchScheduler:
    """Admits at most `batch_size` candidates per scan and hands them to the gate at idle time.

    Admitted candidates are marked known before anything asynchronous happens,
    which is what keeps overlapping scans from admitting the same element twice.
    Candidates over the cap are left unmarked so the next scan finds them again.
    """

    def __init__(
        self,
        host: Host,
        registry: DedupRegistry,
        pending: PendingSet,
        on_pending: Callable[[Any], None],
        *,
        batch_size: int = 5,
        idle_timeout_ms: int = 1000,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.host = host
        self.registry = registry
        self.pending = pending
        self._on_pending = on_pending
        self.batch_size = batch_size
        self.idle_timeout_ms = idle_timeout_ms
        self._idle_handles: Set[object] = set()
        self.last_deferred = 0
        self._closed = False

    def admit(self, candidates: Sequence[Any]) -> List[Any]:
        self.last_deferred = 0
        if self._closed:
            return []
        batch: List[Any] = []
        deferred = 0
        for element in candidates:
            if self.registry.is_known(element) or element in self.pending:
                continue
            if len(batch) >= self.batch_size:
                deferred += 1
                continue
            self.registry.mark_known(element)
            batch.append(element)
        self.last_deferred = deferred
        if deferred:
            logging.debug("admission_capped admitted=%s deferred=%s", len(batch), deferred)
        if batch:
            self._request_idle(batch)
        return batch

    def _request_idle(self, batch: List[Any]) -> None:
        handle: object = None

        def run() -> None:
            self._idle_handles.discard(handle)
            self._enqueue(batch)

        handle = self.host.request_idle(run, self.idle_timeout_ms)
        self._idle_handles.add(handle)

    def _enqueue(self, batch: List[Any]) -> None:
        if self._closed:
            return
        for element in batch:
            self.pending.add(element)
            self._on_pending(element)

    @property
    def idle_requests(self) -> int:
        return len(self._idle_handles)

    def close(self) -> None:
        self._closed = True
        for handle in list(self._idle_handles):
            self.host.cancel_idle(handle)
        self._idle_handles.clear()
