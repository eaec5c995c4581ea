from __future__ import annotations

from typing import Callable, Iterable, List, Sequence

from ..hosts.base import MutationRecord


class ChangeWatcher:
    """Filters mutation batches down to ones that may have brought in a target.

    A batch is relevant when any record adds an element whose own subtree
    matches the target selector or one of the container selectors. Containers
    count because their target descendants are often rendered later.
    """

    def __init__(self, on_relevant: Callable[[], None], watch_selectors: Sequence[str]) -> None:
        self._on_relevant = on_relevant
        self.watch_selectors = tuple(watch_selectors)
        self._watched = frozenset(self.watch_selectors)
        self.batches_seen = 0
        self.batches_relevant = 0

    def is_relevant(self, record: MutationRecord) -> bool:
        if record.type != "childList" or not record.added_nodes:
            return False
        return any(node.is_element and node.matched & self._watched for node in record.added_nodes)

    def handle_records(self, records: Iterable[MutationRecord]) -> None:
        batch: List[MutationRecord] = list(records)
        self.batches_seen += 1
        if any(self.is_relevant(record) for record in batch):
            self.batches_relevant += 1
            self._on_relevant()
