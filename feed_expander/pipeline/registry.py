from __future__ import annotations

import weakref
from typing import Any, List, Optional

from ..hosts.base import Subscription


class DedupRegistry:
    """Elements already dispatched or in flight.

    Membership is weak: the registry never keeps an element alive, and an entry
    only disappears when its element is reclaimed. There is no removal API.
    """

    def __init__(self) -> None:
        self._known: "weakref.WeakSet[Any]" = weakref.WeakSet()

    def is_known(self, element: Any) -> bool:
        return element in self._known

    def mark_known(self, element: Any) -> None:
        self._known.add(element)

    def __len__(self) -> int:
        return len(self._known)


class PendingSet:
    """Admitted elements waiting for the visibility gate, each with its subscription."""

    def __init__(self) -> None:
        self._entries: "weakref.WeakKeyDictionary[Any, Optional[Subscription]]" = weakref.WeakKeyDictionary()

    def add(self, element: Any) -> None:
        self._entries.setdefault(element, None)

    def attach(self, element: Any, subscription: Subscription) -> bool:
        """Record the subscription for a pending element; False if it already left the set."""
        if element not in self._entries:
            return False
        self._entries[element] = subscription
        return True

    def discard(self, element: Any) -> Optional[Subscription]:
        return self._entries.pop(element, None)

    def elements(self) -> List[Any]:
        return list(self._entries.keys())

    def clear(self) -> List[Subscription]:
        subscriptions = [sub for sub in self._entries.values() if sub is not None]
        self._entries.clear()
        return subscriptions

    def __contains__(self, element: Any) -> bool:
        return element in self._entries

    def __len__(self) -> int:
        return len(self._entries)
