"""Collaborator interface the expander pipeline runs against.

A host owns the element tree. It reports structural changes and visibility
crossings, answers introspection queries, runs idle callbacks and performs the
activation. The pipeline only ever holds element handles weakly, so hosts must
return hashable, weak-referenceable handles and must not keep subscription
targets alive through their callbacks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, FrozenSet, List, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from ..pipeline.element_state import ElementState, TargetSignature


@dataclass(frozen=True)
class AddedNode:
    is_element: bool
    # Watch selectors matched by the node itself or one of its descendants.
    matched: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class MutationRecord:
    type: str
    added_nodes: Tuple[AddedNode, ...] = ()
    removed_count: int = 0


@dataclass(frozen=True)
class VisibilityEntry:
    target: Any
    is_intersecting: bool
    intersection_ratio: float


MutationCallback = Callable[[List[MutationRecord]], None]
VisibilityCallback = Callable[[VisibilityEntry], None]


class Subscription:
    """Handle for a mutation or visibility subscription. `close()` is idempotent."""

    def __init__(self, on_close: Optional[Callable[[], None]] = None) -> None:
        self._on_close = on_close
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        on_close, self._on_close = self._on_close, None
        if on_close is not None:
            on_close()


class Host(ABC):
    async def connect(self) -> None:
        """Check that observation can be established; raise SubscriptionSetupFailed if not."""

    @abstractmethod
    async def observe_mutations(self, callback: MutationCallback, watch_selectors: Sequence[str]) -> Subscription:
        ...

    @abstractmethod
    async def observe_visibility(
        self, element: Any, threshold: float, margin_px: int, callback: VisibilityCallback
    ) -> Subscription:
        ...

    @abstractmethod
    def request_idle(self, callback: Callable[[], None], timeout_ms: int) -> object:
        ...

    @abstractmethod
    def cancel_idle(self, handle: object) -> None:
        ...

    @abstractmethod
    def location(self) -> str:
        ...

    @abstractmethod
    async def query_all(self, selector: str) -> List[Any]:
        ...

    @abstractmethod
    async def describe(self, element: Any, signature: "TargetSignature") -> "ElementState":
        ...

    @abstractmethod
    async def is_connected(self, element: Any) -> bool:
        ...

    @abstractmethod
    async def activate(self, element: Any) -> None:
        ...

    async def release_disconnected(self) -> int:
        """Drop host-side handles for elements that left the tree. Returns how many were released."""
        return 0
