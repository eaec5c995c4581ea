"""In-memory host: a mutable element tree, a viewport, and a virtual clock.

Everything runs off `VirtualClock`, so mutation delivery, intersection updates,
idle callbacks and the pipeline's own timers advance only when the clock does.
"""

from __future__ import annotations

import itertools
import weakref
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from lxml import html
from lxml.cssselect import CSSSelector

from ..errors import SubscriptionSetupFailed
from ..pipeline.element_state import ElementState, TargetSignature
from .base import (
    AddedNode,
    Host,
    MutationCallback,
    MutationRecord,
    Subscription,
    VisibilityCallback,
    VisibilityEntry,
)

Box = Tuple[float, float, float, float]


class VirtualClock:
    """Deterministic `after`/`cancel` pair with millisecond resolution."""

    def __init__(self) -> None:
        self.now_ms = 0
        self._ids = itertools.count(1)
        self._timers: Dict[int, Tuple[int, int, Callable[[], None]]] = {}

    def after(self, ms: int, callback: Callable[[], None]) -> int:
        handle = next(self._ids)
        self._timers[handle] = (self.now_ms + max(0, int(ms)), handle, callback)
        return handle

    def cancel(self, handle: object) -> None:
        self._timers.pop(handle, None)  # type: ignore[arg-type]

    def advance(self, ms: int) -> None:
        target = self.now_ms + ms
        while True:
            due = [timer for timer in self._timers.values() if timer[0] <= target]
            if not due:
                break
            when, handle, callback = min(due, key=lambda timer: (timer[0], timer[1]))
            del self._timers[handle]
            self.now_ms = max(self.now_ms, when)
            callback()
        self.now_ms = target

    @property
    def pending(self) -> int:
        return len(self._timers)


class SimElement:
    def __init__(
        self,
        tag: str,
        attributes: Optional[Dict[str, str]] = None,
        text: str = "",
        *,
        box: Box = (0.0, 0.0, 100.0, 20.0),
        style: Optional[Dict[str, str]] = None,
        disabled: bool = False,
    ) -> None:
        self.tag = tag.lower()
        self.attributes: Dict[str, str] = dict(attributes or {})
        self.text = text
        self.box = box
        self.style: Dict[str, str] = dict(style or {})
        self.disabled = disabled
        self.children: List[SimElement] = []
        self.parent: Optional[SimElement] = None
        self.clicks = 0
        self.on_click: Optional[Callable[["SimElement"], None]] = None
        self._owner_document: Optional["SimDocument"] = None

    def __repr__(self) -> str:
        return f"<SimElement {self.tag} {self.attributes}>"

    @property
    def root(self) -> "SimElement":
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    @property
    def document(self) -> Optional["SimDocument"]:
        return self.root._owner_document

    @property
    def is_connected(self) -> bool:
        return self.document is not None

    def append(self, *children: "SimElement") -> "SimElement":
        for child in children:
            if child.parent is not None:
                child.remove()
            child.parent = self
            self.children.append(child)
            document = self.document
            if document is not None:
                document._record(added=[child], removed=[])
        return self

    def remove(self) -> None:
        parent = self.parent
        if parent is None:
            return
        document = parent.document
        parent.children.remove(self)
        self.parent = None
        if document is not None:
            document._record(added=[], removed=[self])

    def set_attribute(self, name: str, value: str) -> None:
        self.attributes[name] = value
        self._layout_changed()

    def set_style(self, **style: str) -> None:
        self.style.update(style)
        self._layout_changed()

    def set_box(self, x: float, y: float, width: float, height: float) -> None:
        self.box = (x, y, width, height)
        self._layout_changed()

    def set_disabled(self, disabled: bool) -> None:
        self.disabled = disabled

    def iter_subtree(self) -> Iterator["SimElement"]:
        yield self
        for child in list(self.children):
            yield from child.iter_subtree()

    def ancestors(self) -> Iterator["SimElement"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def text_content(self) -> str:
        return self.text + "".join(child.text_content() for child in self.children)

    def computed_style(self) -> Dict[str, str]:
        display = self.style.get("display", "block")
        if any(ancestor.style.get("display") == "none" for ancestor in self.ancestors()):
            display = "none"
        visibility = self.style.get("visibility")
        if visibility is None:
            visibility = next(
                (ancestor.style["visibility"] for ancestor in self.ancestors() if "visibility" in ancestor.style),
                "visible",
            )
        return {"display": display, "visibility": visibility, "opacity": self.style.get("opacity", "1")}

    def rendered_box(self) -> Box:
        if not self.is_connected or self.computed_style()["display"] == "none":
            return (0.0, 0.0, 0.0, 0.0)
        return self.box

    def click(self) -> None:
        self.clicks += 1
        if self.on_click is not None:
            self.on_click(self)

    def _layout_changed(self) -> None:
        document = self.document
        if document is not None:
            document.schedule_layout()


@lru_cache(maxsize=128)
def compile_selector(source: str) -> CSSSelector:
    """Compile a CSS selector; raises cssselect.SelectorError for invalid or unsupported ones."""
    return CSSSelector(source, translator="html")


def _mirror(root: SimElement) -> Tuple[Any, Dict[Any, SimElement]]:
    # lxml copy of the tree for cssselect, plus the way back to the SimElements.
    lookup: Dict[Any, SimElement] = {}

    def build(element: SimElement, parent: Any) -> Any:
        node = html.Element(element.tag, dict(element.attributes))
        node.text = element.text or None
        if parent is not None:
            parent.append(node)
        lookup[node] = element
        for child in element.children:
            build(child, node)
        return node

    return build(root, None), lookup


def select(root: SimElement, source: str) -> List[SimElement]:
    """Elements under `root` (inclusive) matching `source`, in document order."""
    top, lookup = _mirror(root)
    return [lookup[node] for node in compile_selector(source)(top)]


def select_many(root: SimElement, sources: Sequence[str]) -> Dict[str, Set[SimElement]]:
    top, lookup = _mirror(root)
    return {source: {lookup[node] for node in compile_selector(source)(top)} for source in sources}


@dataclass
class RawMutation:
    added: List[SimElement] = field(default_factory=list)
    removed: List[SimElement] = field(default_factory=list)


class SimDocument:
    """The tree owner: records mutations and delivers them in one batch per clock turn."""

    def __init__(
        self,
        clock: VirtualClock,
        *,
        url: str = "https://x.com/home",
        viewport: Tuple[int, int] = (1280, 800),
    ) -> None:
        self.clock = clock
        self.url = url
        self.viewport_width, self.viewport_height = viewport
        self.scroll_y = 0.0
        self.body = SimElement("body", box=(0.0, 0.0, float(viewport[0]), 100000.0))
        self.body._owner_document = self
        self._observers: List[Callable[[List[RawMutation]], None]] = []
        self._layout_listeners: List[Callable[[], None]] = []
        self._queue: List[RawMutation] = []
        self._flush_handle: Optional[object] = None
        self._layout_handle: Optional[object] = None

    def observe(self, callback: Callable[[List[RawMutation]], None]) -> Callable[[], None]:
        self._observers.append(callback)

        def unobserve() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unobserve

    def add_layout_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._layout_listeners.append(listener)

        def remove() -> None:
            if listener in self._layout_listeners:
                self._layout_listeners.remove(listener)

        return remove

    def navigate(self, url: str) -> None:
        self.url = url

    def scroll_to(self, y: float) -> None:
        self.scroll_y = y
        self.schedule_layout()

    def schedule_layout(self) -> None:
        if self._layout_handle is None:
            self._layout_handle = self.clock.after(0, self._run_layout)

    def _run_layout(self) -> None:
        self._layout_handle = None
        for listener in list(self._layout_listeners):
            listener()

    def _record(self, added: List[SimElement], removed: List[SimElement]) -> None:
        self.schedule_layout()
        if not self._observers:
            return
        self._queue.append(RawMutation(added=list(added), removed=list(removed)))
        if self._flush_handle is None:
            self._flush_handle = self.clock.after(0, self._flush)

    def _flush(self) -> None:
        self._flush_handle = None
        batch, self._queue = self._queue, []
        if not batch:
            return
        for callback in list(self._observers):
            callback(batch)


@dataclass
class _VisibilityObservation:
    target: "weakref.ReferenceType[SimElement]"
    threshold: float
    margin_px: int
    callback: VisibilityCallback
    last_state: Optional[Tuple[bool, bool]] = None
    active: bool = True


@dataclass
class _IdleRequest:
    callback: Callable[[], None]
    deadline_handle: Optional[object] = None
    run_handle: Optional[object] = None


class SimulatedHost(Host):
    def __init__(self, document: SimDocument, *, observers_available: bool = True) -> None:
        self.document = document
        self.clock = document.clock
        self.observers_available = observers_available
        self.busy = False
        self.idle_deadline_runs = 0
        self._observations: List[_VisibilityObservation] = []
        self._idle: Dict[int, _IdleRequest] = {}
        self._idle_ids = itertools.count(1)
        self._remove_layout_listener = document.add_layout_listener(self._evaluate_visibility)

    async def connect(self) -> None:
        if not self.observers_available:
            raise SubscriptionSetupFailed("simulated document has no observer support")

    async def observe_mutations(self, callback: MutationCallback, watch_selectors: Sequence[str]) -> Subscription:
        if not self.observers_available:
            raise SubscriptionSetupFailed("simulated document has no mutation observer support")
        sources = tuple(watch_selectors)
        for source in sources:
            compile_selector(source)

        def deliver(batch: List[RawMutation]) -> None:
            hits_by_root: Dict[SimElement, Dict[str, Set[SimElement]]] = {}

            def summarize(node: SimElement) -> AddedNode:
                root = node.root
                if root not in hits_by_root:
                    hits_by_root[root] = select_many(root, sources)
                return self._summarize(node, hits_by_root[root])

            records = [
                MutationRecord(
                    type="childList",
                    added_nodes=tuple(summarize(node) for node in raw.added),
                    removed_count=len(raw.removed),
                )
                for raw in batch
            ]
            callback(records)

        return Subscription(self.document.observe(deliver))

    @staticmethod
    def _summarize(node: SimElement, hits: Dict[str, Set[SimElement]]) -> AddedNode:
        subtree = set(node.iter_subtree())
        matched = frozenset(source for source, matched_elements in hits.items() if matched_elements & subtree)
        return AddedNode(is_element=True, matched=matched)

    async def observe_visibility(
        self, element: Any, threshold: float, margin_px: int, callback: VisibilityCallback
    ) -> Subscription:
        if not self.observers_available:
            raise SubscriptionSetupFailed("simulated document has no intersection observer support")
        observation = _VisibilityObservation(
            target=weakref.ref(element), threshold=threshold, margin_px=margin_px, callback=callback
        )
        self._observations.append(observation)
        # Like IntersectionObserver, the first entry arrives asynchronously.
        self.document.schedule_layout()

        def close() -> None:
            observation.active = False
            if observation in self._observations:
                self._observations.remove(observation)

        return Subscription(close)

    @property
    def observed_count(self) -> int:
        return len(self._observations)

    def intersection(self, element: SimElement, margin_px: int) -> Tuple[bool, float]:
        if not element.is_connected:
            return False, 0.0
        x, y, width, height = element.rendered_box()
        if element.computed_style()["display"] == "none":
            return False, 0.0
        left = -margin_px
        right = self.document.viewport_width + margin_px
        top = self.document.scroll_y - margin_px
        bottom = self.document.scroll_y + self.document.viewport_height + margin_px
        overlap_x = min(x + width, right) - max(x, left)
        overlap_y = min(y + height, bottom) - max(y, top)
        if overlap_x < 0 or overlap_y < 0:
            return False, 0.0
        area = width * height
        if area <= 0:
            return True, 1.0
        return True, (overlap_x * overlap_y) / area

    def _evaluate_visibility(self) -> None:
        for observation in list(self._observations):
            if not observation.active:
                continue
            target = observation.target()
            if target is None:
                self._observations.remove(observation)
                continue
            is_intersecting, ratio = self.intersection(target, observation.margin_px)
            state = (is_intersecting, is_intersecting and ratio >= observation.threshold)
            if state == observation.last_state:
                continue
            observation.last_state = state
            observation.callback(
                VisibilityEntry(target=target, is_intersecting=is_intersecting, intersection_ratio=ratio)
            )

    def request_idle(self, callback: Callable[[], None], timeout_ms: int) -> object:
        handle = next(self._idle_ids)
        request = _IdleRequest(callback=callback)
        self._idle[handle] = request
        request.deadline_handle = self.clock.after(timeout_ms, lambda: self._run_idle(handle, timed_out=True))
        if not self.busy:
            request.run_handle = self.clock.after(0, lambda: self._run_idle(handle))
        return handle

    def cancel_idle(self, handle: object) -> None:
        request = self._idle.pop(handle, None)  # type: ignore[arg-type]
        if request is not None:
            self._cancel_request_timers(request)

    def set_busy(self, busy: bool) -> None:
        self.busy = busy
        if busy:
            return
        for handle, request in list(self._idle.items()):
            if request.run_handle is None:
                request.run_handle = self.clock.after(0, lambda handle=handle: self._run_idle(handle))

    def _run_idle(self, handle: int, timed_out: bool = False) -> None:
        request = self._idle.pop(handle, None)
        if request is None:
            return
        self._cancel_request_timers(request)
        if timed_out:
            self.idle_deadline_runs += 1
        request.callback()

    def _cancel_request_timers(self, request: _IdleRequest) -> None:
        for timer in (request.deadline_handle, request.run_handle):
            if timer is not None:
                self.clock.cancel(timer)

    @property
    def idle_pending(self) -> int:
        return len(self._idle)

    def location(self) -> str:
        return self.document.url

    async def query_all(self, selector: str) -> List[SimElement]:
        return select(self.document.body, selector)

    async def describe(self, element: SimElement, signature: TargetSignature) -> ElementState:
        style = element.computed_style()
        _x, _y, width, height = element.rendered_box()
        hits = select_many(element.root, signature.container_selectors)
        containers: Set[SimElement] = set().union(*hits.values())
        container_depth = None
        for depth, ancestor in enumerate(element.ancestors(), start=1):
            if depth > signature.max_ancestor_depth:
                break
            if ancestor in containers:
                container_depth = depth
                break
        return ElementState(
            connected=element.is_connected,
            tag=element.tag,
            marker=element.attributes.get(signature.marker_attribute),
            text=element.text_content(),
            disabled=element.disabled,
            aria_hidden="aria-hidden" in element.attributes,
            width=width,
            height=height,
            display=style["display"],
            visibility=style["visibility"],
            opacity=style["opacity"],
            container_depth=container_depth,
        )

    async def is_connected(self, element: SimElement) -> bool:
        return element.is_connected

    async def activate(self, element: SimElement) -> None:
        element.click()
