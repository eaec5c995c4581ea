from __future__ import annotations
"""Host backed by a live Playwright page.

Observers run inside the page and report back through exposed bindings.
ElementHandles are canonicalised by a uid stamped on the DOM node, so the same
node always maps to the same LiveElement, including after it is detached and
re-attached. `release_disconnected()` disposes the ElementHandle of a detached
node but keeps its LiveElement; only once the page reports the node reclaimed
(its WeakRef is empty) is the LiveElement dropped.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from playwright.async_api import ElementHandle, Error as PlaywrightError, Page

from ..errors import ExpanderError, SubscriptionSetupFailed
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

MUTATION_BINDING = "__feedExpanderMutations"
VISIBILITY_BINDING = "__feedExpanderVisibility"

SUPPORT_CHECK_JS = """
() => !!document.body
    && typeof MutationObserver === 'function'
    && typeof IntersectionObserver === 'function'
    && typeof WeakRef === 'function'
"""

MUTATION_OBSERVER_JS = """
({ binding, selectors }) => {
    if (!document.body) return false;
    if (window.__feedExpanderMutationObserver) window.__feedExpanderMutationObserver.disconnect();
    const summarize = (node) => {
        if (node.nodeType !== Node.ELEMENT_NODE) return { element: false, matched: [] };
        const matched = selectors.filter((selector) => {
            try {
                return node.matches(selector) || node.querySelector(selector) !== null;
            } catch (e) {
                return false;
            }
        });
        return { element: true, matched };
    };
    const observer = new MutationObserver((mutations) => {
        const records = [];
        for (const mutation of mutations) {
            // Records without added nodes can never be relevant.
            if (mutation.type !== 'childList' || mutation.addedNodes.length === 0) continue;
            records.push({
                type: mutation.type,
                added: Array.from(mutation.addedNodes, summarize),
                removed: mutation.removedNodes.length,
            });
        }
        if (records.length) window[binding](records);
    });
    observer.observe(document.body, { childList: true, subtree: true });
    window.__feedExpanderMutationObserver = observer;
    return true;
}
"""

DISCONNECT_MUTATIONS_JS = """
() => {
    if (window.__feedExpanderMutationObserver) {
        window.__feedExpanderMutationObserver.disconnect();
        window.__feedExpanderMutationObserver = null;
    }
}
"""

ASSIGN_UID_JS = """
(el) => {
    const nodes = (window.__feedExpanderNodes = window.__feedExpanderNodes || new Map());
    if (!el.__feedExpanderUid) {
        window.__feedExpanderSeq = (window.__feedExpanderSeq || 0) + 1;
        el.__feedExpanderUid = `fx-${window.__feedExpanderSeq}`;
    }
    if (!nodes.has(el.__feedExpanderUid)) nodes.set(el.__feedExpanderUid, new WeakRef(el));
    return el.__feedExpanderUid;
}
"""

DESCRIBE_JS = """
(el, { markerAttribute, containerSelectors, maxDepth }) => {
    const style = el.isConnected ? window.getComputedStyle(el) : null;
    const rect = el.getBoundingClientRect();
    let containerDepth = null;
    let node = el.parentElement;
    for (let depth = 1; node && depth <= maxDepth; depth += 1) {
        if (containerSelectors.some((selector) => node.matches(selector))) {
            containerDepth = depth;
            break;
        }
        node = node.parentElement;
    }
    return {
        connected: el.isConnected,
        tag: (el.tagName || '').toLowerCase(),
        marker: el.getAttribute(markerAttribute),
        text: el.textContent || '',
        disabled: !!el.disabled,
        aria_hidden: el.hasAttribute('aria-hidden'),
        width: rect.width,
        height: rect.height,
        display: style ? style.display : 'none',
        visibility: style ? style.visibility : 'hidden',
        opacity: style ? style.opacity : '0',
        container_depth: containerDepth,
    };
}
"""

OBSERVE_VISIBILITY_JS = """
(el, { binding, uid, threshold, margin }) => {
    const observers = (window.__feedExpanderVisibilityObservers =
        window.__feedExpanderVisibilityObservers || new Map());
    const previous = observers.get(uid);
    if (previous) previous.disconnect();
    const observer = new IntersectionObserver((entries) => {
        for (const entry of entries) {
            window[binding](uid, entry.isIntersecting, entry.intersectionRatio);
        }
    }, { rootMargin: `${margin}px`, threshold: [threshold] });
    observer.observe(el);
    observers.set(uid, observer);
    return true;
}
"""

UNOBSERVE_VISIBILITY_JS = """
(uid) => {
    const observers = window.__feedExpanderVisibilityObservers;
    const observer = observers && observers.get(uid);
    if (observer) {
        observer.disconnect();
        observers.delete(uid);
    }
}
"""

IDLE_JS = """
(timeout) => new Promise((resolve) => {
    if (typeof window.requestIdleCallback === 'function') {
        window.requestIdleCallback(() => resolve(true), { timeout });
    } else {
        setTimeout(() => resolve(false), 1);
    }
})
"""

COLLECT_DISCONNECTED_JS = """
(uids) => {
    // Detached nodes keep their entry so a re-attached node maps to the same uid.
    const nodes = window.__feedExpanderNodes || new Map();
    const detached = [];
    const reclaimed = [];
    for (const uid of uids) {
        const ref = nodes.get(uid);
        const node = ref && ref.deref();
        if (!node) {
            reclaimed.push(uid);
            nodes.delete(uid);
        } else if (!node.isConnected) {
            detached.push(uid);
        }
    }
    return { detached, reclaimed };
}
"""


class LiveElement:
    """Canonical Python handle for one DOM node of the current document.

    `handle` is None while the node is detached and its ElementHandle has been released.
    """

    def __init__(self, uid: str, handle: Optional[ElementHandle]) -> None:
        self.uid = uid
        self.handle = handle

    def __repr__(self) -> str:
        return f"LiveElement(uid={self.uid!r})"


def _parse_mutation_records(raw_records: Any) -> List[MutationRecord]:
    records: List[MutationRecord] = []
    for raw in raw_records or []:
        added = tuple(
            AddedNode(is_element=bool(node.get("element")), matched=frozenset(node.get("matched") or []))
            for node in raw.get("added") or []
        )
        records.append(
            MutationRecord(
                type=raw.get("type") or "childList",
                added_nodes=added,
                removed_count=int(raw.get("removed") or 0),
            )
        )
    return records


class PageHost(Host):
    def __init__(self, page: Page) -> None:
        self.page = page
        self._elements: Dict[str, LiveElement] = {}
        self._visibility_callbacks: Dict[str, VisibilityCallback] = {}
        self._mutation_callback: Optional[MutationCallback] = None
        self._bindings_installed = False
        self._tasks: Set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f"PageHost(url={self.page.url!r}, elements={len(self._elements)})"

    async def connect(self) -> None:
        try:
            if not self._bindings_installed:
                # Bindings survive navigations, so they are exposed once per page.
                await self.page.expose_binding(MUTATION_BINDING, self._on_mutations)
                await self.page.expose_binding(VISIBILITY_BINDING, self._on_visibility)
                self._bindings_installed = True
            supported = await self.page.evaluate(SUPPORT_CHECK_JS)
        except PlaywrightError as exc:
            raise SubscriptionSetupFailed(f"could not prepare page observers: {exc}") from exc
        if not supported:
            raise SubscriptionSetupFailed("page lacks a body or observer support")

    def reset(self) -> None:
        """Forget per-document state after a full document load."""
        self._elements.clear()
        self._visibility_callbacks.clear()
        self._mutation_callback = None

    def close(self) -> None:
        self.reset()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _evaluate_quietly(self, script: str, arg: Any = None) -> None:
        try:
            await self.page.evaluate(script, arg)
        except PlaywrightError as exc:
            logging.debug("page_cleanup_failed error=%r", exc)

    async def _dispose(self, handle: ElementHandle) -> None:
        try:
            await handle.dispose()
        except PlaywrightError as exc:
            logging.debug("handle_dispose_failed error=%r", exc)

    async def observe_mutations(self, callback: MutationCallback, watch_selectors: Sequence[str]) -> Subscription:
        self._mutation_callback = callback
        try:
            installed = await self.page.evaluate(
                MUTATION_OBSERVER_JS, {"binding": MUTATION_BINDING, "selectors": list(watch_selectors)}
            )
        except PlaywrightError as exc:
            self._mutation_callback = None
            raise SubscriptionSetupFailed(f"could not observe document mutations: {exc}") from exc
        if not installed:
            self._mutation_callback = None
            raise SubscriptionSetupFailed("document.body is not available")

        def close() -> None:
            self._mutation_callback = None
            self._spawn(self._evaluate_quietly(DISCONNECT_MUTATIONS_JS))

        return Subscription(close)

    def _on_mutations(self, _source: Any, raw_records: Any) -> None:
        callback = self._mutation_callback
        if callback is None:
            return
        callback(_parse_mutation_records(raw_records))

    async def observe_visibility(
        self, element: LiveElement, threshold: float, margin_px: int, callback: VisibilityCallback
    ) -> Subscription:
        if element.handle is None:
            raise SubscriptionSetupFailed(f"{element!r} is detached")
        uid = element.uid
        self._visibility_callbacks[uid] = callback
        try:
            await element.handle.evaluate(
                OBSERVE_VISIBILITY_JS,
                {"binding": VISIBILITY_BINDING, "uid": uid, "threshold": threshold, "margin": margin_px},
            )
        except PlaywrightError:
            self._visibility_callbacks.pop(uid, None)
            raise

        def close() -> None:
            self._visibility_callbacks.pop(uid, None)
            self._spawn(self._evaluate_quietly(UNOBSERVE_VISIBILITY_JS, uid))

        return Subscription(close)

    def _on_visibility(self, _source: Any, uid: str, is_intersecting: bool, ratio: float) -> None:
        callback = self._visibility_callbacks.get(uid)
        element = self._elements.get(uid)
        if callback is None or element is None:
            return
        callback(VisibilityEntry(target=element, is_intersecting=bool(is_intersecting), intersection_ratio=float(ratio)))

    def request_idle(self, callback: Callable[[], None], timeout_ms: int) -> object:
        return self._spawn(self._wait_for_idle(callback, timeout_ms))

    async def _wait_for_idle(self, callback: Callable[[], None], timeout_ms: int) -> None:
        try:
            await self.page.evaluate(IDLE_JS, timeout_ms)
        except PlaywrightError as exc:
            logging.debug("idle_wait_failed error=%r", exc)
            return
        callback()

    def cancel_idle(self, handle: object) -> None:
        handle.cancel()  # type: ignore[attr-defined]

    def location(self) -> str:
        return self.page.url

    async def query_all(self, selector: str) -> List[LiveElement]:
        handles = await self.page.query_selector_all(selector)
        elements: List[LiveElement] = []
        for handle in handles:
            try:
                uid = await handle.evaluate(ASSIGN_UID_JS)
            except PlaywrightError as exc:
                logging.debug("uid_assign_failed error=%r", exc)
                await self._dispose(handle)
                continue
            existing = self._elements.get(uid)
            if existing is not None:
                if existing.handle is None:
                    # Re-attached after its handle was released.
                    existing.handle = handle
                else:
                    await self._dispose(handle)
                elements.append(existing)
                continue
            element = LiveElement(uid, handle)
            self._elements[uid] = element
            elements.append(element)
        return elements

    async def describe(self, element: LiveElement, signature: TargetSignature) -> ElementState:
        if element.handle is None:
            return ElementState(connected=False)
        raw = await element.handle.evaluate(
            DESCRIBE_JS,
            {
                "markerAttribute": signature.marker_attribute,
                "containerSelectors": list(signature.container_selectors),
                "maxDepth": signature.max_ancestor_depth,
            },
        )
        return ElementState.model_validate(raw)

    async def is_connected(self, element: LiveElement) -> bool:
        if element.handle is None:
            return False
        try:
            return bool(await element.handle.evaluate("(el) => el.isConnected"))
        except PlaywrightError:
            return False

    async def activate(self, element: LiveElement) -> None:
        if element.handle is None:
            raise ExpanderError(f"{element!r} is detached")
        await element.handle.evaluate("(el) => el.click()")

    async def release_disconnected(self) -> int:
        if not self._elements:
            return 0
        try:
            raw = await self.page.evaluate(COLLECT_DISCONNECTED_JS, list(self._elements))
        except PlaywrightError as exc:
            logging.debug("release_check_failed error=%r", exc)
            return 0
        released = 0
        for uid in raw.get("reclaimed") or []:
            element = self._elements.pop(uid, None)
            self._visibility_callbacks.pop(uid, None)
            if element is None:
                continue
            if element.handle is not None:
                await self._dispose(element.handle)
            released += 1
        for uid in raw.get("detached") or []:
            element = self._elements.get(uid)
            if element is None or element.handle is None:
                continue
            # The LiveElement stays so the node keeps its identity if re-attached.
            handle, element.handle = element.handle, None
            await self._dispose(handle)
            released += 1
        return released

    @property
    def tracked_count(self) -> int:
        return len(self._elements)
