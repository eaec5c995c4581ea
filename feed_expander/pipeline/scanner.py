from __future__ import annotations
"""Full-tree candidate scan with structural, layout and context validation."""

import logging
from typing import Any, List, Optional

from ..hosts.base import Host
from .element_state import ElementState, TargetSignature
from .registry import DedupRegistry, PendingSet


def _normalize_text(value: Optional[str]) -> str:
    return " ".join((value or "").split()).lower()


def _structural_rejection(state: ElementState, signature: TargetSignature) -> Optional[str]:
    if state.marker != signature.marker_value:
        return "marker_mismatch"
    text = _normalize_text(state.text)
    if not text:
        return "empty_text"
    if _normalize_text(signature.text_phrase) not in text:
        return "text_mismatch"
    if state.disabled:
        return "disabled"
    if state.aria_hidden:
        return "aria_hidden"
    return None


def _layout_rejection(state: ElementState) -> Optional[str]:
    if not state.connected:
        return "disconnected"
    if state.display == "none" or state.visibility == "hidden":
        return "hidden"
    try:
        if float(state.opacity) == 0.0:
            return "transparent"
    except ValueError:
        pass
    if state.width <= 0 or state.height <= 0:
        return "zero_extent"
    return None


def validate_candidate(state: ElementState, signature: TargetSignature) -> Optional[str]:
    """Return the first rejection reason for a matched element, or None if it qualifies."""
    reason = _structural_rejection(state, signature)
    if reason:
        return reason
    reason = _layout_rejection(state)
    if reason:
        return reason
    if state.container_depth is None or state.container_depth > signature.max_ancestor_depth:
        return "no_container"
    return None


def is_dispatchable(state: ElementState) -> bool:
    return state.connected and not state.disabled


class CandidateScanner:
    # Whole-tree requery on purpose: incremental tracking misses targets that
    # arrive through attribute flips or re-parenting rather than insertion.
    def __init__(
        self,
        host: Host,
        signature: TargetSignature,
        registry: DedupRegistry,
        pending: PendingSet,
    ) -> None:
        self.host = host
        self.signature = signature
        self.registry = registry
        self.pending = pending

    async def scan(self) -> List[Any]:
        matches = await self.host.query_all(self.signature.selector)
        accepted: List[Any] = []
        rejected = 0
        for element in matches:
            if self.registry.is_known(element) or element in self.pending:
                continue
            try:
                state = await self.host.describe(element, self.signature)
            except Exception as exc:
                logging.debug("candidate_rejected reason=describe_failed error=%r", exc)
                rejected += 1
                continue
            reason = validate_candidate(state, self.signature)
            if reason:
                logging.debug("candidate_rejected reason=%s tag=%s", reason, state.tag)
                rejected += 1
                continue
            accepted.append(element)
        logging.debug("scan_complete matched=%s accepted=%s rejected=%s", len(matches), len(accepted), rejected)
        return accepted
