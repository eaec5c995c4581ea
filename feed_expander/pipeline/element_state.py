from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Tuple

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from ..config import Settings


class ElementState(BaseModel):
    """Point-in-time description of one element, as reported by the host."""

    model_config = ConfigDict(frozen=True)

    connected: bool
    tag: str = ""
    marker: Optional[str] = None
    text: str = ""
    disabled: bool = False
    aria_hidden: bool = False
    width: float = 0.0
    height: float = 0.0
    display: str = "block"
    visibility: str = "visible"
    opacity: str = "1"
    # Ancestor steps to the nearest container match, None when the bounded walk found nothing.
    container_depth: Optional[int] = None


@dataclass(frozen=True)
class TargetSignature:
    selector: str
    marker_attribute: str
    marker_value: str
    text_phrase: str
    container_selectors: Tuple[str, ...]
    max_ancestor_depth: int = 15

    @property
    def watch_selectors(self) -> Tuple[str, ...]:
        return (self.selector, *self.container_selectors)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "TargetSignature":
        return cls(
            selector=settings.target_selector,
            marker_attribute=settings.marker_attribute,
            marker_value=settings.marker_value,
            text_phrase=settings.text_phrase,
            container_selectors=tuple(settings.container_selectors),
            max_ancestor_depth=settings.max_ancestor_depth,
        )
