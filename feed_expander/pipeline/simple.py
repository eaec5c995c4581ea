from __future__ import annotations

from typing import Any, List, Sequence

from .expander import Expander


class SimpleExpander(Expander):
    """Earlier variant of the pipeline: no batch cap, no idle deferral, no visibility gate.

    Every valid candidate of a scan is marked known and activated after the
    click delay, staggered by its position in the scan.
    """

    @property
    def mode(self) -> str:
        return "simple"

    def _admit(self, candidates: Sequence[Any]) -> List[Any]:
        admitted: List[Any] = []
        for element in candidates:
            if self.registry.is_known(element):
                continue
            self.registry.mark_known(element)
            self.dispatcher.dispatch(element, extra_delay_ms=len(admitted) * self.click_stagger_ms)
            admitted.append(element)
        self.stats.admitted += len(admitted)
        return admitted
