from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, List, Optional, Sequence

from ..errors import SubscriptionSetupFailed
from ..hosts.base import Host, Subscription
from .backup import BackupScanner
from .change_watcher import ChangeWatcher
from .dispatcher import ActionDispatcher
from .element_state import TargetSignature
from .navigation import NavigationMonitor
from .registry import DedupRegistry, PendingSet
from .scanner import CandidateScanner
from .scheduler import BatchScheduler
from .tasks import TaskTracker
from .timers import AfterCancelFn, AfterFn, Debouncer, loop_after, loop_after_cancel
from .visibility import VisibilityGate

if TYPE_CHECKING:
    from ..config import Settings


@dataclass
class ExpanderStats:
    scans: int = 0
    admitted: int = 0
    deferred: int = 0
    released: int = 0
    dispatched: int = 0
    skipped_stale: int = 0
    failed: int = 0
    pruned: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class Expander:
    """One pipeline per document: wires every component on start, tears it all down on stop."""

    def __init__(
        self,
        host: Host,
        signature: TargetSignature,
        *,
        debounce_ms: int = 300,
        batch_size: int = 5,
        idle_timeout_ms: int = 1000,
        visibility_threshold: float = 0.1,
        visibility_margin_px: int = 100,
        click_delay_ms: int = 300,
        click_stagger_ms: int = 100,
        navigation_poll_ms: int = 500,
        navigation_settle_ms: int = 800,
        backup_interval_ms: int = 3000,
        startup_delay_ms: int = 1000,
        after: AfterFn = loop_after,
        after_cancel: AfterCancelFn = loop_after_cancel,
    ) -> None:
        self.host = host
        self.signature = signature
        self.click_stagger_ms = click_stagger_ms
        self.startup_delay_ms = startup_delay_ms
        self._after = after
        self._after_cancel = after_cancel

        self.stats = ExpanderStats()
        self.registry = DedupRegistry()
        self.pending = PendingSet()
        self.tasks = TaskTracker()

        self.scanner = CandidateScanner(host, signature, self.registry, self.pending)
        self.dispatcher = ActionDispatcher(
            host,
            signature,
            self.tasks,
            delay_ms=click_delay_ms,
            after=after,
            after_cancel=after_cancel,
            on_outcome=self._count_outcome,
        )
        self.gate = VisibilityGate(
            host,
            self.pending,
            self._release,
            self.tasks,
            threshold=visibility_threshold,
            margin_px=visibility_margin_px,
        )
        self.scheduler = BatchScheduler(
            host,
            self.registry,
            self.pending,
            self.gate.watch,
            batch_size=batch_size,
            idle_timeout_ms=idle_timeout_ms,
        )
        self.debouncer = Debouncer(
            debounce_ms, lambda: self.request_scan("mutation"), after=after, after_cancel=after_cancel
        )
        self.watcher = ChangeWatcher(self.debouncer.signal, signature.watch_selectors)
        self.navigation = NavigationMonitor(
            host.location,
            lambda: self.request_scan("navigation"),
            poll_ms=navigation_poll_ms,
            settle_ms=navigation_settle_ms,
            after=after,
            after_cancel=after_cancel,
        )
        self.backup = BackupScanner(
            host,
            self.pending,
            self.scan_and_admit,
            self.tasks,
            interval_ms=backup_interval_ms,
            after=after,
            after_cancel=after_cancel,
            on_pruned=self._count_pruned,
        )

        self.running = False
        self.stopped = False
        self._mutation_subscription: Optional[Subscription] = None
        self._startup_handle: Optional[object] = None

    @classmethod
    def from_settings(cls, host: Host, settings: "Settings", **overrides: Any) -> "Expander":
        options: dict[str, Any] = dict(
            debounce_ms=settings.debounce_ms,
            batch_size=settings.batch_size,
            idle_timeout_ms=settings.idle_timeout_ms,
            visibility_threshold=settings.visibility_threshold,
            visibility_margin_px=settings.visibility_margin_px,
            click_delay_ms=settings.click_delay_ms,
            click_stagger_ms=settings.click_stagger_ms,
            navigation_poll_ms=settings.navigation_poll_ms,
            navigation_settle_ms=settings.navigation_settle_ms,
            backup_interval_ms=settings.backup_interval_ms,
            startup_delay_ms=settings.startup_delay_ms,
        )
        options.update(overrides)
        return cls(host, TargetSignature.from_settings(settings), **options)

    async def start(self) -> None:
        if self.running:
            return
        if self.stopped:
            raise RuntimeError("Expander was stopped; create a new one for the next document")
        try:
            await self.host.connect()
            self._mutation_subscription = await self.host.observe_mutations(
                self.watcher.handle_records, self.watcher.watch_selectors
            )
        except Exception as exc:
            logging.error("expander_setup_failed error=%r", exc)
            self.stopped = True
            if isinstance(exc, SubscriptionSetupFailed):
                raise
            raise SubscriptionSetupFailed(f"could not observe the document: {exc}") from exc

        self.running = True
        self.navigation.start()
        self.backup.start()
        self._startup_handle = self._after(self.startup_delay_ms, self._startup_scan)
        logging.info(
            "expander_started mode=%s selector=%s location=%s",
            self.mode,
            self.signature.selector,
            self.host.location(),
        )

    @property
    def mode(self) -> str:
        return "gated"

    def _startup_scan(self) -> None:
        self._startup_handle = None
        self.request_scan("startup")

    def request_scan(self, reason: str) -> None:
        if not self.running:
            return
        self.tasks.spawn(self.scan_and_admit(reason), name=f"scan-{reason}")

    async def scan_and_admit(self, reason: str = "manual") -> List[Any]:
        if self.stopped:
            return []
        self.stats.scans += 1
        candidates = await self.scanner.scan()
        if self.stopped:
            return []
        admitted = self._admit(candidates)
        if admitted:
            logging.info(
                "scan_admitted reason=%s admitted=%s candidates=%s", reason, len(admitted), len(candidates)
            )
        return admitted

    def _admit(self, candidates: Sequence[Any]) -> List[Any]:
        admitted = self.scheduler.admit(candidates)
        self.stats.admitted += len(admitted)
        self.stats.deferred += self.scheduler.last_deferred
        return admitted

    def _release(self, element: Any) -> None:
        self.stats.released += 1
        self.dispatcher.dispatch(element)

    def _count_outcome(self, outcome: str) -> None:
        if outcome == "dispatched":
            self.stats.dispatched += 1
        elif outcome == "skipped_stale":
            self.stats.skipped_stale += 1
        elif outcome == "failed":
            self.stats.failed += 1

    def _count_pruned(self, count: int) -> None:
        self.stats.pruned += count

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        self.running = False
        if self._startup_handle is not None:
            self._after_cancel(self._startup_handle)
            self._startup_handle = None
        self.debouncer.cancel()
        self.navigation.stop()
        self.backup.stop()
        self.scheduler.close()
        self.gate.close()
        self.dispatcher.close()
        if self._mutation_subscription is not None:
            self._mutation_subscription.close()
            self._mutation_subscription = None
        self.tasks.cancel_all()
        logging.info("expander_stopped stats=%s", self.stats.as_dict())
