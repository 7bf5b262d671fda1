from __future__ import annotations

import logging
import threading
from typing import Protocol

from reloader.src.metrics import METRICS
from reloader.src.registry import ActiveConfigurationRegistry
from reloader.src.snapshot import ResourceKind, Snapshot
from reloader.src.trigger import ReloadResult, ReloadTrigger
from reloader.src.watcher import WatchEvent


class Locator(Protocol):
    def locate(self, kind: ResourceKind) -> Snapshot: ...


class ChangeDetector:
    """Decides whether a watch event changed the effective configuration.

    The event payload only tells us *that* something happened; the fresh
    snapshot is always re-read through the locator, because a single event
    may describe one resource out of several that make up a kind's
    configuration, or may already be stale by the time it is delivered.

    ``on_event`` returns a :class:`ReloadResult` when a reload ran, and
    ``None`` (no reload) when:
    - no snapshot of the event's kind has been adopted yet, so there is no
      baseline to compare against;
    - the locator fails (logged, retried implicitly by the next event);
    - the fresh snapshot equals the installed one, which covers resyncs,
      metadata-only updates and duplicate deliveries.

    Each kind has its own lock held across get-installed, locate, compare and
    install.  Overlapping events for the same kind therefore run one after
    another, and the second sees the snapshot adopted by the first.
    """

    def __init__(
        self,
        registry: ActiveConfigurationRegistry,
        locator: Locator,
        trigger: ReloadTrigger,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.locator = locator
        self.trigger = trigger
        self.logger = logger or logging.getLogger(__name__)
        self._kind_locks = {kind: threading.Lock() for kind in ResourceKind}

    def adopt_baseline(self, kind: ResourceKind) -> Snapshot:
        """Install the current upstream snapshot of *kind* without reloading.

        Runs under the kind's lock, so an event delivered while the baseline
        is being read waits and is then compared against it.  Locate
        failures propagate.
        """
        with self._kind_locks[kind]:
            baseline = self.locator.locate(kind)
            self.registry.install(kind, baseline)
            return baseline

    def on_event(self, event: WatchEvent) -> ReloadResult | None:
        kind = event.kind
        with self._kind_locks[kind]:
            current = self.registry.get(kind)
            if current is None:
                METRICS.ignored_events_total.labels(kind=kind.value).inc()
                self.logger.debug(
                    "Ignoring %s %s event: no %s snapshot installed",
                    event.action.value,
                    kind.value,
                    kind.value,
                )
                return None

            try:
                fresh = self.locator.locate(kind)
            except Exception:
                METRICS.locate_errors_total.labels(kind=kind.value).inc()
                self.logger.exception(
                    "Failed to locate fresh %s snapshot; ignoring %s event",
                    kind.value,
                    event.action.value,
                )
                return None

            if not self.changed(current, fresh):
                METRICS.unchanged_events_total.labels(kind=kind.value).inc()
                self.logger.debug("Ignoring unchanged %s data", kind.value)
                return None

            self.logger.info(
                "Detected change in %s (%s -> %s)",
                kind.value,
                current.digest()[:12],
                fresh.digest()[:12],
            )
            return self.trigger.trigger([fresh])

    def changed(self, current: Snapshot, fresh: Snapshot) -> bool:
        if len(current.data) != len(fresh.data):
            self.logger.debug(
                "The number of %s keys changed from %d to %d",
                fresh.kind.value,
                len(current.data),
                len(fresh.data),
            )
        return current != fresh
