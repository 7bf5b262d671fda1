from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from reloader.src.metrics import METRICS
from reloader.src.snapshot import ResourceKind

if TYPE_CHECKING:
    from reloader.src.config import ReloadConfig
    from reloader.src.detector import ChangeDetector


class WatchAction(Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    """A single change notification delivered by a watch stream."""

    kind: ResourceKind
    action: WatchAction
    payload: Any = None


EventCallback = Callable[[WatchAction, Any], None]
CloseCallback = Callable[[BaseException | None], None]


class Subscription(Protocol):
    def close(self) -> None: ...


class WatchTransport(Protocol):
    def establish(
        self,
        kind: ResourceKind,
        on_event: EventCallback,
        on_close: CloseCallback,
    ) -> Subscription: ...


@dataclass
class WatchHandle:
    """One active subscription, owned exclusively by :class:`WatchManager`."""

    kind: ResourceKind
    subscription: Subscription
    closed: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def name(self) -> str:
        return self.kind.watch_name

    def close(self) -> None:
        """Close the subscription.  Closing twice is a no-op."""
        with self._lock:
            if self.closed:
                return
            self.closed = True
        self.subscription.close()


class WatchManager:
    """Owns one watch subscription per monitored resource kind.

    Every event delivered by a subscription is wrapped in a
    :class:`WatchEvent` and routed to the change detector on the
    subscription's own delivery thread, so a slow comparison for one kind
    never delays delivery for another.

    ``start()`` fails fast: an establishment error propagates to the caller
    after any watches opened by the same call have been closed again.
    ``stop()`` closes every handle independently and is safe to call at any
    time, any number of times.
    """

    def __init__(
        self,
        transport: WatchTransport,
        detector: ChangeDetector,
        logger: logging.Logger | None = None,
    ) -> None:
        self.transport = transport
        self.detector = detector
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._handles: dict[ResourceKind, WatchHandle] = {}
        self._lock = threading.Lock()

    @property
    def handles(self) -> dict[ResourceKind, WatchHandle]:
        with self._lock:
            return dict(self._handles)

    def watch_names(self) -> list[str]:
        with self._lock:
            return sorted(handle.name for handle in self._handles.values())

    def start(self, config: ReloadConfig) -> None:
        established: list[ResourceKind] = []
        try:
            for kind in config.monitored_kinds():
                with self._lock:
                    if kind in self._handles:
                        self.logger.warning("Watch %s is already active; skipping", kind.watch_name)
                        continue
                subscription = self.transport.establish(
                    kind,
                    self._event_callback(kind),
                    self._close_callback(kind),
                )
                with self._lock:
                    self._handles[kind] = WatchHandle(kind=kind, subscription=subscription)
                    METRICS.active_watches.set(len(self._handles))
                established.append(kind)
                self.logger.info("Added new Kubernetes watch: %s", kind.watch_name)
        except Exception:
            self.logger.error(
                "Failed to establish watches; closing %d already established",
                len(established),
            )
            self._close_kinds(established)
            raise

        if not established and not self.handles:
            self.logger.warning("No resource kinds are monitored; change detection is inactive")
        self.ready.set()
        self.logger.info("Event-based configuration change detector activated")

    def stop(self) -> None:
        self.ready.clear()
        with self._lock:
            kinds = list(self._handles)
        self._close_kinds(kinds)

    def _close_kinds(self, kinds: list[ResourceKind]) -> None:
        for kind in kinds:
            with self._lock:
                handle = self._handles.pop(kind, None)
                METRICS.active_watches.set(len(self._handles))
            if handle is None:
                continue
            try:
                self.logger.debug("Closing the watch %s", handle.name)
                handle.close()
            except Exception:
                METRICS.watch_close_errors_total.labels(kind=kind.value).inc()
                self.logger.exception("Error while closing the watch %s", handle.name)

    def _event_callback(self, kind: ResourceKind) -> EventCallback:
        def _on_event(action: WatchAction, payload: Any) -> None:
            METRICS.events_total.labels(kind=kind.value, action=action.value).inc()
            self.detector.on_event(WatchEvent(kind=kind, action=action, payload=payload))

        return _on_event

    def _close_callback(self, kind: ResourceKind) -> CloseCallback:
        def _on_close(error: BaseException | None) -> None:
            with self._lock:
                handle = self._handles.get(kind)
            METRICS.watch_closed_total.labels(
                kind=kind.value, error="true" if error is not None else "false"
            ).inc()
            if error is not None:
                self.ready.clear()
                self.logger.error("Watch %s closed with error: %s", kind.watch_name, error)
                return
            if handle is not None and not handle.closed:
                self.ready.clear()
                self.logger.warning("Watch %s closed unexpectedly", kind.watch_name)
                return
            self.logger.debug("Watch %s closed", kind.watch_name)

        return _on_close
