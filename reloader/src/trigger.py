from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from kubernetes.client import ApiException, AppsV1Api

from reloader.src.kube import patch_deployment_restart
from reloader.src.metrics import METRICS
from reloader.src.registry import ActiveConfigurationRegistry
from reloader.src.snapshot import ResourceKind, Snapshot


class ReloadError(RuntimeError):
    """Raised when a reload strategy fails to apply a confirmed change."""


class ReloadStrategy(Protocol):
    name: str

    def reload(self) -> None: ...


@dataclass(frozen=True)
class ReloadResult:
    """Immutable record of a single reload.

    Returned by :meth:`ReloadTrigger.trigger` so callers can inspect which
    kinds were adopted without querying the registry again.
    """

    kinds: tuple[ResourceKind, ...]
    strategy: str
    digests: tuple[str, ...]


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class RefreshStrategy:
    """Refresh configuration in place by invoking a caller-supplied callback."""

    name = "refresh"

    def __init__(self, callback: Callable[[], None]) -> None:
        self.callback = callback

    def reload(self) -> None:
        self.callback()


class ShutdownStrategy:
    """Request process shutdown so the supervisor restarts it with the new configuration."""

    name = "shutdown"

    def __init__(self, shutdown_event: threading.Event, logger: logging.Logger | None = None) -> None:
        self.shutdown_event = shutdown_event
        self.logger = logger or logging.getLogger(__name__)

    def reload(self) -> None:
        self.logger.warning("Configuration changed; requesting process shutdown")
        self.shutdown_event.set()


class RolloutRestartStrategy:
    """Trigger rolling restarts of every Deployment matching a label selector.

    Each matching Deployment's pod template is patched with an RFC 3339
    timestamp annotation, which Kubernetes treats as a template change and
    rolls new pods.  Patch failures for individual deployments do not stop
    the remaining patches; any failure is reported as a :class:`ReloadError`
    once all deployments have been attempted.
    """

    name = "restart_deployments"

    def __init__(
        self,
        apps_api: AppsV1Api,
        namespace: str,
        deployment_selector: str,
        rollout_annotation_key: str,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.apps_api = apps_api
        self.namespace = namespace
        self.deployment_selector = deployment_selector
        self.rollout_annotation_key = rollout_annotation_key
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def reload(self) -> None:
        try:
            deployments = self.apps_api.list_namespaced_deployment(
                namespace=self.namespace,
                label_selector=self.deployment_selector,
            )
        except ApiException as exc:
            METRICS.restart_errors_total.inc()
            raise ReloadError(
                f"Failed to list deployments with selector {self.deployment_selector}"
            ) from exc

        items = deployments.items or []
        if not items:
            self.logger.warning(
                "Configuration changed, but no deployments matched selector %s",
                self.deployment_selector,
            )
            return

        timestamp = self.now_fn()
        failed: list[str] = []
        for deployment in items:
            deployment_name = getattr(getattr(deployment, "metadata", None), "name", None)
            if not deployment_name:
                failed.append("<unknown>")
                self.logger.error("Encountered deployment with missing metadata.name")
                continue
            try:
                patch_deployment_restart(
                    apps_api=self.apps_api,
                    namespace=self.namespace,
                    deployment_name=deployment_name,
                    annotation_key=self.rollout_annotation_key,
                    timestamp=timestamp,
                )
            except ApiException:
                failed.append(deployment_name)
                self.logger.exception(
                    "Failed to patch deployment %s in namespace %s",
                    deployment_name,
                    self.namespace,
                )
                continue
            METRICS.restarts_total.inc()
            self.logger.info("Triggered rolling restart for deployment %s", deployment_name)

        if failed:
            METRICS.restart_errors_total.inc(len(failed))
            raise ReloadError(f"Failed to restart deployments: {', '.join(failed)}")


def build_strategy(
    name: str,
    *,
    apps_api: AppsV1Api,
    namespace: str,
    deployment_selector: str,
    rollout_annotation_key: str,
    shutdown_event: threading.Event,
    refresh_callback: Callable[[], None] | None = None,
) -> ReloadStrategy:
    """Construct the reload strategy named by configuration."""
    if name == RolloutRestartStrategy.name:
        return RolloutRestartStrategy(
            apps_api=apps_api,
            namespace=namespace,
            deployment_selector=deployment_selector,
            rollout_annotation_key=rollout_annotation_key,
        )
    if name == ShutdownStrategy.name:
        return ShutdownStrategy(shutdown_event=shutdown_event)
    if name == RefreshStrategy.name:
        if refresh_callback is None:
            raise ValueError("The refresh strategy requires a refresh callback")
        return RefreshStrategy(refresh_callback)
    raise ValueError(f"Unknown reload strategy: {name!r}")


class ReloadTrigger:
    """Adopts new snapshots into the registry and runs the reload strategy.

    Installs always happen before the strategy is invoked, and a strategy
    failure does not roll them back: the registry keeps reflecting upstream
    state, so the same change is not reloaded again on the next event.
    Concurrent triggers from different kinds are serialized.
    """

    def __init__(
        self,
        registry: ActiveConfigurationRegistry,
        strategy: ReloadStrategy,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.strategy = strategy
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()

    def trigger(self, snapshots: Iterable[Snapshot]) -> ReloadResult:
        adopted = list(snapshots)
        if not adopted:
            raise ValueError("trigger() requires at least one snapshot")

        with self._lock:
            for snapshot in adopted:
                self.registry.install(snapshot.kind, snapshot)

            kinds = tuple(snapshot.kind for snapshot in adopted)
            self.logger.info(
                "Reloading configuration for %s using strategy %s",
                ", ".join(kind.value for kind in kinds),
                self.strategy.name,
            )
            try:
                self.strategy.reload()
            except Exception as exc:
                METRICS.reload_errors_total.labels(strategy=self.strategy.name).inc()
                self.logger.exception("Reload strategy %s failed", self.strategy.name)
                if isinstance(exc, ReloadError):
                    raise
                raise ReloadError(f"Reload strategy {self.strategy.name} failed") from exc

            for kind in kinds:
                METRICS.reloads_total.labels(kind=kind.value, strategy=self.strategy.name).inc()

        return ReloadResult(
            kinds=kinds,
            strategy=self.strategy.name,
            digests=tuple(snapshot.digest() for snapshot in adopted),
        )
