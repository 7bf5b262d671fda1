from __future__ import annotations

import base64
import binascii
import logging
import random
import threading
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from reloader.src.metrics import METRICS
from reloader.src.snapshot import ResourceKind, Snapshot, normalize_data
from reloader.src.watcher import CloseCallback, EventCallback, WatchAction

LOGGER = logging.getLogger(__name__)

_LIST_FUNCTIONS = {
    ResourceKind.CONFIG_MAP: "list_namespaced_config_map",
    ResourceKind.SECRET: "list_namespaced_secret",
}
_READ_FUNCTIONS = {
    ResourceKind.CONFIG_MAP: "read_namespaced_config_map",
    ResourceKind.SECRET: "read_namespaced_secret",
}
_ACCESS_DENIED = {401, 403}
_MAX_BACKOFF_SECONDS = 30


class LocateError(RuntimeError):
    """Raised when the current values of a resource kind cannot be read."""


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def patch_deployment_restart(
    apps_api: AppsV1Api,
    namespace: str,
    deployment_name: str,
    annotation_key: str,
    timestamp: str,
) -> None:
    """Patch a Deployment's pod template annotation to trigger a rolling restart.

    This is the same mechanism used by ``kubectl rollout restart``: changing a
    pod template annotation causes the ReplicaSet controller to roll new pods.
    """
    body = {
        "spec": {
            "template": {
                "metadata": {
                    "annotations": {annotation_key: timestamp}
                }
            }
        }
    }

    apps_api.patch_namespaced_deployment(
        name=deployment_name,
        namespace=namespace,
        body=body,
    )


def decode_secret_data(data: Mapping[str, str]) -> dict[str, str]:
    """Decode base64-encoded Secret ``data`` values into text.

    Bytes that are not valid UTF-8 are kept as surrogate escapes, so two
    different binary values (keystores, DER certificates) never decode to
    the same string.
    """
    decoded: dict[str, str] = {}
    for key, value in data.items():
        try:
            raw = base64.b64decode(value, validate=True)
        except binascii.Error as exc:
            raise LocateError(f"Secret key {key!r} is not valid base64") from exc
        decoded[key] = raw.decode("utf-8", errors="surrogateescape")
    return decoded


class KubeLocator:
    """Reads the current values of the configured ConfigMaps and Secrets.

    All named resources of a kind are merged into one snapshot in
    configuration order, so a key in a later resource overrides the same key
    in an earlier one.  A resource that does not exist contributes nothing.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        names: Mapping[ResourceKind, Sequence[str]],
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.names = {kind: tuple(values) for kind, values in names.items()}
        self.logger = logger or logging.getLogger(__name__)

    def source_name(self, kind: ResourceKind) -> str:
        return ",".join(
            f"{kind.value}.{name}.{self.namespace}" for name in self.names.get(kind, ())
        )

    def locate(self, kind: ResourceKind) -> Snapshot:
        read = getattr(self.core_api, _READ_FUNCTIONS[kind])
        merged: dict[str, str] = {}
        revisions: list[str] = []
        for name in self.names.get(kind, ()):
            try:
                resource = read(name=name, namespace=self.namespace)
            except ApiException as exc:
                if exc.status == 404:
                    self.logger.debug("%s %s/%s not found", kind.value, self.namespace, name)
                    continue
                raise LocateError(
                    f"Failed to read {kind.value} {self.namespace}/{name} (status={exc.status})"
                ) from exc

            data = normalize_data(getattr(resource, "data", None))
            if kind is ResourceKind.SECRET:
                data = decode_secret_data(data)
            merged.update(data)

            resource_version = getattr(getattr(resource, "metadata", None), "resource_version", None)
            if resource_version:
                revisions.append(f"{name}@{resource_version}")

        return Snapshot(
            data=merged,
            kind=kind,
            source=self.source_name(kind),
            revision=",".join(revisions) or None,
        )


class KubeWatchSubscription:
    """A watch stream for one resource kind, served by a daemon thread.

    The worker reopens the stream every time the server-side watch timeout
    elapses, re-lists on ``410 Gone`` (etcd compacted past our
    ``resourceVersion``) and backs off with jitter on transient errors.
    ``401`` / ``403`` responses are treated as configuration errors (RBAC)
    and terminate the stream; ``on_close`` receives the error.
    """

    def __init__(
        self,
        kind: ResourceKind,
        list_fn: Callable[..., Any],
        namespace: str,
        label_selector: str,
        on_event: EventCallback,
        on_close: CloseCallback,
        watch_timeout_seconds: int = 30,
        close_timeout_seconds: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.namespace = namespace
        self.label_selector = label_selector
        self.resource_version: str | None = None
        self.on_event = on_event
        self.on_close = on_close
        self.watch_timeout_seconds = watch_timeout_seconds
        self.close_timeout_seconds = close_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """List the resources, then stream changes from the listing's resourceVersion.

        The initial list runs on the caller's thread so API and RBAC errors
        propagate as :class:`ApiException`.
        """
        initial = self.list_fn(**self._list_kwargs())
        self.resource_version = getattr(
            getattr(initial, "metadata", None), "resource_version", None
        )
        self.logger.info(
            "Starting %s watch in namespace %s from resourceVersion %s",
            self.kind.value,
            self.namespace,
            self.resource_version,
        )
        self._thread = threading.Thread(
            target=self._run, name=self.kind.watch_name, daemon=True
        )
        self._thread.start()

    def close(self) -> None:
        """Stop the stream and wait for the worker to finish its current event."""
        self._stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout=self.close_timeout_seconds)
        if thread.is_alive():
            self.logger.warning(
                "Watch %s did not stop within %ss; leaving worker to finish in background",
                self.kind.watch_name,
                self.close_timeout_seconds,
            )

    def _run(self) -> None:
        error: BaseException | None = None
        try:
            self._watch_loop()
        except Exception as exc:
            error = exc
        self.on_close(error)

    def _list_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"namespace": self.namespace}
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        return kwargs

    def _deliver(self, action_name: str, obj: Any) -> None:
        try:
            action = WatchAction(action_name)
        except ValueError:
            self.logger.debug("Skipping %s event of type %r", self.kind.value, action_name)
            return
        try:
            self.on_event(action, obj)
        except Exception:
            self.logger.exception(
                "Unexpected error handling %s %s event", action_name, self.kind.value
            )

    def _relist(self) -> None:
        """Re-list after ``410 Gone`` and deliver the listing as one modification.

        Changes that happened while the watch was behind are not replayed
        individually; the detector re-reads current state anyway, so a
        single notification is enough to catch any drift.
        """
        fresh = self.list_fn(**self._list_kwargs())
        self.resource_version = getattr(
            getattr(fresh, "metadata", None), "resource_version", None
        )
        self._deliver("MODIFIED", fresh)

    def _backoff(self, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        self._stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, _MAX_BACKOFF_SECONDS)

    def _watch_loop(self) -> None:
        # Exponential backoff counter (seconds) for transient API errors.
        # Reset to 1 on every successful watch iteration; doubled on error
        # up to a 30 s cap.  Jitter is applied at sleep time.
        backoff_seconds = 1
        stream_count = 0

        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind.value).inc()
                stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=self.resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    **self._list_kwargs(),
                )
                for event in stream:
                    if self._stop.is_set():
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        self.resource_version = metadata.resource_version

                    self._deliver(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "Watch %s resource version expired, re-listing", self.kind.watch_name
                    )
                    try:
                        self._relist()
                    except ApiException as relist_exc:
                        if relist_exc.status in _ACCESS_DENIED:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            raise
                        self.logger.exception("Failed to re-list %s after 410", self.kind.value)
                        METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                        self.resource_version = None
                    continue

                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                if exc.status in _ACCESS_DENIED:
                    self.logger.error(
                        "Kubernetes API watch denied for %s (status=%s). "
                        "Check RBAC and service account permissions.",
                        self.kind.value,
                        exc.status,
                    )
                    raise

                self.logger.exception("Kubernetes API watch error on %s", self.kind.watch_name)
                backoff_seconds = self._backoff(backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.kind.watch_name)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                backoff_seconds = self._backoff(backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


class KubeWatchTransport:
    """Establishes Kubernetes watches on ConfigMaps or Secrets in one namespace.

    ``establish`` lists the resources synchronously before starting the
    stream, so an unreachable API server or missing RBAC permission raises
    :class:`ApiException` to the caller instead of failing later in a
    background thread.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        label_selector: str = "",
        watch_timeout_seconds: int = 30,
        close_timeout_seconds: float = 10.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.label_selector = label_selector
        self.watch_timeout_seconds = watch_timeout_seconds
        self.close_timeout_seconds = close_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

    def establish(
        self,
        kind: ResourceKind,
        on_event: EventCallback,
        on_close: CloseCallback,
    ) -> KubeWatchSubscription:
        subscription = KubeWatchSubscription(
            kind=kind,
            list_fn=getattr(self.core_api, _LIST_FUNCTIONS[kind]),
            namespace=self.namespace,
            label_selector=self.label_selector,
            on_event=on_event,
            on_close=on_close,
            watch_timeout_seconds=self.watch_timeout_seconds,
            close_timeout_seconds=self.close_timeout_seconds,
            logger=self.logger,
        )
        subscription.start()
        return subscription
