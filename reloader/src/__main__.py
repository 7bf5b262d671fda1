from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading
from collections.abc import Iterable

from kubernetes.client import AppsV1Api, CoreV1Api

from reloader.src.config import ReloadConfig, load_config
from reloader.src.detector import ChangeDetector
from reloader.src.health import start_health_server
from reloader.src.kube import (
    KubeLocator,
    KubeWatchTransport,
    build_clients,
    load_kube_configuration,
)
from reloader.src.metrics import METRICS
from reloader.src.registry import ActiveConfigurationRegistry
from reloader.src.snapshot import ResourceKind
from reloader.src.trigger import ReloadTrigger, build_strategy
from reloader.src.watcher import WatchManager

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    # ApiException messages carry the raw response body, which for Secrets
    # includes the base64 payload.
    (
        re.compile(r'(?i)("(?:data|stringData|binaryData)"\s*:\s*)\{[^{}]*\}'),
        r'\1"[REDACTED]"',
    ),
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)
LOGGER = logging.getLogger(__name__)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Configure structured JSON logging with a level from ``LOG_LEVEL`` env var."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def adopt_initial_snapshots(detector: ChangeDetector, kinds: Iterable[ResourceKind]) -> None:
    """Install the current snapshot of every monitored kind as the baseline.

    Runs after the watches are established: an edit made before the initial
    list is already part of the upstream state read here, while later edits
    arrive as events and are compared against this baseline.  Locate
    failures propagate and abort startup.
    """
    for kind in kinds:
        detector.adopt_baseline(kind)


def build_watch_manager(
    config: ReloadConfig,
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    shutdown_event: threading.Event,
) -> WatchManager:
    """Wire registry, locator, trigger, detector and transport for *config*."""
    registry = ActiveConfigurationRegistry()
    locator = KubeLocator(
        core_api=core_api,
        namespace=config.namespace,
        names=config.resource_names(),
    )
    strategy = build_strategy(
        config.strategy,
        apps_api=apps_api,
        namespace=config.namespace,
        deployment_selector=config.deployment_selector,
        rollout_annotation_key=config.rollout_annotation_key,
        shutdown_event=shutdown_event,
    )
    detector = ChangeDetector(
        registry=registry,
        locator=locator,
        trigger=ReloadTrigger(registry=registry, strategy=strategy),
    )
    transport = KubeWatchTransport(
        core_api=core_api,
        namespace=config.namespace,
        label_selector=config.label_selector,
        watch_timeout_seconds=config.watch_timeout_seconds,
        close_timeout_seconds=config.close_timeout_seconds,
    )
    return WatchManager(transport=transport, detector=detector)


def main() -> None:
    """Reloader entrypoint: configure logging, start watches, adopt baselines, run until signalled."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    load_kube_configuration()
    core_api, apps_api = build_clients()

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    manager = build_watch_manager(config, core_api, apps_api, shutdown_event)
    health_server = start_health_server(
        ready=manager.ready, port=config.health_port, watch_names=manager.watch_names
    )

    watch_lost = False
    try:
        manager.start(config)
        adopt_initial_snapshots(manager.detector, config.monitored_kinds())
        while not shutdown_event.wait(timeout=1.0):
            if not manager.ready.is_set():
                # A watch terminated for good (e.g. RBAC revoked); exit so the
                # supervisor restarts the process and re-establishes every watch.
                LOGGER.error("A watch stream terminated; shutting down")
                watch_lost = True
                break
    finally:
        manager.stop()
        health_server.shutdown()
        LOGGER.info("Reloader stopped")

    if watch_lost:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
