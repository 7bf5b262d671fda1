from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Info


@dataclass(frozen=True)
class ReloaderMetrics:
    """Prometheus metrics exported by the reloader on ``/metrics``.

    Most series carry a ``kind`` label (``configmap`` or ``secret``) so
    operators can tell a noisy secret watch apart from a config map one.
    """

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_events_total",
            "Total watch events received",
            ["kind", "action"],
        )
    )
    unchanged_events_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_unchanged_events_total",
            "Total watch events that did not change the effective configuration",
            ["kind"],
        )
    )
    ignored_events_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_ignored_events_total",
            "Total watch events ignored because no snapshot was installed",
            ["kind"],
        )
    )
    locate_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_locate_errors_total",
            "Total failures fetching a fresh snapshot",
            ["kind"],
        )
    )
    reloads_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_reloads_total",
            "Total reloads triggered by a confirmed configuration change",
            ["kind", "strategy"],
        )
    )
    reload_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_reload_errors_total",
            "Total reload strategy failures",
            ["strategy"],
        )
    )
    restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_deployment_restarts_total",
            "Total deployment restarts patched by the restart strategy",
        )
    )
    restart_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_deployment_restart_errors_total",
            "Total deployment restart patch failures",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    watch_closed_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_watch_closed_total",
            "Total watch streams terminated, labelled by whether an error was reported",
            ["kind", "error"],
        )
    )
    watch_close_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "config_reload_watch_close_errors_total",
            "Total failures closing a watch during teardown",
            ["kind"],
        )
    )
    active_watches: Gauge = field(
        default_factory=lambda: Gauge(
            "config_reload_active_watches",
            "Current number of established watch subscriptions",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "config_reload",
            "Build information for the reloader",
        )
    )


METRICS = ReloaderMetrics()
