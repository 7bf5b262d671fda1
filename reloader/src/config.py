from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from reloader.src.snapshot import ResourceKind

RELOAD_STRATEGIES = ("restart_deployments", "shutdown")


class ConfigError(RuntimeError):
    """Raised when the reloader configuration is invalid."""


@dataclass(frozen=True)
class ReloadConfig:
    """Immutable reloader configuration, read once at startup.

    Attributes:
        namespace:          Namespace whose ConfigMaps and Secrets are watched.
        monitor_config_maps: Establish a ConfigMap watch.
        monitor_secrets:    Establish a Secret watch.
        config_map_names:   ConfigMaps merged into the ConfigMap snapshot.
        secret_names:       Secrets merged into the Secret snapshot.
        label_selector:     Optional selector narrowing which resources emit events.
        strategy:           Name of the reload strategy run on a confirmed change.
        deployment_selector: Deployments restarted by ``restart_deployments``.
    """

    namespace: str = "default"
    monitor_config_maps: bool = True
    monitor_secrets: bool = False
    config_map_names: tuple[str, ...] = ("application",)
    secret_names: tuple[str, ...] = ("application",)
    label_selector: str = ""
    strategy: str = "restart_deployments"
    deployment_selector: str = "app=application"
    rollout_annotation_key: str = "reloader.io/restartedAt"
    watch_timeout_seconds: int = 30
    close_timeout_seconds: int = 10
    health_port: int = 8080

    def monitored_kinds(self) -> tuple[ResourceKind, ...]:
        kinds: list[ResourceKind] = []
        if self.monitor_config_maps:
            kinds.append(ResourceKind.CONFIG_MAP)
        if self.monitor_secrets:
            kinds.append(ResourceKind.SECRET)
        return tuple(kinds)

    def resource_names(self) -> dict[ResourceKind, tuple[str, ...]]:
        return {
            ResourceKind.CONFIG_MAP: self.config_map_names,
            ResourceKind.SECRET: self.secret_names,
        }


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_names(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if value is None:
        return default
    return tuple(part.strip() for part in value.split(",") if part.strip())


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ReloadConfig:
    """Load reloader config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``        Namespace to watch (``default``).
        ``MONITOR_CONFIG_MAPS``    Watch ConfigMaps (``true``).
        ``MONITOR_SECRETS``        Watch Secrets (``false``).
        ``APP_NAME``               Default resource name and deployment label (``application``).
        ``CONFIG_MAP_NAMES``       Comma-separated ConfigMap names (``$APP_NAME``).
        ``SECRET_NAMES``           Comma-separated Secret names (``$APP_NAME``).
        ``WATCH_LABEL_SELECTOR``   Label selector applied to the watches (empty).
        ``RELOAD_STRATEGY``        ``restart_deployments`` or ``shutdown``.
        ``DEPLOYMENT_SELECTOR``    Deployments to restart (``app=$APP_NAME``).
        ``ROLLOUT_ANNOTATION_KEY``  Pod template annotation (``reloader.io/restartedAt``).
        ``WATCH_TIMEOUT_SECONDS``  Server-side watch timeout before reconnect (``30``).
        ``WATCH_CLOSE_TIMEOUT_SECONDS``  Max wait for a watch worker on stop (``10``).
        ``HEALTH_PORT``            Health and metrics port (``8080``).
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "default")
    if not namespace.strip():
        raise ConfigError("WATCH_NAMESPACE must be a non-empty string")

    app_name = values.get("APP_NAME", "application").strip()
    if not app_name:
        raise ConfigError("APP_NAME must be a non-empty string")

    monitor_config_maps = parse_bool(values.get("MONITOR_CONFIG_MAPS"), default=True)
    monitor_secrets = parse_bool(values.get("MONITOR_SECRETS"), default=False)
    config_map_names = parse_names(values.get("CONFIG_MAP_NAMES"), (app_name,))
    secret_names = parse_names(values.get("SECRET_NAMES"), (app_name,))
    if monitor_config_maps and not config_map_names:
        raise ConfigError("CONFIG_MAP_NAMES must name at least one ConfigMap")
    if monitor_secrets and not secret_names:
        raise ConfigError("SECRET_NAMES must name at least one Secret")

    strategy = values.get("RELOAD_STRATEGY", "restart_deployments").strip().lower()
    if strategy not in RELOAD_STRATEGIES:
        raise ConfigError(
            f"RELOAD_STRATEGY must be one of {', '.join(RELOAD_STRATEGIES)}, got: {strategy!r}"
        )

    deployment_selector = values.get("DEPLOYMENT_SELECTOR", f"app={app_name}").strip()
    if strategy == "restart_deployments" and "=" not in deployment_selector:
        raise ConfigError(
            "DEPLOYMENT_SELECTOR must contain at least one key=value pair, "
            f"got: {deployment_selector!r}"
        )

    return ReloadConfig(
        namespace=namespace.strip(),
        monitor_config_maps=monitor_config_maps,
        monitor_secrets=monitor_secrets,
        config_map_names=config_map_names,
        secret_names=secret_names,
        label_selector=values.get("WATCH_LABEL_SELECTOR", "").strip(),
        strategy=strategy,
        deployment_selector=deployment_selector,
        rollout_annotation_key=values.get("ROLLOUT_ANNOTATION_KEY", "reloader.io/restartedAt"),
        watch_timeout_seconds=env_int(values, "WATCH_TIMEOUT_SECONDS", 30, minimum=1),
        close_timeout_seconds=env_int(values, "WATCH_CLOSE_TIMEOUT_SECONDS", 10, minimum=0),
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
    )
