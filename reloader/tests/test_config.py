from __future__ import annotations

import pytest

from reloader.src.config import (
    ConfigError,
    ReloadConfig,
    env_int,
    load_config,
    parse_bool,
    parse_names,
)
from reloader.src.snapshot import ResourceKind


def test_load_config_defaults() -> None:
    config = load_config({})

    assert config == ReloadConfig()
    assert config.monitored_kinds() == (ResourceKind.CONFIG_MAP,)


def test_load_config_custom_values() -> None:
    config = load_config(
        {
            "WATCH_NAMESPACE": "payments",
            "APP_NAME": "billing",
            "MONITOR_CONFIG_MAPS": "false",
            "MONITOR_SECRETS": "true",
            "SECRET_NAMES": "billing-db, billing-api",
            "WATCH_LABEL_SELECTOR": "team=payments",
            "RELOAD_STRATEGY": "shutdown",
            "WATCH_TIMEOUT_SECONDS": "60",
            "HEALTH_PORT": "9090",
        }
    )

    assert config.namespace == "payments"
    assert config.monitored_kinds() == (ResourceKind.SECRET,)
    assert config.config_map_names == ("billing",)
    assert config.secret_names == ("billing-db", "billing-api")
    assert config.label_selector == "team=payments"
    assert config.strategy == "shutdown"
    assert config.deployment_selector == "app=billing"
    assert config.watch_timeout_seconds == 60
    assert config.health_port == 9090


def test_monitored_kinds_with_both_flags() -> None:
    config = ReloadConfig(monitor_config_maps=True, monitor_secrets=True)

    assert config.monitored_kinds() == (ResourceKind.CONFIG_MAP, ResourceKind.SECRET)


def test_monitored_kinds_with_no_flags() -> None:
    assert ReloadConfig(monitor_config_maps=False).monitored_kinds() == ()


def test_resource_names_by_kind() -> None:
    config = ReloadConfig(config_map_names=("a", "b"), secret_names=("s",))

    assert config.resource_names() == {
        ResourceKind.CONFIG_MAP: ("a", "b"),
        ResourceKind.SECRET: ("s",),
    }


def test_load_config_empty_namespace_raises() -> None:
    with pytest.raises(ConfigError, match="WATCH_NAMESPACE"):
        load_config({"WATCH_NAMESPACE": "  "})


def test_load_config_unknown_strategy_raises() -> None:
    with pytest.raises(ConfigError, match="RELOAD_STRATEGY"):
        load_config({"RELOAD_STRATEGY": "reboot"})


def test_load_config_invalid_deployment_selector_raises() -> None:
    with pytest.raises(ConfigError, match="DEPLOYMENT_SELECTOR"):
        load_config({"DEPLOYMENT_SELECTOR": "application"})


def test_load_config_requires_names_for_monitored_kind() -> None:
    with pytest.raises(ConfigError, match="SECRET_NAMES"):
        load_config({"MONITOR_SECRETS": "true", "SECRET_NAMES": " , "})


def test_load_config_invalid_port_raises() -> None:
    with pytest.raises(ConfigError, match="HEALTH_PORT"):
        load_config({"HEALTH_PORT": "70000"})


@pytest.mark.parametrize("value", ["true", "True", "TRUE", "1", "yes", "on", "  true  "])
def test_parse_bool_truthy_values(value: str) -> None:
    assert parse_bool(value) is True


@pytest.mark.parametrize("value", ["false", "False", "0", "no", "off", ""])
def test_parse_bool_falsy_values(value: str) -> None:
    assert parse_bool(value, default=True) is False


def test_parse_bool_returns_default_when_unset() -> None:
    assert parse_bool(None) is False
    assert parse_bool(None, default=True) is True


def test_parse_names_strips_and_drops_empty_entries() -> None:
    assert parse_names(" a, ,b ", ("default",)) == ("a", "b")
    assert parse_names(None, ("default",)) == ("default",)


def test_env_int_returns_default_when_not_set() -> None:
    assert env_int({}, "TEST_INT", 5) == 5


def test_env_int_parses_valid_integer() -> None:
    assert env_int({"TEST_INT": "42"}, "TEST_INT", 5) == 42


def test_env_int_raises_on_non_numeric() -> None:
    with pytest.raises(ConfigError, match="must be an integer"):
        env_int({"TEST_INT": "abc"}, "TEST_INT", 5)


def test_env_int_enforces_minimum() -> None:
    with pytest.raises(ConfigError, match=">= 1"):
        env_int({"TEST_INT": "0"}, "TEST_INT", 5, minimum=1)


def test_env_int_enforces_maximum() -> None:
    with pytest.raises(ConfigError, match="<= 10"):
        env_int({"TEST_INT": "11"}, "TEST_INT", 5, maximum=10)
