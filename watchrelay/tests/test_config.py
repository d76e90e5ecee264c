from __future__ import annotations

import pytest

from watchrelay.src.config import (
    CheckpointBackend,
    ConfigError,
    GoneStrategy,
    InitialStrategy,
    env_int,
    load_runtime_settings,
    load_settings,
    parse_gone_strategy,
    parse_initial_strategy,
)


def test_load_settings_defaults() -> None:
    settings = load_settings({"WATCH_ENDPOINT": "/api/v1/pods"})

    assert settings.endpoint == "/api/v1/pods"
    assert settings.activity_timeout_seconds == 90
    assert settings.short_interval_seconds == 10
    assert settings.initial_strategy is InitialStrategy.RESTORE_CURRENT
    assert settings.gone_strategy is GoneStrategy.CURRENT


def test_load_settings_reads_all_options() -> None:
    settings = load_settings(
        {
            "WATCH_ENDPOINT": "api/v1/namespaces/default/pods",
            "ACTIVITY_TIMEOUT_SECONDS": "0",
            "SHORT_INTERVAL_SECONDS": "3",
            "INITIAL_RESOURCE_VERSION_STRATEGY": "restore-zero",
            "GONE_RESOURCE_VERSION_STRATEGY": "NULL",
        }
    )

    assert settings.endpoint == "/api/v1/namespaces/default/pods"
    assert settings.activity_timeout_seconds == 0
    assert settings.short_interval_seconds == 3
    assert settings.initial_strategy is InitialStrategy.RESTORE_ZERO
    assert settings.gone_strategy is GoneStrategy.NULL


def test_load_settings_requires_endpoint() -> None:
    with pytest.raises(ConfigError, match="WATCH_ENDPOINT"):
        load_settings({"WATCH_ENDPOINT": "   "})


@pytest.mark.parametrize("value", ["-1", "soon"])
def test_load_settings_rejects_bad_activity_timeout(value: str) -> None:
    with pytest.raises(ConfigError, match="ACTIVITY_TIMEOUT_SECONDS"):
        load_settings({"WATCH_ENDPOINT": "/api/v1/pods", "ACTIVITY_TIMEOUT_SECONDS": value})


@pytest.mark.parametrize("raw", [None, "", "BOGUS"])
def test_initial_strategy_defaults_to_restore_current(raw: str | None) -> None:
    assert parse_initial_strategy(raw) is InitialStrategy.RESTORE_CURRENT


@pytest.mark.parametrize("raw", [None, "", "RESTORE-ZERO"])
def test_gone_strategy_defaults_to_current(raw: str | None) -> None:
    assert parse_gone_strategy(raw) is GoneStrategy.CURRENT


def test_env_int_bounds() -> None:
    assert env_int("PORT", 8080, env={}) == 8080
    assert env_int("PORT", 8080, env={"PORT": "9090"}) == 9090
    with pytest.raises(ValueError, match="PORT must be <= 65535, got: 70000"):
        env_int("PORT", 8080, maximum=65535, env={"PORT": "70000"})
    with pytest.raises(ValueError, match="PORT must be an integer"):
        env_int("PORT", 8080, env={"PORT": "http"})


def test_load_runtime_settings_defaults() -> None:
    runtime = load_runtime_settings({})

    assert runtime.checkpoint_backend is CheckpointBackend.FILE
    assert runtime.checkpoint_path == "watchrelay-checkpoint.json"
    assert runtime.checkpoint_namespace == "default"
    assert runtime.checkpoint_configmap == "watchrelay-checkpoint"
    assert runtime.health_port == 8080
    assert runtime.kubeconfig_content is None


def test_load_runtime_settings_rejects_unknown_backend() -> None:
    with pytest.raises(ConfigError, match="CHECKPOINT_BACKEND"):
        load_runtime_settings({"CHECKPOINT_BACKEND": "redis"})


def test_load_runtime_settings_rejects_invalid_health_port() -> None:
    with pytest.raises(ConfigError, match="HEALTH_PORT must be <= 65535, got: 70000"):
        load_runtime_settings({"HEALTH_PORT": "70000"})
