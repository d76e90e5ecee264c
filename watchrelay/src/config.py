from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum

LOGGER = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Raised when the relay cannot be configured; fatal to the controller."""


class InitialStrategy(StrEnum):
    """How the first resourceVersion is chosen when no later one is known."""

    CURRENT = "CURRENT"
    NULL = "NULL"
    ZERO = "ZERO"
    RESTORE_NULL = "RESTORE-NULL"
    RESTORE_ZERO = "RESTORE-ZERO"
    RESTORE_CURRENT = "RESTORE-CURRENT"


class GoneStrategy(StrEnum):
    """How the next resourceVersion is chosen after a 410 Gone/Expired."""

    CURRENT = "CURRENT"
    NULL = "NULL"
    ZERO = "ZERO"


class CheckpointBackend(StrEnum):
    MEMORY = "memory"
    FILE = "file"
    CONFIGMAP = "configmap"


DEFAULT_ACTIVITY_TIMEOUT_SECONDS = 90
DEFAULT_SHORT_INTERVAL_SECONDS = 10


@dataclass(frozen=True)
class WatchSettings:
    """Options recognised by a single watch relay.

    Attributes:
        endpoint: API path to watch, e.g. ``/api/v1/namespaces/default/pods``.
        activity_timeout_seconds: Reconnect when no message arrived for this
            long.  ``0`` disables the inactivity check.
        initial_strategy: Bootstrap strategy for the first connection.
        gone_strategy: Recovery strategy after the server expires the
            current resourceVersion.
        short_interval_seconds: Period of the retry-after-failure timer.
    """

    endpoint: str
    activity_timeout_seconds: int = DEFAULT_ACTIVITY_TIMEOUT_SECONDS
    initial_strategy: InitialStrategy = InitialStrategy.RESTORE_CURRENT
    gone_strategy: GoneStrategy = GoneStrategy.CURRENT
    short_interval_seconds: int = DEFAULT_SHORT_INTERVAL_SECONDS


@dataclass(frozen=True)
class RuntimeSettings:
    """Process-level wiring: credentials, checkpoint location and health port."""

    kubeconfig_content: str | None
    kubeconfig_path: str | None
    kube_context: str | None
    connection_id: str | None
    checkpoint_backend: CheckpointBackend
    checkpoint_path: str
    checkpoint_namespace: str
    checkpoint_configmap: str
    health_port: int


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def parse_initial_strategy(raw: str | None) -> InitialStrategy:
    """Map a strategy name to :class:`InitialStrategy`.

    Empty and unknown names fall back to ``RESTORE-CURRENT``.
    """
    if not raw or not raw.strip():
        return InitialStrategy.RESTORE_CURRENT
    try:
        return InitialStrategy(raw.strip().upper())
    except ValueError:
        LOGGER.warning("Unknown initial resourceVersion strategy %r; using RESTORE-CURRENT", raw)
        return InitialStrategy.RESTORE_CURRENT


def parse_gone_strategy(raw: str | None) -> GoneStrategy:
    """Map a strategy name to :class:`GoneStrategy`; unknown names mean ``CURRENT``."""
    if not raw or not raw.strip():
        return GoneStrategy.CURRENT
    try:
        return GoneStrategy(raw.strip().upper())
    except ValueError:
        LOGGER.warning("Unknown gone resourceVersion strategy %r; using CURRENT", raw)
        return GoneStrategy.CURRENT


def load_settings(env: Mapping[str, str] | None = None) -> WatchSettings:
    """Load watch options from the environment.

    ``WATCH_ENDPOINT`` is required.  Raises :class:`ConfigError` for a missing
    endpoint or out-of-range timer settings.
    """
    values = env if env is not None else os.environ

    endpoint = (values.get("WATCH_ENDPOINT") or "").strip()
    if not endpoint:
        raise ConfigError("WATCH_ENDPOINT must be a non-empty API path")
    if not endpoint.startswith("/"):
        endpoint = f"/{endpoint}"

    try:
        activity_timeout = env_int(
            "ACTIVITY_TIMEOUT_SECONDS",
            DEFAULT_ACTIVITY_TIMEOUT_SECONDS,
            minimum=0,
            env=values,
        )
        short_interval = env_int(
            "SHORT_INTERVAL_SECONDS",
            DEFAULT_SHORT_INTERVAL_SECONDS,
            minimum=1,
            env=values,
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    return WatchSettings(
        endpoint=endpoint,
        activity_timeout_seconds=activity_timeout,
        initial_strategy=parse_initial_strategy(values.get("INITIAL_RESOURCE_VERSION_STRATEGY")),
        gone_strategy=parse_gone_strategy(values.get("GONE_RESOURCE_VERSION_STRATEGY")),
        short_interval_seconds=short_interval,
    )


def load_runtime_settings(env: Mapping[str, str] | None = None) -> RuntimeSettings:
    """Load process wiring options from the environment."""
    values = env if env is not None else os.environ

    raw_backend = (values.get("CHECKPOINT_BACKEND") or CheckpointBackend.FILE.value).strip().lower()
    try:
        backend = CheckpointBackend(raw_backend)
    except ValueError as exc:
        raise ConfigError(
            f"CHECKPOINT_BACKEND must be one of memory, file, configmap, got: {raw_backend!r}"
        ) from exc

    try:
        health_port = env_int("HEALTH_PORT", 8080, minimum=0, maximum=65535, env=values)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    return RuntimeSettings(
        kubeconfig_content=values.get("KUBECONFIG_CONTENT") or None,
        kubeconfig_path=values.get("KUBECONFIG") or None,
        kube_context=values.get("KUBE_CONTEXT") or None,
        connection_id=values.get("WATCH_CONNECTION_ID") or None,
        checkpoint_backend=backend,
        checkpoint_path=values.get("CHECKPOINT_PATH") or "watchrelay-checkpoint.json",
        checkpoint_namespace=values.get("CHECKPOINT_NAMESPACE") or "default",
        checkpoint_configmap=values.get("CHECKPOINT_CONFIGMAP") or "watchrelay-checkpoint",
        health_port=health_port,
    )
