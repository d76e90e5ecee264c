from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Enum, Gauge, Info

from watchrelay.src.status import Status


@dataclass(frozen=True)
class RelayMetrics:
    """Prometheus metrics exported by the relay on ``/metrics``."""

    events_total: Counter = field(
        default_factory=lambda: Counter(
            "watchrelay_events_total",
            "Total watch events received, by event type",
            ["type"],
        )
    )
    messages_sent_total: Counter = field(
        default_factory=lambda: Counter(
            "watchrelay_messages_sent_total",
            "Total messages forwarded to the downstream sink",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "watchrelay_watch_errors_total",
            "Total watch errors, by kind (protocol, connect, bootstrap, sink)",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "watchrelay_watch_reconnects_total",
            "Total connection attempts, by trigger",
            ["trigger"],
        )
    )
    gone_total: Counter = field(
        default_factory=lambda: Counter(
            "watchrelay_gone_total",
            "Total 410 Gone/Expired errors that forced a resourceVersion reset",
        )
    )
    checkpoint_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "watchrelay_checkpoint_writes_total",
            "Total checkpoint writes, by outcome",
            ["outcome"],
        )
    )
    resource_version: Gauge = field(
        default_factory=lambda: Gauge(
            "watchrelay_resource_version",
            "Latest resourceVersion observed on the watch stream",
        )
    )
    last_message_timestamp: Gauge = field(
        default_factory=lambda: Gauge(
            "watchrelay_last_message_timestamp_seconds",
            "Unix time of the last message received on the watch stream",
        )
    )
    status: Enum = field(
        default_factory=lambda: Enum(
            "watchrelay_status",
            "Current relay status",
            states=[state.value for state in Status],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "watchrelay",
            "Build information for the relay",
        )
    )


METRICS = RelayMetrics()
