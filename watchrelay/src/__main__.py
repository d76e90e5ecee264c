from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from watchrelay.src.config import ConfigError
from watchrelay.src.controller import build_controller_from_env
from watchrelay.src.health import start_health_server
from watchrelay.src.metrics import METRICS
from watchrelay.src.status import StatusValue

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|client-key-data)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger("watchrelay")


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
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Send JSON logs to stderr; stdout carries the relayed events."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def _log_status(value: StatusValue) -> None:
    LOGGER.debug("status %s", value.text or "blank")


def main() -> int:
    """Relay entrypoint: configure logging, build the controller and run until signalled."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        controller, runtime = build_controller_from_env(status_sink=_log_status)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1

    health_server = start_health_server(
        ready=controller.ready,
        port=runtime.health_port,
        status_provider=lambda: controller.status,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = 0
    if controller.launch():
        shutdown_event.wait()
    else:
        exit_code = 1

    controller.stop()
    health_server.shutdown()
    LOGGER.info("Relay stopped")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
