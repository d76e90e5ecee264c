from __future__ import annotations

import json
import sys
import threading
from typing import Any, Protocol, TextIO


class Sink(Protocol):
    def send(self, message: dict[str, Any]) -> None: ...


class JSONLinesSink:
    """Write each relayed message as one JSON document per line."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdout
        self._lock = threading.Lock()

    def send(self, message: dict[str, Any]) -> None:
        line = json.dumps(message, separators=(",", ":"), default=str)
        with self._lock:
            self.stream.write(line + "\n")
            self.stream.flush()
