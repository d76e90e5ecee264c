from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

LOGGER = logging.getLogger(__name__)


class ReconnectTarget(Protocol):
    """What the scheduler needs to know about, and do to, a controller."""

    @property
    def connecting(self) -> bool: ...

    @property
    def last_message_at(self) -> float: ...

    def take_retry_request(self) -> bool: ...

    def start(self, reason: str = ...) -> None: ...


class ReconnectScheduler:
    """Two independent timers that ask the controller to reconnect.

    The activity timer fires every ``activity_timeout_seconds`` and
    reconnects when nothing arrived on the stream for longer than that: a
    half-open TCP connection never reports termination on its own.  The
    short-interval timer fires every ``short_interval_seconds`` and reconnects
    only after a session ended, so recovery after a hard failure is quick
    without polling while the stream is healthy.

    Neither timer acts while the controller is connecting.
    """

    def __init__(
        self,
        target: ReconnectTarget,
        activity_timeout_seconds: int,
        short_interval_seconds: int = 10,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.target = target
        self.activity_timeout_seconds = activity_timeout_seconds
        self.short_interval_seconds = short_interval_seconds
        self.clock = clock
        self.logger = logger or LOGGER
        self._cancelled = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def activity_timer_enabled(self) -> bool:
        return self.activity_timeout_seconds > 0

    def activity_tick(self) -> bool:
        """Reconnect if the stream has been silent too long.  Returns True if triggered."""
        if self._cancelled.is_set() or self.target.connecting:
            return False
        silence = self.clock() - self.target.last_message_at
        if silence <= self.activity_timeout_seconds:
            return False
        self.logger.info(
            "Reconnecting watch after %.0fs without messages (timeout %ss)",
            silence,
            self.activity_timeout_seconds,
        )
        self.target.start(reason="inactivity")
        return True

    def short_interval_tick(self) -> bool:
        """Reconnect if a session ended since the last tick.  Returns True if triggered."""
        if self._cancelled.is_set() or self.target.connecting:
            return False
        if not self.target.take_retry_request():
            return False
        self.logger.info("Reconnecting watch due to short interval trigger")
        self.target.start(reason="short_interval")
        return True

    def _run_timer(self, period: float, tick: Callable[[], bool]) -> None:
        while not self._cancelled.wait(timeout=period):
            try:
                tick()
            except Exception:
                self.logger.exception("Reconnect timer tick failed")

    def start(self) -> None:
        """Start both timer threads; a previous set of timers is cancelled first."""
        self.cancel()
        self._cancelled = threading.Event()
        timers: list[tuple[str, float, Callable[[], bool]]] = [
            ("watchrelay-short-interval", self.short_interval_seconds, self.short_interval_tick),
        ]
        if self.activity_timer_enabled:
            timers.append(
                ("watchrelay-activity-timeout", self.activity_timeout_seconds, self.activity_tick)
            )
        else:
            self.logger.info("Activity timeout disabled")

        for name, period, tick in timers:
            thread = threading.Thread(
                target=self._run_timer,
                args=(period, tick),
                name=name,
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def cancel(self, join_timeout: float | None = 1.0) -> None:
        """Stop both timers.  Safe to call repeatedly."""
        self._cancelled.set()
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join(timeout=join_timeout)
        self._threads = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)
