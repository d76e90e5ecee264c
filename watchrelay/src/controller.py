from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from enum import StrEnum
from typing import Any

from kubernetes.client import ApiException, CoreV1Api
from urllib3.exceptions import TimeoutError as Urllib3TimeoutError

from watchrelay.src.bootstrap import BootstrapResolver, CurrentVersionFetcher, GoneRecoveryResolver
from watchrelay.src.checkpoint import (
    ENDPOINT_HASH_KEY,
    RESOURCE_VERSION_KEY,
    CheckpointStore,
    ConfigMapCheckpointStore,
    FileCheckpointStore,
    MemoryCheckpointStore,
    endpoint_hash,
)
from watchrelay.src.config import (
    CheckpointBackend,
    ConfigError,
    RuntimeSettings,
    WatchSettings,
    load_runtime_settings,
    load_settings,
)
from watchrelay.src.kube import KubeConnection, KubeHttpClient, load_connection
from watchrelay.src.metrics import METRICS
from watchrelay.src.resume import ResumeKind, ResumePoint, parse_token, select_resume_point
from watchrelay.src.scheduler import ReconnectScheduler
from watchrelay.src.session import KubeWatchTransport, WatchEvent, WatchSession, WatchTransport
from watchrelay.src.sink import JSONLinesSink, Sink
from watchrelay.src.status import Status, StatusValue, render

GONE_CODE = 410
GONE_REASONS = frozenset({"Gone", "Expired"})


class ControllerState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


def build_message(event: WatchEvent, origin: Mapping[str, str]) -> dict[str, Any]:
    """Normalize a watch event into the downstream message shape."""
    return {
        "payload": {"type": event.type, "object": event.object},
        "topic": event.metadata.get("selfLink") or "",
        "origin": {"cluster": dict(origin)},
    }


def is_gone(code: object, reason: object) -> bool:
    """True for a 410 whose reason says the resourceVersion was compacted away."""
    try:
        numeric = int(str(code))
    except ValueError:
        return False
    return numeric == GONE_CODE and reason in GONE_REASONS


def _is_timeout(error: BaseException) -> bool:
    candidates = [error, getattr(error, "reason", None), error.__cause__, error.__context__]
    return any(
        isinstance(candidate, (TimeoutError, Urllib3TimeoutError)) for candidate in candidates
    )


def classify_disconnect(error: BaseException | None) -> str:
    """Name the cause of a session termination for logs: closed, stale, timeout or other."""
    if error is None:
        return "closed"
    if isinstance(error, ApiException) and error.status == GONE_CODE:
        return "stale"
    if _is_timeout(error):
        return "timeout"
    return "other"


def _spawn_daemon(target: Callable[[], None]) -> None:
    threading.Thread(target=target, name="watchrelay-session", daemon=True).start()


class WatchController:
    """Relays one watch endpoint to a sink and keeps it connected.

    The controller owns a single logical watch session.  Each connection
    attempt picks its resourceVersion with :func:`select_resume_point`:
    a one-shot override left by 410 Gone recovery, then the newest
    resourceVersion delivered so far, then the value chosen for the previous
    attempt, then the configured bootstrap strategy.

    Every delivered event with a newer resourceVersion advances the
    in-memory resume point and the persisted checkpoint.  The endpoint hash
    is written with the first advance, in the same store update as the
    resourceVersion, so a restarted relay only restores checkpoints recorded
    for the same connection and path.

    Threads: ``start`` runs on the caller (host or timer thread), the
    session is read on a worker thread, and two timer threads drive
    reconnects.  Controller state is only mutated under ``_lock``; network
    calls always happen outside it.  The ``CONNECTING`` state is entered
    before the first blocking call so timer ticks observe it and back off.
    """

    def __init__(
        self,
        settings: WatchSettings,
        connection: KubeConnection | None,
        checkpoint_store: CheckpointStore,
        sink: Sink,
        *,
        transport: WatchTransport | None = None,
        http: Any = None,
        status_sink: Callable[[StatusValue], None] | None = None,
        config_error: ConfigError | None = None,
        clock: Callable[[], float] = time.monotonic,
        spawn: Callable[[Callable[[], None]], None] = _spawn_daemon,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.connection = connection
        self.checkpoint_store = checkpoint_store
        self.sink = sink
        self.status_sink = status_sink
        self.config_error = config_error
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._spawn = spawn

        self.endpoint_hash: str | None = None
        self.bootstrap: BootstrapResolver | None = None
        self.gone_recovery: GoneRecoveryResolver | None = None
        self.transport: WatchTransport | None = None
        self._origin: dict[str, str] = {}
        self._where = settings.endpoint
        if connection is not None:
            self.endpoint_hash = endpoint_hash(connection.identity, settings.endpoint)
            self.transport = transport or KubeWatchTransport(connection.api_client)
            fetch_current = CurrentVersionFetcher(
                http or KubeHttpClient(connection.api_client),
                settings.endpoint,
            )
            self.bootstrap = BootstrapResolver(fetch_current, checkpoint_store, self.logger)
            self.gone_recovery = GoneRecoveryResolver(fetch_current, self.logger)
            self._origin = connection.origin()
            self._where = f"{connection.server}{settings.endpoint}"

        self.scheduler = ReconnectScheduler(
            self,
            activity_timeout_seconds=settings.activity_timeout_seconds,
            short_interval_seconds=settings.short_interval_seconds,
            clock=clock,
            logger=self.logger,
        )
        self.ready = threading.Event()
        self.status: StatusValue = render(Status.BLANK)

        self._lock = threading.Lock()
        self._checkpoint_lock = threading.Lock()
        self._state = ControllerState.IDLE
        self._session: WatchSession | None = None
        self._generation = 0
        self._latest = ResumePoint.unset()
        self._previous = ResumePoint.unset()
        self._forced: ResumePoint | None = None
        self._retry_requested = False
        self._endpoint_hash_written = False
        self._last_message_at = 0.0
        self._misconfiguration_reported = False

    # -- observable state --------------------------------------------------

    @property
    def state(self) -> ControllerState:
        with self._lock:
            return self._state

    @property
    def connecting(self) -> bool:
        with self._lock:
            return self._state is ControllerState.CONNECTING

    @property
    def last_message_at(self) -> float:
        with self._lock:
            return self._last_message_at

    @property
    def latest_resume_point(self) -> ResumePoint:
        with self._lock:
            return self._latest

    @property
    def forced_resume_point(self) -> ResumePoint | None:
        with self._lock:
            return self._forced

    @property
    def retry_requested(self) -> bool:
        with self._lock:
            return self._retry_requested

    def take_retry_request(self) -> bool:
        """Consume the short-interval retry flag unless a connection is in progress."""
        with self._lock:
            if self._state in {ControllerState.CONNECTING, ControllerState.STOPPED}:
                return False
            requested = self._retry_requested
            self._retry_requested = False
            return requested

    def _set_status(self, state: Status, extra_text: str | None = None) -> None:
        value = render(state, extra_text)
        with self._lock:
            self.status = value
        METRICS.status.state(state.value)
        if self.status_sink is not None:
            self.status_sink(value)

    # -- lifecycle ----------------------------------------------------------

    def launch(self) -> bool:
        """Open the first session and arm the reconnect timers.

        Returns False, without opening anything, when the controller has no
        usable connection.  That misconfiguration is reported once.
        """
        if self.connection is None:
            if not self._misconfiguration_reported:
                self._misconfiguration_reported = True
                detail = f": {self.config_error}" if self.config_error else ""
                self.logger.error("missing KubeConfig for watch on %s%s", self._where, detail)
                self._set_status(Status.MISCONFIGURED)
            return False

        self.start(reason="initial")
        self.scheduler.start()
        return True

    def start(self, reason: str = "manual") -> None:
        """Begin a new connection attempt unless one is already in progress."""
        if self.connection is None or self.transport is None or self.bootstrap is None:
            return

        with self._lock:
            if self._state in {ControllerState.CONNECTING, ControllerState.STOPPED}:
                return
            superseded = self._session
            self._session = None
            self._generation += 1
            generation = self._generation
            self._state = ControllerState.CONNECTING
            forced, self._forced = self._forced, None
            latest = self._latest
            previous = self._previous

        self.ready.clear()
        if superseded is not None:
            superseded.abort()
        METRICS.watch_reconnects_total.labels(trigger=reason).inc()
        self._set_status(Status.CONNECTING)

        bootstrap = self.bootstrap
        try:
            resume_point, source = select_resume_point(
                forced,
                latest,
                previous,
                lambda: bootstrap.resolve(self.settings.initial_strategy, self.endpoint_hash or ""),
            )
            session = self.transport.open(self.settings.endpoint, resume_point)
        except Exception:
            self.logger.exception("Failed to start kubernetes watch (%s)", self._where)
            with self._lock:
                if generation == self._generation and self._state is ControllerState.CONNECTING:
                    self._state = ControllerState.DISCONNECTED
                    self._retry_requested = True
            self._set_status(Status.ERROR, "failed to start watch")
            return

        with self._lock:
            current = generation == self._generation and self._state is ControllerState.CONNECTING
            if current:
                self._previous = resume_point
                self._session = session
        if not current:
            session.abort()
            return

        self.logger.info(
            "watching %s from resourceVersion: %s (source=%s, trigger=%s)",
            self._where,
            resume_point,
            source,
            reason,
        )
        self._spawn(lambda: self._pump(session, generation))

    def stop(self) -> None:
        """Abort the session and cancel both timers.  Idempotent."""
        with self._lock:
            already_stopped = self._state is ControllerState.STOPPED
            self._state = ControllerState.STOPPED
            session = self._session
            self._session = None
            self._generation += 1
            self._retry_requested = False
        self.scheduler.cancel()
        if session is not None:
            session.abort()
        self.ready.clear()
        if not already_stopped:
            self.logger.info("Stopped kubernetes watch (%s)", self._where)

    # -- session callbacks --------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation and self._state is not ControllerState.STOPPED

    def _pump(self, session: WatchSession, generation: int) -> None:
        error: BaseException | None = None
        try:
            session.connect()
            if not self._session_established(generation):
                return
            for event in session.events():
                if not self._is_current(generation):
                    break
                self.handle_event(event)
        except Exception as exc:
            error = exc
        finally:
            session.abort()
            self._session_finished(generation, error)

    def _session_established(self, generation: int) -> bool:
        with self._lock:
            if generation != self._generation or self._state is not ControllerState.CONNECTING:
                return False
            self._state = ControllerState.STREAMING
        self.ready.set()
        self._set_status(Status.CONNECTED)
        return True

    def handle_event(self, event: WatchEvent) -> None:
        """Process one event delivered by the current session."""
        now = self.clock()
        with self._lock:
            self._last_message_at = now
        METRICS.last_message_timestamp.set_to_current_time()
        METRICS.events_total.labels(type=event.type).inc()

        if event.is_error:
            self._handle_protocol_error(event.object)

        self._advance(event)

        if event.is_error:
            return

        self._set_status(Status.TRANSFER)
        try:
            self.sink.send(build_message(event, self._origin))
        except Exception:
            self.logger.exception("Failed to forward %s event from %s", event.type, self._where)
            METRICS.watch_errors_total.labels(kind="sink").inc()
        else:
            METRICS.messages_sent_total.inc()
        self._set_status(Status.CONNECTED)

    def _handle_protocol_error(self, status: dict[str, Any]) -> None:
        message = status.get("message")
        reason = status.get("reason")
        code = status.get("code")
        self.logger.error(
            "kubernetes watch (%s) error - status: %s, message: %s, reason: %s, code: %s",
            self._where,
            status.get("status"),
            message,
            reason,
            code,
        )
        METRICS.watch_errors_total.labels(kind="protocol").inc()
        self._set_status(Status.ERROR, str(message))

        if not is_gone(code, reason) or self.gone_recovery is None:
            return

        METRICS.gone_total.inc()
        forced = self.gone_recovery.resolve(self.settings.gone_strategy)
        with self._lock:
            if self._state is ControllerState.STOPPED:
                return
            self._forced = forced
        self.logger.warning(
            "resourceVersion for %s is %s; next connection resumes from %s",
            self._where,
            reason,
            forced,
        )

    def _advance(self, event: WatchEvent) -> None:
        candidate = parse_token(event.metadata.get("resourceVersion"))
        if candidate is None or candidate.kind is not ResumeKind.VALUE:
            return

        with self._checkpoint_lock:
            with self._lock:
                if candidate.ordinal <= self._latest.ordinal:
                    return
                self._latest = candidate
                write_hash = not self._endpoint_hash_written
                self._endpoint_hash_written = True
            METRICS.resource_version.set(candidate.ordinal)
            self._persist(candidate, write_hash)

    def _persist(self, point: ResumePoint, write_hash: bool) -> None:
        try:
            values = {RESOURCE_VERSION_KEY: str(point)}
            if write_hash and self.endpoint_hash is not None:
                values[ENDPOINT_HASH_KEY] = self.endpoint_hash
            self.checkpoint_store.update(values)
        except Exception:
            self.logger.exception("Failed to write checkpoint at resourceVersion %s", point)
            METRICS.checkpoint_writes_total.labels(outcome="error").inc()
            if write_hash:
                with self._lock:
                    self._endpoint_hash_written = False
            return
        METRICS.checkpoint_writes_total.labels(outcome="ok").inc()

    def _session_finished(self, generation: int, error: BaseException | None) -> None:
        with self._lock:
            current = generation == self._generation and self._state is not ControllerState.STOPPED
            if current:
                self._state = ControllerState.DISCONNECTED
                self._session = None
                self._retry_requested = True
        if not current:
            self.logger.debug("Ignoring termination of superseded watch session on %s", self._where)
            return

        self.ready.clear()
        self._set_status(Status.DISCONNECTED)
        if error is None:
            self.logger.info(
                "attempting connect to kubernetes watch (%s) due to unknown connection closure",
                self._where,
            )
            return

        METRICS.watch_errors_total.labels(kind="connect").inc()
        self.logger.error("kubernetes watch (%s) error: %s", self._where, error)
        self._set_status(Status.ERROR, str(error))

        cause = classify_disconnect(error)
        if cause == "timeout":
            detail = "connect timeout"
        elif cause == "stale":
            detail = "stale resourceVersion"
        else:
            detail = str(error)
        self.logger.info("attempting connect to kubernetes watch (%s) due to %s", self._where, detail)


def build_checkpoint_store(
    runtime: RuntimeSettings,
    connection: KubeConnection | None,
) -> CheckpointStore:
    if runtime.checkpoint_backend is CheckpointBackend.FILE:
        return FileCheckpointStore(runtime.checkpoint_path)
    if runtime.checkpoint_backend is CheckpointBackend.CONFIGMAP and connection is not None:
        return ConfigMapCheckpointStore(
            core_api=CoreV1Api(connection.api_client),
            namespace=runtime.checkpoint_namespace,
            name=runtime.checkpoint_configmap,
        )
    return MemoryCheckpointStore()


def build_controller_from_env(
    env: Mapping[str, str] | None = None,
    status_sink: Callable[[StatusValue], None] | None = None,
) -> tuple[WatchController, RuntimeSettings]:
    """Construct a :class:`WatchController` from environment variables.

    Invalid watch or runtime settings raise :class:`ConfigError`.  Missing
    credentials do not raise: the controller is built without a connection
    and reports itself misconfigured on :meth:`WatchController.launch`.
    """
    settings = load_settings(env)
    runtime = load_runtime_settings(env)

    connection: KubeConnection | None = None
    config_error: ConfigError | None = None
    try:
        connection = load_connection(
            kubeconfig_content=runtime.kubeconfig_content,
            kubeconfig_path=runtime.kubeconfig_path,
            context=runtime.kube_context,
            connection_id=runtime.connection_id,
        )
    except ConfigError as exc:
        config_error = exc

    controller = WatchController(
        settings=settings,
        connection=connection,
        checkpoint_store=build_checkpoint_store(runtime, connection),
        sink=JSONLinesSink(),
        status_sink=status_sink,
        config_error=config_error,
    )
    return controller, runtime
