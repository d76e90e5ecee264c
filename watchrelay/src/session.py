from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import parse_qsl, urlsplit

from kubernetes.client import ApiClient
from kubernetes.watch.watch import iter_resp_lines

from watchrelay.src.resume import ResumePoint

LOGGER = logging.getLogger(__name__)

ERROR_EVENT = "ERROR"


class SessionAborted(RuntimeError):
    """The session was aborted before its response arrived."""


@dataclass(frozen=True)
class WatchEvent:
    """One item of a watch stream.

    ``object`` is the raw resource mapping; for ``ERROR`` events it is a
    ``Status`` with ``status``, ``message``, ``reason`` and ``code``.
    """

    type: str
    object: dict[str, Any]

    @property
    def is_error(self) -> bool:
        return self.type == ERROR_EVENT

    @property
    def metadata(self) -> dict[str, Any]:
        metadata = self.object.get("metadata")
        return metadata if isinstance(metadata, dict) else {}


class WatchSession(Protocol):
    def connect(self) -> None: ...

    def events(self) -> Iterator[WatchEvent]: ...

    def abort(self) -> None: ...


class WatchTransport(Protocol):
    def open(self, path: str, resume_point: ResumePoint) -> WatchSession: ...


def parse_event_line(line: str | bytes, logger: logging.Logger | None = None) -> WatchEvent | None:
    """Decode one newline-delimited JSON watch frame; malformed frames yield None."""
    log = logger or LOGGER
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    if not line.strip():
        return None
    try:
        frame = json.loads(line)
    except ValueError:
        log.warning("Skipping malformed watch frame: %.200s", line)
        return None
    if not isinstance(frame, dict):
        return None
    event_type = frame.get("type")
    obj = frame.get("object")
    if not event_type or not isinstance(obj, dict):
        return None
    return WatchEvent(type=str(event_type), object=obj)


class KubeWatchSession:
    """A single streaming ``?watch=true`` request.

    ``connect`` blocks until response headers arrive and raises
    ``ApiException`` for non-2xx responses or a urllib3 error for transport
    failures.  ``abort`` may be called from any thread; closing the response
    unblocks a reader parked inside ``events``.
    """

    def __init__(
        self,
        api_client: ApiClient,
        path: str,
        resume_point: ResumePoint,
        connect_timeout_seconds: float = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api_client = api_client
        self.path = path
        self.resume_point = resume_point
        self.connect_timeout_seconds = connect_timeout_seconds
        self.logger = logger or LOGGER
        self._response: Any = None
        self._aborted = threading.Event()
        self._lock = threading.Lock()

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def _query_params(self) -> list[tuple[str, str]]:
        endpoint = urlsplit(self.path)
        params = [
            (key, value)
            for key, value in parse_qsl(endpoint.query, keep_blank_values=True)
            if key not in {"watch", "resourceVersion"}
        ]
        params.append(("watch", "true"))
        resource_version = self.resume_point.query_value()
        if resource_version is not None:
            params.append(("resourceVersion", resource_version))
        return params

    def connect(self) -> None:
        if self.aborted:
            raise SessionAborted(self.path)
        response = self.api_client.call_api(
            urlsplit(self.path).path,
            "GET",
            query_params=self._query_params(),
            header_params={"Accept": "application/json", "User-Agent": "watchrelay"},
            auth_settings=["BearerToken"],
            _return_http_data_only=True,
            _preload_content=False,
            _request_timeout=(self.connect_timeout_seconds, None),
        )
        with self._lock:
            if self.aborted:
                _close_response(response)
                raise SessionAborted(self.path)
            self._response = response

    def events(self) -> Iterator[WatchEvent]:
        if self._response is None:
            raise RuntimeError("connect() must succeed before reading events")
        try:
            for line in iter_resp_lines(self._response):
                if self.aborted:
                    return
                event = parse_event_line(line, self.logger)
                if event is not None:
                    yield event
        finally:
            self.abort()

    def abort(self) -> None:
        with self._lock:
            self._aborted.set()
            response = self._response
        if response is not None:
            _close_response(response)


def _close_response(response: Any) -> None:
    response.close()
    response.release_conn()


class KubeWatchTransport:
    """Opens :class:`KubeWatchSession` objects against one API server."""

    def __init__(
        self,
        api_client: ApiClient,
        connect_timeout_seconds: float = 10,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api_client = api_client
        self.connect_timeout_seconds = connect_timeout_seconds
        self.logger = logger or LOGGER

    def open(self, path: str, resume_point: ResumePoint) -> KubeWatchSession:
        return KubeWatchSession(
            api_client=self.api_client,
            path=path,
            resume_point=resume_point,
            connect_timeout_seconds=self.connect_timeout_seconds,
            logger=self.logger,
        )
