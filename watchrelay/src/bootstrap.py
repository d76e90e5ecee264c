from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from urllib3.exceptions import HTTPError

from watchrelay.src.checkpoint import ENDPOINT_HASH_KEY, RESOURCE_VERSION_KEY, CheckpointStore
from watchrelay.src.config import GoneStrategy, InitialStrategy
from watchrelay.src.kube import HttpResponse
from watchrelay.src.metrics import METRICS
from watchrelay.src.resume import ResumePoint, coerce_token, parse_token

LOGGER = logging.getLogger(__name__)


class BootstrapFetchError(RuntimeError):
    """The one-shot fetch of the current resourceVersion failed."""


class HttpRequester(Protocol):
    def request(
        self,
        path: str,
        method: str = "GET",
        query: dict[str, Any] | None = None,
        body: Any = None,
    ) -> HttpResponse: ...


def _sanitized(raw: object, logger: logging.Logger) -> ResumePoint:
    parsed = parse_token(raw)
    if parsed is None:
        logger.warning("Discarding malformed resourceVersion %r; watching from now", raw)
        return ResumePoint.null()
    return parsed


class CurrentVersionFetcher:
    """Fetch the collection's current resourceVersion with a ``limit=1`` list."""

    def __init__(self, http: HttpRequester, path: str) -> None:
        self.http = http
        self.path = path

    def __call__(self) -> object:
        try:
            response = self.http.request(self.path, method="GET", query={"limit": 1})
        except (HTTPError, OSError) as exc:
            raise BootstrapFetchError(f"request for {self.path} failed: {exc}") from exc

        if not response.ok:
            raise BootstrapFetchError(
                f"request for {self.path} returned status {response.status_code}"
            )
        body = response.body
        metadata = body.get("metadata") if isinstance(body, dict) else None
        if not isinstance(metadata, dict):
            raise BootstrapFetchError(f"response for {self.path} carries no list metadata")
        return metadata.get("resourceVersion")


class BootstrapResolver:
    """Choose the resourceVersion for a fresh connection.

    Restore-style strategies only trust the stored checkpoint when its
    endpoint hash matches the current endpoint; a checkpoint recorded for a
    different cluster or path would resume from a meaningless position.
    Every failure is absorbed: the fallback is ``NULL`` and the error is
    logged.
    """

    def __init__(
        self,
        fetch_current: Callable[[], object],
        checkpoint_store: CheckpointStore,
        logger: logging.Logger | None = None,
    ) -> None:
        self.fetch_current = fetch_current
        self.checkpoint_store = checkpoint_store
        self.logger = logger or LOGGER

    def _current(self) -> ResumePoint:
        try:
            raw = self.fetch_current()
        except BootstrapFetchError as exc:
            self.logger.error("Unable to fetch current resourceVersion: %s", exc)
            METRICS.watch_errors_total.labels(kind="bootstrap").inc()
            return ResumePoint.null()
        return _sanitized(raw, self.logger)

    def _restore(self, endpoint_hash: str) -> ResumePoint | None:
        """Return the stored checkpoint if it belongs to *endpoint_hash*."""
        try:
            stored_hash = self.checkpoint_store.get(ENDPOINT_HASH_KEY)
            if stored_hash != endpoint_hash:
                return None
            stored = self.checkpoint_store.get(RESOURCE_VERSION_KEY)
        except Exception:
            self.logger.exception("Failed to read checkpoint; ignoring stored resourceVersion")
            return None
        if not stored:
            return ResumePoint.null()
        return _sanitized(stored, self.logger)

    def resolve(self, strategy: InitialStrategy, endpoint_hash: str) -> ResumePoint:
        if strategy is InitialStrategy.CURRENT:
            return self._current()
        if strategy is InitialStrategy.NULL:
            return ResumePoint.null()
        if strategy is InitialStrategy.ZERO:
            return ResumePoint.zero()

        restored = self._restore(endpoint_hash)
        if restored is not None:
            self.logger.info("Restored resourceVersion %s from checkpoint", restored)
            return restored
        if strategy is InitialStrategy.RESTORE_NULL:
            return ResumePoint.null()
        if strategy is InitialStrategy.RESTORE_ZERO:
            return ResumePoint.zero()
        return self._current()


class GoneRecoveryResolver:
    """Compute the one-shot override used after a 410 Gone/Expired."""

    def __init__(
        self,
        fetch_current: Callable[[], object],
        logger: logging.Logger | None = None,
    ) -> None:
        self.fetch_current = fetch_current
        self.logger = logger or LOGGER

    def resolve(self, strategy: GoneStrategy) -> ResumePoint:
        if strategy is GoneStrategy.ZERO:
            return ResumePoint.zero()
        if strategy is GoneStrategy.NULL:
            return ResumePoint.null()
        try:
            raw = self.fetch_current()
        except BootstrapFetchError as exc:
            self.logger.error("Unable to fetch current resourceVersion after 410: %s", exc)
            METRICS.watch_errors_total.labels(kind="bootstrap").inc()
            return ResumePoint.null()
        return coerce_token(raw)
