from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from typing import Protocol

from kubernetes.client import ApiException, CoreV1Api, V1ConfigMap, V1ObjectMeta

LOGGER = logging.getLogger(__name__)

ENDPOINT_HASH_KEY = "endpointHash"
RESOURCE_VERSION_KEY = "resourceVersion"


def endpoint_hash(connection_identity: str, path: str) -> str:
    """Fingerprint binding a checkpoint to one connection and watch path."""
    return hashlib.md5(  # noqa: S324
        f"{connection_identity}:{path}".encode("utf-8"),
        usedforsecurity=False,
    ).hexdigest()


class CheckpointStore(Protocol):
    """Key-value checkpoint storage.  ``update`` writes all keys or none."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def update(self, values: dict[str, str]) -> None: ...


class MemoryCheckpointStore:
    """Process-local store; checkpoints do not survive a restart."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self.update({key: value})

    def update(self, values: dict[str, str]) -> None:
        with self._lock:
            self._values.update(values)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._values)


class FileCheckpointStore:
    """Checkpoint kept in a small JSON document on disk.

    Every ``set`` rewrites the whole file through a temporary file and
    ``os.replace`` so a crash mid-write never leaves a truncated checkpoint.
    An unreadable file is logged and treated as empty.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _read(self) -> dict[str, str]:
        try:
            with open(self.path, encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            LOGGER.warning("Ignoring unreadable checkpoint file %s", self.path, exc_info=True)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        self.update({key: value})

    def update(self, values: dict[str, str]) -> None:
        with self._lock:
            data = self._read()
            data.update(values)
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".checkpoint-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, sort_keys=True)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise


class ConfigMapCheckpointStore:
    """Checkpoint kept in the ``data`` of a Kubernetes ConfigMap.

    The ConfigMap is created on the first write.  Writes are merge patches of
    the given keys only, applied by the API server in one request, so
    concurrent writers only ever overwrite the keys they set (last write wins).
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        name: str,
        labels: dict[str, str] | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.name = name
        self.labels = labels or {"app.kubernetes.io/managed-by": "watchrelay"}

    def get(self, key: str) -> str | None:
        try:
            config_map = self.core_api.read_namespaced_config_map(
                name=self.name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        data = getattr(config_map, "data", None) or {}
        return data.get(key)

    def _patch(self, values: dict[str, str]) -> None:
        self.core_api.patch_namespaced_config_map(
            name=self.name,
            namespace=self.namespace,
            body={"data": dict(values)},
        )

    def set(self, key: str, value: str) -> None:
        self.update({key: value})

    def update(self, values: dict[str, str]) -> None:
        try:
            self._patch(values)
            return
        except ApiException as exc:
            if exc.status != 404:
                raise

        body = V1ConfigMap(
            metadata=V1ObjectMeta(name=self.name, namespace=self.namespace, labels=self.labels),
            data=dict(values),
        )
        try:
            self.core_api.create_namespaced_config_map(namespace=self.namespace, body=body)
            LOGGER.info("Created checkpoint ConfigMap %s/%s", self.namespace, self.name)
        except ApiException as exc:
            if exc.status != 409:
                raise
            LOGGER.debug("Checkpoint ConfigMap %s/%s created concurrently", self.namespace, self.name)
            self._patch(values)
