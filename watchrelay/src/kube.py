from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import yaml
from kubernetes import client, config
from kubernetes.client import ApiClient, ApiException
from kubernetes.config.config_exception import ConfigException

from watchrelay.src.config import ConfigError

LOGGER = logging.getLogger(__name__)

JSON_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
    "User-Agent": "watchrelay",
}


@dataclass(frozen=True)
class KubeConnection:
    """An API server connection owned by exactly one controller.

    Wraps a dedicated :class:`ApiClient` built from its own
    :class:`client.Configuration`, so several relays with different
    credentials can live in one process.
    """

    api_client: ApiClient
    server: str
    context: str
    identity: str

    def origin(self) -> dict[str, str]:
        """Cluster description attached to relayed messages; never includes credentials."""
        return {"name": self.context, "server": self.server}


def load_connection(
    kubeconfig_content: str | None = None,
    kubeconfig_path: str | None = None,
    context: str | None = None,
    connection_id: str | None = None,
) -> KubeConnection:
    """Build a :class:`KubeConnection` from the first credential source that works.

    Order: inline kubeconfig text, in-cluster service account, kubeconfig file
    (``kubeconfig_path`` or the default location).  Raises
    :class:`ConfigError` when none of them yields a usable configuration.
    """
    configuration = client.Configuration()

    if kubeconfig_content:
        try:
            config_dict = yaml.safe_load(kubeconfig_content)
        except yaml.YAMLError as exc:
            raise ConfigError("KUBECONFIG_CONTENT is not valid YAML") from exc
        if not isinstance(config_dict, dict):
            raise ConfigError("KUBECONFIG_CONTENT must be a kubeconfig mapping")
        try:
            config.load_kube_config_from_dict(
                config_dict,
                context=context,
                client_configuration=configuration,
            )
        except ConfigException as exc:
            raise ConfigError(f"Invalid inline kubeconfig: {exc}") from exc
        context_name = context or str(config_dict.get("current-context") or "default")
        LOGGER.info("Loaded inline kubeconfig (context=%s)", context_name)
    else:
        try:
            config.load_incluster_config(client_configuration=configuration)
            context_name = "in-cluster"
            LOGGER.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            try:
                config.load_kube_config(
                    config_file=kubeconfig_path,
                    context=context,
                    client_configuration=configuration,
                )
                _, active = config.list_kube_config_contexts(config_file=kubeconfig_path)
            except ConfigException as exc:
                raise ConfigError(f"missing KubeConfig: {exc}") from exc
            context_name = context or str((active or {}).get("name") or "default")
            LOGGER.info("Loaded local kubeconfig (context=%s)", context_name)

    server = str(configuration.host)
    return KubeConnection(
        api_client=ApiClient(configuration),
        server=server,
        context=context_name,
        identity=connection_id or f"{context_name}@{server}",
    )


def watchless_path(uri: str) -> str:
    """Strip watch semantics from *uri*.

    Path segments equal to ``watch`` (any case) and the ``watch`` query
    parameter are removed.  Only the path and query survive.
    """
    parts = urlsplit(uri)
    path = "/".join(segment for segment in parts.path.split("/") if segment.lower() != "watch")
    query = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if key != "watch"]
    return urlunsplit(("", "", path, urlencode(query), ""))


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code <= 299


def _decode_body(raw: Any) -> Any:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


class KubeHttpClient:
    """One-shot JSON requests against the API server.

    Non-2xx responses are returned as :class:`HttpResponse`; only transport
    failures (connection refused, TLS errors, timeouts) raise.
    """

    def __init__(self, api_client: ApiClient, request_timeout_seconds: float = 30) -> None:
        self.api_client = api_client
        self.request_timeout_seconds = request_timeout_seconds

    def request(
        self,
        path: str,
        method: str = "GET",
        query: dict[str, Any] | None = None,
        body: Any = None,
    ) -> HttpResponse:
        endpoint = urlsplit(watchless_path(path))
        method = method.upper()
        query_params = parse_qsl(endpoint.query, keep_blank_values=True)
        send_body = None
        if method == "GET":
            query_params.extend((key, value) for key, value in (query or {}).items())
        else:
            send_body = body

        try:
            data, status, _headers = self.api_client.call_api(
                endpoint.path,
                method,
                query_params=query_params,
                header_params=dict(JSON_HEADERS),
                body=send_body,
                response_type="object",
                auth_settings=["BearerToken"],
                _return_http_data_only=False,
                _preload_content=True,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as exc:
            return HttpResponse(status_code=int(exc.status or 0), body=_decode_body(exc.body))
        return HttpResponse(status_code=int(status), body=data)
