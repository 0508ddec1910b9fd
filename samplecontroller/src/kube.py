from __future__ import annotations

import json
import logging
import queue
from collections.abc import Callable, Mapping
from typing import Any, TypeVar
from urllib.parse import quote, urlencode

import urllib3
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from samplecontroller.src.exceptions import RequestError, TransportError
from samplecontroller.src.models import CustomResourceDefinition, Deployment
from samplecontroller.src.watch import WatchStream

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

API_PATH = "/apis"
CONNECT_TIMEOUT_SECONDS = 10.0
REQUEST_TIMEOUT_SECONDS = 30.0


def load_kube_configuration() -> client.Configuration:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    configuration = client.Configuration()
    try:
        config.load_incluster_config(client_configuration=configuration)
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config(client_configuration=configuration)
        LOGGER.info("Loaded local kubeconfig")
    return configuration


def build_client(configuration: client.Configuration) -> KubeClient:
    """Return a :class:`KubeClient` sharing the TLS pool and credentials of *configuration*.

    Only the connection pool and the auth settings of the generated client
    are reused; requests and watches are issued by :class:`KubeClient`.
    """
    api_client = client.ApiClient(configuration)

    def auth_headers() -> dict[str, str]:
        headers: dict[str, str] = {}
        for setting in configuration.auth_settings().values():
            if setting.get("in") == "header" and setting.get("value"):
                headers[setting["key"]] = setting["value"]
        return headers

    return KubeClient(
        host=configuration.host,
        transport=api_client.rest_client.pool_manager,
        auth=auth_headers,
    )


class KubeClient:
    """Minimal REST and watch client for a Kubernetes API server.

    Non-2xx responses become :class:`RequestError`; failures that never
    produced a response become :class:`TransportError`. The transport is a
    ``urllib3.PoolManager`` (or anything with the same ``request`` method)
    and may be shared by concurrent requests and watches.
    """

    def __init__(
        self,
        host: str,
        transport: Any,
        auth: Callable[[], Mapping[str, str]] | None = None,
    ) -> None:
        self.host = host.rstrip("/")
        self.transport = transport
        self.auth = auth

    def url(
        self,
        group: str,
        version: str,
        namespace: str,
        path: str,
        query: Mapping[str, str] | None = None,
    ) -> str:
        """Build ``<host>/apis/<group>/<version>[/namespaces/<ns>]/<path>[?query]``.

        An empty namespace addresses a cluster-scoped resource, not the
        ``default`` namespace.
        """
        url = f"{self.host}{API_PATH}/{group}/{version}/"
        if namespace:
            url += f"namespaces/{quote(namespace, safe='')}/"
        url += path
        if query:
            url += "?" + urlencode(query)
        return url

    def _do(
        self,
        method: str,
        url: str,
        data: bytes | None = None,
        *,
        stream: bool = False,
    ) -> Any:
        headers = {"Accept": "application/json"}
        if data is not None:
            headers["Content-Type"] = "application/json"
        if self.auth is not None:
            headers.update(self.auth())

        # Watches are long-lived: only the connect phase is bounded.
        timeout = urllib3.Timeout(
            connect=CONNECT_TIMEOUT_SECONDS,
            read=None if stream else REQUEST_TIMEOUT_SECONDS,
        )
        try:
            response = self.transport.request(
                method,
                url,
                body=data,
                headers=headers,
                preload_content=False,
                timeout=timeout,
                retries=False,
            )
        except urllib3.exceptions.HTTPError as exc:
            raise TransportError(f"{method} {url}: {exc}") from exc

        if not 200 <= response.status < 300:
            try:
                # A read failure here is less interesting than the status code.
                body = response.read()
            except (urllib3.exceptions.HTTPError, OSError):
                body = b""
            finally:
                response.release_conn()
            raise RequestError(status_code=response.status, body=body)
        return response

    def get(
        self,
        group: str,
        version: str,
        namespace: str,
        path: str,
        query: Mapping[str, str] | None = None,
    ) -> Any:
        """GET a resource and return the open response; the caller must close it."""
        return self._do("GET", self.url(group, version, namespace, path, query), stream=True)

    def _send_object(self, method: str, url: str, obj: Any) -> None:
        response = self._do(method, url, json.dumps(obj).encode("utf-8"))
        try:
            response.read()
        except (urllib3.exceptions.HTTPError, OSError) as exc:
            raise TransportError(f"{method} {url}: {exc}") from exc
        finally:
            response.release_conn()

    def post(self, group: str, version: str, namespace: str, path: str, obj: Any) -> None:
        """POST the JSON encoding of *obj*."""
        self._send_object("POST", self.url(group, version, namespace, path), obj)

    def put(self, group: str, version: str, namespace: str, path: str, obj: Any) -> None:
        """PUT the JSON encoding of *obj*, replacing the existing resource."""
        self._send_object("PUT", self.url(group, version, namespace, path), obj)

    def delete(self, group: str, version: str, namespace: str, path: str) -> None:
        response = self._do("DELETE", self.url(group, version, namespace, path))
        response.release_conn()

    def watch_resources(
        self,
        group: str,
        version: str,
        namespace: str,
        path: str,
        decode: Callable[[Any], T],
        query: Mapping[str, str] | None = None,
        *,
        source: str | None = None,
        sink: queue.Queue | None = None,
    ) -> WatchStream[T]:
        """Open a watch and return its started :class:`WatchStream` immediately.

        *decode* turns each event's ``object`` into the item type. Events are
        tagged with *source* (defaults to *path*) and delivered to *sink* when
        given.
        """
        watch_query = dict(query or {})
        watch_query["watch"] = "true"
        stream: WatchStream[T] = WatchStream(
            source=source or path,
            path=path,
            opener=lambda: self.get(group, version, namespace, path, watch_query),
            decode=decode,
            sink=sink,
        )
        return stream.start()

    def watch_deployments(
        self,
        namespace: str,
        *,
        source: str = "deployments",
        sink: queue.Queue | None = None,
    ) -> WatchStream[Deployment]:
        return self.watch_resources(
            "apps",
            "v1",
            namespace,
            "deployments",
            Deployment.from_dict,
            source=source,
            sink=sink,
        )

    def add_deployment(self, deployment: Mapping[str, Any]) -> None:
        metadata = deployment["metadata"]
        self.post("apps", "v1", metadata["namespace"], "deployments", deployment)

    def update_deployment(self, deployment: Mapping[str, Any]) -> None:
        metadata = deployment["metadata"]
        self.put(
            "apps",
            "v1",
            metadata["namespace"],
            f"deployments/{metadata['name']}",
            deployment,
        )

    def delete_deployment(self, namespace: str, name: str) -> None:
        self.delete("apps", "v1", namespace, f"deployments/{name}")

    def add_custom_resource_definition(self, crd: Mapping[str, Any]) -> None:
        self.post("apiextensions.k8s.io", "v1", "", "customresourcedefinitions", crd)

    def watch_custom_resource_definitions(
        self, name: str
    ) -> WatchStream[CustomResourceDefinition]:
        return self.watch_resources(
            "apiextensions.k8s.io",
            "v1",
            "",
            "customresourcedefinitions",
            CustomResourceDefinition.from_dict,
            query={"fieldSelector": f"metadata.name={name}"},
        )
