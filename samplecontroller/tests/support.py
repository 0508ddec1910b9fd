"""Fakes shared by the wire client and controller tests."""

from __future__ import annotations

import json
import queue
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, urlsplit

import urllib3

from samplecontroller.src.kube import KubeClient
from samplecontroller.src.ratelimit import RateLimiter

HOST = "https://api.test"
WAIT_SECONDS = 5.0

_EOF = object()
_BROKEN = object()


class FakeResponse:
    """A finished response body, like ``urllib3.HTTPResponse`` with ``preload_content=False``."""

    def __init__(self, status: int = 200, body: bytes = b"", chunks: list[bytes] | None = None) -> None:
        self.status = status
        self._chunks = list(chunks) if chunks is not None else [body]
        self.released = False
        self.closed = False
        self.shutdown_calls = 0

    def read(self, amt: int | None = None) -> bytes:
        data = b"".join(self._chunks)
        self._chunks = []
        return data

    def stream(self, amt: int | None = None, decode_content: bool = True) -> Any:
        while self._chunks:
            yield self._chunks.pop(0)

    def release_conn(self) -> None:
        self.released = True

    def shutdown(self) -> None:
        self.shutdown_calls += 1

    def close(self) -> None:
        self.closed = True


class PipeResponse:
    """A streaming response whose body the test writes while it is being read.

    Reads block until data is written, the body is ended, or the
    connection is shut down, like a watch on a live API server.
    """

    def __init__(self, status: int = 200) -> None:
        self.status = status
        self._chunks: queue.Queue[Any] = queue.Queue()
        self.closed = threading.Event()
        self.shutdown_called = threading.Event()

    def write(self, data: bytes) -> None:
        self._chunks.put(data)

    def end(self) -> None:
        self._chunks.put(_EOF)

    def read(self, amt: int | None = None) -> bytes:
        return b""

    def stream(self, amt: int | None = None, decode_content: bool = True) -> Any:
        while True:
            chunk = self._chunks.get(timeout=30)
            if chunk is _EOF:
                return
            if chunk is _BROKEN:
                raise urllib3.exceptions.ProtocolError("Connection broken: connection shut down")
            yield chunk

    def release_conn(self) -> None:
        pass

    def shutdown(self) -> None:
        self.shutdown_called.set()
        self._chunks.put(_BROKEN)

    def close(self) -> None:
        self.closed.set()
        self._chunks.put(_BROKEN)


@dataclass
class RecordedRequest:
    method: str
    path: str
    query: dict[str, list[str]]
    headers: dict[str, str]
    body: Any = None
    kwargs: dict[str, Any] = field(default_factory=dict)


Responder = Callable[[RecordedRequest], Any]


def respond(status: int, body: str | bytes = b"") -> Responder:
    """Return a responder producing a fresh finished response on every call."""
    data = body.encode() if isinstance(body, str) else body
    return lambda request: FakeResponse(status=status, body=data)


def respond_with(response: Any) -> Responder:
    return lambda request: response


class FakeTransport:
    """Stands in for ``urllib3.PoolManager``, routing requests to registered responders."""

    def __init__(self) -> None:
        self._responders: list[tuple[str, re.Pattern[str], Responder]] = []
        self._lock = threading.Lock()
        self.no_responder: Responder | None = None
        self.requests: list[RecordedRequest] = []
        # POST, PUT and DELETE requests, in the order they were issued.
        self.writes: queue.Queue[RecordedRequest] = queue.Queue()

    def register(self, method: str, path_pattern: str, responder: Responder) -> None:
        with self._lock:
            self._responders.append((method, re.compile(path_pattern), responder))

    def request(
        self,
        method: str,
        url: str,
        body: bytes | None = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> Any:
        parts = urlsplit(url)
        recorded = RecordedRequest(
            method=method,
            path=parts.path,
            query=parse_qs(parts.query),
            headers=dict(headers or {}),
            body=json.loads(body) if body else None,
            kwargs=kwargs,
        )
        with self._lock:
            self.requests.append(recorded)
            candidates = list(reversed(self._responders))
        if method != "GET":
            self.writes.put(recorded)

        for candidate_method, pattern, responder in candidates:
            if candidate_method == method and pattern.search(parts.path):
                return responder(recorded)
        if self.no_responder is not None:
            return self.no_responder(recorded)
        raise urllib3.exceptions.HTTPError(f"no responder found for {method} {parts.path}")


class ManualRateLimiter(RateLimiter):
    """Test double: records every request and ticks only when the test fires."""

    def __init__(self) -> None:
        self.requests: queue.Queue[None] = queue.Queue()
        self.stopped = threading.Event()
        self._deliver: Callable[[], None] | None = None
        self.started = threading.Event()

    def start(self, deliver: Callable[[], None]) -> None:
        self._deliver = deliver
        self.started.set()

    def request_tick(self) -> None:
        self.requests.put(None)

    def fire(self) -> None:
        assert self._deliver is not None, "rate limiter was never started"
        self._deliver()

    def discard_requests(self) -> int:
        count = 0
        while True:
            try:
                self.requests.get_nowait()
            except queue.Empty:
                return count
            count += 1

    def step(self) -> None:
        """Wait for at least one request, then let the controller run one pass."""
        self.requests.get(timeout=WAIT_SECONDS)
        self.discard_requests()
        self.fire()

    def stop(self) -> None:
        self.stopped.set()


def envelope(event_type: str, obj: Any) -> bytes:
    return json.dumps({"type": event_type, "object": obj}).encode()


def make_client(transport: FakeTransport, auth: Callable[[], dict[str, str]] | None = None) -> KubeClient:
    return KubeClient(host=HOST, transport=transport, auth=auth)


def foo_object(
    name: str = "abc",
    namespace: str = "xyz",
    uid: str = "2a198646-da46-417a-be53-b8cd5fcfbdda",
    target_name: str = "bar",
    desired_replicas: int = 1,
) -> dict[str, Any]:
    return {
        "apiVersion": "samplecontroller.example.com/v1alpha1",
        "kind": "Foo",
        "metadata": {"name": name, "namespace": namespace, "uid": uid},
        "spec": {"targetName": target_name, "desiredReplicas": desired_replicas},
    }


def deployment_object(
    name: str = "bar",
    namespace: str = "xyz",
    replicas: int | None = 1,
    resource_version: str = "100",
    owners: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    spec: dict[str, Any] = {}
    if replicas is not None:
        spec["replicas"] = replicas
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": resource_version,
            "ownerReferences": owners or [],
        },
        "spec": spec,
    }


def owner_reference(
    name: str = "abc",
    uid: str = "2a198646-da46-417a-be53-b8cd5fcfbdda",
    kind: str = "Foo",
    controller: bool = True,
) -> dict[str, Any]:
    return {
        "apiVersion": "samplecontroller.example.com/v1alpha1",
        "kind": kind,
        "name": name,
        "uid": uid,
        "controller": controller,
        "blockOwnerDeletion": True,
    }


ESTABLISHED_CRD = {
    "metadata": {"name": "foos.samplecontroller.example.com"},
    "status": {"conditions": [{"type": "Established", "status": "True"}]},
}
