"""Exceptions raised by the wire client and reported by the controller."""

from __future__ import annotations

__all__ = [
    "KubeError",
    "RequestError",
    "TransportError",
    "WatchError",
    "DecodeError",
    "ProtocolError",
    "ControllerError",
    "RegistrationError",
    "WatchStreamError",
    "SynchronizationError",
    "OwnershipConflictError",
]


class KubeError(Exception):
    """Generic base exception for failures talking to the API server."""


class RequestError(KubeError):
    """The API server answered with a non-2xx status code."""

    def __init__(self, status_code: int, body: bytes) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(
            f'http request failed: code={status_code} '
            f'body="{body.decode("utf-8", errors="replace")}"'
        )


class TransportError(KubeError):
    """The request never produced an HTTP response (connection, TLS, timeout...)."""


class WatchError(KubeError):
    """Base for failures that terminate a watch stream."""


class DecodeError(WatchError):
    """A watch envelope or its object payload could not be decoded."""

    def __init__(self, path: str, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(f"decode failed ({path}): {detail}")


class ProtocolError(WatchError):
    """A watch envelope carried an unknown event type."""

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(f"invalid event type: {event_type}")


class ControllerError(Exception):
    """Base for errors delivered on the controller's error output.

    ``fatal`` errors end the controller; the others only delay convergence.
    """

    fatal = True


class RegistrationError(ControllerError):
    """The custom resource definition could not be registered or never became established."""


class WatchStreamError(ControllerError):
    """One of the controller's watch streams failed."""

    def __init__(self, source: str, cause: Exception) -> None:
        self.source = source
        self.cause = cause
        super().__init__(f"reading {source}: {cause}")


class SynchronizationError(ControllerError):
    """Creating or updating a deployment failed during a synchronization pass."""

    fatal = False

    def __init__(self, resource_name: str, cause: Exception) -> None:
        self.resource_name = resource_name
        self.cause = cause
        super().__init__(f"synchronizing {resource_name}: {cause}")


class OwnershipConflictError(ControllerError):
    """The target deployment exists but is not controlled by the expected Foo."""

    fatal = False

    def __init__(self, namespace: str, deployment_name: str) -> None:
        self.namespace = namespace
        self.deployment_name = deployment_name
        super().__init__(f"Deployment {namespace}:{deployment_name} is not owned by us.")
