from __future__ import annotations

import enum
import logging
import os
import queue
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from samplecontroller.src.crd import (
    API_VERSION,
    CRD_NAME,
    GROUP,
    KIND,
    PLURAL,
    VERSION,
    foo_custom_resource_definition,
)
from samplecontroller.src.exceptions import (
    ControllerError,
    KubeError,
    OwnershipConflictError,
    RegistrationError,
    RequestError,
    SynchronizationError,
    WatchStreamError,
)
from samplecontroller.src.kube import KubeClient
from samplecontroller.src.metrics import METRICS
from samplecontroller.src.models import CustomResourceDefinition, Deployment, Foo, OwnerReference
from samplecontroller.src.ratelimit import Debouncer, RateLimiter
from samplecontroller.src.watch import CLOSED, WatchEvent, WatchStream, put_until

FOOS = "foos"
DEPLOYMENTS = "deployments"
TICKS = "ticks"

DEFAULT_INBOX_SIZE = 128


class ControllerPhase(enum.Enum):
    STARTING = "Starting"
    RUNNING = "Running"
    DRAINING = "Draining"
    STOPPED = "Stopped"


@dataclass
class ControllerState:
    """Book-keeping owned by the loop thread; never touched from anywhere else."""

    # Foo name -> Foo
    desired: dict[str, Foo] = field(default_factory=dict)
    # Deployment name -> Deployment
    observed: dict[str, Deployment] = field(default_factory=dict)
    # Names of Foos we have to check
    dirty: set[str] = field(default_factory=set)


def new_deployment(foo: Foo, resource_version: str = "") -> dict[str, Any]:
    """Build the deployment *foo* asks for, controlled by *foo*."""
    labels = {"controller": foo.name}
    owner = OwnerReference(
        api_version=API_VERSION,
        kind=KIND,
        name=foo.name,
        uid=foo.uid,
        controller=True,
        block_owner_deletion=True,
    )
    metadata: dict[str, Any] = {
        "name": foo.spec.target_name,
        "namespace": foo.namespace,
        "ownerReferences": [owner.to_dict()],
    }
    if resource_version:
        metadata["resourceVersion"] = resource_version
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": metadata,
        "spec": {
            "replicas": foo.spec.desired_replicas,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": {"containers": [{"name": "nginx", "image": "nginx:latest"}]},
            },
        },
    }


def add_custom_resource_definition(client: KubeClient, crd: dict[str, Any]) -> None:
    """Register *crd*, treating ``409 Conflict`` as already registered."""
    try:
        client.add_custom_resource_definition(crd)
    except RequestError as exc:
        if exc.status_code != 409:
            raise
        logging.getLogger(__name__).info(
            "CustomResourceDefinition %s already registered", crd["metadata"]["name"]
        )


def wait_until_established(stream: WatchStream[CustomResourceDefinition]) -> bool:
    """Consume *stream* until the definition reports ``Established=True``.

    Returns False when the stream closed first (it was cancelled). A watch
    error is raised.
    """
    for event in stream:
        if event.error is not None:
            raise event.error
        if event.is_delete or event.item is None:
            continue
        if event.item.established:
            return True
    return False


class Controller:
    """Keeps one deployment per ``Foo`` at the replica count the ``Foo`` declares.

    Lifecycle: ``Starting -> Running -> Draining -> Stopped``.

    Starting registers the ``Foo`` definition and waits for the API server
    to report it established. Running opens two watches (Foos and
    deployments, in ``namespace``) that feed a single inbox together with
    the rate limiter's ticks; the loop thread is the only consumer, so the
    :class:`ControllerState` needs no locking.

    Events only update state and mark Foo names dirty. Every dirty mark asks
    the rate limiter for a tick, and a tick runs one synchronization pass
    over the dirty set, creating or updating deployments as needed. A failed
    pass keeps the names it did not finish and asks for another tick.

    A watch error is fatal: it is reported, both watches are cancelled and
    the loop drains. :meth:`request_stop` drains the same way without an
    error. Termination is signalled by closing the error output, see
    :meth:`iter_errors`.
    """

    def __init__(
        self,
        client: KubeClient,
        rate_limiter: RateLimiter,
        namespace: str,
        logger: logging.Logger | None = None,
        inbox_size: int = DEFAULT_INBOX_SIZE,
    ) -> None:
        self.client = client
        self.rate_limiter = rate_limiter
        self.namespace = namespace
        self.logger = logger or logging.getLogger(__name__)

        self.state = ControllerState()
        self.phase = ControllerPhase.STARTING
        self.ready = threading.Event()

        self._inbox: queue.Queue = queue.Queue(maxsize=inbox_size)
        self._errors: queue.Queue[ControllerError | None] = queue.Queue()
        self._lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._finished = threading.Event()
        self._registration: WatchStream[CustomResourceDefinition] | None = None
        self._streams: dict[str, WatchStream[Any]] = {}
        self._tick_lock = threading.Lock()
        self._tick_pending = False
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Run the loop on a background thread."""
        self._thread = threading.Thread(target=self.run, name="controller", daemon=True)
        self._thread.start()

    def request_stop(self) -> None:
        """Cancel every open watch. The loop stops once both report closed."""
        with self._lock:
            self._stop_requested.set()
            streams = list(self._streams.values())
            if self._registration is not None:
                streams.append(self._registration)
        for stream in streams:
            stream.cancel()

    def iter_errors(self) -> Iterator[ControllerError]:
        """Yield reported errors until the controller has stopped."""
        while True:
            error = self._errors.get()
            if error is None:
                # Leave the end marker for any other reader.
                self._errors.put(None)
                return
            yield error

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the loop reaches ``Stopped``. Returns False on timeout."""
        return self._finished.wait(timeout=timeout)

    def run(self) -> None:
        try:
            if self._register() and self._open_watches():
                self._process()
        finally:
            self.phase = ControllerPhase.STOPPED
            self.ready.clear()
            METRICS.dirty_resources.set(0)
            self._finished.set()
            self._errors.put(None)
            self.logger.info("Controller stopped")

    def _report(self, error: ControllerError) -> None:
        if error.fatal:
            self.logger.error("%s", error)
        self._errors.put(error)

    def _register(self) -> bool:
        try:
            add_custom_resource_definition(self.client, foo_custom_resource_definition())
            with self._lock:
                if self._stop_requested.is_set():
                    return False
                self._registration = self.client.watch_custom_resource_definitions(CRD_NAME)
            with self._registration as stream:
                established = wait_until_established(stream)
        except KubeError as exc:
            self._report(RegistrationError(f"could not add CRD: {exc}"))
            return False
        finally:
            with self._lock:
                self._registration = None

        if not established:
            self.logger.info("Stopped before %s was established", CRD_NAME)
        return established

    def _open_watches(self) -> bool:
        with self._lock:
            if self._stop_requested.is_set():
                return False
            self._streams = {
                FOOS: self.client.watch_resources(
                    GROUP,
                    VERSION,
                    self.namespace,
                    PLURAL,
                    Foo.from_dict,
                    source=FOOS,
                    sink=self._inbox,
                ),
                DEPLOYMENTS: self.client.watch_deployments(
                    self.namespace, source=DEPLOYMENTS, sink=self._inbox
                ),
            }
        self.rate_limiter.start(self._deliver_tick)
        self.phase = ControllerPhase.RUNNING
        self.ready.set()
        self.logger.info("Watching %s and %s in namespace %s", FOOS, DEPLOYMENTS, self.namespace)
        return True

    def _begin_draining(self) -> None:
        if self.phase is ControllerPhase.RUNNING:
            self.phase = ControllerPhase.DRAINING
            self.ready.clear()
            self.logger.info("Draining watch streams")
        self.request_stop()

    def _process(self) -> None:
        open_streams = set(self._streams)
        try:
            while open_streams:
                source, item = self._inbox.get()
                if self.phase is ControllerPhase.RUNNING and self._stop_requested.is_set():
                    self._begin_draining()

                if item is CLOSED:
                    open_streams.discard(source)
                    self.logger.debug("Watch stream %s closed", source)
                elif source == TICKS:
                    self._on_tick()
                elif self.phase is ControllerPhase.RUNNING:
                    self.handle_event(source, item)
        finally:
            self.rate_limiter.stop()

    def _deliver_tick(self) -> None:
        # Called from the rate limiter's thread; keeps at most one tick queued.
        with self._tick_lock:
            if self._tick_pending:
                return
            self._tick_pending = True
        put_until(self._inbox, (TICKS, None), self._finished)

    def _on_tick(self) -> None:
        with self._tick_lock:
            self._tick_pending = False
        if self.phase is not ControllerPhase.RUNNING:
            return
        try:
            self.synchronize()
        except SynchronizationError as exc:
            METRICS.sync_failures_total.inc()
            self.logger.warning("Synchronize failed, will retry: %s", exc)
            self._report(exc)
            self.rate_limiter.request_tick()

    def handle_event(self, source: str, event: WatchEvent[Any]) -> None:
        if event.error is not None:
            METRICS.watch_errors_total.labels(stream=source).inc()
            self._report(WatchStreamError(source, event.error))
            self._begin_draining()
        elif source == FOOS:
            self.handle_foo_event(event)
        elif source == DEPLOYMENTS:
            self.handle_deployment_event(event)
        else:
            raise ValueError(f"unknown event source {source!r}")

    def _mark_dirty(self, name: str) -> None:
        self.state.dirty.add(name)
        METRICS.dirty_resources.set(len(self.state.dirty))
        self.rate_limiter.request_tick()

    def handle_foo_event(self, event: WatchEvent[Foo]) -> None:
        """Mirror a Foo into ``desired`` and mark it dirty.

        Deleting a Foo does not delete its deployment here: the owner
        reference lets the API server's garbage collector do it.
        """
        foo = event.item
        if foo is None:
            raise ValueError("Foo event without an object")
        if event.is_delete:
            self.state.desired.pop(foo.name, None)
        else:
            self.state.desired[foo.name] = foo
        self._mark_dirty(foo.name)

    def handle_deployment_event(self, event: WatchEvent[Deployment]) -> None:
        """Mirror a deployment into ``observed`` and mark every Foo owning it dirty.

        Owners of the previous snapshot are marked too, so a deployment that
        changed hands or disappeared still gets its old owner reconciled.
        """
        deployment = event.item
        if deployment is None:
            raise ValueError("Deployment event without an object")
        previous = self.state.observed.get(deployment.name)
        if event.is_delete:
            self.state.observed.pop(deployment.name, None)
        else:
            self.state.observed[deployment.name] = deployment

        owners = deployment.owner_names(KIND)
        if previous is not None:
            owners.extend(previous.owner_names(KIND))
        for owner in owners:
            self._mark_dirty(owner)

    def synchronize(self) -> None:
        """Run one pass over the dirty set.

        Converged or vanished Foos leave the set; ownership conflicts stay
        for the next pass. The first failed create/update raises
        :class:`SynchronizationError` and ends the pass, keeping the names
        already completed out of the set. A stop request ends the pass before
        the next name.
        """
        METRICS.sync_passes_total.inc()
        try:
            for name in list(self.state.dirty):
                # Names not reached stay dirty; no writes once stopping.
                if self._stop_requested.is_set():
                    self.logger.info("Stop requested, ending synchronization pass early")
                    break
                try:
                    self._synchronize_one(name)
                except OwnershipConflictError as exc:
                    METRICS.ownership_conflicts_total.inc()
                    self.logger.warning("%s", exc)
        finally:
            METRICS.dirty_resources.set(len(self.state.dirty))

    def _synchronize_one(self, name: str) -> None:
        foo = self.state.desired.get(name)
        if foo is None:
            # The garbage collector deletes the deployment through its owner reference.
            self.state.dirty.discard(name)
            return

        # TODO: delete the deployment of a previous targetName once a Foo's target changes;
        # today that deployment is left running.
        observed = self.state.observed.get(foo.spec.target_name)
        if observed is not None:
            if not observed.is_controlled_by(foo, KIND):
                raise OwnershipConflictError(observed.namespace, observed.name)
            if observed.replicas == foo.spec.desired_replicas:
                self.state.dirty.discard(name)
                return

        try:
            if observed is None:
                self.client.add_deployment(new_deployment(foo))
                METRICS.deployments_created_total.inc()
                self.logger.info(
                    "Created deployment %s:%s with %d replicas for %s",
                    foo.namespace,
                    foo.spec.target_name,
                    foo.spec.desired_replicas,
                    name,
                )
            else:
                self.client.update_deployment(
                    new_deployment(foo, resource_version=observed.resource_version)
                )
                METRICS.deployments_updated_total.inc()
                self.logger.info(
                    "Scaled deployment %s:%s from %s to %d replicas for %s",
                    observed.namespace,
                    observed.name,
                    observed.replicas,
                    foo.spec.desired_replicas,
                    name,
                )
        except KubeError as exc:
            raise SynchronizationError(name, exc) from exc
        self.state.dirty.discard(name)


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(name: str, default: float, *, exclusive_minimum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be a number") from exc

    if exclusive_minimum is not None and not value > exclusive_minimum:
        raise ValueError(f"{name} must be > {exclusive_minimum}, got: {value}")
    return value


def build_controller_from_env(client: KubeClient) -> Controller:
    """Construct a :class:`Controller` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``: namespace holding the Foos and their deployments (``default``).
        ``DEBOUNCE_SECONDS``: quiet period before a synchronization pass (``1.0``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "default")
    if not namespace.strip():
        raise ValueError("WATCH_NAMESPACE must be a non-empty string")

    debounce_seconds = env_float("DEBOUNCE_SECONDS", 1.0, exclusive_minimum=0)

    return Controller(
        client=client,
        rate_limiter=Debouncer(interval=debounce_seconds),
        namespace=namespace.strip(),
    )
