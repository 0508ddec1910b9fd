from __future__ import annotations

import enum
import json
import logging
import queue
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import urllib3

from samplecontroller.src.exceptions import (
    DecodeError,
    KubeError,
    ProtocolError,
    TransportError,
    WatchError,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BUFFER_SIZE = 64
_SEND_POLL_SECONDS = 0.1
_WHITESPACE = frozenset(b" \t\r\n")
_READ_ERRORS = (urllib3.exceptions.HTTPError, OSError, ValueError)


class EventKind(enum.Enum):
    UPSERT = "upsert"
    DELETE = "delete"
    ERROR = "error"


@dataclass(frozen=True)
class WatchEvent(Generic[T]):
    """A decoded watch notification, or the error that terminated the stream."""

    kind: EventKind
    item: T | None = None
    error: KubeError | None = None

    @classmethod
    def failure(cls, error: KubeError) -> WatchEvent[T]:
        return cls(kind=EventKind.ERROR, error=error)

    @property
    def is_delete(self) -> bool:
        return self.kind is EventKind.DELETE


class _Closed:
    def __repr__(self) -> str:
        return "CLOSED"


# Queued exactly once per stream, after its last event.
CLOSED = _Closed()


def parse_event_type(event_type: Any) -> EventKind:
    # MODIFIED carries a full copy of the object, so it is handled like ADDED.
    if event_type in ("ADDED", "MODIFIED"):
        return EventKind.UPSERT
    if event_type == "DELETED":
        return EventKind.DELETE
    raise ProtocolError(str(event_type))


class EnvelopeScanner:
    """Split a byte stream into complete top-level JSON objects.

    Bytes are consumed as they arrive so a malformed stream is detected
    without waiting for the server to close the connection.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._buffer = bytearray()
        self._pos = 0
        self._start: int | None = None
        self._depth = 0
        self._in_string = False
        self._escape = False

    def feed(self, data: bytes) -> Iterator[bytes]:
        self._buffer += data
        while self._pos < len(self._buffer):
            byte = self._buffer[self._pos]
            if self._start is None:
                if byte in _WHITESPACE:
                    self._pos += 1
                    continue
                if byte != ord("{"):
                    raise DecodeError(
                        self.path,
                        f"invalid character {chr(byte)!r} looking for beginning of object",
                    )
                self._start = self._pos

            if self._in_string:
                if self._escape:
                    self._escape = False
                elif byte == ord("\\"):
                    self._escape = True
                elif byte == ord('"'):
                    self._in_string = False
            elif byte == ord('"'):
                self._in_string = True
            elif byte in b"{[":
                self._depth += 1
            elif byte in b"}]":
                self._depth -= 1
                if self._depth == 0:
                    envelope = bytes(self._buffer[self._start : self._pos + 1])
                    del self._buffer[: self._pos + 1]
                    self._pos = 0
                    self._start = None
                    yield envelope
                    continue
            self._pos += 1

    def end_of_stream(self) -> None:
        """Raise the error describing why the stream ended."""
        if self._start is not None:
            raise DecodeError(self.path, "unexpected end of stream inside an object")
        raise DecodeError(self.path, "EOF")


def decode_envelope(raw: bytes, path: str, decode: Callable[[Any], T]) -> WatchEvent[T]:
    """Decode one ``{"type": ..., "object": ...}`` envelope into a typed event."""
    try:
        envelope = json.loads(raw)
    except ValueError as exc:
        raise DecodeError(path, str(exc)) from exc
    if not isinstance(envelope, dict):
        raise DecodeError(path, f"watch event must be an object, got {type(envelope).__name__}")

    event_type = envelope.get("type", "")
    if not isinstance(event_type, str):
        raise DecodeError(path, f"type must be a string, got {type(event_type).__name__}")
    kind = parse_event_type(event_type)

    payload = envelope.get("object")
    if payload is None:
        raise DecodeError(path, "unmarshaling of resource failed: missing object")
    try:
        item = decode(payload)
    except (ValueError, TypeError) as exc:
        raise DecodeError(path, f"unmarshaling of resource failed: {exc}") from exc
    return WatchEvent(kind=kind, item=item)


def put_until(target: queue.Queue, item: Any, cancelled: threading.Event) -> bool:
    """Put *item* on *target* unless *cancelled* is set first.

    Returns False when the item was dropped because of cancellation.
    """
    while not cancelled.is_set():
        try:
            target.put(item, timeout=_SEND_POLL_SECONDS)
            return True
        except queue.Full:
            continue
    return False


class WatchStream(Generic[T]):
    """A watch request turned into a cancellable sequence of typed events.

    One producer thread opens the request, decodes envelopes and queues
    ``(source, WatchEvent)`` pairs followed by a single ``(source, CLOSED)``.
    Events go to *sink* when given, so several streams can share one
    consumer, otherwise to a bounded queue owned by the stream.

    After :meth:`cancel` the consumer must keep reading until ``CLOSED``;
    using the stream as a context manager does that on exit.
    """

    def __init__(
        self,
        source: str,
        path: str,
        opener: Callable[[], Any],
        decode: Callable[[Any], T],
        sink: queue.Queue | None = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> None:
        self.source = source
        self.path = path
        self._opener = opener
        self._decode = decode
        self._owns_queue = sink is None
        self._queue: queue.Queue = (
            queue.Queue(maxsize=buffer_size) if sink is None else sink
        )
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._response: Any = None
        self._exhausted = False
        self._thread = threading.Thread(
            target=self._produce, name=f"watch-{source}", daemon=True
        )

    def start(self) -> WatchStream[T]:
        self._thread.start()
        return self

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Request the stream to stop. Safe to call more than once.

        Closing the connection is the only way to interrupt the producer's
        blocked read, so failures while closing are raised to the caller.
        """
        self._cancelled.set()
        with self._lock:
            response = self._response
            self._response = None
        if response is not None:
            response.shutdown()
            response.close()

    def get(self, timeout: float | None = None) -> WatchEvent[T] | None:
        """Return the next event, or None once the stream has closed.

        Raises :class:`queue.Empty` if *timeout* expires first.
        """
        if not self._owns_queue:
            raise RuntimeError(f"events of {self.source} are delivered to a shared queue")
        if self._exhausted:
            return None
        _, item = self._queue.get(timeout=timeout)
        if item is CLOSED:
            self._exhausted = True
            return None
        return item

    def __iter__(self) -> Iterator[WatchEvent[T]]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        """Cancel the stream and discard events until it reports closed."""
        self.cancel()
        if self._owns_queue:
            for _ in self:
                pass

    def __enter__(self) -> WatchStream[T]:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _send(self, event: WatchEvent[T]) -> bool:
        # Once cancelled, remaining events are the errors caused by closing
        # the response and nobody is interested in them.
        if self._cancelled.is_set():
            return False
        return put_until(self._queue, (self.source, event), self._cancelled)

    def _produce(self) -> None:
        try:
            self._run()
        finally:
            self._queue.put((self.source, CLOSED))

    def _run(self) -> None:
        try:
            response = self._opener()
        except KubeError as exc:
            error = WatchError(f"watch failed: {exc}")
            error.__cause__ = exc
            self._send(WatchEvent.failure(error))
            return

        with self._lock:
            if not self._cancelled.is_set():
                self._response = response
        try:
            if not self._cancelled.is_set():
                self._read_events(response)
        finally:
            with self._lock:
                self._response = None
            response.close()

    def _read_events(self, response: Any) -> None:
        scanner = EnvelopeScanner(self.path)
        try:
            # Yields each chunk of a chunked body as it arrives, which is how the
            # API server sends watches. A body with a Content-Length is read to
            # its end before the first event is decoded.
            for chunk in response.stream(None, decode_content=True):
                for raw in scanner.feed(chunk):
                    if not self._send(decode_envelope(raw, self.path, self._decode)):
                        return
            scanner.end_of_stream()
        except WatchError as exc:
            self._send(WatchEvent.failure(exc))
        except _READ_ERRORS as exc:
            if self._cancelled.is_set():
                LOGGER.debug("Watch %s interrupted by cancellation: %s", self.path, exc)
                return
            error = TransportError(f"reading watch ({self.path}) failed: {exc}")
            error.__cause__ = exc
            self._send(WatchEvent.failure(error))
