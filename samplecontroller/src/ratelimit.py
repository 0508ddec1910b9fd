from __future__ import annotations

import abc
import logging
import threading
import time
from collections.abc import Callable

LOGGER = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 1.0


class RateLimiter(abc.ABC):
    """Limits how often an operation runs.

    Callers invoke :meth:`request_tick` whenever they have work; the
    implementation calls the ``deliver`` callable given to :meth:`start`
    once its rate condition is satisfied for at least one request.
    """

    @abc.abstractmethod
    def start(self, deliver: Callable[[], None]) -> None:
        """Begin delivering ticks to *deliver*."""

    @abc.abstractmethod
    def request_tick(self) -> None:
        """Ask for a tick. Must never block, even after :meth:`stop`."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Release the limiter's resources."""


class Debouncer(RateLimiter):
    """Delivers one tick after *interval* seconds without a :meth:`request_tick` call.

    Every request pushes the deadline back, so a burst of requests yields a
    single tick once the burst is over. The deadline is only touched under
    ``_condition``; the timer thread owns the firing.
    """

    def __init__(
        self,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.interval = interval
        self._clock = clock
        self._condition = threading.Condition()
        self._deadline: float | None = None
        self._stopped = False
        self._thread: threading.Thread | None = None

    def start(self, deliver: Callable[[], None]) -> None:
        with self._condition:
            if self._thread is not None:
                raise RuntimeError("Debouncer already started")
            self._thread = threading.Thread(
                target=self._run, args=(deliver,), name="debouncer", daemon=True
            )
        self._thread.start()

    def request_tick(self) -> None:
        with self._condition:
            if self._stopped:
                return
            self._deadline = self._clock() + self.interval
            self._condition.notify()

    def stop(self) -> None:
        with self._condition:
            self._stopped = True
            self._deadline = None
            self._condition.notify()

    def _wait_for_deadline(self) -> bool:
        """Block until the armed deadline passes. Returns False once stopped."""
        with self._condition:
            while not self._stopped:
                if self._deadline is None:
                    self._condition.wait()
                    continue
                remaining = self._deadline - self._clock()
                if remaining > 0:
                    self._condition.wait(timeout=remaining)
                    continue
                self._deadline = None
                return True
            return False

    def _run(self, deliver: Callable[[], None]) -> None:
        while self._wait_for_deadline():
            LOGGER.debug("Debounce interval of %.2fs elapsed; delivering tick", self.interval)
            deliver()
