from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Shared throttle for outbound page requests.

    Bounds the number of requests in flight and enforces a minimum interval
    between request starts. Waiters are served in ticket order, so a worker
    that asked earlier is never overtaken by a later one.
    """

    def __init__(
        self,
        max_in_flight: int,
        min_interval: float = 0.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1 (got {max_in_flight}).")
        if min_interval < 0:
            raise ValueError(f"min_interval must be >= 0 (got {min_interval}).")
        self._max_in_flight = max_in_flight
        self._min_interval = min_interval
        self._clock = clock
        self._cond = threading.Condition()
        self._in_flight = 0
        self._next_ticket = 0
        self._now_serving = 0
        self._next_start_at = 0.0
        self._acquired_total = 0

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    @property
    def acquired_total(self) -> int:
        with self._cond:
            return self._acquired_total

    def acquire(self) -> None:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            while True:
                if ticket == self._now_serving and self._in_flight < self._max_in_flight:
                    wait = self._next_start_at - self._clock()
                    if wait <= 0:
                        break
                    self._cond.wait(wait)
                    continue
                self._cond.wait()
            self._now_serving += 1
            self._in_flight += 1
            self._acquired_total += 1
            self._next_start_at = self._clock() + self._min_interval
            self._cond.notify_all()

    def release(self) -> None:
        with self._cond:
            if self._in_flight <= 0:
                raise RuntimeError("RateLimiter.release() called without a matching acquire().")
            self._in_flight -= 1
            self._cond.notify_all()

    @contextmanager
    def slot(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()
