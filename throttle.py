"""Process-wide request spacing for the arXiv API."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable

# arXiv asks API clients to leave roughly three seconds between calls.
REQUEST_INTERVAL_SECONDS = float(os.getenv("ARXIV_REQUEST_INTERVAL_SECONDS", "3"))

LOGGER = logging.getLogger(__name__)


class Throttle:
    """Serializes callers so consecutive dispatches are ``interval`` apart.

    The watermark is recorded after any wait, at the moment the caller is
    released, and the whole read-wait-write runs under one lock.
    """

    def __init__(
        self,
        interval_seconds: float = REQUEST_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_dispatch: float | None = None

    def acquire(self) -> float:
        """Block until a dispatch is allowed; return the recorded dispatch instant."""
        with self._lock:
            if self._last_dispatch is not None:
                elapsed = self._clock() - self._last_dispatch
                if elapsed < self.interval_seconds:
                    wait = self.interval_seconds - elapsed
                    LOGGER.info("Throttling arXiv request, waiting %.2fs", wait)
                    self._sleep(wait)
            self._last_dispatch = self._clock()
            return self._last_dispatch


ARXIV_THROTTLE = Throttle()
