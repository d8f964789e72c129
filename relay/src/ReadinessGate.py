"""ReadinessGate: One-way NotReady -> Ready latch for read APIs.

The service must not answer price queries from a cold cache as if the
data were authoritative. The gate opens once enough wall-clock time has
passed since startup AND enough distinct feeds are loaded, and it never
closes again.

.. code-block:: python

    >>> gate = ReadinessGate(sync_time_seconds=20, min_loaded_symbols=50,
    ...                      feed_count=lambda: len(cache))
    >>> gate.is_ready()
    False
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from .errors import NotReadyError

logger = logging.getLogger(__name__)


class ReadinessGate:
    """Tracks catch-up progress and latches readiness.

    :ivar sync_time_seconds: Minimum seconds since start before ready.
    :ivar min_loaded_symbols: Minimum distinct feeds cached before ready.
    :ivar started_at: Clock reading at construction.
    """

    DEFAULT_SYNC_TIME_SECONDS = 20
    DEFAULT_MIN_LOADED_SYMBOLS = 50

    def __init__(
        self,
        feed_count: Callable[[], int],
        sync_time_seconds: float = DEFAULT_SYNC_TIME_SECONDS,
        min_loaded_symbols: int = DEFAULT_MIN_LOADED_SYMBOLS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the gate in the NotReady state.

        :param feed_count: Callable returning the current distinct feed count.
        :param sync_time_seconds: Catch-up time in seconds (default: 20).
        :param min_loaded_symbols: Required distinct feeds (default: 50).
        :param clock: Monotonic clock, injectable for tests.
        :raises ValueError: If a threshold is negative.
        """
        if sync_time_seconds < 0:
            raise ValueError("sync_time_seconds must be non-negative")
        if min_loaded_symbols < 0:
            raise ValueError("min_loaded_symbols must be non-negative")

        self.sync_time_seconds = sync_time_seconds
        self.min_loaded_symbols = min_loaded_symbols
        self._feed_count = feed_count
        self._clock = clock
        self.started_at = clock()
        self._ready = False

    @property
    def elapsed(self) -> float:
        """Seconds since the gate was created."""
        return self._clock() - self.started_at

    def is_ready(self) -> bool:
        """Evaluate the transition condition and report readiness.

        :returns: True once both conditions have held at the same time.
        """
        if self._ready:
            return True

        loaded = self._feed_count()
        if self.elapsed >= self.sync_time_seconds and loaded >= self.min_loaded_symbols:
            self._ready = True
            logger.info(
                f"Service ready after {self.elapsed:.1f}s with {loaded} feeds loaded"
            )
        return self._ready

    def require_ready(self) -> None:
        """Raise if the gate is still closed.

        :raises NotReadyError: While not ready.
        """
        if not self.is_ready():
            raise NotReadyError(
                f"Not ready: {self.elapsed:.1f}/{self.sync_time_seconds}s elapsed, "
                f"{self._feed_count()}/{self.min_loaded_symbols} feeds loaded"
            )
