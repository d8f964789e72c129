"""Backoff: Bounded exponential backoff shared by reconnects and retries.

The delay doubles with each consecutive failure, up to a cap. A success
resets the counter.

.. code-block:: python

    >>> backoff = ExponentialBackoff(base_seconds=1.0, max_seconds=5.0)
    >>> backoff.record_failure()
    1.0
    >>> backoff.record_failure()
    2.0
    >>> backoff.record_failure(), backoff.record_failure()
    (4.0, 5.0)
    >>> backoff.record_success()
    >>> backoff.consecutive_failures
    0
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass


@dataclass
class ExponentialBackoff:
    """Tracks consecutive failures and computes the next delay.

    :ivar base_seconds: Delay after the first failure.
    :ivar max_seconds: Upper bound on any delay.
    :ivar consecutive_failures: Failures since the last success.
    :ivar total_failures: Failures since tracking began.
    """

    base_seconds: float = 1.0
    max_seconds: float = 60.0
    consecutive_failures: int = 0
    total_failures: int = 0

    def __post_init__(self) -> None:
        if self.base_seconds < 0:
            raise ValueError("base_seconds must be non-negative")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")

    def delay_for(self, failures: int) -> float:
        """Delay after the given number of consecutive failures.

        :param failures: Consecutive failure count (>= 1).
        :returns: Delay in seconds.
        """
        if failures < 1:
            return 0.0
        return min(self.base_seconds * (2 ** (failures - 1)), self.max_seconds)

    def record_failure(self) -> float:
        """Record a failure.

        :returns: Seconds to wait before the next attempt.
        """
        self.consecutive_failures += 1
        self.total_failures += 1
        return self.delay_for(self.consecutive_failures)

    def record_success(self) -> None:
        """Reset the consecutive failure counter."""
        self.consecutive_failures = 0


async def sleep_unless_stopped(stop: asyncio.Event, seconds: float) -> bool:
    """Sleep for ``seconds`` or until ``stop`` is set, whichever comes first.

    :param stop: Shutdown event.
    :param seconds: Maximum time to sleep.
    :returns: True if the stop event was set.
    """
    if seconds <= 0:
        return stop.is_set()
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True
