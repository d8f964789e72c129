"""FeedCache: Latest-known price per feed with monotonic replacement.

Attestations arrive unordered and possibly duplicated. The cache keeps,
per feed, the update with the highest sequence number seen so far and
never lets a feed's publish time move backwards. Rejections are reported
through an ``UpsertResult`` rather than raised.

Entries are immutable and swapped by reference under a per-feed lock, so a
reader either sees the previous entry or the new one. Writers for
different feeds never contend on the same lock.
A feed's lock is dropped together with its evicted entry.

.. code-block:: python

    >>> cache = FeedCache(ttl_seconds=60)
    >>> cache.upsert(update_seq_2).accepted
    True
    >>> cache.upsert(update_seq_1).accepted
    False
    >>> cache.get(update_seq_2.feed_id).latest.sequence
    2
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from .PriceUpdate import CacheEntry, FeedId, PriceUpdate

logger = logging.getLogger(__name__)

EvictionListener = Callable[[list[FeedId]], None]


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of a FeedCache upsert.

    :ivar accepted: True if the update replaced (or created) the entry.
    :ivar reason: One of ``new``, ``replaced``, ``stale_sequence``,
        ``stale_publish_time``.
    :ivar entry: The entry stored after the call.
    """

    accepted: bool
    reason: str
    entry: CacheEntry


class FeedCache:
    """Concurrent per-feed price cache.

    :ivar ttl_seconds: Age after which an entry is evicted by the sweep.
    :ivar accepted_count: Total accepted upserts.
    :ivar rejected_count: Total rejected upserts.
    :ivar evicted_count: Total entries evicted by sweeps.
    """

    DEFAULT_TTL_SECONDS = 900

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize an empty cache.

        :param ttl_seconds: Entry time-to-live in seconds (default: 900).
        :param clock: Wall-clock source, injectable for tests.
        :raises ValueError: If ttl_seconds is not positive.
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[FeedId, CacheEntry] = {}
        self._locks: dict[FeedId, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._stats_lock = threading.Lock()
        self._listeners: list[EvictionListener] = []

        self.accepted_count = 0
        self.rejected_count = 0
        self.evicted_count = 0

    def _lock_for(self, feed_id: FeedId) -> threading.Lock:
        lock = self._locks.get(feed_id)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(feed_id, threading.Lock())
        return lock

    def _acquire(self, feed_id: FeedId) -> threading.Lock:
        # Retry if the lock was dropped by an eviction while we waited on it.
        while True:
            lock = self._lock_for(feed_id)
            lock.acquire()
            if self._locks.get(feed_id) is lock:
                return lock
            lock.release()

    def _count(self, accepted: int = 0, rejected: int = 0, evicted: int = 0) -> None:
        with self._stats_lock:
            self.accepted_count += accepted
            self.rejected_count += rejected
            self.evicted_count += evicted

    def add_eviction_listener(self, listener: EvictionListener) -> None:
        """Register a callback invoked with the ids evicted by each sweep.

        :param listener: Callable receiving the list of evicted feed ids.
        """
        self._listeners.append(listener)

    def upsert(self, update: PriceUpdate) -> UpsertResult:
        """Store an update if it is newer than the current entry.

        :param update: Incoming price update.
        :returns: UpsertResult describing whether the update was accepted.
        """
        lock = self._acquire(update.feed_id)
        try:
            current = self._entries.get(update.feed_id)
            if current is not None:
                stored = current.latest
                if update.sequence <= stored.sequence:
                    self._count(rejected=1)
                    return UpsertResult(False, "stale_sequence", current)
                if update.publish_time < stored.publish_time:
                    self._count(rejected=1)
                    return UpsertResult(False, "stale_publish_time", current)

            entry = CacheEntry(latest=update, received_at=self._clock())
            self._entries[update.feed_id] = entry
            self._count(accepted=1)
            return UpsertResult(True, "new" if current is None else "replaced", entry)
        finally:
            lock.release()

    def get(self, feed_id: FeedId) -> CacheEntry | None:
        """Get the current entry for a feed.

        :param feed_id: Normalized feed id.
        :returns: CacheEntry or None if unknown or evicted.
        """
        return self._entries.get(feed_id)

    def get_many(self, feed_ids: Iterable[FeedId]) -> dict[FeedId, CacheEntry | None]:
        """Get entries for several feeds.

        :param feed_ids: Normalized feed ids.
        :returns: Dict mapping each id to its entry or None.
        """
        return {feed_id: self._entries.get(feed_id) for feed_id in feed_ids}

    def feed_ids(self) -> list[FeedId]:
        """Get ids of all cached feeds.

        :returns: Sorted list of feed ids.
        """
        return sorted(self._entries.keys())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, feed_id: object) -> bool:
        return feed_id in self._entries

    def sweep_expired(self, now: float | None = None) -> list[FeedId]:
        """Evict entries not refreshed within the TTL.

        :param now: Current timestamp (default: clock()).
        :returns: List of evicted feed ids.
        """
        if now is None:
            now = self._clock()

        evicted: list[FeedId] = []
        for feed_id in list(self._entries.keys()):
            lock = self._locks.get(feed_id)
            if lock is None:
                continue
            with lock:
                if self._locks.get(feed_id) is not lock:
                    continue
                entry = self._entries.get(feed_id)
                if entry is not None and now - entry.received_at > self.ttl_seconds:
                    del self._entries[feed_id]
                    with self._locks_guard:
                        del self._locks[feed_id]
                    evicted.append(feed_id)

        if evicted:
            self._count(evicted=len(evicted))
            logger.info(f"Evicted {len(evicted)} expired feeds: {evicted}")
            for listener in self._listeners:
                try:
                    listener(evicted)
                except Exception as e:
                    logger.warning(f"Eviction listener {listener!r} raised {e!r}")

        return evicted
