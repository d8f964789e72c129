"""SubscriberHub: Fan-out of cache updates to stream subscribers.

Push model: every accepted cache update is handed to ``publish()``, which
appends it to the bounded buffer of each subscriber registered for that
feed. A full buffer drops its own oldest update; ``publish()`` never waits
on a subscriber.

Pull model: ``snapshot()`` returns the current cache entries, with None for
unknown or evicted feeds, once the readiness gate is open.

All methods are meant to be called from the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING, Iterable

from .PriceUpdate import CacheEntry, FeedId, PriceUpdate

if TYPE_CHECKING:
    from .FeedCache import FeedCache
    from .Metrics import RelayMetrics
    from .ReadinessGate import ReadinessGate

logger = logging.getLogger(__name__)


class Subscription:
    """Registration of one subscriber plus its outbound buffer.

    Iterate with ``async for`` to receive updates; iteration ends once the
    subscription is closed and the buffer is drained.

    :ivar subscriber_id: Identifier of the owning connection.
    :ivar feed_ids: Feeds this subscriber receives updates for.
    :ivar dropped: Updates discarded because the buffer was full.
    :ivar closed: True once the subscription has been closed.
    """

    def __init__(self, subscriber_id: str, feed_ids: Iterable[FeedId], buffer_size: int) -> None:
        self.subscriber_id = subscriber_id
        self.feed_ids: set[FeedId] = set(feed_ids)
        self.dropped = 0
        self.closed = False
        self._buffer: deque[PriceUpdate] = deque(maxlen=buffer_size)
        self._wakeup = asyncio.Event()

    def push(self, update: PriceUpdate) -> bool:
        """Buffer an update, dropping the oldest one if full.

        :param update: Update to deliver.
        :returns: True if an older update had to be dropped.
        """
        if self.closed:
            return False
        overflow = len(self._buffer) == self._buffer.maxlen
        if overflow:
            self.dropped += 1
        self._buffer.append(update)
        self._wakeup.set()
        return overflow

    def pending(self) -> list[PriceUpdate]:
        """Snapshot of buffered, undelivered updates."""
        return list(self._buffer)

    def discard_feeds(self, feed_ids: set[FeedId]) -> None:
        """Remove buffered updates for the given feeds."""
        kept = [u for u in self._buffer if u.feed_id not in feed_ids]
        if len(kept) != len(self._buffer):
            self._buffer.clear()
            self._buffer.extend(kept)

    def close(self) -> None:
        """End the stream after the buffer drains."""
        self.closed = True
        self._wakeup.set()

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> PriceUpdate:
        while True:
            if self._buffer:
                return self._buffer.popleft()
            if self.closed:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()


class SubscriberHub:
    """Routes cache updates to subscribers and serves snapshots.

    :ivar buffer_size: Per-subscriber outbound buffer capacity.
    """

    DEFAULT_BUFFER_SIZE = 100

    def __init__(
        self,
        cache: FeedCache,
        gate: ReadinessGate,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        metrics: RelayMetrics | None = None,
    ) -> None:
        """Initialize the hub.

        :param cache: Cache serving snapshot reads.
        :param gate: Readiness gate consulted by every read.
        :param buffer_size: Per-subscriber buffer capacity (default: 100).
        :param metrics: Optional metrics sink.
        :raises ValueError: If buffer_size is not positive.
        """
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.cache = cache
        self.gate = gate
        self.buffer_size = buffer_size
        self.metrics = metrics
        self._subscriptions: dict[str, Subscription] = {}
        self._by_feed: dict[FeedId, set[str]] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, subscriber_id: str, feed_ids: Iterable[FeedId]) -> Subscription:
        """Register (or extend) a subscriber's feed set.

        The current cached value of each newly added feed is queued right
        away so the subscriber does not wait for the next attestation.

        :param subscriber_id: Connection identifier.
        :param feed_ids: Normalized feed ids to receive.
        :returns: The subscriber's Subscription.
        :raises NotReadyError: While the readiness gate is closed.
        """
        self.gate.require_ready()

        subscription = self._subscriptions.get(subscriber_id)
        if subscription is None:
            subscription = Subscription(subscriber_id, (), self.buffer_size)
            self._subscriptions[subscriber_id] = subscription
            logger.debug(f"Subscriber {subscriber_id} connected")

        added = set(feed_ids) - subscription.feed_ids
        subscription.feed_ids |= added
        for feed_id in added:
            self._by_feed.setdefault(feed_id, set()).add(subscriber_id)
            entry = self.cache.get(feed_id)
            if entry is not None:
                subscription.push(entry.latest)

        self._update_gauge()
        return subscription

    def unsubscribe(self, subscriber_id: str, feed_ids: Iterable[FeedId] | None = None) -> None:
        """Remove feeds from a subscriber, or the subscriber entirely.

        :param subscriber_id: Connection identifier.
        :param feed_ids: Feeds to drop; None removes and closes the subscriber.
        """
        subscription = self._subscriptions.get(subscriber_id)
        if subscription is None:
            return

        removed = subscription.feed_ids if feed_ids is None else set(feed_ids)
        for feed_id in removed:
            subscribers = self._by_feed.get(feed_id)
            if subscribers is not None:
                subscribers.discard(subscriber_id)
                if not subscribers:
                    del self._by_feed[feed_id]

        if feed_ids is None:
            del self._subscriptions[subscriber_id]
            subscription.close()
            logger.debug(f"Subscriber {subscriber_id} disconnected")
        else:
            subscription.feed_ids -= removed
            subscription.discard_feeds(removed)

        self._update_gauge()

    def publish(self, update: PriceUpdate) -> int:
        """Deliver an accepted update to its subscribers without blocking.

        :param update: Update accepted by the cache.
        :returns: Number of subscribers the update was queued for.
        """
        subscriber_ids = self._by_feed.get(update.feed_id)
        if not subscriber_ids:
            return 0

        for subscriber_id in subscriber_ids:
            if self._subscriptions[subscriber_id].push(update):
                if self.metrics:
                    self.metrics.subscriber_dropped.inc()
                logger.debug(f"Subscriber {subscriber_id} buffer full, dropped oldest")
        return len(subscriber_ids)

    def snapshot(self, feed_ids: Iterable[FeedId]) -> dict[FeedId, CacheEntry | None]:
        """Point-in-time read of several feeds.

        :param feed_ids: Normalized feed ids.
        :returns: Dict mapping each id to its entry, or None if absent.
        :raises NotReadyError: While the readiness gate is closed.
        """
        self.gate.require_ready()
        return self.cache.get_many(feed_ids)

    def on_evicted(self, feed_ids: list[FeedId]) -> None:
        """Drop buffered updates for feeds the cache just evicted."""
        evicted = set(feed_ids)
        for subscription in self._subscriptions.values():
            if subscription.feed_ids & evicted:
                subscription.discard_feeds(evicted)

    def close(self) -> None:
        """Close every subscription stream."""
        for subscription in self._subscriptions.values():
            subscription.close()
        self._subscriptions.clear()
        self._by_feed.clear()
        self._update_gauge()

    def _update_gauge(self) -> None:
        if self.metrics:
            self.metrics.subscribers.set(len(self._subscriptions))
