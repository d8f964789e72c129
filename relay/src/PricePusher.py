"""PricePusher: Orchestrator of the price pusher process.

The pusher polls the price service for the feeds in its price config into
a local FeedCache, and runs the PushDecisionEngine against that cache and
the chain adapter given on the command line.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import TYPE_CHECKING

from .Backoff import sleep_unless_stopped
from .FeedCache import FeedCache
from .Metrics import RelayMetrics
from .PushDecisionEngine import ChainPusher, PushDecisionEngine

if TYPE_CHECKING:
    from .chains import ChainAdapter
    from .PriceServiceConnection import PriceServiceConnection
    from .PushDecisionEngine import PushTarget

logger = logging.getLogger(__name__)


class PricePusher:
    """Wires the price service client, local cache and push engine.

    :ivar cache: Local feed cache filled from the price service.
    :ivar engine: Push decision engine.
    :ivar metrics: Process metrics.
    """

    def __init__(
        self,
        adapter: ChainAdapter,
        targets: list[PushTarget],
        price_service: PriceServiceConnection,
        pushing_frequency: float = ChainPusher.DEFAULT_PUSHING_FREQUENCY,
        polling_frequency: float = 5.0,
        max_attempts: int = ChainPusher.DEFAULT_MAX_ATTEMPTS,
        max_batch_size: int | None = None,
        cache_ttl_seconds: float = FeedCache.DEFAULT_TTL_SECONDS,
        prom_port: int | None = None,
        ready_timeout: float = 120.0,
    ) -> None:
        """Initialize the pusher.

        :param adapter: Chain adapter; its name is the chain of every target.
        :param targets: Push targets from the price config.
        :param price_service: Client of the price service.
        :param pushing_frequency: Seconds between push ticks.
        :param polling_frequency: Seconds between price service polls.
        :param max_attempts: Submission attempts per tick.
        :param max_batch_size: Optional cap on feeds per submission.
        :param cache_ttl_seconds: Local cache entry TTL.
        :param prom_port: Metrics port, None to disable.
        :param ready_timeout: Seconds to wait for the price service at startup.
        :raises ConfigError: If a target names a chain other than the adapter's.
        """
        self.price_service = price_service
        self.targets = targets
        self.polling_frequency = polling_frequency
        self.prom_port = prom_port
        self.ready_timeout = ready_timeout

        self.metrics = RelayMetrics()
        self.cache = FeedCache(ttl_seconds=cache_ttl_seconds)
        self.cache.add_eviction_listener(
            lambda evicted: self.metrics.cache_evictions.inc(len(evicted))
        )
        self.metrics.track_cache(self.cache)
        self.engine = PushDecisionEngine(
            cache=self.cache,
            adapters={adapter.name: adapter},
            targets=targets,
            metrics=self.metrics,
            pushing_frequency=pushing_frequency,
            max_attempts=max_attempts,
            max_batch_size=max_batch_size,
        )

    async def _sweep_loop(self, stop: asyncio.Event) -> None:
        while not await sleep_unless_stopped(stop, self.cache.ttl_seconds / 4):
            self.cache.sweep_expired()

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Run until SIGINT/SIGTERM or until ``stop`` is set.

        :param stop: Optional shutdown event (default: a private one).
        :raises ConfigError: If the price service is unreachable at startup.
        """
        stop = stop or asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, stop.set)

        try:
            await self.price_service.wait_until_ready(timeout=self.ready_timeout)
            if self.prom_port:
                self.metrics.serve(self.prom_port)

            feed_ids = sorted({target.feed_id for target in self.targets})
            tasks = [
                asyncio.create_task(
                    self.price_service.poll(
                        self.cache, feed_ids, stop, polling_frequency=self.polling_frequency
                    ),
                    name="price-service-poll",
                ),
                asyncio.create_task(self._sweep_loop(stop), name="cache-sweep"),
            ]
            await self.engine.run(stop)
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            await self.price_service.close()
            logger.info("Price pusher stopped")
