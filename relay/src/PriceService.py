"""PriceService: Orchestrator of the price service process.

Architecture:
    - One AttestationListener consumes the attestation stream into the
      FeedCache and publishes accepted updates to the SubscriberHub
    - One sweep loop evicts entries older than the cache TTL
    - A REST server, a WebSocket server and a metrics server expose the
      cache, all gated by the ReadinessGate
    - Shutdown stops ingestion and the sweep, closes subscriber streams
      and then stops the HTTP servers
"""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from .AttestationListener import AttestationListener, AttestationSource, EmitterFilter
from .Backoff import sleep_unless_stopped
from .FeedCache import FeedCache
from .Metrics import RelayMetrics
from .ReadApi import create_rest_app, create_stream_app
from .ReadinessGate import ReadinessGate
from .SubscriberHub import SubscriberHub

logger = logging.getLogger(__name__)


class PriceService:
    """Wires ingestion, cache, readiness and the read API together.

    :ivar cache: Shared feed cache.
    :ivar gate: Readiness gate.
    :ivar hub: Subscriber hub.
    :ivar listener: Attestation listener.
    :ivar metrics: Process metrics.
    """

    SHUTDOWN_GRACE_SECONDS = 5.0

    def __init__(
        self,
        source: AttestationSource,
        filters: list[EmitterFilter] | None = None,
        host: str = "0.0.0.0",
        rest_port: int = 4200,
        ws_port: int = 6200,
        prom_port: int | None = 8081,
        sync_time_seconds: float = ReadinessGate.DEFAULT_SYNC_TIME_SECONDS,
        min_loaded_symbols: int = ReadinessGate.DEFAULT_MIN_LOADED_SYMBOLS,
        cache_ttl_seconds: float = FeedCache.DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = 60.0,
        subscriber_buffer_size: int = SubscriberHub.DEFAULT_BUFFER_SIZE,
        log_level: str = "info",
    ) -> None:
        """Initialize the price service.

        :param source: Attestation source.
        :param filters: Emitter allow-list; empty accepts everything.
        :param host: Interface the HTTP servers bind to.
        :param rest_port: REST API port (default: 4200).
        :param ws_port: WebSocket port (default: 6200).
        :param prom_port: Metrics port, None to disable (default: 8081).
        :param sync_time_seconds: Readiness catch-up time.
        :param min_loaded_symbols: Readiness feed count.
        :param cache_ttl_seconds: Cache entry TTL.
        :param sweep_interval_seconds: Seconds between expiry sweeps.
        :param subscriber_buffer_size: Per-subscriber buffer capacity.
        :param log_level: uvicorn log level.
        :raises ValueError: If sweep_interval_seconds is not positive.
        """
        if sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")

        self.host = host
        self.rest_port = rest_port
        self.ws_port = ws_port
        self.prom_port = prom_port
        self.sweep_interval_seconds = sweep_interval_seconds
        self.log_level = log_level

        self.metrics = RelayMetrics()
        self.cache = FeedCache(ttl_seconds=cache_ttl_seconds)
        self.gate = ReadinessGate(
            feed_count=lambda: len(self.cache),
            sync_time_seconds=sync_time_seconds,
            min_loaded_symbols=min_loaded_symbols,
        )
        self.hub = SubscriberHub(
            self.cache, self.gate, buffer_size=subscriber_buffer_size, metrics=self.metrics
        )
        self.cache.add_eviction_listener(self.hub.on_evicted)
        self.cache.add_eviction_listener(
            lambda evicted: self.metrics.cache_evictions.inc(len(evicted))
        )
        self.metrics.track_cache(self.cache)
        self.metrics.track_readiness(self.gate)

        self.listener = AttestationListener(
            source=source,
            cache=self.cache,
            hub=self.hub,
            filters=filters,
            metrics=self.metrics,
        )
        self.rest_app = create_rest_app(self.hub, self.cache, self.gate)
        self.stream_app = create_stream_app(self.hub)

    async def sweep_loop(self, stop: asyncio.Event) -> None:
        """Evict expired entries every sweep interval until ``stop`` is set.

        :param stop: Shutdown event.
        """
        while not await sleep_unless_stopped(stop, self.sweep_interval_seconds):
            self.cache.sweep_expired()
            # Readiness latches on its own schedule, not only on requests.
            self.gate.is_ready()

    def _server(self, app: object, port: int) -> uvicorn.Server:
        config = uvicorn.Config(
            app,
            host=self.host,
            port=port,
            log_level=self.log_level,
            lifespan="off",
        )
        return uvicorn.Server(config)

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Serve until ``stop`` is set or a server exits.

        :param stop: Optional shutdown event (default: a private one).
        """
        stop = stop or asyncio.Event()
        if self.prom_port:
            self.metrics.serve(self.prom_port)

        servers = [
            self._server(self.rest_app, self.rest_port),
            self._server(self.stream_app, self.ws_port),
        ]
        server_tasks = [asyncio.create_task(server.serve()) for server in servers]
        worker_tasks = [
            asyncio.create_task(self.listener.run(stop), name="attestation-listener"),
            asyncio.create_task(self.sweep_loop(stop), name="cache-sweep"),
        ]
        stop_task = asyncio.create_task(stop.wait())

        logger.info(
            f"Price service running: REST :{self.rest_port}, WS :{self.ws_port}"
            + (f", metrics :{self.prom_port}" if self.prom_port else "")
        )

        try:
            await asyncio.wait([stop_task, *server_tasks], return_when=asyncio.FIRST_COMPLETED)
        finally:
            logger.info("Shutting down price service...")
            stop.set()
            # The listener may be blocked waiting for the next message.
            _, pending = await asyncio.wait(worker_tasks, timeout=self.SHUTDOWN_GRACE_SECONDS)
            for task in pending:
                task.cancel()
            await asyncio.gather(*worker_tasks, return_exceptions=True)
            self.hub.close()
            for server in servers:
                server.should_exit = True
            await asyncio.gather(*server_tasks, stop_task, return_exceptions=True)
            logger.info("Price service stopped")
