"""Prometheus metrics for the price service and the price pusher.

Each process owns one RelayMetrics instance with its own registry, so
tests can create as many as they like without clashing on metric names.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
    start_http_server,
)

if TYPE_CHECKING:
    from .FeedCache import FeedCache
    from .ReadinessGate import ReadinessGate

logger = logging.getLogger(__name__)


class RelayMetrics:
    """Holds all relay counters and gauges.

    :ivar registry: Prometheus registry the metrics are registered in.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Create and register the metrics.

        :param registry: Optional registry (default: a fresh one).
        """
        self.registry = registry or CollectorRegistry()

        self.cache_size = Gauge(
            "relay_cache_size", "Number of feeds in the cache", registry=self.registry
        )
        self.cache_upserts = Counter(
            "relay_cache_upserts",
            "Cache upserts by result",
            ["result"],
            registry=self.registry,
        )
        self.cache_evictions = Counter(
            "relay_cache_evictions", "Feeds evicted by the sweep", registry=self.registry
        )
        self.readiness = Gauge(
            "relay_readiness", "1 once the service is ready", registry=self.registry
        )
        self.subscribers = Gauge(
            "relay_subscribers", "Active stream subscribers", registry=self.registry
        )
        self.subscriber_dropped = Counter(
            "relay_subscriber_dropped",
            "Updates dropped from full subscriber buffers",
            registry=self.registry,
        )
        self.ingestion_errors = Counter(
            "relay_ingestion_errors",
            "Malformed attestations discarded",
            registry=self.registry,
        )
        self.source_reconnects = Counter(
            "relay_source_reconnects",
            "Attestation source reconnect attempts",
            registry=self.registry,
        )
        self.push_attempts = Counter(
            "relay_push_attempts", "Submission attempts", ["chain"], registry=self.registry
        )
        self.push_success = Counter(
            "relay_push_success", "Successful submissions", ["chain"], registry=self.registry
        )
        self.push_failures = Counter(
            "relay_push_failures", "Failed submission attempts", ["chain"], registry=self.registry
        )
        self.push_exhausted = Counter(
            "relay_push_exhausted",
            "Submissions that exhausted all retries",
            ["chain"],
            registry=self.registry,
        )

    def track_cache(self, cache: FeedCache) -> None:
        """Report the cache size on every scrape.

        :param cache: Cache to observe.
        """
        self.cache_size.set_function(lambda: len(cache))

    def track_readiness(self, gate: ReadinessGate) -> None:
        """Report readiness on every scrape.

        :param gate: Readiness gate to observe.
        """
        self.readiness.set_function(lambda: 1.0 if gate.is_ready() else 0.0)

    def render(self) -> bytes:
        """Render the registry in the text exposition format."""
        return generate_latest(self.registry)

    def serve(self, port: int) -> None:
        """Start the pull-based metrics HTTP endpoint in a daemon thread.

        :param port: TCP port to listen on.
        """
        start_http_server(port, registry=self.registry)
        logger.info(f"Metrics endpoint listening on :{port}")
