"""AttestationListener: Turns the raw attestation stream into cache updates.

The attestation source is an opaque async stream of JSON messages. Each
message is one attestation object or an array of them. The listener:

- parses every attestation into a PriceUpdate, discarding malformed ones
- drops attestations whose emitter is not in the configured allow-list
- upserts into the FeedCache and publishes accepted updates to the hub
- reconnects with exponential backoff when the stream drops
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Protocol

import websockets

from .Backoff import ExponentialBackoff, sleep_unless_stopped
from .errors import ConfigError, IngestionError, SourceDisconnect
from .PriceUpdate import PriceUpdate, normalize_feed_id

if TYPE_CHECKING:
    from .FeedCache import FeedCache
    from .Metrics import RelayMetrics
    from .SubscriberHub import SubscriberHub

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmitterFilter:
    """Allow-list entry matching attestations by emitter.

    :ivar chain_id: Emitter chain id.
    :ivar emitter_address: Normalized emitter address.
    """

    chain_id: int
    emitter_address: str

    def matches(self, update: PriceUpdate) -> bool:
        """Check whether an update originates from this emitter."""
        return (
            update.emitter_chain == self.chain_id
            and update.emitter_address == self.emitter_address
        )


def parse_filters(raw: str | None) -> list[EmitterFilter]:
    """Parse the SPY_SERVICE_FILTERS JSON document.

    Format: ``[{"chain_id": 1, "emitter_address": "f346..."}, ...]``

    :param raw: JSON string, or None/empty for no filtering.
    :returns: List of EmitterFilter.
    :raises ConfigError: If the document is malformed.
    """
    if not raw or not raw.strip():
        return []

    try:
        items = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"SPY_SERVICE_FILTERS is not valid JSON: {e}") from e
    if not isinstance(items, list):
        raise ConfigError("SPY_SERVICE_FILTERS must be a JSON array")

    filters = []
    for item in items:
        try:
            filters.append(
                EmitterFilter(
                    chain_id=int(item["chain_id"]),
                    emitter_address=normalize_feed_id(item["emitter_address"]),
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid filter entry {item!r}: {e}") from e
    return filters


class AttestationSource(Protocol):
    """Anything that yields raw attestation messages until the link drops."""

    def stream(self) -> AsyncIterator[str | bytes]:
        ...


class WebSocketAttestationSource:
    """Attestation source reading JSON messages from a WebSocket.

    On connect it sends the emitter filters so the upstream can narrow the
    stream, then yields every message it receives.

    :ivar url: WebSocket URL of the upstream listener.
    :ivar filters: Emitter allow-list forwarded upstream.
    """

    def __init__(
        self,
        host: str,
        filters: list[EmitterFilter] | None = None,
        open_timeout: float = 10.0,
    ) -> None:
        """Initialize the source.

        :param host: ``host:port`` or full ``ws://`` URL of the upstream.
        :param filters: Optional emitter allow-list.
        :param open_timeout: Connection timeout in seconds (default: 10).
        """
        self.url = host if host.startswith(("ws://", "wss://")) else f"ws://{host}"
        self.filters = filters or []
        self.open_timeout = open_timeout

    async def stream(self) -> AsyncIterator[str | bytes]:
        async with websockets.connect(self.url, open_timeout=self.open_timeout) as ws:
            logger.info(f"Connected to attestation source {self.url}")
            await ws.send(
                json.dumps(
                    {
                        "type": "subscribe",
                        "filters": [
                            {"chain_id": f.chain_id, "emitter_address": f.emitter_address}
                            for f in self.filters
                        ],
                    }
                )
            )
            async for message in ws:
                yield message


class AttestationListener:
    """Consumes an AttestationSource into the FeedCache.

    :ivar accepted: Attestations accepted by the cache.
    :ivar rejected: Attestations rejected as stale or duplicate.
    :ivar malformed: Attestations discarded as unparseable.
    :ivar filtered: Attestations dropped by the emitter allow-list.
    """

    def __init__(
        self,
        source: AttestationSource,
        cache: FeedCache,
        hub: SubscriberHub | None = None,
        filters: list[EmitterFilter] | None = None,
        metrics: RelayMetrics | None = None,
        backoff: ExponentialBackoff | None = None,
    ) -> None:
        """Initialize the listener.

        :param source: Stream of raw attestation messages.
        :param cache: Cache receiving parsed updates.
        :param hub: Optional hub notified of accepted updates.
        :param filters: Emitter allow-list; empty accepts everything.
        :param metrics: Optional metrics sink.
        :param backoff: Reconnect backoff (default: 1s doubling to 60s).
        """
        self.source = source
        self.cache = cache
        self.hub = hub
        self.filters = filters or []
        self.metrics = metrics
        self.backoff = backoff or ExponentialBackoff(base_seconds=1.0, max_seconds=60.0)

        self.accepted = 0
        self.rejected = 0
        self.malformed = 0
        self.filtered = 0

    def _decode(self, raw: str | bytes) -> list[Any]:
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise IngestionError(f"Attestation is not valid JSON: {e}") from e
        if isinstance(payload, dict):
            return [payload]
        if isinstance(payload, list):
            return payload
        raise IngestionError(f"Unexpected attestation payload type {type(payload).__name__}")

    def _allowed(self, update: PriceUpdate) -> bool:
        if not self.filters:
            return True
        return any(f.matches(update) for f in self.filters)

    def handle_message(self, raw: str | bytes) -> int:
        """Ingest one raw stream message.

        Malformed attestations are logged and skipped; they never raise.

        :param raw: Raw message from the source.
        :returns: Number of attestations accepted by the cache.
        """
        try:
            items = self._decode(raw)
        except IngestionError as e:
            self._record_malformed(e)
            return 0

        accepted = 0
        for item in items:
            try:
                if not isinstance(item, dict):
                    raise IngestionError(f"Attestation must be an object, got {item!r}")
                update = PriceUpdate.from_attestation(item)
            except IngestionError as e:
                self._record_malformed(e)
                continue

            if not self._allowed(update):
                self.filtered += 1
                continue

            result = self.cache.upsert(update)
            if self.metrics:
                self.metrics.cache_upserts.labels(
                    result="accepted" if result.accepted else "rejected"
                ).inc()

            if not result.accepted:
                self.rejected += 1
                logger.debug(
                    f"Rejected {update.feed_id} seq={update.sequence} ({result.reason})"
                )
                continue

            self.accepted += 1
            accepted += 1
            if self.hub is not None:
                self.hub.publish(update)
        return accepted

    def _record_malformed(self, error: IngestionError) -> None:
        self.malformed += 1
        if self.metrics:
            self.metrics.ingestion_errors.inc()
        logger.warning(f"Discarding attestation: {error}")

    async def run(self, stop: asyncio.Event) -> None:
        """Consume the source until ``stop`` is set, reconnecting on drops.

        :param stop: Shutdown event.
        """
        while not stop.is_set():
            try:
                async for raw in self.source.stream():
                    self.backoff.record_success()
                    self.handle_message(raw)
                    if stop.is_set():
                        break
                if not stop.is_set():
                    raise SourceDisconnect("Attestation stream ended")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Attestation source disconnected: {e!r}")

            if stop.is_set():
                break

            delay = self.backoff.record_failure()
            if self.metrics:
                self.metrics.source_reconnects.inc()
            logger.info(f"Reconnecting to attestation source in {delay:.1f}s")
            if await sleep_unless_stopped(stop, delay):
                break

        logger.info("Attestation listener stopped")
