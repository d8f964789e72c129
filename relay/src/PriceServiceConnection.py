"""PriceServiceConnection: Pusher-side client of the price service REST API.

The pusher keeps a local FeedCache filled by polling the price service
for the feeds it pushes. Polled updates go through the same monotonic
``upsert`` as attestations do in the service, so a lagging or restarted
price service can never move a feed backwards.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Callable

import httpx

from .Backoff import ExponentialBackoff, sleep_unless_stopped
from .errors import ConfigError, IngestionError, RelayError
from .PriceUpdate import FeedId, PriceUpdate

if TYPE_CHECKING:
    from .FeedCache import FeedCache

logger = logging.getLogger(__name__)


class PriceServiceError(RelayError):
    """Raised when a price service request fails.

    :ivar status_code: HTTP status code, or None for network errors.
    """

    def __init__(self, message: str, status_code: int | None = None):
        """Initialize the error.

        :param message: Error message.
        :param status_code: HTTP status code, if a response was received.
        """
        self.status_code = status_code
        super().__init__(message if status_code is None else f"HTTP {status_code}: {message}")


class PriceServiceConnection:
    """Async HTTP client for the price service.

    :ivar endpoint: Base URL of the price service.
    :ivar timeout: Request timeout in seconds.
    """

    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        endpoint: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the connection.

        :param endpoint: Base URL (e.g., "http://price-service:4200").
        :param timeout: Request timeout in seconds (default: 10).
        :param client: Optional preconfigured httpx client.
        """
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            follow_redirects=True,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if not self._client.is_closed:
            await self._client.aclose()

    async def _get(self, path: str, *, params: dict | None = None) -> httpx.Response:
        try:
            response = await self._client.get(self.endpoint + path, params=params)
        except httpx.TimeoutException as e:
            raise PriceServiceError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise PriceServiceError(f"Request failed: {e}") from e
        if not response.is_success:
            raise PriceServiceError(response.text[:200], response.status_code)
        return response

    async def is_ready(self) -> bool:
        """Check the service's readiness endpoint.

        :returns: True if the service reports ready.
        :raises PriceServiceError: If the service cannot be reached.
        """
        try:
            await self._get("/ready")
        except PriceServiceError as e:
            if e.status_code is None:
                raise
            return False
        return True

    async def wait_until_ready(
        self,
        timeout: float = 120.0,
        poll_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Block until the price service is ready.

        A not-ready service is still starting and is waited for; a service
        that cannot be reached at all is a startup failure.

        :param timeout: Maximum seconds to wait (default: 120).
        :param poll_interval: Seconds between probes (default: 2).
        :param clock: Monotonic clock, injectable for tests.
        :raises ConfigError: If unreachable or not ready within the timeout.
        """
        deadline = clock() + timeout
        while True:
            try:
                if await self.is_ready():
                    logger.info(f"Price service {self.endpoint} is ready")
                    return
            except PriceServiceError as e:
                raise ConfigError(f"Price service {self.endpoint} unreachable: {e}") from e

            if clock() >= deadline:
                raise ConfigError(
                    f"Price service {self.endpoint} not ready after {timeout:.0f}s"
                )
            logger.info(f"Price service {self.endpoint} still starting, waiting...")
            await asyncio.sleep(poll_interval)

    async def get_latest_price_feeds(self, feed_ids: list[FeedId]) -> list[PriceUpdate]:
        """Fetch the latest price of each feed.

        Feeds the service does not know yet are simply missing from the
        result. Malformed feed objects are logged and skipped.

        :param feed_ids: Normalized feed ids.
        :returns: List of PriceUpdate.
        :raises PriceServiceError: On network or HTTP errors.
        """
        if not feed_ids:
            return []

        params = {"ids[]": feed_ids, "binary": "true", "ignore_missing": "true"}
        response = await self._get("/api/latest_price_feeds", params=params)
        try:
            payload = response.json()
        except ValueError as e:
            raise PriceServiceError(f"Invalid JSON response: {e}") from e
        if not isinstance(payload, list):
            raise PriceServiceError(f"Unexpected response type {type(payload).__name__}")

        updates = []
        for feed in payload:
            try:
                updates.append(PriceUpdate.from_price_feed(feed))
            except IngestionError as e:
                logger.warning(f"Discarding price feed from service: {e}")
        return updates

    async def poll(
        self,
        cache: FeedCache,
        feed_ids: list[FeedId],
        stop: asyncio.Event,
        polling_frequency: float = 5.0,
        backoff: ExponentialBackoff | None = None,
    ) -> None:
        """Keep ``cache`` up to date until ``stop`` is set.

        :param cache: Local cache receiving the updates.
        :param feed_ids: Feeds to poll.
        :param stop: Shutdown event.
        :param polling_frequency: Seconds between successful polls (default: 5).
        :param backoff: Backoff after failed polls (default: 1s doubling to 60s).
        """
        backoff = backoff or ExponentialBackoff(base_seconds=1.0, max_seconds=60.0)
        logger.info(
            f"Polling {len(feed_ids)} feeds from {self.endpoint} every {polling_frequency}s"
        )
        while not stop.is_set():
            try:
                updates = await self.get_latest_price_feeds(feed_ids)
            except PriceServiceError as e:
                delay = backoff.record_failure()
                logger.warning(f"Price service poll failed: {e}; retrying in {delay:.1f}s")
                if await sleep_unless_stopped(stop, delay):
                    break
                continue

            backoff.record_success()
            accepted = sum(1 for update in updates if cache.upsert(update).accepted)
            logger.debug(f"Polled {len(updates)} feeds, {accepted} newer")
            if await sleep_unless_stopped(stop, polling_frequency):
                break
