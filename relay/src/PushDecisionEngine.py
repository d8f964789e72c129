"""PushDecisionEngine: Decides when cached prices are worth an on-chain update.

Architecture:
    - One ChainPusher per target chain, each with its own tick loop
    - Each tick refreshes the on-chain baseline, evaluates every feed
      assigned to the chain and batches all triggered feeds into a single
      submission
    - A feed triggers when its on-chain record is older than
      ``max_staleness`` or its price moved by at least ``min_deviation_bps``
    - A feed that was never pushed always triggers
    - Failed submissions are retried with exponential backoff; target state
      only moves on success, so failed feeds trigger again next tick
    - All ChainAdapter calls run in worker threads, so a stalled RPC never
      holds up ingestion or another chain's loop
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from .Backoff import ExponentialBackoff, sleep_unless_stopped
from .errors import ConfigError, SubmissionError
from .PriceUpdate import CacheEntry, FeedId, PriceUpdate

if TYPE_CHECKING:
    from .chains import ChainAdapter, SubmissionResult
    from .FeedCache import FeedCache
    from .Metrics import RelayMetrics

logger = logging.getLogger(__name__)

BPS = 10_000


@dataclass(frozen=True)
class PushThresholds:
    """Per-feed push conditions.

    :ivar max_staleness: Seconds the on-chain record may lag the cache.
    :ivar min_deviation_bps: Price move, in basis points, that forces a push.
    """

    max_staleness: float
    min_deviation_bps: float

    def __post_init__(self) -> None:
        if self.max_staleness < 0:
            raise ValueError("max_staleness must be non-negative")
        if self.min_deviation_bps < 0:
            raise ValueError("min_deviation_bps must be non-negative")


@dataclass
class PushTarget:
    """A feed published to one chain, plus what the chain currently holds.

    :ivar chain: Target chain name.
    :ivar feed_id: Normalized feed id.
    :ivar thresholds: Push conditions.
    :ivar alias: Human readable name used in logs.
    :ivar last_on_chain_price: Price mantissa stored on-chain.
    :ivar last_on_chain_time: Publish time stored on-chain (0 = never pushed).
    """

    chain: str
    feed_id: FeedId
    thresholds: PushThresholds
    alias: str | None = None
    last_on_chain_price: int = 0
    last_on_chain_time: int = 0

    @property
    def label(self) -> str:
        return self.alias or self.feed_id[:8]

    @property
    def never_pushed(self) -> bool:
        return self.last_on_chain_time == 0

    def observe_on_chain(self, update: PriceUpdate) -> bool:
        """Record an on-chain price if it is newer than the one known.

        :param update: Price read from or committed to the chain.
        :returns: True if the target state changed.
        """
        if update.publish_time <= self.last_on_chain_time and not self.never_pushed:
            return False
        self.last_on_chain_price = update.price
        self.last_on_chain_time = update.publish_time
        return True


@dataclass(frozen=True)
class PushDecision:
    """Result of evaluating one target against the cache.

    :ivar target: Evaluated target.
    :ivar should_push: True if the feed must be pushed this tick.
    :ivar reason: ``first_push``, ``staleness``, ``deviation``,
        ``within_thresholds``, ``not_newer`` or ``absent``.
    :ivar update: Cached update that would be pushed.
    :ivar staleness: Seconds between cached and on-chain publish times.
    :ivar deviation_bps: Price move in basis points, None if not computed.
    """

    target: PushTarget
    should_push: bool
    reason: str
    update: PriceUpdate | None = None
    staleness: float = 0.0
    deviation_bps: float | None = None


def evaluate_target(target: PushTarget, entry: CacheEntry | None) -> PushDecision:
    """Decide whether a target needs an on-chain update.

    :param target: Target with its current on-chain baseline.
    :param entry: Cached entry for the target's feed, or None.
    :returns: PushDecision.

    .. code-block:: python

        >>> target = PushTarget("evm", "ab", PushThresholds(60, 50),
        ...                     last_on_chain_price=10000, last_on_chain_time=0)
        >>> evaluate_target(target, entry_at(t=61, price=10000)).reason
        'staleness'
    """
    if entry is None:
        return PushDecision(target, False, "absent")

    latest = entry.latest
    staleness = latest.publish_time - target.last_on_chain_time

    if target.never_pushed:
        return PushDecision(target, True, "first_push", latest, staleness)

    if latest.publish_time <= target.last_on_chain_time:
        return PushDecision(target, False, "not_newer", latest, staleness)

    if target.last_on_chain_price == 0:
        deviation_bps = 0.0 if latest.price == 0 else float("inf")
    else:
        deviation_bps = (
            abs(latest.price - target.last_on_chain_price) * BPS
            / abs(target.last_on_chain_price)
        )

    if staleness > target.thresholds.max_staleness:
        return PushDecision(target, True, "staleness", latest, staleness, deviation_bps)
    if deviation_bps >= target.thresholds.min_deviation_bps:
        return PushDecision(target, True, "deviation", latest, staleness, deviation_bps)
    return PushDecision(target, False, "within_thresholds", latest, staleness, deviation_bps)


class ChainPusher:
    """Decision loop for all targets of a single chain.

    :ivar chain: Chain name.
    :ivar adapter: Chain adapter used for reads and submissions.
    :ivar targets: Targets keyed by feed id.
    :ivar pushing_frequency: Seconds between ticks.
    :ivar max_attempts: Submission attempts per tick before giving up.
    :ivar max_batch_size: Optional cap on feeds per submission.
    """

    DEFAULT_PUSHING_FREQUENCY = 10.0
    DEFAULT_MAX_ATTEMPTS = 3
    DEFAULT_CALL_TIMEOUT = 180.0

    def __init__(
        self,
        chain: str,
        adapter: ChainAdapter,
        cache: FeedCache,
        targets: list[PushTarget],
        pushing_frequency: float = DEFAULT_PUSHING_FREQUENCY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff: ExponentialBackoff | None = None,
        max_batch_size: int | None = None,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
        metrics: RelayMetrics | None = None,
    ) -> None:
        """Initialize the chain pusher.

        :param chain: Chain name.
        :param adapter: Adapter for this chain.
        :param cache: Shared feed cache (read only).
        :param targets: Targets assigned to this chain.
        :param pushing_frequency: Seconds between ticks (default: 10).
        :param max_attempts: Submission attempts per tick (default: 3).
        :param backoff: Retry backoff (default: 1s doubling to 30s).
        :param max_batch_size: Optional cap on feeds per submission; when
            more feeds trigger, the stalest go first.
        :param call_timeout: Seconds to wait on one adapter call (default: 180).
        :param metrics: Optional metrics sink.
        :raises ValueError: If a parameter is out of range or a target
            belongs to another chain.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if max_batch_size is not None and max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        if pushing_frequency <= 0:
            raise ValueError("pushing_frequency must be positive")
        foreign = [t.feed_id for t in targets if t.chain != chain]
        if foreign:
            raise ValueError(f"Targets {foreign} do not belong to chain {chain}")

        self.chain = chain
        self.adapter = adapter
        self.cache = cache
        self.targets: dict[FeedId, PushTarget] = {t.feed_id: t for t in targets}
        self.pushing_frequency = pushing_frequency
        self.max_attempts = max_attempts
        self.backoff = backoff or ExponentialBackoff(base_seconds=1.0, max_seconds=30.0)
        self.max_batch_size = max_batch_size
        self.call_timeout = call_timeout
        self.metrics = metrics
        self._stop = asyncio.Event()

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.call_timeout)

    async def refresh_on_chain(self) -> None:
        """Pull the on-chain baseline of every target.

        Query failures are logged and leave the target untouched.
        """
        for target in self.targets.values():
            try:
                on_chain = await self._call(self.adapter.query_on_chain_price, target.feed_id)
            except Exception as e:
                logger.warning(
                    f"[{self.chain}] {target.label}: on-chain query failed: {e!r}"
                )
                continue
            if on_chain is not None and target.observe_on_chain(on_chain):
                logger.debug(
                    f"[{self.chain}] {target.label}: on-chain price={on_chain.price} "
                    f"publish_time={on_chain.publish_time}"
                )

    def evaluate(self) -> list[PushDecision]:
        """Evaluate all targets and return the ones to push this tick.

        :returns: Triggered decisions, capped at max_batch_size if set.
        """
        triggered = []
        for target in self.targets.values():
            decision = evaluate_target(target, self.cache.get(target.feed_id))
            if decision.should_push:
                triggered.append(decision)
            else:
                logger.debug(f"[{self.chain}] {target.label}: skip ({decision.reason})")

        if self.max_batch_size is not None and len(triggered) > self.max_batch_size:
            triggered.sort(
                key=lambda d: (-d.staleness, -(d.deviation_bps or 0.0))
            )
            deferred = [d.target.label for d in triggered[self.max_batch_size:]]
            logger.info(f"[{self.chain}] Deferring {len(deferred)} feeds to next tick: {deferred}")
            triggered = triggered[: self.max_batch_size]
        return triggered

    async def submit_with_retry(self, batch: list[PriceUpdate]) -> SubmissionResult | None:
        """Submit a batch, retrying with exponential backoff.

        :param batch: Updates to submit.
        :returns: SubmissionResult, or None once all attempts failed.
        """
        self.backoff.record_success()
        for attempt in range(1, self.max_attempts + 1):
            if self.metrics:
                self.metrics.push_attempts.labels(chain=self.chain).inc()
            try:
                result = await self._call(self.adapter.submit, batch)
            except (SubmissionError, asyncio.TimeoutError) as e:
                if self.metrics:
                    self.metrics.push_failures.labels(chain=self.chain).inc()
                logger.warning(
                    f"[{self.chain}] Submission attempt {attempt}/{self.max_attempts} "
                    f"failed: {e!r}"
                )
                if attempt == self.max_attempts:
                    break
                delay = self.backoff.record_failure()
                if await sleep_unless_stopped(self._stop, delay):
                    logger.info(f"[{self.chain}] Shutdown requested, abandoning retries")
                    return None
                continue

            if self.metrics:
                self.metrics.push_success.labels(chain=self.chain).inc()
            return result

        if self.metrics:
            self.metrics.push_exhausted.labels(chain=self.chain).inc()
        logger.error(
            f"[{self.chain}] Submission of {len(batch)} feeds failed after "
            f"{self.max_attempts} attempts; retrying next tick"
        )
        return None

    async def tick(self) -> int:
        """Run one decision round.

        :returns: Number of feeds committed on-chain.
        """
        await self.refresh_on_chain()
        decisions = self.evaluate()
        if not decisions:
            return 0

        unsigned = [d.target.label for d in decisions if d.update.vaa is None]
        if unsigned:
            logger.warning(
                f"[{self.chain}] Skipping {len(unsigned)} feeds without attestation bytes: {unsigned}"
            )
            decisions = [d for d in decisions if d.update.vaa is not None]
            if not decisions:
                return 0

        batch = [d.update for d in decisions]
        logger.info(
            f"[{self.chain}] Pushing {len(batch)} feeds: "
            + ", ".join(f"{d.target.label}({d.reason})" for d in decisions)
        )

        result = await self.submit_with_retry(batch)
        if result is None:
            return 0

        committed = 0
        for update in result.committed_updates:
            target = self.targets.get(update.feed_id)
            if target is not None and target.observe_on_chain(update):
                committed += 1
        logger.info(f"[{self.chain}] Committed {committed} feeds in {result.tx_handle}")
        return committed

    async def run(self, stop: asyncio.Event) -> None:
        """Tick until ``stop`` is set.

        :param stop: Shutdown event.
        """
        self._stop = stop
        logger.info(
            f"[{self.chain}] Push loop started for {len(self.targets)} feeds "
            f"every {self.pushing_frequency}s"
        )
        while not stop.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"[{self.chain}] Tick failed: {e!r}")
            if await sleep_unless_stopped(stop, self.pushing_frequency):
                break
        logger.info(f"[{self.chain}] Push loop stopped")


class PushDecisionEngine:
    """Runs one independent ChainPusher per configured chain.

    :ivar pushers: ChainPusher per chain name.
    """

    def __init__(
        self,
        cache: FeedCache,
        adapters: dict[str, ChainAdapter],
        targets: list[PushTarget],
        metrics: RelayMetrics | None = None,
        **pusher_options,
    ) -> None:
        """Group targets by chain and create their pushers.

        :param cache: Shared feed cache.
        :param adapters: Adapter per chain name.
        :param targets: All configured push targets.
        :param metrics: Optional metrics sink.
        :param pusher_options: Extra ChainPusher keyword arguments.
        :raises ConfigError: If a target names a chain without an adapter.
        """
        by_chain: dict[str, list[PushTarget]] = {}
        for target in targets:
            if target.chain not in adapters:
                raise ConfigError(
                    f"No adapter for chain '{target.chain}' (feed {target.label}). "
                    f"Configured: {sorted(adapters)}"
                )
            by_chain.setdefault(target.chain, []).append(target)

        self.pushers: dict[str, ChainPusher] = {
            chain: ChainPusher(
                chain=chain,
                adapter=adapters[chain],
                cache=cache,
                targets=chain_targets,
                metrics=metrics,
                **pusher_options,
            )
            for chain, chain_targets in by_chain.items()
        }

    async def run(self, stop: asyncio.Event, shutdown_timeout: float = 30.0) -> None:
        """Run all chain loops until ``stop`` is set.

        A failing loop never takes the others down. After ``stop`` is set,
        loops get ``shutdown_timeout`` seconds to finish in-flight calls
        before they are cancelled.

        :param stop: Shutdown event.
        :param shutdown_timeout: Grace period in seconds (default: 30).
        """
        tasks = [
            asyncio.create_task(pusher.run(stop), name=f"push-{chain}")
            for chain, pusher in self.pushers.items()
        ]
        if not tasks:
            logger.warning("No push targets configured")
            await stop.wait()
            return

        await stop.wait()
        done, pending = await asyncio.wait(tasks, timeout=shutdown_timeout)
        for task in pending:
            logger.warning(f"{task.get_name()} did not stop in time, cancelling")
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
