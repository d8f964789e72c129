"""Unit tests for PriceService and PricePusher wiring."""

import asyncio

import pytest

from relay.src.chains import ChainAdapter, SubmissionResult
from relay.src.errors import ConfigError
from relay.src.PricePusher import PricePusher
from relay.src.PriceService import PriceService
from relay.src.PriceUpdate import PriceUpdate
from relay.src.PushDecisionEngine import PushTarget, PushThresholds


class EmptySource:
    async def stream(self):
        return
        yield


def make_update(feed_id: str = "aa", sequence: int = 1) -> PriceUpdate:
    return PriceUpdate(feed_id=feed_id, price=1, conf=0, expo=0, publish_time=sequence, sequence=sequence)


class TestPriceServiceWiring:
    """Test how the price service connects its components."""

    def test_invalid_sweep_interval(self) -> None:
        """A non-positive sweep interval should raise."""
        with pytest.raises(ValueError, match="sweep_interval_seconds"):
            PriceService(EmptySource(), sweep_interval_seconds=0)

    def test_eviction_reaches_hub_and_metrics(self) -> None:
        """Evictions should purge subscriber buffers and be counted."""
        service = PriceService(
            EmptySource(), sync_time_seconds=0, min_loaded_symbols=0, cache_ttl_seconds=10
        )
        subscription = service.hub.subscribe("s", ["aa"])
        service.cache.upsert(make_update())
        service.hub.publish(make_update(sequence=2))

        service.cache.sweep_expired(now=service.cache.get("aa").received_at + 11)

        assert subscription.pending() == []
        assert service.metrics.registry.get_sample_value("relay_cache_evictions_total") == 1
        assert service.metrics.registry.get_sample_value("relay_cache_size") == 0

    def test_listener_publishes_to_hub(self) -> None:
        """Accepted attestations should reach subscribers."""
        service = PriceService(EmptySource(), sync_time_seconds=0, min_loaded_symbols=0)
        subscription = service.hub.subscribe("s", ["aa"])

        service.listener.handle_message(
            '{"id": "aa", "price": "5", "conf": "0", "expo": 0, "publish_time": 1, "sequence": 1}'
        )

        assert [u.price for u in subscription.pending()] == [5]
        assert service.metrics.registry.get_sample_value("relay_readiness") == 1

    def test_sweep_loop_stops(self) -> None:
        """The sweep loop should evict and exit when stopped."""
        service = PriceService(EmptySource(), cache_ttl_seconds=1, sweep_interval_seconds=0.01)
        service.cache.upsert(make_update())

        async def scenario() -> None:
            stop = asyncio.Event()
            asyncio.get_running_loop().call_later(0.1, stop.set)
            await asyncio.wait_for(service.sweep_loop(stop), timeout=5)

        service.cache._clock = lambda: 1e12
        asyncio.run(scenario())
        assert len(service.cache) == 0


class NullAdapter(ChainAdapter):
    name = "null"

    def submit(self, batch: list[PriceUpdate]) -> SubmissionResult:
        return SubmissionResult(committed_updates=list(batch))

    def query_on_chain_price(self, feed_id: str) -> PriceUpdate | None:
        return None


class UnreachableService:
    closed = False

    async def wait_until_ready(self, timeout: float = 120.0) -> None:
        raise ConfigError("Price service http://nowhere unreachable")

    async def close(self) -> None:
        self.closed = True


class TestPricePusherWiring:
    """Test how the price pusher connects its components."""

    def test_targets_for_other_chain_rejected(self) -> None:
        """Targets must belong to the adapter's chain."""
        target = PushTarget(chain="evm", feed_id="aa", thresholds=PushThresholds(60, 50))
        with pytest.raises(ConfigError, match="No adapter for chain 'evm'"):
            PricePusher(NullAdapter(), [target], price_service=UnreachableService())

    def test_unreachable_service_aborts_startup(self) -> None:
        """Startup should fail and release the client if the service is unreachable."""
        target = PushTarget(chain="null", feed_id="aa", thresholds=PushThresholds(60, 50))
        service = UnreachableService()
        pusher = PricePusher(NullAdapter(), [target], price_service=service)

        with pytest.raises(ConfigError, match="unreachable"):
            asyncio.run(pusher.run(asyncio.Event()))
        assert service.closed
