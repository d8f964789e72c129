"""Unit tests for ReadinessGate."""

import pytest

from relay.src.errors import NotReadyError
from relay.src.ReadinessGate import ReadinessGate


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestReadinessGate:
    """Test the NotReady -> Ready latch."""

    def test_not_ready_at_start(self) -> None:
        """Gate should start closed."""
        gate = ReadinessGate(feed_count=lambda: 100, clock=FakeClock())
        assert not gate.is_ready()

    def test_defaults(self) -> None:
        """Default thresholds should be 20 seconds and 50 feeds."""
        gate = ReadinessGate(feed_count=lambda: 0)
        assert gate.sync_time_seconds == 20
        assert gate.min_loaded_symbols == 50

    def test_needs_both_conditions(self) -> None:
        """Time alone or feeds alone should not open the gate."""
        clock = FakeClock()
        count = {"n": 10}
        gate = ReadinessGate(
            feed_count=lambda: count["n"],
            sync_time_seconds=20,
            min_loaded_symbols=50,
            clock=clock,
        )

        clock.now = 25.0
        assert not gate.is_ready()

        clock.now = 10.0
        count["n"] = 60
        assert not gate.is_ready()

        clock.now = 20.0
        assert gate.is_ready()

    def test_opens_exactly_at_sync_time(self) -> None:
        """With enough feeds the gate should stay closed until sync time elapses."""
        clock = FakeClock()
        gate = ReadinessGate(
            feed_count=lambda: 60, sync_time_seconds=20, min_loaded_symbols=50, clock=clock
        )

        clock.now = 19.0
        assert not gate.is_ready()
        with pytest.raises(NotReadyError):
            gate.require_ready()

        clock.now = 20.0
        assert gate.is_ready()

    def test_latches(self) -> None:
        """Once ready the gate should never close."""
        clock = FakeClock()
        count = {"n": 5}
        gate = ReadinessGate(
            feed_count=lambda: count["n"], sync_time_seconds=1, min_loaded_symbols=5, clock=clock
        )
        clock.now = 2.0
        assert gate.is_ready()

        count["n"] = 0
        assert gate.is_ready()

    def test_zero_thresholds_ready_immediately(self) -> None:
        """Zero thresholds should open the gate at once."""
        gate = ReadinessGate(
            feed_count=lambda: 0, sync_time_seconds=0, min_loaded_symbols=0, clock=FakeClock()
        )
        assert gate.is_ready()

    def test_require_ready(self) -> None:
        """require_ready should raise while the gate is closed."""
        clock = FakeClock()
        gate = ReadinessGate(
            feed_count=lambda: 3, sync_time_seconds=5, min_loaded_symbols=2, clock=clock
        )
        with pytest.raises(NotReadyError, match="3/2 feeds loaded"):
            gate.require_ready()

        clock.now = 5.0
        gate.require_ready()

    def test_negative_thresholds_rejected(self) -> None:
        """Negative thresholds should raise."""
        with pytest.raises(ValueError, match="sync_time_seconds"):
            ReadinessGate(feed_count=lambda: 0, sync_time_seconds=-1)
        with pytest.raises(ValueError, match="min_loaded_symbols"):
            ReadinessGate(feed_count=lambda: 0, min_loaded_symbols=-1)
