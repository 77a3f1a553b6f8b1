"""
Unit tests for the hybrid logical clock
"""

from thermalsync.storage.models import LogicalTimestamp
from thermalsync.sync.clock import HybridLogicalClock


class TestHybridLogicalClock:
    """Test monotonicity, remote observation and persistence."""

    def test_tick_follows_wall_clock(self, clock, wall):
        first = clock.tick()
        wall.advance(5)
        second = clock.tick()
        assert first.wall_ms == wall.now - 5
        assert second.wall_ms == wall.now
        assert second.counter == 0
        assert second.device_id == "dev-a"

    def test_same_millisecond_increments_counter(self, clock):
        a = clock.tick()
        b = clock.tick()
        assert b.order_key() > a.order_key()
        assert b.counter == a.counter + 1

    def test_wall_clock_going_backwards(self, clock, wall):
        a = clock.tick()
        wall.advance(-60_000)
        b = clock.tick()
        assert b.wall_ms == a.wall_ms
        assert b.order_key() > a.order_key()

    def test_observe_moves_past_remote(self, clock, wall):
        remote = LogicalTimestamp(wallMs=wall.now + 30_000, counter=4, deviceId="dev-b")
        clock.observe(remote)
        local = clock.tick()
        assert local.order_key() > remote.order_key()
        assert local.wall_ms == remote.wall_ms

    def test_observe_older_is_ignored(self, clock, wall):
        a = clock.tick()
        clock.observe(LogicalTimestamp(wallMs=wall.now - 1000, counter=9))
        b = clock.tick()
        assert b.order_key() == (a.wall_ms, a.counter + 1)

    def test_state_survives_restart(self, db, clock, wall):
        clock.tick()
        clock.tick()
        last = clock.tick()
        wall.advance(-1000)
        restarted = HybridLogicalClock(db, device_id="dev-a", wall_clock=wall)
        assert restarted.tick().order_key() > last.order_key()
