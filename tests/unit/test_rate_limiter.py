"""
Unit tests for ghostterm.rate_limiter module.

Created by orpheus497
"""

from ghostterm.rate_limiter import RateLimiter, TokenBucket


class ManualClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestTokenBucket:
    def test_burst_then_empty(self):
        clock = ManualClock()
        bucket = TokenBucket(capacity=3, refill_rate=1.0, clock=clock)
        assert all(bucket.consume() for _ in range(3))
        assert not bucket.consume()

    def test_refill_over_time(self):
        clock = ManualClock()
        bucket = TokenBucket(capacity=2, refill_rate=2.0, clock=clock)
        bucket.consume(2)
        clock.now += 0.5
        assert bucket.consume()
        assert not bucket.consume()

    def test_refill_capped_at_capacity(self):
        clock = ManualClock()
        bucket = TokenBucket(capacity=2, refill_rate=10.0, clock=clock)
        clock.now += 100
        bucket.consume(0)
        assert bucket.tokens == 2

    def test_reset(self):
        clock = ManualClock()
        bucket = TokenBucket(capacity=2, refill_rate=0.1, clock=clock)
        bucket.consume(2)
        bucket.reset()
        assert bucket.consume(2)


class TestRateLimiter:
    def test_frames_limited_per_peer(self):
        clock = ManualClock()
        limiter = RateLimiter(frames_per_second=1.0, frames_burst=2, clock=clock)
        assert limiter.check_frame_rate("peer-a")
        assert limiter.check_frame_rate("peer-a")
        assert not limiter.check_frame_rate("peer-a")
        # Other peers have their own bucket
        assert limiter.check_frame_rate("peer-b")
        assert limiter.get_stats()["dropped_frames"] == 1

    def test_frames_recover(self):
        clock = ManualClock()
        limiter = RateLimiter(frames_per_second=1.0, frames_burst=1, clock=clock)
        limiter.check_frame_rate("peer-a")
        assert not limiter.check_frame_rate("peer-a")
        clock.now += 1.0
        assert limiter.check_frame_rate("peer-a")

    def test_connection_rate(self):
        clock = ManualClock()
        limiter = RateLimiter(connections_per_minute=2, clock=clock)
        assert limiter.check_connection_rate("10.0.0.1")
        assert limiter.check_connection_rate("10.0.0.1")
        assert not limiter.check_connection_rate("10.0.0.1")
        clock.now += 30.0
        assert limiter.check_connection_rate("10.0.0.1")

    def test_forget(self):
        limiter = RateLimiter(clock=ManualClock())
        limiter.check_frame_rate("peer-a")
        limiter.forget("peer-a")
        assert limiter.get_stats()["frame_buckets"] == 0

    def test_cleanup_removes_idle_buckets(self):
        clock = ManualClock()
        limiter = RateLimiter(clock=clock)
        limiter.check_frame_rate("idle")
        clock.now += 4000
        limiter.check_frame_rate("busy")
        limiter.cleanup(stale_after=3600)
        assert set(limiter.frame_buckets) == {"busy"}

    def test_cleanup_throttled(self):
        clock = ManualClock()
        limiter = RateLimiter(clock=clock)
        limiter.check_frame_rate("idle")
        clock.now += 10
        limiter.cleanup(stale_after=1)
        assert "idle" in limiter.frame_buckets

    def test_clear(self):
        limiter = RateLimiter(clock=ManualClock())
        limiter.check_frame_rate("a")
        limiter.check_connection_rate("10.0.0.1")
        limiter.clear()
        assert limiter.get_stats() == {
            "frame_buckets": 0,
            "connection_buckets": 0,
            "dropped_frames": 0,
        }
