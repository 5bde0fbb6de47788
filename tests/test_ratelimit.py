"""Tests for the in-memory rate limiter."""

from arpack_backend.ratelimit import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    def test_limits_per_key(self) -> None:
        limiter = RateLimiter(max_requests=2, window_seconds=60, clock=FakeClock())
        assert limiter.is_allowed("a")
        assert limiter.is_allowed("a")
        assert not limiter.is_allowed("a")
        assert limiter.is_allowed("b")

    def test_window_slides(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        assert limiter.is_allowed("a")
        clock.now += 30
        assert not limiter.is_allowed("a")
        clock.now += 31
        assert limiter.is_allowed("a")

    def test_rejected_requests_do_not_extend_window(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=10, clock=clock)
        assert limiter.is_allowed("a")
        for _ in range(5):
            clock.now += 1
            assert not limiter.is_allowed("a")
        clock.now += 6
        assert limiter.is_allowed("a")

    def test_cleanup_drops_idle_keys(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_requests=5, window_seconds=10, clock=clock)
        limiter.is_allowed("a")
        clock.now += 11
        limiter.cleanup()
        assert limiter._requests == {}
