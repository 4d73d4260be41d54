"""
Per-IP rate limiting
"""
from main import RateLimiter


class TestRateLimiter:

    def test_limit_within_window(self):
        limiter = RateLimiter(2)
        assert limiter.allow("10.0.0.1", 0.0)
        assert limiter.allow("10.0.0.1", 1.0)
        assert not limiter.allow("10.0.0.1", 2.0)
        # Other addresses have their own budget
        assert limiter.allow("10.0.0.2", 2.0)

    def test_window_slides(self):
        limiter = RateLimiter(2)
        limiter.allow("10.0.0.1", 0.0)
        limiter.allow("10.0.0.1", 30.0)
        assert not limiter.allow("10.0.0.1", 59.0)
        assert limiter.allow("10.0.0.1", 60.0)

    def test_idle_addresses_are_forgotten(self):
        limiter = RateLimiter(5)
        for i in range(100):
            limiter.allow(f"10.0.0.{i}", 0.0)
        limiter.allow("10.0.1.1", 10.0)
        assert len(limiter) == 101

        limiter.allow("10.0.1.2", 65.0)
        # Only addresses seen in the last minute are kept
        assert len(limiter) == 2

    def test_sweep_keeps_active_addresses(self):
        limiter = RateLimiter(5)
        limiter.allow("10.0.0.1", 0.0)
        limiter.allow("10.0.0.2", 50.0)
        limiter.sweep(70.0)
        assert len(limiter) == 1
        assert limiter.allow("10.0.0.2", 70.0)
