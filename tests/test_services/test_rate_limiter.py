"""
Fixed-window Rate Limiter Tests.
"""

import threading

import pytest
from hypothesis import given, settings as hyp_settings
from hypothesis import strategies as st

from aeges.exceptions import RateLimited
from aeges.services.rate_limiter import FixedWindowRateLimiter, ProviderLimit

from tests.fakes import ManualTime


class TestFixedWindow:
    """Test per-provider request budgets."""

    def setup_method(self):
        self.clock = ManualTime(start=6_000.0)
        self.limiter = FixedWindowRateLimiter(
            {"xai": ProviderLimit(3, 60), "openai": ProviderLimit(1, 60)},
            clock=self.clock,
        )

    def test_allows_until_limit(self):
        for _ in range(3):
            assert self.limiter.can_proceed("xai")
            self.limiter.record("xai")
        assert not self.limiter.can_proceed("xai")

    def test_acquire_raises_after_limit(self):
        for _ in range(3):
            self.limiter.acquire("xai")
        with pytest.raises(RateLimited) as exc_info:
            self.limiter.acquire("xai")
        assert exc_info.value.provider == "xai"
        assert exc_info.value.to_dict() == {
            "kind": "RateLimited",
            "message": "Rate limit exceeded for provider: xai",
        }

    def test_window_rollover_resets_budget(self):
        for _ in range(3):
            self.limiter.acquire("xai")
        self.clock.advance(59)
        assert not self.limiter.can_proceed("xai")
        self.clock.advance(1)
        assert self.limiter.can_proceed("xai")
        assert self.limiter.remaining("xai") == 3

    def test_providers_are_independent(self):
        self.limiter.acquire("openai")
        assert not self.limiter.can_proceed("openai")
        assert self.limiter.can_proceed("xai")

    def test_unconfigured_provider_is_unlimited(self):
        for _ in range(1_000):
            self.limiter.acquire("fallback")
        assert self.limiter.can_proceed("fallback")
        assert self.limiter.remaining("fallback") is None

    def test_refund_returns_budget(self):
        window = self.limiter.acquire("openai")
        assert self.limiter.remaining("openai") == 0
        self.limiter.refund("openai", window)
        assert self.limiter.remaining("openai") == 1

    def test_refund_never_goes_negative(self):
        self.limiter.refund("xai", self.limiter.window_index("xai"))
        assert self.limiter.remaining("xai") == 3

    def test_stale_windows_pruned(self):
        self.limiter.acquire("xai")
        self.clock.advance(120)
        self.limiter.acquire("xai")
        assert len([k for k in self.limiter._counts if k[0] == "xai"]) == 1

    def test_reset(self):
        self.limiter.acquire("openai")
        self.limiter.reset("openai")
        assert self.limiter.can_proceed("openai")

    def test_concurrent_acquire_is_atomic(self):
        limiter = FixedWindowRateLimiter({"xai": ProviderLimit(100, 60)}, clock=self.clock)
        granted = []
        lock = threading.Lock()

        def worker():
            for _ in range(50):
                try:
                    limiter.acquire("xai")
                except RateLimited:
                    continue
                with lock:
                    granted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(granted) == 100

    @given(limit=st.integers(min_value=1, max_value=50))
    @hyp_settings(max_examples=30)
    def test_request_after_limit_rejected_until_rollover(self, limit):
        """N requests in window W ⇒ request N+1 fails RateLimited until rollover."""
        clock = ManualTime(start=0.0)
        limiter = FixedWindowRateLimiter({"p": ProviderLimit(limit, 10)}, clock=clock)
        for _ in range(limit):
            limiter.acquire("p")
        with pytest.raises(RateLimited):
            limiter.acquire("p")
        clock.advance(10)
        limiter.acquire("p")
