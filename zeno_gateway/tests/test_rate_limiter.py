"""
Unit tests for the token bucket rate limiter.
"""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from zeno_gateway.app.ratelimit import RateLimitMiddleware, TokenBucketRateLimiter
from zeno_shared.errors import RateLimitError
from zeno_shared.metrics import GatewayMetrics


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_request(peer="10.0.0.1", headers=None):
    request = MagicMock()
    request.client.host = peer
    request.headers = headers or {}
    return request


class TestTokenBucketRateLimiter:
    """Test cases for TokenBucketRateLimiter."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def limiter(self, clock):
        """Three requests per minute."""
        return TokenBucketRateLimiter(3, 60, clock=clock)

    def test_admits_up_to_limit_then_denies(self, limiter):
        """The first N requests pass and request N+1 is denied."""
        decisions = [limiter.admit("1.2.3.4") for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions[:3]] == [2, 1, 0]
        assert decisions[3].retry_after == 20

    def test_refills_over_time(self, limiter, clock):
        """A token comes back after window / requests seconds."""
        for _ in range(3):
            limiter.admit("1.2.3.4")
        assert not limiter.admit("1.2.3.4").allowed

        clock.advance(20)
        assert limiter.admit("1.2.3.4").allowed
        assert not limiter.admit("1.2.3.4").allowed

    def test_bucket_never_exceeds_capacity(self, limiter, clock):
        limiter.admit("1.2.3.4")
        clock.advance(3600)

        decisions = [limiter.admit("1.2.3.4") for _ in range(4)]
        assert [d.allowed for d in decisions] == [True, True, True, False]

    def test_burst_sets_capacity(self, clock):
        limiter = TokenBucketRateLimiter(60, 60, burst=5, clock=clock)

        allowed = sum(limiter.admit("1.2.3.4").allowed for _ in range(6))

        assert allowed == 5
        assert limiter.capacity == 5
        assert limiter.refill_rate == 1.0

    def test_clients_are_independent(self, limiter):
        for _ in range(3):
            limiter.admit("1.1.1.1")

        assert not limiter.admit("1.1.1.1").allowed
        assert limiter.admit("2.2.2.2").allowed

    def test_concurrent_admissions_are_linearizable(self):
        """Parallel calls for one IP never admit more than the capacity."""
        limiter = TokenBucketRateLimiter(10, 1_000_000)

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: limiter.admit("9.9.9.9").allowed, range(200)))

        assert sum(results) == 10

    def test_sweep_evicts_idle_buckets(self, clock):
        limiter = TokenBucketRateLimiter(3, 60, idle_seconds=10, clock=clock)
        limiter.admit("1.1.1.1")
        clock.advance(5)
        limiter.admit("2.2.2.2")

        clock.advance(6)
        evicted = limiter.sweep()

        assert evicted == 1
        assert len(limiter) == 1

    def test_admit_sweeps_lazily(self, clock):
        limiter = TokenBucketRateLimiter(3, 60, idle_seconds=10, sweep_interval=5, clock=clock)
        limiter.admit("1.1.1.1")

        clock.advance(11)
        limiter.admit("2.2.2.2")

        assert len(limiter) == 1

    def test_reset_forgets_client(self, limiter):
        for _ in range(3):
            limiter.admit("1.2.3.4")

        assert limiter.reset("1.2.3.4") is True
        assert limiter.admit("1.2.3.4").allowed
        assert limiter.reset("5.6.7.8") is False

    def test_rejects_invalid_configuration(self):
        with pytest.raises(ValueError):
            TokenBucketRateLimiter(0, 60)
        with pytest.raises(ValueError):
            TokenBucketRateLimiter(10, 0)

    def test_decision_headers(self, limiter):
        allowed = limiter.admit("1.2.3.4")
        assert allowed.headers() == {"X-RateLimit-Limit": "3", "X-RateLimit-Remaining": "2"}

        for _ in range(2):
            limiter.admit("1.2.3.4")
        denied = limiter.admit("1.2.3.4")
        assert denied.headers()["Retry-After"] == "20"
        assert denied.headers()["X-RateLimit-Remaining"] == "0"


class TestRateLimitMiddleware:
    """Test cases for the request adapter."""

    @pytest.fixture
    def metrics(self):
        return GatewayMetrics("gateway")

    def test_uses_peer_address_by_default(self):
        middleware = RateLimitMiddleware(TokenBucketRateLimiter(1, 60))
        request = make_request(peer="10.0.0.1", headers={"X-Forwarded-For": "203.0.113.9"})

        assert middleware.get_client_id(request) == "10.0.0.1"

    def test_trusts_forwarded_headers_when_enabled(self):
        middleware = RateLimitMiddleware(TokenBucketRateLimiter(1, 60), trust_forwarded_headers=True)

        forwarded = make_request(headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.2"})
        real_ip = make_request(headers={"X-Real-IP": " 198.51.100.7 "})

        assert middleware.get_client_id(forwarded) == "203.0.113.9"
        assert middleware.get_client_id(real_ip) == "198.51.100.7"

    def test_denial_raises_and_counts(self, metrics):
        middleware = RateLimitMiddleware(TokenBucketRateLimiter(1, 60), metrics)
        request = make_request()

        middleware.check_request(request, route="rpc")
        with pytest.raises(RateLimitError) as exc_info:
            middleware.check_request(request, route="rpc")

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 60
        assert metrics.sample("rate_limit_hits_total", {"route": "rpc"}) == 1.0
        assert metrics.sample("rate_limit_buckets") == 1.0
