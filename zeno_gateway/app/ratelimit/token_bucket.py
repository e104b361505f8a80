"""
Token bucket rate limiter for the gateway.

Buckets are keyed by client IP and live in process memory. Every bucket
holds ``capacity`` tokens and refills at ``requests / window`` tokens per
second; an admission consumes one token. The refill-and-consume step runs
under a single lock, so two concurrent requests from one IP can never both
take the last token.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request

from zeno_shared.errors import RateLimitError
from zeno_shared.logging import get_logger
from zeno_shared.metrics import GatewayMetrics


@dataclass
class _Bucket:
    tokens: float
    updated_at: float
    last_seen: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: int

    def headers(self) -> Dict[str, str]:
        """Standard rate limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class TokenBucketRateLimiter:
    """In-memory per-client token bucket with idle eviction."""

    def __init__(
        self,
        requests: int,
        window_seconds: float,
        *,
        burst: Optional[int] = None,
        idle_seconds: float = 600.0,
        sweep_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests < 1 or window_seconds <= 0:
            raise ValueError("rate limit needs at least one request per positive window")
        self.limit = requests
        self.capacity = burst or requests
        self.window_seconds = window_seconds
        self.refill_rate = requests / window_seconds
        self.idle_seconds = idle_seconds
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()
        self.logger = get_logger("gateway.rate_limiter")

    def admit(self, client_ip: str) -> RateLimitDecision:
        """Consume one token for ``client_ip`` if one is available."""
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self.sweep_interval:
                self._sweep_locked(now)

            bucket = self._buckets.get(client_ip)
            if bucket is None:
                bucket = _Bucket(tokens=float(self.capacity), updated_at=now, last_seen=now)
                self._buckets[client_ip] = bucket
            else:
                elapsed = max(0.0, now - bucket.updated_at)
                bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_rate)
                bucket.updated_at = now
            bucket.last_seen = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return RateLimitDecision(
                    allowed=True,
                    limit=self.capacity,
                    remaining=int(bucket.tokens),
                    retry_after=0,
                )

            deficit = 1.0 - bucket.tokens
            retry_after = max(1, math.ceil(deficit / self.refill_rate))

        self.logger.warning(
            "Rate limit exceeded",
            client_id=client_ip,
            limit=self.capacity,
            retry_after=retry_after,
        )
        return RateLimitDecision(
            allowed=False,
            limit=self.capacity,
            remaining=0,
            retry_after=retry_after,
        )

    def sweep(self) -> int:
        """Evict buckets idle for longer than ``idle_seconds``."""
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        expired = [
            key for key, bucket in self._buckets.items()
            if now - bucket.last_seen > self.idle_seconds
        ]
        for key in expired:
            del self._buckets[key]
        self._last_sweep = now
        if expired:
            self.logger.debug("Evicted idle rate limit buckets", evicted=len(expired))
        return len(expired)

    def reset(self, client_ip: str) -> bool:
        """Forget the bucket for ``client_ip``."""
        with self._lock:
            return self._buckets.pop(client_ip, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def get_global_stats(self) -> Dict[str, float]:
        """Summary for the health endpoint."""
        return {
            "tracked_clients": len(self),
            "limit": self.limit,
            "burst": self.capacity,
            "window_seconds": self.window_seconds,
        }


class RateLimitMiddleware:
    """Applies the limiter to FastAPI requests."""

    def __init__(
        self,
        rate_limiter: TokenBucketRateLimiter,
        metrics: Optional[GatewayMetrics] = None,
        *,
        trust_forwarded_headers: bool = False,
    ):
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.trust_forwarded_headers = trust_forwarded_headers
        self.logger = get_logger("gateway.rate_limit_middleware")

    def check_request(self, request: Request, route: str) -> RateLimitDecision:
        """Admit the request or raise ``RateLimitError``."""
        client_id = self.get_client_id(request)
        decision = self.rate_limiter.admit(client_id)
        if self.metrics is not None:
            self.metrics.set_rate_limit_buckets(len(self.rate_limiter))

        if not decision.allowed:
            if self.metrics is not None:
                self.metrics.record_rate_limit_hit(route)
            raise RateLimitError(
                details={"limit": decision.limit, "reset_in_seconds": decision.retry_after},
                retry_after=decision.retry_after,
            )
        return decision

    def get_client_id(self, request: Request) -> str:
        """Extract the client IP from the request."""
        if self.trust_forwarded_headers:
            forwarded_for = request.headers.get("X-Forwarded-For")
            if forwarded_for:
                first = forwarded_for.split(",")[0].strip()
                if first:
                    return first

            real_ip = request.headers.get("X-Real-IP")
            if real_ip and real_ip.strip():
                return real_ip.strip()

        return request.client.host if request.client else "unknown"
