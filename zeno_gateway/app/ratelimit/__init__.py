"""
Rate limiting package for the Gateway.

Holds the in-memory token bucket that enforces per-client-IP request budgets
with burst tolerance, and the adapter that applies it to FastAPI requests.
"""

from .token_bucket import RateLimitDecision, RateLimitMiddleware, TokenBucketRateLimiter

__all__ = ["RateLimitDecision", "RateLimitMiddleware", "TokenBucketRateLimiter"]
