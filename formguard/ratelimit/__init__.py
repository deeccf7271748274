"""
Rate limiting with an in-memory backup store and an optional distributed limits backend.
"""

from formguard.ratelimit.backends import (
    RATE_LIMIT_POLICIES,
    DistributedRateLimitBackend,
    InMemoryRateLimitBackend,
    RateLimitBackend,
    RateLimitPolicy,
    RateLimitRecord,
    RateLimitResult,
)
from formguard.ratelimit.limiter import RateLimiter, with_rate_limit

__all__ = [
    'RATE_LIMIT_POLICIES',
    'DistributedRateLimitBackend',
    'InMemoryRateLimitBackend',
    'RateLimitBackend',
    'RateLimitPolicy',
    'RateLimitRecord',
    'RateLimitResult',
    'RateLimiter',
    'with_rate_limit'
]
