"""Cross-process rate limiting for upstream calls."""

from .limiter import RateLimitConfig, RateLimiter, RateLimitStatus
from .store import (
    FileRateLimitStore,
    MemoryRateLimitStore,
    RateLimitState,
    RateLimitStore,
)

__all__ = [
    "FileRateLimitStore",
    "MemoryRateLimitStore",
    "RateLimitConfig",
    "RateLimitState",
    "RateLimitStatus",
    "RateLimitStore",
    "RateLimiter",
]
