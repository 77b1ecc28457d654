"""Request governance: rate limits, quotas, and usage recording."""

from __future__ import annotations

from storyloom.governance.quota import QuotaService, QuotaStatus
from storyloom.governance.rate_limit import (
    EndpointClass,
    RateLimitDecision,
    SlidingWindowRateLimiter,
    build_limiters,
)
from storyloom.governance.usage import UsageRecord, UsageRecorder, UsageRepository

__all__ = [
    "EndpointClass",
    "QuotaService",
    "QuotaStatus",
    "RateLimitDecision",
    "SlidingWindowRateLimiter",
    "UsageRecord",
    "UsageRecorder",
    "UsageRepository",
    "build_limiters",
]
