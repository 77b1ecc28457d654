"""
Per-user daily and monthly request quotas.

Counts come from the persisted usage log, so quotas hold across processes and
restarts. Periods follow the server's local calendar: the daily window resets
at the next local midnight, the monthly window on the first of next month.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from storyloom.config import QUOTA_DAILY_DEFAULT, QUOTA_MONTHLY_DEFAULT
from storyloom.errors import QuotaExceededError
from storyloom.governance.usage import UsageRepository
from storyloom.observability.logging import get_logger
from storyloom.observability.telemetry import counter, log_event

logger = get_logger(__name__)


UNLIMITED_QUOTA = 999999

# Sent when quotas are disabled so clients always see the same header set
UNLIMITED_QUOTA_HEADERS: dict[str, str] = {
    "X-RateLimit-Limit-Daily": str(UNLIMITED_QUOTA),
    "X-RateLimit-Remaining-Daily": str(UNLIMITED_QUOTA),
    "X-RateLimit-Limit-Monthly": str(UNLIMITED_QUOTA),
    "X-RateLimit-Remaining-Monthly": str(UNLIMITED_QUOTA),
}


def day_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def month_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    # Day 28 + 4 days always lands in the next month
    next_month = (start.replace(day=28) + timedelta(days=4)).replace(day=1)
    return start, next_month


@dataclass(frozen=True)
class QuotaStatus:
    daily_limit: int
    daily_used: int
    daily_reset_at: datetime
    monthly_limit: int
    monthly_used: int
    monthly_reset_at: datetime

    @property
    def daily_remaining(self) -> int:
        return max(0, self.daily_limit - self.daily_used)

    @property
    def monthly_remaining(self) -> int:
        return max(0, self.monthly_limit - self.monthly_used)

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit-Daily": str(self.daily_limit),
            "X-RateLimit-Remaining-Daily": str(self.daily_remaining),
            "X-RateLimit-Reset-Daily": self.daily_reset_at.isoformat(),
            "X-RateLimit-Limit-Monthly": str(self.monthly_limit),
            "X-RateLimit-Remaining-Monthly": str(self.monthly_remaining),
            "X-RateLimit-Reset-Monthly": self.monthly_reset_at.isoformat(),
        }


class QuotaService:
    """Checks a user's usage against their daily/monthly ceilings."""

    def __init__(
        self,
        repository: UsageRepository | None = None,
        default_daily: int = QUOTA_DAILY_DEFAULT,
        default_monthly: int = QUOTA_MONTHLY_DEFAULT,
    ) -> None:
        self.repository = repository or UsageRepository()
        self.default_daily = default_daily
        self.default_monthly = default_monthly

    def limits_for(self, user_id: str) -> tuple[int, int]:
        override = self.repository.get_quota_override(user_id)
        daily = self.default_daily
        monthly = self.default_monthly
        if override is not None:
            if override.daily_requests is not None:
                daily = override.daily_requests
            if override.monthly_requests is not None:
                monthly = override.monthly_requests
        return daily, monthly

    def status(self, user_id: str, now: datetime | None = None) -> QuotaStatus:
        now = now or datetime.now().astimezone()
        day_start, day_end = day_bounds(now)
        month_start, month_end = month_bounds(now)
        daily_limit, monthly_limit = self.limits_for(user_id)

        return QuotaStatus(
            daily_limit=daily_limit,
            daily_used=self.repository.count_since(user_id, day_start.timestamp()),
            daily_reset_at=day_end,
            monthly_limit=monthly_limit,
            monthly_used=self.repository.count_since(user_id, month_start.timestamp()),
            monthly_reset_at=month_end,
        )

    def check(self, user_id: str, now: datetime | None = None) -> QuotaStatus:
        """
        Return the user's quota status, raising if either ceiling is reached.

        Raises:
            QuotaExceededError: With the breached period, limit, usage, and reset time
        """
        status = self.status(user_id, now)

        if status.daily_used >= status.daily_limit:
            self._reject(user_id, "daily", status.daily_limit, status.daily_used, status.daily_reset_at)
        if status.monthly_used >= status.monthly_limit:
            self._reject(
                user_id, "monthly", status.monthly_limit, status.monthly_used, status.monthly_reset_at
            )
        return status

    def _reject(self, user_id: str, period: str, limit: int, used: int, reset_at: datetime) -> None:
        counter(f"governance.quota_exceeded.{period}")
        log_event("governance.quota_exceeded", user_id=user_id, period=period, limit=limit, used=used)
        raise QuotaExceededError(period=period, limit=limit, used=used, reset_at=reset_at.isoformat())
