"""Unit tests for quotas and usage recording"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from storyloom.errors import QuotaExceededError
from storyloom.governance.quota import QuotaService, day_bounds, month_bounds
from storyloom.governance.usage import UsageRecord, UsageRecorder, UsageRepository
from storyloom.observability.telemetry import get_counter

NOW = datetime(2026, 3, 15, 12, 0).astimezone()


@pytest.fixture
def repository(db_path):
    return UsageRepository()


def _record_at(repository, when: datetime, user_id="user-1", endpoint="/api/ai/suggest"):
    repository.insert(UsageRecord(user_id, endpoint, created_at=when.timestamp()))


def test_day_and_month_bounds():
    day_start, day_end = day_bounds(NOW)
    month_start, month_end = month_bounds(NOW)

    assert (day_start.day, day_start.hour) == (15, 0)
    assert day_end.day == 16
    assert (month_start.month, month_start.day) == (3, 1)
    assert (month_end.month, month_end.day) == (4, 1)


def test_month_bounds_wrap_year():
    _, month_end = month_bounds(datetime(2026, 12, 31, 23, 0))
    assert (month_end.year, month_end.month, month_end.day) == (2027, 1, 1)


def test_status_counts_daily_and_monthly(repository):
    _record_at(repository, NOW.replace(hour=9))
    _record_at(repository, NOW.replace(day=2))
    _record_at(repository, NOW.replace(month=2, day=20))
    _record_at(repository, NOW.replace(hour=10), user_id="someone-else")

    status = QuotaService(repository, default_daily=10, default_monthly=20).status("user-1", NOW)

    assert status.daily_used == 1
    assert status.monthly_used == 2
    assert status.daily_remaining == 9
    assert status.monthly_remaining == 18


def test_check_raises_when_daily_exhausted(repository):
    _record_at(repository, NOW.replace(hour=8))
    _record_at(repository, NOW.replace(hour=9))
    service = QuotaService(repository, default_daily=2, default_monthly=100)

    with pytest.raises(QuotaExceededError) as exc_info:
        service.check("user-1", NOW)

    error = exc_info.value
    assert error.period == "daily"
    assert (error.limit, error.used) == (2, 2)
    assert error.reset_at.startswith("2026-03-16T00:00:00")
    assert error.to_payload()["detail"] == "Daily quota exceeded. Limit: 2 requests."
    assert get_counter("governance.quota_exceeded.daily") == 1


def test_check_raises_when_monthly_exhausted(repository):
    _record_at(repository, NOW.replace(day=1))
    _record_at(repository, NOW.replace(day=3))
    service = QuotaService(repository, default_daily=10, default_monthly=2)

    with pytest.raises(QuotaExceededError) as exc_info:
        service.check("user-1", NOW)

    assert exc_info.value.period == "monthly"
    assert exc_info.value.reset_at.startswith("2026-04-01T00:00:00")


def test_check_passes_under_limits(repository):
    status = QuotaService(repository, default_daily=1, default_monthly=1).check("user-1", NOW)
    assert status.daily_used == 0


def test_per_user_override(repository, seed):
    seed.quota("vip", daily=500)
    seed.quota("trial", monthly=5)
    service = QuotaService(repository, default_daily=100, default_monthly=2000)

    assert service.limits_for("vip") == (500, 2000)
    assert service.limits_for("trial") == (100, 5)
    assert service.limits_for("regular") == (100, 2000)


def test_status_headers(repository):
    status = QuotaService(repository, default_daily=100, default_monthly=2000).status("user-1", NOW)

    headers = status.headers()

    assert headers["X-RateLimit-Limit-Daily"] == "100"
    assert headers["X-RateLimit-Remaining-Monthly"] == "2000"
    assert headers["X-RateLimit-Reset-Daily"].startswith("2026-03-16T00:00:00")
    assert headers["X-RateLimit-Reset-Monthly"].startswith("2026-04-01T00:00:00")


def test_recorder_writes_in_background(repository):
    recorder = UsageRecorder(repository)
    try:
        recorder.record("user-1", "/api/ai/expand", tokens_in=10, tokens_out=20)
        assert recorder.flush(timeout=5.0)
    finally:
        recorder.stop()

    assert repository.count_since("user-1", 0) == 1
    assert get_counter("usage.recorded") == 1


def test_recorder_drops_when_queue_full():
    recorder = UsageRecorder(MagicMock(), maxsize=1)
    recorder.start = lambda: None  # nothing drains the queue

    recorder.record("user-1", "/api/ai/suggest")
    recorder.record("user-1", "/api/ai/suggest")

    assert get_counter("usage.dropped") == 1


def test_recorder_write_failure_is_counted_not_raised():
    failing = MagicMock()
    failing.insert.side_effect = sqlite3.OperationalError("disk I/O error")
    recorder = UsageRecorder(failing)
    try:
        recorder.record("user-1", "/api/ai/suggest")
        assert recorder.flush(timeout=5.0)
    finally:
        recorder.stop()

    assert get_counter("usage.write_failed") == 1
    assert get_counter("usage.recorded") == 0
