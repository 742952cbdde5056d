"""
test_scheduler.py — Tests for APScheduler background jobs

Covers: _utc helper, configure_scheduler registration (sync_enabled toggle,
interval), next_run_time, and the job functions _job_full_sync,
_job_rate_refresh, _job_log_purge, which must log and swallow service
errors so one bad tick never kills the scheduler.

settings is imported inside configure_scheduler via `from .config import settings`,
so tests patch skusync.config.settings.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from skusync.config import Settings
from skusync.errors import ExchangeRateUnavailable, PersistenceError, SyncInProgress
from skusync.scheduler import (
    _job_full_sync,
    _job_log_purge,
    _job_rate_refresh,
    _utc,
    configure_scheduler,
    next_run_time,
    scheduler,
)


@pytest.fixture(autouse=True)
def _clear_scheduler_jobs():
    """Remove all jobs before/after each test to prevent leakage."""
    scheduler.remove_all_jobs()
    yield
    scheduler.remove_all_jobs()


# ── _utc() ─────────────────────────────────────────────────────────────


def test_utc_naive_becomes_utc():
    result = _utc(datetime(2026, 1, 15, 12, 0, 0))
    assert result.tzinfo == timezone.utc


def test_utc_aware_passthrough():
    tz5 = timezone(timedelta(hours=5))
    aware = datetime(2026, 1, 15, 12, 0, 0, tzinfo=tz5)
    assert _utc(aware).tzinfo == tz5


def test_utc_none_returns_none():
    assert _utc(None) is None


# ── configure_scheduler() ──────────────────────────────────────────────


def test_configure_registers_all_jobs():
    with patch("skusync.config.settings", Settings(sync_interval_minutes=15)):
        configure_scheduler(MagicMock(), MagicMock(), MagicMock())

    jobs = {j.id: j for j in scheduler.get_jobs()}
    assert set(jobs) == {"full_sync", "rate_refresh", "log_purge"}
    assert jobs["full_sync"].trigger.interval == timedelta(minutes=15)
    assert jobs["full_sync"].max_instances == 1


def test_configure_without_sync():
    with patch("skusync.config.settings", Settings(sync_enabled=False)):
        configure_scheduler(MagicMock(), MagicMock(), MagicMock())

    assert {j.id for j in scheduler.get_jobs()} == {"rate_refresh", "log_purge"}
    assert next_run_time("full_sync") is None


def test_interval_below_minimum_rejected():
    with pytest.raises(ValueError):
        Settings(sync_interval_minutes=4)


# ── Jobs ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_full_sync_job_triggers_engine():
    engine = MagicMock()
    engine.trigger_full_sync = AsyncMock(return_value=MagicMock(job_id="j1", status="completed"))

    await _job_full_sync(engine)

    engine.trigger_full_sync.assert_awaited_once_with(triggered_by="scheduler")


@pytest.mark.asyncio
async def test_full_sync_job_skips_when_busy():
    engine = MagicMock()
    engine.trigger_full_sync = AsyncMock(side_effect=SyncInProgress("j0"))
    await _job_full_sync(engine)  # must not raise


@pytest.mark.asyncio
async def test_full_sync_job_swallows_service_errors():
    engine = MagicMock()
    engine.trigger_full_sync = AsyncMock(side_effect=PersistenceError("db down"))
    await _job_full_sync(engine)


@pytest.mark.asyncio
async def test_rate_refresh_job_swallows_unavailable():
    rates = MagicMock()
    rates.refresh_quoted_rate = AsyncMock(side_effect=ExchangeRateUnavailable("KRW", "USD", "timeout"))
    await _job_rate_refresh(rates)
    rates.refresh_quoted_rate.assert_awaited_once()


@pytest.mark.asyncio
async def test_log_purge_job(ledger, db_session):
    await _job_log_purge(ledger)

    broken = MagicMock()
    broken.purge_expired.side_effect = PersistenceError("locked")
    await _job_log_purge(broken)
    broken.purge_expired.assert_called_once()
