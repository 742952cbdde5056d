"""Background scheduler — APScheduler jobs for periodic sync work.

Jobs:
  - full_sync:     full reconciliation pass every SYNC_INTERVAL_MINUTES (min 5)
  - rate_refresh:  quoted exchange rate refresh every EXCHANGE_RATE_REFRESH_MINUTES
  - log_purge:     daily retention purge of webhook and activity logs

configure_scheduler() is called once from the app lifespan with the
services built there; scheduler.start() follows.
"""

from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .errors import SkuSyncError, SyncInProgress

scheduler = AsyncIOScheduler(timezone="UTC")


def _utc(dt):
    """Make a naive datetime UTC-aware (no-op if already aware)."""
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def configure_scheduler(engine, rates, ledger) -> None:
    from .config import settings

    if settings.sync_enabled:
        scheduler.add_job(
            _job_full_sync,
            IntervalTrigger(minutes=settings.sync_interval_minutes),
            args=[engine],
            id="full_sync",
            name="Full reconciliation pass",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
    scheduler.add_job(
        _job_rate_refresh,
        IntervalTrigger(minutes=settings.exchange_rate_refresh_minutes),
        args=[rates],
        id="rate_refresh",
        name="Quoted exchange rate refresh",
        next_run_time=datetime.now(timezone.utc),
        replace_existing=True,
    )
    scheduler.add_job(
        _job_log_purge,
        CronTrigger(hour=3, minute=15),
        args=[ledger],
        id="log_purge",
        name="Webhook/activity log retention",
        replace_existing=True,
    )
    logger.info(
        "Scheduler configured",
        sync_enabled=settings.sync_enabled,
        sync_interval_min=settings.sync_interval_minutes,
        jobs=[j.id for j in scheduler.get_jobs()],
    )


def next_run_time(job_id: str):
    job = scheduler.get_job(job_id)
    return _utc(getattr(job, "next_run_time", None)) if job else None


# ── Jobs ─────────────────────────────────────────────────────────────


async def _job_full_sync(engine):
    try:
        job = await engine.trigger_full_sync(triggered_by="scheduler")
        logger.info("Scheduled sync finished", job_id=job.job_id, status=job.status)
    except SyncInProgress:
        logger.info("Scheduled sync skipped, a pass is already running")
    except SkuSyncError as e:
        logger.error("Scheduled sync failed", code=e.code, error=e.message)


async def _job_rate_refresh(rates):
    try:
        await rates.refresh_quoted_rate()
    except SkuSyncError as e:
        logger.warning("Exchange rate refresh failed", code=e.code, error=e.message)


async def _job_log_purge(ledger):
    try:
        ledger.purge_expired()
    except SkuSyncError as e:
        logger.error("Log purge failed", code=e.code, error=e.message)
