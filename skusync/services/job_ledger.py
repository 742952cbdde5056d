"""Job & activity ledger — durable record of every sync attempt.

Job status moves forward only:
    pending → running → completed | failed
    pending → failed
Completed and failed jobs are never modified again. A retry is a new job.

Every database failure surfaces as PersistenceError so the engine can tell
"an item failed" apart from "bookkeeping is broken".
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from loguru import logger

from ..config import settings
from ..database import session_scope
from ..errors import InvalidJobTransition, JobNotFound, ValidationError
from ..models import JOB_KINDS, TERMINAL_STATUSES, ActivityLog, SyncJob, WebhookLog

_ALLOWED = {
    "pending": {"running", "failed"},
    "running": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}


def _now():
    return datetime.now(timezone.utc)


class JobLedger:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    def _load(self, db, job_id: str) -> SyncJob:
        job = db.query(SyncJob).filter(SyncJob.job_id == job_id).first()
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _transition(self, db, job_id: str, target: str) -> SyncJob:
        job = self._load(db, job_id)
        if target not in _ALLOWED.get(job.status, set()):
            raise InvalidJobTransition(job_id, job.status, target)
        job.status = target
        return job

    # ── Jobs ─────────────────────────────────────────────────────────

    def create_job(self, kind: str, triggered_by: Optional[str] = None, skus: Optional[list[str]] = None) -> SyncJob:
        if kind not in JOB_KINDS:
            raise ValidationError(f"Unknown job kind: {kind}")
        job = SyncJob(
            job_id=uuid.uuid4().hex,
            kind=kind,
            status="pending",
            triggered_by=triggered_by,
            skus=list(skus) if skus is not None else None,
            errors=[],
            created_at=_now(),
        )
        with self._session() as db:
            db.add(job)
        logger.debug("Sync job created", job_id=job.job_id, kind=kind)
        return job

    def start_job(self, job_id: str, total_items: int) -> SyncJob:
        with self._session() as db:
            job = self._transition(db, job_id, "running")
            job.total_items = total_items
            job.started_at = _now()
        return job

    def complete_job(
        self,
        job_id: str,
        success: int,
        failed: int,
        skipped: int,
        errors: list[dict],
    ) -> SyncJob:
        with self._session() as db:
            job = self._transition(db, job_id, "completed")
            job.success_count = success
            job.failed_count = failed
            job.skipped_count = skipped
            job.errors = list(errors)
            job.completed_at = _now()
        logger.info(
            "Sync job completed",
            job_id=job_id,
            kind=job.kind,
            success=success,
            failed=failed,
            skipped=skipped,
        )
        return job

    def fail_job(self, job_id: str, reason: str, errors: Optional[list[dict]] = None) -> SyncJob:
        with self._session() as db:
            job = self._transition(db, job_id, "failed")
            job.failure_reason = reason[:2000]
            if errors is not None:
                job.errors = list(errors)
            job.completed_at = _now()
        logger.error("Sync job failed", job_id=job_id, reason=reason)
        return job

    def get_job(self, job_id: str) -> SyncJob:
        with self._session() as db:
            return self._load(db, job_id)

    def recent_jobs(self, limit: int = 20, kind: Optional[str] = None) -> list[SyncJob]:
        with self._session() as db:
            q = db.query(SyncJob)
            if kind:
                q = q.filter(SyncJob.kind == kind)
            return q.order_by(SyncJob.created_at.desc(), SyncJob.id.desc()).limit(limit).all()

    def latest_job(self, kinds: Optional[tuple] = None, finished_only: bool = False) -> Optional[SyncJob]:
        with self._session() as db:
            q = db.query(SyncJob)
            if kinds:
                q = q.filter(SyncJob.kind.in_(kinds))
            if finished_only:
                q = q.filter(SyncJob.status.in_(TERMINAL_STATUSES))
            return q.order_by(SyncJob.created_at.desc(), SyncJob.id.desc()).first()

    def fail_orphaned_jobs(self, reason: str = "process restarted") -> int:
        """Fail jobs left pending/running by a previous process."""
        with self._session() as db:
            jobs = db.query(SyncJob).filter(SyncJob.status.in_(("pending", "running"))).all()
            for job in jobs:
                job.status = "failed"
                job.failure_reason = reason
                job.completed_at = _now()
        if jobs:
            logger.warning("Failed orphaned sync jobs", count=len(jobs))
        return len(jobs)

    # ── Activity ─────────────────────────────────────────────────────

    def log_activity(
        self,
        action: str,
        sku: Optional[str] = None,
        platform: Optional[str] = None,
        job_id: Optional[str] = None,
        success: bool = True,
        message: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> ActivityLog:
        row = ActivityLog(
            action=action,
            sku=sku,
            platform=platform,
            job_id=job_id,
            success=success,
            message=(message or "")[:500] or None,
            details=details,
            created_at=_now(),
        )
        with self._session() as db:
            db.add(row)
        return row

    def recent_activity(self, limit: int = 50, sku: Optional[str] = None) -> list[ActivityLog]:
        with self._session() as db:
            q = db.query(ActivityLog)
            if sku:
                q = q.filter(ActivityLog.sku == sku)
            return q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit).all()

    # ── Retention ────────────────────────────────────────────────────

    def purge_expired(self, now: Optional[datetime] = None) -> dict:
        now = now or _now()
        webhook_cutoff = now - timedelta(days=settings.webhook_log_retention_days)
        activity_cutoff = now - timedelta(days=settings.activity_retention_days)
        with self._session() as db:
            webhooks = (
                db.query(WebhookLog)
                .filter(WebhookLog.created_at < webhook_cutoff)
                .delete(synchronize_session=False)
            )
            activities = (
                db.query(ActivityLog)
                .filter(ActivityLog.created_at < activity_cutoff)
                .delete(synchronize_session=False)
            )
        if webhooks or activities:
            logger.info("Purged expired log rows", webhooks=webhooks, activities=activities)
        return {"webhooks": webhooks, "activities": activities}
