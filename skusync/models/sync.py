"""Sync models — reconciliation jobs, activity log, webhook log."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, Index, Integer, String, Text

from ..database import UTCDateTime
from .base import Base

JOB_KINDS = ("full", "partial", "manual", "webhook")
JOB_STATUSES = ("pending", "running", "completed", "failed")
TERMINAL_STATUSES = ("completed", "failed")


def _iso(dt):
    return dt.isoformat() if dt else None


class SyncJob(Base):
    """One reconciliation attempt. Completed/failed jobs are never touched again."""

    __tablename__ = "sync_jobs"
    id = Column(Integer, primary_key=True)
    job_id = Column(String(32), nullable=False, unique=True)
    kind = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    triggered_by = Column(String(100))
    skus = Column(JSON)
    total_items = Column(Integer, default=0)
    success_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    skipped_count = Column(Integer, default=0)
    errors = Column(JSON, default=list)
    failure_reason = Column(Text)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    started_at = Column(UTCDateTime)
    completed_at = Column(UTCDateTime)

    __table_args__ = (
        Index("ix_job_status", "status"),
        Index("ix_job_kind_created", "kind", "created_at"),
    )

    def to_dict(self) -> dict:
        """Fixed report shape consumed by dashboards and reports."""
        return {
            "jobId": self.job_id,
            "type": self.kind,
            "status": self.status,
            "totals": {
                "total": self.total_items or 0,
                "success": self.success_count or 0,
                "failed": self.failed_count or 0,
                "skipped": self.skipped_count or 0,
            },
            "errors": list(self.errors or []),
            "timestamps": {
                "createdAt": _iso(self.created_at),
                "startedAt": _iso(self.started_at),
                "completedAt": _iso(self.completed_at),
            },
        }


class ActivityLog(Base):
    """Append-only audit trail of applied corrective actions."""

    __tablename__ = "activity_logs"
    id = Column(Integer, primary_key=True)
    action = Column(String(50), nullable=False)
    sku = Column(String(64))
    platform = Column(String(20))
    job_id = Column(String(32))
    success = Column(Boolean, default=True)
    message = Column(String(500))
    details = Column(JSON)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_activity_sku_time", "sku", "created_at"),
        Index("ix_activity_created", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "action": self.action,
            "sku": self.sku,
            "platform": self.platform,
            "jobId": self.job_id,
            "success": self.success,
            "message": self.message,
            "details": self.details,
            "createdAt": _iso(self.created_at),
        }


class WebhookLog(Base):
    """Every inbound platform callback. Only processed/success/error ever change."""

    __tablename__ = "webhook_logs"
    id = Column(Integer, primary_key=True)
    platform = Column(String(20), nullable=False)
    event = Column(String(100), nullable=False)
    external_id = Column(String(255))
    sku = Column(String(64))
    payload = Column(JSON)
    processed = Column(Boolean, default=False)
    success = Column(Boolean, default=False)
    error = Column(Text)
    processed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_webhook_platform_event", "platform", "event", "created_at"),
        Index("ix_webhook_external_id", "platform", "external_id"),
        Index("ix_webhook_processed", "processed", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "platform": self.platform,
            "event": self.event,
            "externalId": self.external_id,
            "sku": self.sku,
            "processed": self.processed,
            "success": self.success,
            "error": self.error,
            "processedAt": _iso(self.processed_at),
            "createdAt": _iso(self.created_at),
        }
