"""
Error taxonomy for the sync service.

Every error carries a machine code, a human message and the HTTP status the
control surface answers with. Platform errors additionally say whether a
retry can help.
"""

from datetime import datetime, timezone
from typing import Any, Optional


class SkuSyncError(Exception):
    """Base exception for all service errors."""

    status_code = 500

    def __init__(
        self,
        code: str,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp,
            }
        }


class ValidationError(SkuSyncError):
    """Rejected before any I/O; never retried."""

    status_code = 422

    def __init__(self, message: str, code: str = "VALIDATION_ERROR", details: Optional[dict] = None):
        super().__init__(code=code, message=message, details=details)


class MappingNotFound(SkuSyncError):
    status_code = 404

    def __init__(self, sku: str):
        super().__init__(
            code="MAPPING_NOT_FOUND",
            message=f"No active mapping for SKU {sku}",
            details={"sku": sku},
        )


class SyncInProgress(SkuSyncError):
    status_code = 409

    def __init__(self, running_job_id: Optional[str] = None):
        super().__init__(
            code="SYNC_IN_PROGRESS",
            message="A sync pass is already running",
            details={"running_job_id": running_job_id} if running_job_id else None,
        )


class JobNotFound(SkuSyncError):
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__(code="JOB_NOT_FOUND", message=f"Sync job {job_id} not found", details={"job_id": job_id})


class InvalidJobTransition(SkuSyncError):
    status_code = 409

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            code="INVALID_JOB_TRANSITION",
            message=f"Job {job_id} cannot move from {current} to {target}",
            details={"job_id": job_id, "current": current, "target": target},
        )


class PersistenceError(SkuSyncError):
    """A ledger or mapping write failed; bookkeeping integrity is lost."""

    status_code = 503

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(code="PERSISTENCE_ERROR", message=message, details=details)


class ExchangeRateUnavailable(SkuSyncError):
    status_code = 503

    def __init__(self, base: str, target: str, reason: str = "no valid rate"):
        super().__init__(
            code="EXCHANGE_RATE_UNAVAILABLE",
            message=f"Exchange rate {base}/{target} unavailable: {reason}",
            details={"base": base, "target": target},
        )


class WebhookSignatureError(SkuSyncError):
    status_code = 401

    def __init__(self, platform: str):
        super().__init__(
            code="WEBHOOK_SIGNATURE_INVALID",
            message=f"Invalid {platform} webhook signature",
            details={"platform": platform},
        )


# ── Platform errors ──────────────────────────────────────────────────


class PlatformError(SkuSyncError):
    """Failure talking to a commerce platform."""

    status_code = 502
    retryable = False
    default_code = "PLATFORM_ERROR"

    def __init__(self, platform: str, message: str, http_status: Optional[int] = None):
        self.platform = platform
        self.http_status = http_status
        super().__init__(
            code=self.default_code,
            message=f"[{platform}] {message}",
            details={"platform": platform, "http_status": http_status},
        )


class PlatformAuthError(PlatformError):
    default_code = "PLATFORM_AUTH_ERROR"


class PlatformNotFound(PlatformError):
    default_code = "PLATFORM_NOT_FOUND"


class PlatformConflict(PlatformError):
    default_code = "PLATFORM_CONFLICT"


class RateLimitExceeded(PlatformError):
    default_code = "RATE_LIMIT_EXCEEDED"
    retryable = True


class TransientNetworkError(PlatformError):
    default_code = "TRANSIENT_NETWORK_ERROR"
    retryable = True


class PlatformResponseError(PlatformError):
    """The platform answered, but not with the JSON shape we expect."""

    default_code = "PLATFORM_BAD_RESPONSE"
