"""Database models — re-exports all models.

Import from here:  from skusync.models import SkuMapping, SyncJob, ...
"""

from .base import Base  # noqa: F401
from .exchange import RATE_SOURCES, ExchangeRate  # noqa: F401
from .mapping import SYNC_STATUSES, SkuMapping  # noqa: F401
from .sync import (  # noqa: F401
    JOB_KINDS,
    JOB_STATUSES,
    TERMINAL_STATUSES,
    ActivityLog,
    SyncJob,
    WebhookLog,
)
