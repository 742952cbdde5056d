"""
schemas/sync.py — Pydantic models for sync control endpoints

Business Rules:
- A manual sync without skus reconciles every active mapping
- A given skus list must be non-empty and is de-duplicated

Called by: routers/sync.py
Depends on: pydantic
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class ManualSyncRequest(BaseModel):
    skus: list[str] | None = None
    wait: bool = False

    @field_validator("skus")
    @classmethod
    def non_empty(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        cleaned = list(dict.fromkeys(s.strip() for s in v if s and s.strip()))
        if not cleaned:
            raise ValueError("skus must contain at least one SKU")
        return cleaned


class SyncTriggerOptions(BaseModel):
    wait: bool = False


class JobTotals(BaseModel):
    total: int = 0
    success: int = 0
    failed: int = 0
    skipped: int = 0


class JobError(BaseModel):
    sku: str | None = None
    error: str
    timestamp: str | None = None


class JobTimestamps(BaseModel):
    createdAt: str | None = None
    startedAt: str | None = None
    completedAt: str | None = None


class JobReport(BaseModel):
    jobId: str
    type: str
    status: str
    totals: JobTotals
    errors: list[JobError] = Field(default_factory=list)
    timestamps: JobTimestamps
