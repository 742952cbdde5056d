"""
schemas/exchange_rates.py — Pydantic models for exchange rate endpoints

Business Rules:
- A manual rate needs a positive rate, a reason and an operator id
- Validity is bounded by MANUAL_RATE_MAX_DAYS (checked by the provider)

Called by: routers/exchange_rates.py
Depends on: pydantic
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field


class ManualRateRequest(BaseModel):
    rate: Decimal = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
    operator_id: str = Field(..., min_length=1, max_length=100)
    base_currency: str | None = Field(default=None, min_length=3, max_length=3)
    target_currency: str | None = Field(default=None, min_length=3, max_length=3)
    valid_days: int | None = None
