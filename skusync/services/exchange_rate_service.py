"""Exchange rate provider — current conversion rate for a currency pair.

Precedence: a manual rate that is valid now always wins over a quoted one.
There is no hardcoded fallback; with no valid record the provider raises
ExchangeRateUnavailable and the caller skips pricing.

Quoted rates are fetched from EXCHANGE_RATE_API_URL/{base} and stored with
a fixed validity window. Records are never updated after insert.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx
from loguru import logger

from ..config import settings
from ..database import session_scope
from ..errors import ExchangeRateUnavailable, ValidationError
from ..models import ExchangeRate


class ExchangeRateProvider:
    def __init__(self, session_factory=None, http: Optional[httpx.AsyncClient] = None, clock=None):
        self._session_factory = session_factory
        self._http = http
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _session(self):
        return session_scope(self._session_factory)

    def current_rate(self, base: Optional[str] = None, target: Optional[str] = None) -> ExchangeRate:
        base = (base or settings.source_currency).upper()
        target = (target or settings.target_currency).upper()
        now = self._clock()
        with self._session() as db:
            for source in ("manual", "quoted"):
                record = (
                    db.query(ExchangeRate)
                    .filter(
                        ExchangeRate.base_currency == base,
                        ExchangeRate.target_currency == target,
                        ExchangeRate.source == source,
                        ExchangeRate.valid_from <= now,
                        ExchangeRate.valid_until > now,
                    )
                    .order_by(ExchangeRate.created_at.desc(), ExchangeRate.id.desc())
                    .first()
                )
                if record is not None:
                    return record
        raise ExchangeRateUnavailable(base, target)

    def set_manual_rate(
        self,
        rate,
        reason: str,
        operator_id: str,
        base: Optional[str] = None,
        target: Optional[str] = None,
        valid_days: Optional[int] = None,
    ) -> ExchangeRate:
        """Record an operator override. Reason and operator are mandatory."""
        try:
            value = Decimal(str(rate))
        except (InvalidOperation, ValueError) as e:
            raise ValidationError("Rate must be a number", details={"rate": str(rate)}) from e
        if not value.is_finite() or value <= 0:
            raise ValidationError("Rate must be positive", details={"rate": str(rate)})
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for a manual rate", code="REASON_REQUIRED")
        if not operator_id or not str(operator_id).strip():
            raise ValidationError("An operator id is required for a manual rate", code="OPERATOR_REQUIRED")
        days = valid_days if valid_days is not None else settings.manual_rate_max_days
        if days < 1 or days > settings.manual_rate_max_days:
            raise ValidationError(
                f"Manual rate validity must be 1-{settings.manual_rate_max_days} days",
                details={"valid_days": days},
            )

        now = self._clock()
        record = ExchangeRate(
            base_currency=(base or settings.source_currency).upper(),
            target_currency=(target or settings.target_currency).upper(),
            rate=value,
            source="manual",
            valid_from=now,
            valid_until=now + timedelta(days=days),
            reason=reason.strip(),
            operator_id=str(operator_id).strip(),
            created_at=now,
        )
        with self._session() as db:
            db.add(record)
        logger.info(
            "Manual exchange rate set",
            pair=f"{record.base_currency}/{record.target_currency}",
            rate=str(value),
            operator=record.operator_id,
            days=days,
        )
        return record

    async def refresh_quoted_rate(self, base: Optional[str] = None, target: Optional[str] = None) -> ExchangeRate:
        """Fetch a quote and store it. Any failure raises; no rate is invented."""
        base = (base or settings.source_currency).upper()
        target = (target or settings.target_currency).upper()
        client = self._http
        if client is None:
            from ..http_client import http as client

        url = f"{settings.exchange_rate_api_url.rstrip('/')}/{base}"
        params = {"apikey": settings.exchange_rate_api_key} if settings.exchange_rate_api_key else None
        try:
            resp = await client.get(url, params=params, timeout=10, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise ExchangeRateUnavailable(base, target, f"quote request failed: {e.__class__.__name__}") from e
        if resp.status_code != 200:
            raise ExchangeRateUnavailable(base, target, f"quote API returned {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ExchangeRateUnavailable(base, target, "quote API returned invalid JSON") from e
        if not isinstance(data, dict):
            raise ExchangeRateUnavailable(base, target, "quote API returned unexpected body")

        raw = (data.get("rates") or {}).get(target, data.get(target))
        try:
            value = Decimal(str(raw)) if raw is not None else None
        except InvalidOperation:
            value = None
        if value is None or not value.is_finite() or value <= 0:
            raise ExchangeRateUnavailable(base, target, "quote missing from API response")

        now = self._clock()
        record = ExchangeRate(
            base_currency=base,
            target_currency=target,
            rate=value,
            source="quoted",
            valid_from=now,
            valid_until=now + timedelta(hours=settings.quoted_rate_validity_hours),
            created_at=now,
        )
        with self._session() as db:
            db.add(record)
        logger.info("Quoted exchange rate stored", pair=f"{base}/{target}", rate=str(value))
        return record

    def history(self, base: Optional[str] = None, target: Optional[str] = None, limit: int = 30) -> list[ExchangeRate]:
        base = (base or settings.source_currency).upper()
        target = (target or settings.target_currency).upper()
        with self._session() as db:
            return (
                db.query(ExchangeRate)
                .filter(ExchangeRate.base_currency == base, ExchangeRate.target_currency == target)
                .order_by(ExchangeRate.created_at.desc(), ExchangeRate.id.desc())
                .limit(limit)
                .all()
            )
