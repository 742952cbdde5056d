"""Exchange rate API — current rate, manual override, history."""

from fastapi import APIRouter, Depends, Query

from ..dependencies import get_rates
from ..schemas.exchange_rates import ManualRateRequest
from ..services.exchange_rate_service import ExchangeRateProvider

router = APIRouter(prefix="/api/exchange-rates", tags=["exchange-rates"])


@router.get("/current")
async def api_current_rate(
    base: str | None = None,
    target: str | None = None,
    rates: ExchangeRateProvider = Depends(get_rates),
):
    return rates.current_rate(base, target).to_dict()


@router.post("/manual", status_code=201)
async def api_set_manual_rate(body: ManualRateRequest, rates: ExchangeRateProvider = Depends(get_rates)):
    record = rates.set_manual_rate(
        rate=body.rate,
        reason=body.reason,
        operator_id=body.operator_id,
        base=body.base_currency,
        target=body.target_currency,
        valid_days=body.valid_days,
    )
    return record.to_dict()


@router.post("/refresh")
async def api_refresh_rate(rates: ExchangeRateProvider = Depends(get_rates)):
    return (await rates.refresh_quoted_rate()).to_dict()


@router.get("/history")
async def api_rate_history(
    limit: int = Query(30, ge=1, le=365),
    rates: ExchangeRateProvider = Depends(get_rates),
):
    return [r.to_dict() for r in rates.history(limit=limit)]
