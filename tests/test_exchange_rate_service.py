"""
test_exchange_rate_service.py — Tests for ExchangeRateProvider

Covers:
- current_rate precedence (valid manual beats quoted) and expiry
- fail-closed behavior with no valid record
- set_manual_rate validation (reason, operator, validity bound)
- refresh_quoted_rate via httpx.MockTransport (success + failure paths)

Called by: pytest
Depends on: skusync/services/exchange_rate_service.py
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from skusync.errors import ExchangeRateUnavailable, ValidationError
from skusync.models import ExchangeRate
from skusync.services.exchange_rate_service import ExchangeRateProvider


def _add_rate(db, rate, source, valid_from, valid_until, base="KRW", target="USD"):
    row = ExchangeRate(
        base_currency=base,
        target_currency=target,
        rate=Decimal(rate),
        source=source,
        valid_from=valid_from,
        valid_until=valid_until,
        reason="test" if source == "manual" else None,
        operator_id="ops" if source == "manual" else None,
        created_at=valid_from,
    )
    db.add(row)
    db.commit()
    return row


# ── current_rate ─────────────────────────────────────────────────────


def test_no_rate_raises(rates):
    with pytest.raises(ExchangeRateUnavailable) as exc:
        rates.current_rate("KRW", "USD")
    assert exc.value.status_code == 503


def test_quoted_rate_returned(rates, quoted_rate):
    quoted_rate("0.00075")
    assert rates.current_rate("KRW", "USD").rate == Decimal("0.00075")


def test_manual_rate_beats_newer_quoted(rates, db_session):
    now = datetime.now(timezone.utc)
    _add_rate(db_session, "0.00080", "manual", now - timedelta(hours=2), now + timedelta(days=3))
    _add_rate(db_session, "0.00075", "quoted", now - timedelta(minutes=5), now + timedelta(hours=24))

    current = rates.current_rate("KRW", "USD")
    assert current.source == "manual"
    assert current.rate == Decimal("0.00080")


def test_expired_manual_falls_back_to_quoted(rates, db_session):
    now = datetime.now(timezone.utc)
    _add_rate(db_session, "0.00080", "manual", now - timedelta(days=8), now - timedelta(days=1))
    _add_rate(db_session, "0.00075", "quoted", now - timedelta(minutes=5), now + timedelta(hours=24))

    assert rates.current_rate("KRW", "USD").source == "quoted"


def test_expired_quoted_is_unavailable(rates, db_session):
    now = datetime.now(timezone.utc)
    _add_rate(db_session, "0.00075", "quoted", now - timedelta(hours=30), now - timedelta(hours=6))
    with pytest.raises(ExchangeRateUnavailable):
        rates.current_rate("KRW", "USD")


def test_other_pair_not_used(rates, quoted_rate):
    quoted_rate("1300", base="USD", target="KRW")
    with pytest.raises(ExchangeRateUnavailable):
        rates.current_rate("KRW", "USD")


def test_defaults_to_configured_pair(rates, quoted_rate):
    quoted_rate("0.00075")
    assert rates.current_rate().base_currency == "KRW"


# ── set_manual_rate ──────────────────────────────────────────────────


def test_manual_rate_recorded_with_validity(rates):
    record = rates.set_manual_rate(Decimal("0.00077"), reason="bank quote", operator_id="ops-1", valid_days=3)
    assert record.source == "manual"
    assert record.valid_until - record.valid_from == timedelta(days=3)
    assert rates.current_rate("KRW", "USD").rate == Decimal("0.00077")


def test_manual_rate_requires_reason(rates):
    with pytest.raises(ValidationError) as exc:
        rates.set_manual_rate("0.00077", reason="  ", operator_id="ops-1")
    assert exc.value.code == "REASON_REQUIRED"


def test_manual_rate_requires_operator(rates):
    with pytest.raises(ValidationError) as exc:
        rates.set_manual_rate("0.00077", reason="bank quote", operator_id="")
    assert exc.value.code == "OPERATOR_REQUIRED"


def test_manual_rate_validity_capped(rates):
    with pytest.raises(ValidationError):
        rates.set_manual_rate("0.00077", reason="bank quote", operator_id="ops", valid_days=8)


@pytest.mark.parametrize("bad", ["0", "-1", "abc"])
def test_manual_rate_must_be_positive_number(rates, bad):
    with pytest.raises(ValidationError):
        rates.set_manual_rate(bad, reason="bank quote", operator_id="ops")


def test_history_newest_first(rates, quoted_rate):
    quoted_rate("0.00075")
    rates.set_manual_rate("0.00077", reason="bank quote", operator_id="ops")
    history = rates.history("KRW", "USD")
    assert [h.source for h in history] == ["manual", "quoted"]


# ── refresh_quoted_rate ──────────────────────────────────────────────


def _provider(session_factory, handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExchangeRateProvider(session_factory, http=client)


@pytest.mark.asyncio
async def test_refresh_stores_quoted_rate(session_factory):
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, json={"result": "success", "rates": {"USD": 0.000731, "EUR": 0.00068}})

    provider = _provider(session_factory, handler)
    record = await provider.refresh_quoted_rate("KRW", "USD")

    assert seen[0].endswith("/KRW")
    assert record.source == "quoted"
    assert record.rate == Decimal("0.000731")
    assert record.valid_until - record.valid_from == timedelta(hours=24)
    assert provider.current_rate("KRW", "USD").rate == Decimal("0.000731")


@pytest.mark.asyncio
async def test_refresh_http_error_raises_and_stores_nothing(session_factory):
    provider = _provider(session_factory, lambda r: httpx.Response(500, text="down"))
    with pytest.raises(ExchangeRateUnavailable):
        await provider.refresh_quoted_rate("KRW", "USD")
    assert provider.history("KRW", "USD") == []


@pytest.mark.asyncio
async def test_refresh_missing_currency_raises(session_factory):
    provider = _provider(session_factory, lambda r: httpx.Response(200, json={"rates": {"EUR": 0.00068}}))
    with pytest.raises(ExchangeRateUnavailable):
        await provider.refresh_quoted_rate("KRW", "USD")


@pytest.mark.asyncio
async def test_refresh_network_error_raises(session_factory):
    def handler(request):
        raise httpx.ConnectError("no route", request=request)

    provider = _provider(session_factory, handler)
    with pytest.raises(ExchangeRateUnavailable):
        await provider.refresh_quoted_rate("KRW", "USD")
