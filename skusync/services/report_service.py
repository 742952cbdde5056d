"""Discrepancy report — what a sync pass *would* change, without writing.

Reads both platforms for every active mapping (bounded concurrency) and
lists the items whose inventory or storefront price differs from target.
"""

import asyncio
from datetime import datetime, timezone

from loguru import logger

from ..config import settings as default_settings
from ..errors import ExchangeRateUnavailable, PlatformError, ValidationError
from ..pricing import calculate_target_price
from .sync_engine import target_inventory


class ReportService:
    def __init__(self, marketplace, storefront, mappings, rates, config=None):
        self.marketplace = marketplace
        self.storefront = storefront
        self.mappings = mappings
        self.rates = rates
        self.settings = config or default_settings

    async def discrepancy_report(self) -> dict:
        mappings = self.mappings.all_active()
        try:
            rate = self.rates.current_rate().rate
            rate_note = None
        except ExchangeRateUnavailable as e:
            rate, rate_note = None, e.message

        sem = asyncio.Semaphore(self.settings.sync_worker_count)

        async def check(mapping):
            async with sem:
                return await self._check(mapping, rate)

        rows = await asyncio.gather(*(check(m) for m in mappings))
        items = [r for r in rows if r["error"] or r["inventoryMismatch"] or r["priceMismatch"]]
        summary = {
            "checked": len(rows),
            "inventoryMismatches": sum(1 for r in rows if r["inventoryMismatch"]),
            "priceMismatches": sum(1 for r in rows if r["priceMismatch"]),
            "readErrors": sum(1 for r in rows if r["error"]),
        }
        logger.info("Discrepancy report built", **summary)
        return {
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "exchangeRate": str(rate) if rate is not None else None,
            "exchangeRateNote": rate_note,
            "summary": summary,
            "items": items,
        }

    async def _check(self, mapping, rate) -> dict:
        row = {
            "sku": mapping.sku,
            "marketplaceQty": None,
            "storefrontAvailable": None,
            "targetQty": None,
            "marketplacePrice": None,
            "storefrontPrice": None,
            "targetPrice": None,
            "inventoryMismatch": False,
            "priceMismatch": False,
            "error": None,
        }
        try:
            m_state = await self.marketplace.read_state(mapping.marketplace_product_ref)
            s_state = await self.storefront.read_state(mapping.variant_ref)
        except PlatformError as e:
            row["error"] = f"{e.code}: {e.message}"
            return row

        target = target_inventory(
            m_state.inventory,
            s_state.inventory,
            datetime.now(timezone.utc),
            self.settings.inventory_stale_after_seconds,
        )
        tolerance = self.settings.inventory_tolerance
        row.update(
            marketplaceQty=m_state.inventory.quantity,
            storefrontAvailable=s_state.inventory.available,
            targetQty=target,
            inventoryMismatch=(
                abs(m_state.inventory.quantity - target) > tolerance
                or abs(s_state.inventory.available - target) > tolerance
            ),
            marketplacePrice=str(m_state.price) if m_state.price is not None else None,
            storefrontPrice=str(s_state.price) if s_state.price is not None else None,
        )
        if rate is not None and m_state.price is not None:
            try:
                target_price = calculate_target_price(m_state.price, rate, mapping.price_margin)
            except ValidationError as e:
                row["error"] = f"{e.code}: {e.message}"
                return row
            row["targetPrice"] = str(target_price)
            row["priceMismatch"] = (
                s_state.price is None or abs(s_state.price - target_price) > self.settings.price_tolerance
            )
        return row
