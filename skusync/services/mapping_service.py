"""SKU mapping directory — which marketplace/storefront products a SKU maps to.

Usage:
    directory = MappingDirectory()
    mapping = directory.active_mapping("ABC-001")
    for m in directory.all_active():
        ...

Mappings are soft-deleted (active flag + deactivated_at). Sync status and
last-known platform state are written by the sync engine only, through
mark_sync_result() and record_last_known().
"""

import asyncio
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from loguru import logger
from sqlalchemy import func

from ..config import settings
from ..database import session_scope
from ..errors import MappingNotFound, PlatformError, PlatformNotFound, ValidationError
from ..models import SYNC_STATUSES, SkuMapping
from ..pricing import validate_margin

SKU_PATTERN = re.compile(r"^[A-Z0-9_-]{3,50}$")
PLATFORM_REF_FIELDS = {
    "marketplace": "marketplace_product_ref",
    "storefront": "variant_ref",
    "storefront_product": "storefront_product_ref",
    "storefront_inventory_item": "storefront_inventory_item_ref",
}


def normalize_sku(sku: str) -> str:
    """Trim, upper-case, and turn inner whitespace into dashes."""
    if not isinstance(sku, str):
        raise ValidationError("SKU must be a string", code="INVALID_SKU")
    return re.sub(r"\s+", "-", sku.strip().upper())


class MappingDirectory:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _session(self):
        return session_scope(self._session_factory)

    # ── Reads ────────────────────────────────────────────────────────

    def active_mapping(self, sku: str) -> SkuMapping:
        key = normalize_sku(sku)
        with self._session() as db:
            mapping = db.query(SkuMapping).filter(SkuMapping.sku == key, SkuMapping.active.is_(True)).first()
        if mapping is None:
            raise MappingNotFound(key)
        return mapping

    def all_active(self, skus: Optional[list[str]] = None) -> list[SkuMapping]:
        with self._session() as db:
            q = db.query(SkuMapping).filter(SkuMapping.active.is_(True))
            if skus is not None:
                keys = sorted({normalize_sku(s) for s in skus})
                if not keys:
                    return []
                q = q.filter(SkuMapping.sku.in_(keys))
            return q.order_by(SkuMapping.sku).all()

    def list_mappings(self, include_inactive: bool = False, status: Optional[str] = None) -> list[SkuMapping]:
        with self._session() as db:
            q = db.query(SkuMapping)
            if not include_inactive:
                q = q.filter(SkuMapping.active.is_(True))
            if status:
                q = q.filter(SkuMapping.sync_status == status)
            return q.order_by(SkuMapping.sku).all()

    def find_by_platform_ref(self, platform: str, ref: str) -> Optional[SkuMapping]:
        """Look up a mapping, active or not, by one of its platform references."""
        field = PLATFORM_REF_FIELDS.get(platform)
        if field is None:
            raise ValidationError(f"Unknown platform reference kind: {platform}")
        with self._session() as db:
            return (
                db.query(SkuMapping)
                .filter(getattr(SkuMapping, field) == str(ref))
                .order_by(SkuMapping.active.desc())
                .first()
            )

    def find_by_sku(self, sku: str) -> Optional[SkuMapping]:
        with self._session() as db:
            return db.query(SkuMapping).filter(SkuMapping.sku == normalize_sku(sku)).first()

    def status_counts(self) -> dict:
        with self._session() as db:
            rows = (
                db.query(SkuMapping.sync_status, func.count(SkuMapping.id))
                .filter(SkuMapping.active.is_(True))
                .group_by(SkuMapping.sync_status)
                .all()
            )
        counts = {s: 0 for s in SYNC_STATUSES}
        counts.update({status: n for status, n in rows})
        counts["total"] = sum(n for _, n in rows)
        return counts

    # ── Admin writes ─────────────────────────────────────────────────

    def create_mapping(
        self,
        sku: str,
        marketplace_product_ref: str,
        storefront_product_ref: str,
        variant_ref: str,
        product_name: Optional[str] = None,
        price_margin=None,
        storefront_inventory_item_ref: Optional[str] = None,
    ) -> SkuMapping:
        """Create a mapping, or reactivate and update a deactivated one."""
        key = normalize_sku(sku)
        if not SKU_PATTERN.match(key):
            raise ValidationError(
                "SKU must be 3-50 characters of letters, digits, dash or underscore",
                code="INVALID_SKU",
                details={"sku": key},
            )
        for name, value in (
            ("marketplace_product_ref", marketplace_product_ref),
            ("storefront_product_ref", storefront_product_ref),
            ("variant_ref", variant_ref),
        ):
            if not value or not str(value).strip():
                raise ValidationError(f"{name} is required", details={"field": name})
        margin = validate_margin(price_margin if price_margin is not None else settings.default_price_margin)

        with self._session() as db:
            mapping = db.query(SkuMapping).filter(SkuMapping.sku == key).first()
            if mapping is not None and mapping.active:
                raise ValidationError(
                    f"SKU {key} is already mapped", code="DUPLICATE_SKU", details={"sku": key}
                )
            if mapping is None:
                mapping = SkuMapping(sku=key)
                db.add(mapping)
            else:
                logger.info("Reactivating mapping", sku=key)
                mapping.active = True
                mapping.deactivated_at = None
                mapping.sync_error = None
            mapping.marketplace_product_ref = str(marketplace_product_ref).strip()
            mapping.storefront_product_ref = str(storefront_product_ref).strip()
            mapping.variant_ref = str(variant_ref).strip()
            mapping.storefront_inventory_item_ref = storefront_inventory_item_ref
            mapping.product_name = product_name
            mapping.price_margin = margin
            mapping.sync_status = "pending"
        logger.info("Mapping saved", sku=key)
        return mapping

    def update_margin(self, sku: str, price_margin) -> SkuMapping:
        margin = validate_margin(price_margin)
        key = normalize_sku(sku)
        with self._session() as db:
            mapping = db.query(SkuMapping).filter(SkuMapping.sku == key, SkuMapping.active.is_(True)).first()
            if mapping is None:
                raise MappingNotFound(key)
            mapping.price_margin = margin
        return mapping

    def deactivate(self, sku: str) -> SkuMapping:
        key = normalize_sku(sku)
        with self._session() as db:
            mapping = db.query(SkuMapping).filter(SkuMapping.sku == key, SkuMapping.active.is_(True)).first()
            if mapping is None:
                raise MappingNotFound(key)
            mapping.active = False
            mapping.deactivated_at = datetime.now(timezone.utc)
        logger.info("Mapping deactivated", sku=key)
        return mapping

    # ── Engine-only writes ───────────────────────────────────────────

    def mark_sync_result(self, sku: str, status: str, ts: datetime, error: Optional[str] = None) -> None:
        if status not in SYNC_STATUSES:
            raise ValidationError(f"Unknown sync status: {status}")
        key = normalize_sku(sku)
        with self._session() as db:
            mapping = db.query(SkuMapping).filter(SkuMapping.sku == key).first()
            if mapping is None:
                raise MappingNotFound(key)
            mapping.sync_status = status
            mapping.sync_error = error[:1000] if error else None
            if status == "synced":
                mapping.last_synced_at = ts

    def record_last_known(
        self,
        sku: str,
        ts: datetime,
        marketplace_qty: Optional[int] = None,
        storefront_qty: Optional[int] = None,
        storefront_committed: Optional[int] = None,
        marketplace_price: Optional[Decimal] = None,
        storefront_price: Optional[Decimal] = None,
    ) -> None:
        """Store the latest observed platform figures; None leaves a figure unchanged."""
        key = normalize_sku(sku)
        with self._session() as db:
            mapping = db.query(SkuMapping).filter(SkuMapping.sku == key).first()
            if mapping is None:
                raise MappingNotFound(key)
            if marketplace_qty is not None:
                mapping.last_marketplace_qty = marketplace_qty
            if storefront_qty is not None:
                mapping.last_storefront_qty = storefront_qty
            if storefront_committed is not None:
                mapping.last_storefront_committed = storefront_committed
            if marketplace_price is not None:
                mapping.last_marketplace_price = marketplace_price
            if storefront_price is not None:
                mapping.last_storefront_price = storefront_price
            mapping.last_known_at = ts

    # ── Validation ───────────────────────────────────────────────────

    async def validate_mapping(self, sku: str, marketplace, storefront) -> dict:
        """Check that both platform references resolve, without writing anything.

        Neither the platforms nor the mapping's sync status are touched; the
        result lists per-platform existence, current figures and problems.
        """
        mapping = self.active_mapping(sku)
        m_result, s_result = await asyncio.gather(
            marketplace.read_state(mapping.marketplace_product_ref),
            storefront.read_state(mapping.variant_ref),
            return_exceptions=True,
        )
        for r in (m_result, s_result):
            if isinstance(r, BaseException) and not isinstance(r, PlatformError):
                raise r

        errors, warnings = [], []
        sides = {}
        for name, ref, result in (
            ("marketplace", mapping.marketplace_product_ref, m_result),
            ("storefront", mapping.variant_ref, s_result),
        ):
            side = {"ref": ref, "exists": False, "quantity": None, "available": None, "price": None, "error": None}
            if isinstance(result, PlatformNotFound):
                side["error"] = f"{result.code}: {result.message}"
                errors.append(f"{name} product {ref} not found")
            elif isinstance(result, PlatformError):
                side["error"] = f"{result.code}: {result.message}"
                errors.append(f"{name} product {ref} could not be read")
            else:
                inv = result.inventory
                side.update(
                    exists=True,
                    quantity=inv.quantity,
                    available=inv.available,
                    price=str(result.price) if result.price is not None else None,
                )
                if result.price is None:
                    warnings.append(f"{name} product {ref} has no price")
            sides[name] = side

        valid = not errors
        logger.info("Mapping validated", sku=mapping.sku, valid=valid, errors=errors)
        return {
            "sku": mapping.sku,
            "valid": valid,
            "checkedAt": datetime.now(timezone.utc).isoformat(),
            "marketplace": sides["marketplace"],
            "storefront": sides["storefront"],
            "errors": errors,
            "warnings": warnings,
        }
