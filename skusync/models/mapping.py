"""SKU mapping — store SKU to marketplace/storefront identifiers."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, Column, Index, Integer, Numeric, String, Text

from ..database import UTCDateTime
from .base import Base

SYNC_STATUSES = ("synced", "pending", "error")


class SkuMapping(Base):
    """One row per SKU. Deactivated rows are kept so job history stays meaningful."""

    __tablename__ = "sku_mappings"
    id = Column(Integer, primary_key=True)
    sku = Column(String(64), nullable=False, unique=True)
    product_name = Column(String(255))
    marketplace_product_ref = Column(String(100), nullable=False)
    storefront_product_ref = Column(String(100), nullable=False)
    variant_ref = Column(String(100), nullable=False)
    storefront_inventory_item_ref = Column(String(100))
    price_margin = Column(Numeric(6, 4), nullable=False, default=Decimal("1.15"))

    active = Column(Boolean, nullable=False, default=True)
    deactivated_at = Column(UTCDateTime)

    # Written by the sync engine only
    sync_status = Column(String(20), nullable=False, default="pending")
    sync_error = Column(Text)
    last_synced_at = Column(UTCDateTime)
    last_marketplace_qty = Column(Integer)
    last_storefront_qty = Column(Integer)
    last_storefront_committed = Column(Integer)
    last_marketplace_price = Column(Numeric(14, 2))
    last_storefront_price = Column(Numeric(14, 2))
    last_known_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_mapping_active", "active"),
        Index("ix_mapping_marketplace_ref", "marketplace_product_ref"),
        Index("ix_mapping_variant_ref", "variant_ref"),
        Index("ix_mapping_inventory_item_ref", "storefront_inventory_item_ref"),
    )

    def to_dict(self) -> dict:
        return {
            "sku": self.sku,
            "productName": self.product_name,
            "marketplaceProductRef": self.marketplace_product_ref,
            "storefrontProductRef": self.storefront_product_ref,
            "variantRef": self.variant_ref,
            "storefrontInventoryItemRef": self.storefront_inventory_item_ref,
            "priceMargin": str(self.price_margin) if self.price_margin is not None else None,
            "active": self.active,
            "deactivatedAt": self.deactivated_at.isoformat() if self.deactivated_at else None,
            "syncStatus": self.sync_status,
            "syncError": self.sync_error,
            "lastSyncedAt": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }
