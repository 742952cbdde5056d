"""
schemas/mappings.py — Pydantic models for SKU mapping endpoints

Business Rules:
- sku and all three platform references are required
- price_margin, when given, must lie in [1.0, 5.0]

Called by: routers/mappings.py
Depends on: pydantic
"""

from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field, field_validator


class MappingCreate(BaseModel):
    sku: str = Field(..., min_length=1, max_length=64)
    marketplace_product_ref: str = Field(..., min_length=1, max_length=100)
    storefront_product_ref: str = Field(..., min_length=1, max_length=100)
    variant_ref: str = Field(..., min_length=1, max_length=100)
    storefront_inventory_item_ref: str | None = None
    product_name: str | None = Field(default=None, max_length=255)
    price_margin: Decimal | None = None

    @field_validator("sku", "marketplace_product_ref", "storefront_product_ref", "variant_ref")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Field must not be blank")
        return v


class MarginUpdate(BaseModel):
    price_margin: Decimal
