"""
test_mapping_service.py — Tests for skusync/services/mapping_service.py

Covers:
- SKU normalization and validation
- create / duplicate / reactivate / deactivate
- margin validation (rejected, never clamped)
- platform-reference lookup for webhook routing
- engine-only writes: sync result and last-known figures
- read-only validation of both platform references

Called by: pytest
Depends on: conftest.py (session_factory, mappings, make_mapping)
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from skusync.errors import MappingNotFound, TransientNetworkError, ValidationError
from skusync.services.mapping_service import normalize_sku


def test_normalize_sku():
    assert normalize_sku("  abc 001 ") == "ABC-001"
    assert normalize_sku("sku_7") == "SKU_7"


def test_normalize_sku_rejects_non_string():
    with pytest.raises(ValidationError):
        normalize_sku(123)


# ── Create / lookup ──────────────────────────────────────────────────


def test_create_and_lookup(make_mapping, mappings):
    make_mapping("ABC-001")
    m = mappings.active_mapping("abc-001")
    assert m.sku == "ABC-001"
    assert m.marketplace_product_ref == "N-ABC-001"
    assert m.variant_ref == "V-ABC-001"
    assert m.price_margin == Decimal("1.15")
    assert m.sync_status == "pending"
    assert m.active is True


def test_create_uses_default_margin(mappings):
    m = mappings.create_mapping("DEF-001", "1", "2", "3")
    assert m.price_margin == Decimal("1.15")


@pytest.mark.parametrize("sku", ["AB", "A" * 51, "BAD/SKU", "ÜML"])
def test_create_rejects_invalid_sku(mappings, sku):
    with pytest.raises(ValidationError) as exc:
        mappings.create_mapping(sku, "1", "2", "3")
    assert exc.value.code == "INVALID_SKU"


def test_create_requires_refs(mappings):
    with pytest.raises(ValidationError):
        mappings.create_mapping("ABC-001", "1", " ", "3")


@pytest.mark.parametrize("margin", ["0.99", "5.01", "-1"])
def test_create_rejects_out_of_range_margin(mappings, margin):
    with pytest.raises(ValidationError) as exc:
        mappings.create_mapping("ABC-001", "1", "2", "3", price_margin=Decimal(margin))
    assert exc.value.code == "INVALID_MARGIN"
    assert mappings.find_by_sku("ABC-001") is None


def test_duplicate_active_sku_rejected(make_mapping):
    make_mapping("ABC-001")
    with pytest.raises(ValidationError) as exc:
        make_mapping("abc-001")
    assert exc.value.code == "DUPLICATE_SKU"


def test_missing_mapping_raises(mappings):
    with pytest.raises(MappingNotFound) as exc:
        mappings.active_mapping("NOPE-1")
    assert exc.value.status_code == 404


def test_all_active_filters_and_orders(make_mapping, mappings):
    make_mapping("CCC-1")
    make_mapping("AAA-1")
    make_mapping("BBB-1")
    mappings.deactivate("BBB-1")

    assert [m.sku for m in mappings.all_active()] == ["AAA-1", "CCC-1"]
    assert [m.sku for m in mappings.all_active(["ccc-1", "BBB-1"])] == ["CCC-1"]
    assert mappings.all_active([]) == []


def test_list_mappings_include_inactive(make_mapping, mappings):
    make_mapping("AAA-1")
    make_mapping("BBB-1")
    mappings.deactivate("AAA-1")
    assert len(mappings.list_mappings()) == 1
    assert len(mappings.list_mappings(include_inactive=True)) == 2


# ── Deactivate / reactivate ──────────────────────────────────────────


def test_deactivate_keeps_row(make_mapping, mappings):
    make_mapping("ABC-001")
    mappings.deactivate("ABC-001")

    with pytest.raises(MappingNotFound):
        mappings.active_mapping("ABC-001")
    row = mappings.find_by_sku("ABC-001")
    assert row.active is False
    assert row.deactivated_at is not None


def test_deactivate_missing_raises(mappings):
    with pytest.raises(MappingNotFound):
        mappings.deactivate("NOPE-1")


def test_create_reactivates_deactivated(make_mapping, mappings):
    make_mapping("ABC-001")
    mappings.mark_sync_result("ABC-001", "error", datetime.now(timezone.utc), "boom")
    mappings.deactivate("ABC-001")

    m = mappings.create_mapping("ABC-001", "N-NEW", "P-NEW", "V-NEW", price_margin=Decimal("1.3"))

    assert m.active is True
    assert m.deactivated_at is None
    assert m.sync_error is None
    assert m.marketplace_product_ref == "N-NEW"
    assert len(mappings.list_mappings(include_inactive=True)) == 1


# ── Margin ───────────────────────────────────────────────────────────


def test_update_margin(make_mapping, mappings):
    make_mapping("ABC-001")
    mappings.update_margin("ABC-001", "2.5")
    assert mappings.active_mapping("ABC-001").price_margin == Decimal("2.5")


def test_update_margin_out_of_range_not_clamped(make_mapping, mappings):
    make_mapping("ABC-001")
    with pytest.raises(ValidationError):
        mappings.update_margin("ABC-001", "6")
    assert mappings.active_mapping("ABC-001").price_margin == Decimal("1.15")


# ── Platform references ──────────────────────────────────────────────


def test_find_by_platform_ref(make_mapping, mappings):
    make_mapping("ABC-001", inventory_item_ref="INV-1")
    assert mappings.find_by_platform_ref("marketplace", "N-ABC-001").sku == "ABC-001"
    assert mappings.find_by_platform_ref("storefront", "V-ABC-001").sku == "ABC-001"
    assert mappings.find_by_platform_ref("storefront_inventory_item", "INV-1").sku == "ABC-001"
    assert mappings.find_by_platform_ref("marketplace", "N-OTHER") is None


def test_find_by_platform_ref_returns_inactive(make_mapping, mappings):
    make_mapping("ABC-001")
    mappings.deactivate("ABC-001")
    found = mappings.find_by_platform_ref("marketplace", "N-ABC-001")
    assert found is not None and found.active is False


def test_find_by_platform_ref_unknown_kind(mappings):
    with pytest.raises(ValidationError):
        mappings.find_by_platform_ref("amazon", "1")


# ── Engine writes ────────────────────────────────────────────────────


def test_mark_sync_result_and_counts(make_mapping, mappings):
    make_mapping("AAA-1")
    make_mapping("BBB-1")
    make_mapping("CCC-1")
    now = datetime.now(timezone.utc)
    mappings.mark_sync_result("AAA-1", "synced", now)
    mappings.mark_sync_result("BBB-1", "error", now, "x" * 2000)

    a = mappings.active_mapping("AAA-1")
    b = mappings.active_mapping("BBB-1")
    assert a.last_synced_at is not None
    assert b.last_synced_at is None
    assert len(b.sync_error) == 1000
    assert mappings.status_counts() == {"synced": 1, "pending": 1, "error": 1, "total": 3}


def test_mark_sync_result_rejects_unknown_status(make_mapping, mappings):
    make_mapping("AAA-1")
    with pytest.raises(ValidationError):
        mappings.mark_sync_result("AAA-1", "weird", datetime.now(timezone.utc))


def test_record_last_known_leaves_missing_figures(make_mapping, mappings):
    make_mapping("AAA-1")
    now = datetime.now(timezone.utc)
    mappings.record_last_known("AAA-1", now, marketplace_qty=10, storefront_qty=12, storefront_committed=2)
    mappings.record_last_known("AAA-1", now, marketplace_qty=9)

    m = mappings.active_mapping("AAA-1")
    assert m.last_marketplace_qty == 9
    assert m.last_storefront_qty == 12
    assert m.last_storefront_committed == 2
    assert m.last_known_at is not None


# ── Validation ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_validate_mapping_reports_current_figures(make_mapping, mappings, marketplace, storefront):
    make_mapping("AAA-1")
    marketplace.add("N-AAA-1", 40, price=12000)
    storefront.add("V-AAA-1", 35, price="10.35", committed=5)

    result = await mappings.validate_mapping("AAA-1", marketplace, storefront)

    assert result["valid"] is True
    assert result["errors"] == []
    assert result["marketplace"]["exists"] is True
    assert result["marketplace"]["quantity"] == 40
    assert result["marketplace"]["price"] == "12000"
    assert result["storefront"]["available"] == 30
    assert result["storefront"]["price"] == "10.35"
    assert marketplace.writes == [] and storefront.writes == []
    assert mappings.active_mapping("AAA-1").sync_status == "pending"


@pytest.mark.asyncio
async def test_validate_mapping_flags_missing_product(make_mapping, mappings, marketplace, storefront):
    make_mapping("AAA-1")
    storefront.add("V-AAA-1", 10)

    result = await mappings.validate_mapping("AAA-1", marketplace, storefront)

    assert result["valid"] is False
    assert result["marketplace"]["exists"] is False
    assert result["marketplace"]["error"].startswith("PLATFORM_NOT_FOUND")
    assert result["storefront"]["exists"] is True
    assert result["warnings"] == ["storefront product V-AAA-1 has no price"]
    assert storefront.writes == []
    m = mappings.active_mapping("AAA-1")
    assert m.sync_status == "pending"
    assert m.last_known_at is None


@pytest.mark.asyncio
async def test_validate_mapping_unreadable_platform(make_mapping, mappings, marketplace, storefront):
    make_mapping("AAA-1")
    marketplace.add("N-AAA-1", 10, price=1000)
    storefront.read_errors["V-AAA-1"] = TransientNetworkError("storefront", "timeout")

    result = await mappings.validate_mapping("AAA-1", marketplace, storefront)

    assert result["valid"] is False
    assert result["errors"] == ["storefront product V-AAA-1 could not be read"]


@pytest.mark.asyncio
async def test_validate_unknown_mapping_raises(mappings, marketplace, storefront):
    with pytest.raises(MappingNotFound):
        await mappings.validate_mapping("NOPE-1", marketplace, storefront)
