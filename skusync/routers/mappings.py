"""Mappings API — list, create, update margin, deactivate, validate."""

from fastapi import APIRouter, Depends

from ..connectors.base import PlatformClient
from ..dependencies import get_mappings, get_marketplace, get_storefront
from ..schemas.mappings import MappingCreate, MarginUpdate
from ..services.mapping_service import MappingDirectory

router = APIRouter(prefix="/api/mappings", tags=["mappings"])


@router.get("")
async def api_list_mappings(
    include_inactive: bool = False,
    status: str | None = None,
    mappings: MappingDirectory = Depends(get_mappings),
):
    items = mappings.list_mappings(include_inactive=include_inactive, status=status)
    return {"items": [m.to_dict() for m in items], "counts": mappings.status_counts()}


@router.post("", status_code=201)
async def api_create_mapping(body: MappingCreate, mappings: MappingDirectory = Depends(get_mappings)):
    mapping = mappings.create_mapping(
        sku=body.sku,
        marketplace_product_ref=body.marketplace_product_ref,
        storefront_product_ref=body.storefront_product_ref,
        variant_ref=body.variant_ref,
        product_name=body.product_name,
        price_margin=body.price_margin,
        storefront_inventory_item_ref=body.storefront_inventory_item_ref,
    )
    return mapping.to_dict()


@router.get("/{sku}")
async def api_get_mapping(sku: str, mappings: MappingDirectory = Depends(get_mappings)):
    return mappings.active_mapping(sku).to_dict()


@router.patch("/{sku}/margin")
async def api_update_margin(sku: str, body: MarginUpdate, mappings: MappingDirectory = Depends(get_mappings)):
    return mappings.update_margin(sku, body.price_margin).to_dict()


@router.delete("/{sku}")
async def api_deactivate_mapping(sku: str, mappings: MappingDirectory = Depends(get_mappings)):
    return mappings.deactivate(sku).to_dict()


@router.post("/{sku}/validate")
async def api_validate_mapping(
    sku: str,
    mappings: MappingDirectory = Depends(get_mappings),
    marketplace: PlatformClient = Depends(get_marketplace),
    storefront: PlatformClient = Depends(get_storefront),
):
    return await mappings.validate_mapping(sku, marketplace, storefront)
