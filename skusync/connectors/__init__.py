"""Platform connectors — marketplace (Naver) and storefront (Shopify)."""

from .base import (  # noqa: F401
    MARKETPLACE,
    STOREFRONT,
    InventorySnapshot,
    PlatformClient,
    PlatformState,
    RetryPolicy,
)
from .naver import NaverClient  # noqa: F401
from .shopify import ShopifyClient  # noqa: F401
