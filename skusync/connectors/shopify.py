"""Shopify Admin GraphQL connector — storefront side.

Auth: either a static admin access token (custom app, never expires) or a
client-credentials token from /admin/oauth/access_token that expires and is
refreshed through the TokenCache.

Inventory is read per location as the named quantities available /
committed / on_hand and written with inventorySetQuantities("available").
Prices are written with productVariantsBulkUpdate, which needs the parent
product id; the variant → (product, inventory item) resolution is cached.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx
from loguru import logger

from ..config import Settings
from ..errors import (
    PlatformAuthError,
    PlatformConflict,
    PlatformNotFound,
    PlatformResponseError,
    RateLimitExceeded,
)
from .auth import AccessToken, TokenCache
from .base import (
    STOREFRONT,
    InventorySnapshot,
    PlatformClient,
    PlatformState,
    RetryPolicy,
    as_datetime,
    as_decimal,
    as_int,
)
from .rate_limit import TokenBucket

VARIANT_STATE_QUERY = """
query VariantState($id: ID!, $locationId: ID!) {
  productVariant(id: $id) {
    id
    price
    product { id }
    inventoryItem {
      id
      inventoryLevel(locationId: $locationId) {
        updatedAt
        quantities(names: ["available", "committed", "on_hand"]) { name quantity }
      }
    }
  }
}"""

SET_QUANTITIES_MUTATION = """
mutation SetAvailable($input: InventorySetQuantitiesInput!) {
  inventorySetQuantities(input: $input) {
    userErrors { field message code }
  }
}"""

UPDATE_PRICE_MUTATION = """
mutation UpdatePrice($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    userErrors { field message code }
  }
}"""


def to_gid(kind: str, ref: str) -> str:
    """Accept numeric ids or full GIDs."""
    ref = str(ref)
    if ref.startswith("gid://"):
        return ref
    return f"gid://shopify/{kind}/{ref}"


class ShopifyClient(PlatformClient):
    platform = "shopify"
    role = STOREFRONT

    def __init__(
        self,
        shop_domain: str,
        location_id: str,
        access_token: str = "",
        client_id: str = "",
        client_secret: str = "",
        api_version: str = "2024-10",
        bucket: Optional[TokenBucket] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
        token_refresh_margin: float = 60.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            bucket=bucket or TokenBucket(self.platform, capacity=40, refill_per_second=2.0),
            retry=retry,
            timeout=timeout,
            http=http,
        )
        self.shop_domain = shop_domain
        self.location_gid = to_gid("Location", location_id) if location_id else ""
        self.static_token = access_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_version = api_version
        self.tokens = TokenCache(self.platform, self._fetch_token, refresh_margin=token_refresh_margin)
        self._variant_refs: dict[str, tuple[str, str]] = {}

    @classmethod
    def from_settings(cls, settings: Settings, http: Optional[httpx.AsyncClient] = None) -> "ShopifyClient":
        return cls(
            shop_domain=settings.shopify_shop_domain,
            location_id=settings.shopify_location_id,
            access_token=settings.shopify_access_token,
            client_id=settings.shopify_client_id,
            client_secret=settings.shopify_client_secret,
            api_version=settings.shopify_api_version,
            bucket=TokenBucket(
                cls.platform,
                capacity=settings.shopify_rate_burst,
                refill_per_second=settings.shopify_rate_per_second,
                max_wait=settings.rate_limit_max_wait_seconds,
            ),
            retry=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay_seconds,
                max_delay=settings.retry_max_delay_seconds,
            ),
            timeout=settings.platform_call_timeout_seconds,
            token_refresh_margin=settings.token_refresh_margin_seconds,
            http=http,
        )

    @property
    def graphql_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"

    # ── Auth ─────────────────────────────────────────────────────────

    def _auth_headers(self, token: Optional[str]) -> dict:
        return {"X-Shopify-Access-Token": token} if token else {}

    async def _fetch_token(self) -> AccessToken:
        if self.static_token:
            return AccessToken(value=self.static_token, expires_in=None)
        if not self.client_id or not self.client_secret:
            raise PlatformAuthError(self.platform, "no access token or client credentials configured")
        await self.bucket.acquire()
        resp = await self._transport(
            "POST",
            f"https://{self.shop_domain}/admin/oauth/access_token",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            },
        )
        if resp.status_code != 200:
            raise PlatformAuthError(
                self.platform, f"token request failed: {resp.status_code} {resp.text[:200]}", resp.status_code
            )
        data = self._json(resp, "token response")
        if not data.get("access_token"):
            raise PlatformAuthError(self.platform, "token response has no access_token", resp.status_code)
        expires_in = as_decimal(data.get("expires_in"))
        return AccessToken(value=str(data["access_token"]), expires_in=float(expires_in) if expires_in else None)

    # ── GraphQL ──────────────────────────────────────────────────────

    def _raise_for_status(self, resp: httpx.Response) -> None:
        super()._raise_for_status(resp)
        # Throttling arrives as HTTP 200 with a THROTTLED error; raising here lets _request retry it
        if not resp.headers.get("content-type", "").startswith("application/json"):
            return
        try:
            errors = (resp.json() or {}).get("errors")
        except ValueError:
            return
        if isinstance(errors, list) and any(
            isinstance(e, dict) and (e.get("extensions") or {}).get("code") == "THROTTLED" for e in errors
        ):
            raise RateLimitExceeded(self.platform, "GraphQL cost limit throttled")

    async def _graphql(self, query: str, variables: dict, deadline: Optional[float]) -> dict:
        resp = await self._request(
            "POST",
            self.graphql_url,
            deadline=deadline,
            json={"query": query, "variables": variables},
        )
        payload = self._json(resp, "GraphQL response")
        errors = payload.get("errors") or []
        if errors:
            if not isinstance(errors, list):
                errors = [errors]
            entries = [e if isinstance(e, dict) else {"message": str(e)} for e in errors]
            codes = {e["extensions"].get("code") for e in entries if isinstance(e.get("extensions"), dict)}
            message = str(entries[0].get("message") or "GraphQL error")
            if "THROTTLED" in codes:
                raise RateLimitExceeded(self.platform, message)
            if "ACCESS_DENIED" in codes:
                raise PlatformAuthError(self.platform, message)
            raise PlatformConflict(self.platform, message)
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise PlatformResponseError(self.platform, "GraphQL data is not an object", resp.status_code)
        return data

    @staticmethod
    def _raise_user_errors(platform: str, result: Optional[dict]) -> None:
        user_errors = (result.get("userErrors") if isinstance(result, dict) else None) or []
        if not isinstance(user_errors, list):
            user_errors = [user_errors]
        if user_errors:
            msg = "; ".join(
                f"{e.get('field')}: {e.get('message')}" if isinstance(e, dict) else str(e) for e in user_errors
            )
            raise PlatformConflict(platform, msg)

    # ── Domain operations ────────────────────────────────────────────

    async def read_state(self, ref: str, deadline: Optional[float] = None) -> PlatformState:
        data = await self._graphql(
            VARIANT_STATE_QUERY,
            {"id": to_gid("ProductVariant", ref), "locationId": self.location_gid},
            deadline,
        )
        variant = data.get("productVariant")
        if not isinstance(variant, dict) or not variant:
            raise PlatformNotFound(self.platform, f"variant {ref} not found")
        item = variant.get("inventoryItem")
        product = variant.get("product")
        if isinstance(item, dict) and isinstance(product, dict) and item.get("id") and product.get("id"):
            self._variant_refs[ref] = (product["id"], item["id"])
        return self._normalize(variant)

    def _normalize(self, variant: dict) -> PlatformState:
        item = variant.get("inventoryItem")
        level = item.get("inventoryLevel") if isinstance(item, dict) else None
        if level is None:
            raise PlatformNotFound(self.platform, f"variant {variant.get('id')} not stocked at location")
        if not isinstance(level, dict):
            raise PlatformResponseError(self.platform, f"inventory level for {variant.get('id')} is malformed")
        quantities = {
            q.get("name"): as_int(q.get("quantity")) for q in level.get("quantities") or [] if isinstance(q, dict)
        }
        committed = quantities.get("committed", 0)
        on_hand = quantities.get("on_hand")
        if on_hand is None:
            on_hand = quantities.get("available", 0) + committed
        return PlatformState(
            inventory=InventorySnapshot(
                platform=self.role,
                quantity=on_hand,
                committed=committed,
                as_of=as_datetime(level.get("updatedAt")) or datetime.now(timezone.utc),
            ),
            price=as_decimal(variant.get("price")),
        )

    async def _resolve(self, ref: str, deadline: Optional[float]) -> tuple[str, str]:
        cached = self._variant_refs.get(ref)
        if cached:
            return cached
        await self.read_state(ref, deadline)
        if ref not in self._variant_refs:
            raise PlatformNotFound(self.platform, f"variant {ref} has no product or inventory item")
        return self._variant_refs[ref]

    async def write_inventory(self, ref: str, quantity: int, deadline: Optional[float] = None) -> None:
        """Set the *available* quantity at the configured location."""
        _, inventory_item = await self._resolve(ref, deadline)
        data = await self._graphql(
            SET_QUANTITIES_MUTATION,
            {
                "input": {
                    "name": "available",
                    "reason": "correction",
                    "ignoreCompareQuantity": True,
                    "quantities": [
                        {
                            "inventoryItemId": inventory_item,
                            "locationId": self.location_gid,
                            "quantity": int(quantity),
                        }
                    ],
                }
            },
            deadline,
        )
        self._raise_user_errors(self.platform, data.get("inventorySetQuantities"))
        logger.info("Shopify inventory updated", ref=ref, available=quantity)

    async def write_price(self, ref: str, amount: Decimal, deadline: Optional[float] = None) -> None:
        product_id, _ = await self._resolve(ref, deadline)
        data = await self._graphql(
            UPDATE_PRICE_MUTATION,
            {
                "productId": product_id,
                "variants": [{"id": to_gid("ProductVariant", ref), "price": str(amount)}],
            },
            deadline,
        )
        self._raise_user_errors(self.platform, data.get("productVariantsBulkUpdate"))
        logger.info("Shopify price updated", ref=ref, price=str(amount))
