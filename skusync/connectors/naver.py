"""Naver Commerce API connector — marketplace side.

Auth is OAuth2 client credentials with a bcrypt-derived signature:
  client_secret_sign = base64(bcrypt(f"{client_id}_{timestamp_ms}", client_secret))

Mappings store the *channel* product number. Reads and writes go through
the *origin* product resource, so the channel → origin resolution is done
once via product search and cached; a 404 on a cached origin number means
the reference went stale and it is resolved again.

Writes are read-modify-write: the origin-product PUT rejects bodies missing
name, salePrice, images, statusType or detailAttribute.
"""

import base64
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import bcrypt
import httpx
from loguru import logger

from ..config import Settings
from ..errors import PlatformAuthError, PlatformNotFound
from .auth import AccessToken, TokenCache
from .base import (
    MARKETPLACE,
    InventorySnapshot,
    PlatformClient,
    PlatformState,
    RetryPolicy,
    as_decimal,
    as_int,
)
from .rate_limit import TokenBucket

# Fields the origin-product PUT requires to be echoed back
_REQUIRED_FIELDS = ("name", "salePrice", "images", "statusType", "detailAttribute")


def sign_client_secret(client_id: str, client_secret: str, timestamp_ms: int) -> str:
    password = f"{client_id}_{timestamp_ms}".encode()
    hashed = bcrypt.hashpw(password, client_secret.encode())
    return base64.b64encode(hashed).decode()


class NaverClient(PlatformClient):
    platform = "naver"
    role = MARKETPLACE

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        api_base: str = "https://api.commerce.naver.com",
        bucket: Optional[TokenBucket] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
        token_refresh_margin: float = 60.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(
            bucket=bucket or TokenBucket(self.platform, capacity=2, refill_per_second=2.0),
            retry=retry,
            timeout=timeout,
            http=http,
        )
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base = api_base.rstrip("/")
        self.tokens = TokenCache(self.platform, self._fetch_token, refresh_margin=token_refresh_margin)
        self._origin_refs: dict[str, str] = {}

    @classmethod
    def from_settings(cls, settings: Settings, http: Optional[httpx.AsyncClient] = None) -> "NaverClient":
        return cls(
            client_id=settings.naver_client_id,
            client_secret=settings.naver_client_secret,
            api_base=settings.naver_api_base,
            bucket=TokenBucket(
                cls.platform,
                capacity=settings.naver_rate_burst,
                refill_per_second=settings.naver_rate_per_second,
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

    # ── Auth ─────────────────────────────────────────────────────────

    def _auth_headers(self, token: Optional[str]) -> dict:
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _fetch_token(self) -> AccessToken:
        if not self.client_id or not self.client_secret:
            raise PlatformAuthError(self.platform, "client id/secret not configured")
        timestamp = int(time.time() * 1000)
        try:
            signature = sign_client_secret(self.client_id, self.client_secret, timestamp)
        except ValueError as e:
            raise PlatformAuthError(self.platform, f"cannot sign client secret: {e}") from e

        await self.bucket.acquire()
        resp = await self._transport(
            "POST",
            f"{self.api_base}/external/v1/oauth2/token",
            data={
                "client_id": self.client_id,
                "timestamp": str(timestamp),
                "client_secret_sign": signature,
                "grant_type": "client_credentials",
                "type": "SELF",
            },
        )
        if resp.status_code != 200:
            raise PlatformAuthError(
                self.platform, f"token request failed: {resp.status_code} {resp.text[:200]}", resp.status_code
            )
        data = self._json(resp, "token response")
        if not data.get("access_token"):
            raise PlatformAuthError(self.platform, "token response has no access_token", resp.status_code)
        return AccessToken(value=str(data["access_token"]), expires_in=as_int(data.get("expires_in"), 10800))

    # ── Channel → origin resolution ──────────────────────────────────

    async def resolve_origin_ref(self, channel_ref: str, deadline: Optional[float] = None) -> str:
        cached = self._origin_refs.get(channel_ref)
        if cached:
            return cached
        resp = await self._request(
            "POST",
            f"{self.api_base}/external/v1/products/search",
            deadline=deadline,
            json={"channelProductNos": [as_int(channel_ref)], "page": 1, "size": 1},
        )
        contents = self._json(resp, "product search").get("contents") or []
        first = contents[0] if isinstance(contents, list) and contents else None
        if not isinstance(first, dict) or not first.get("originProductNo"):
            raise PlatformNotFound(self.platform, f"channel product {channel_ref} not found")
        origin = str(first["originProductNo"])
        self._origin_refs[channel_ref] = origin
        logger.debug("Resolved Naver origin product", channel=channel_ref, origin=origin)
        return origin

    async def _get_origin(self, channel_ref: str, deadline: Optional[float]) -> tuple[str, dict]:
        """Fetch the raw origin product, re-resolving once on a stale reference."""
        was_cached = channel_ref in self._origin_refs
        origin = await self.resolve_origin_ref(channel_ref, deadline)
        try:
            return origin, await self._fetch_origin(origin, deadline)
        except PlatformNotFound:
            if not was_cached:
                raise
            logger.info("Stale Naver origin reference, resolving again", channel=channel_ref)
            self._origin_refs.pop(channel_ref, None)
            origin = await self.resolve_origin_ref(channel_ref, deadline)
            return origin, await self._fetch_origin(origin, deadline)

    async def _fetch_origin(self, origin: str, deadline: Optional[float]) -> dict:
        resp = await self._request(
            "GET",
            f"{self.api_base}/external/v2/products/origin-products/{origin}",
            deadline=deadline,
        )
        product = self._json(resp, "origin product").get("originProduct")
        if not isinstance(product, dict) or not product:
            raise PlatformNotFound(self.platform, f"origin product {origin} has no body")
        return product

    # ── Domain operations ────────────────────────────────────────────

    async def read_state(self, ref: str, deadline: Optional[float] = None) -> PlatformState:
        _, product = await self._get_origin(ref, deadline)
        return self._normalize(product)

    def _normalize(self, product: dict) -> PlatformState:
        return PlatformState(
            inventory=InventorySnapshot(
                platform=self.role,
                quantity=as_int(product.get("stockQuantity")),
                committed=0,
                as_of=datetime.now(timezone.utc),
            ),
            price=as_decimal(product.get("salePrice")),
        )

    async def write_inventory(self, ref: str, quantity: int, deadline: Optional[float] = None) -> None:
        origin, product = await self._get_origin(ref, deadline)
        body = self._update_body(product, stockQuantity=quantity)
        if quantity <= 0:
            body["statusType"] = "OUTOFSTOCK"
        elif body.get("statusType") == "OUTOFSTOCK":
            body["statusType"] = "SALE"
        await self._put_origin(origin, body, deadline)
        logger.info("Naver stock updated", ref=ref, origin=origin, quantity=quantity)

    async def write_price(self, ref: str, amount: Decimal, deadline: Optional[float] = None) -> None:
        origin, product = await self._get_origin(ref, deadline)
        # KRW has no minor unit
        won = int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        await self._put_origin(origin, self._update_body(product, salePrice=won), deadline)
        logger.info("Naver price updated", ref=ref, origin=origin, price=won)

    def _update_body(self, product: dict, **changes) -> dict:
        body = {k: product.get(k) for k in _REQUIRED_FIELDS if k in product}
        body.setdefault("images", product.get("images") or {})
        body["stockQuantity"] = product.get("stockQuantity")
        body.update(changes)
        return body

    async def _put_origin(self, origin: str, body: dict, deadline: Optional[float]) -> None:
        await self._request(
            "PUT",
            f"{self.api_base}/external/v2/products/origin-products/{origin}",
            deadline=deadline,
            json={"originProduct": body},
        )
