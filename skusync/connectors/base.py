"""Platform client base — rate limiting, auth, retries and response normalization.

Every platform call goes through PlatformClient._request(), which:
  1. takes a token from the client's own TokenBucket
  2. attaches the cached access token (single-flight refresh)
  3. maps HTTP outcomes onto the PlatformError taxonomy
  4. retries retryable failures with capped exponential backoff

Subclasses implement read_state / write_inventory / write_price and return
only the normalized shapes defined here.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx
from loguru import logger

from ..errors import (
    PlatformAuthError,
    PlatformConflict,
    PlatformError,
    PlatformNotFound,
    PlatformResponseError,
    RateLimitExceeded,
    TransientNetworkError,
)
from .auth import TokenCache
from .rate_limit import TokenBucket

MARKETPLACE = "marketplace"
STOREFRONT = "storefront"


@dataclass(frozen=True)
class InventorySnapshot:
    """Point-in-time stock figure read from one platform."""

    platform: str
    quantity: int
    committed: int = 0
    as_of: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def available(self) -> int:
        return self.quantity - self.committed


@dataclass(frozen=True)
class PlatformState:
    inventory: InventorySnapshot
    price: Optional[Decimal]


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


class PlatformClient(ABC):
    platform: str = ""
    role: str = ""

    def __init__(
        self,
        bucket: TokenBucket,
        tokens: Optional[TokenCache] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.bucket = bucket
        self.tokens = tokens
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        if http is None:
            from ..http_client import http as shared_http

            http = shared_http
        self.http = http
        self.calls = 0

    # ── Domain contract ──────────────────────────────────────────────

    @abstractmethod
    async def read_state(self, ref: str, deadline: Optional[float] = None) -> PlatformState:
        ...

    @abstractmethod
    async def write_inventory(self, ref: str, quantity: int, deadline: Optional[float] = None) -> None:
        ...

    @abstractmethod
    async def write_price(self, ref: str, amount: Decimal, deadline: Optional[float] = None) -> None:
        ...

    async def read_inventory(self, ref: str, deadline: Optional[float] = None) -> InventorySnapshot:
        return (await self.read_state(ref, deadline)).inventory

    async def read_price(self, ref: str, deadline: Optional[float] = None) -> Optional[Decimal]:
        return (await self.read_state(ref, deadline)).price

    # ── Transport ────────────────────────────────────────────────────

    @abstractmethod
    def _auth_headers(self, token: Optional[str]) -> dict:
        ...

    async def _send_once(self, method: str, url: str, **kwargs) -> httpx.Response:
        """One rate-limited, authenticated call with a single 401 refresh."""
        await self.bucket.acquire()
        token = await self.tokens.get() if self.tokens else None
        headers = {**kwargs.pop("headers", {}), **self._auth_headers(token)}
        resp = await self._transport(method, url, headers=headers, **kwargs)

        if resp.status_code == 401 and self.tokens:
            logger.warning("Token rejected, forcing refresh", platform=self.platform)
            token = await self.tokens.force_refresh(stale=token)
            await self.bucket.acquire()
            headers.update(self._auth_headers(token))
            resp = await self._transport(method, url, headers=headers, **kwargs)
            if resp.status_code == 401:
                raise PlatformAuthError(self.platform, "unauthorized after token refresh", 401)

        self._raise_for_status(resp)
        return resp

    async def _transport(self, method: str, url: str, **kwargs) -> httpx.Response:
        self.calls += 1
        try:
            return await self.http.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(self.platform, f"timeout calling {url}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(self.platform, f"network error: {e}") from e

    def _raise_for_status(self, resp: httpx.Response) -> None:
        status = resp.status_code
        if status < 400:
            return
        body = (resp.text or "")[:300]
        if status == 401 or status == 403:
            raise PlatformAuthError(self.platform, f"HTTP {status}: {body}", status)
        if status == 404:
            raise PlatformNotFound(self.platform, f"HTTP 404: {body}", status)
        if status == 409:
            raise PlatformConflict(self.platform, f"HTTP 409: {body}", status)
        if status == 429:
            raise RateLimitExceeded(self.platform, f"HTTP 429: {body}", status)
        if status >= 500:
            raise TransientNetworkError(self.platform, f"HTTP {status}: {body}", status)
        raise PlatformConflict(self.platform, f"HTTP {status}: {body}", status)

    def _json(self, resp: httpx.Response, what: str = "response") -> dict:
        """Decode a JSON object body; anything else is a PlatformResponseError."""
        try:
            data = resp.json()
        except ValueError as e:
            raise PlatformResponseError(
                self.platform, f"{what} is not JSON: {(resp.text or '')[:120]!r}", resp.status_code
            ) from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise PlatformResponseError(
                self.platform, f"{what} is a {type(data).__name__}, expected an object", resp.status_code
            )
        return data

    async def _request(
        self, method: str, url: str, deadline: Optional[float] = None, **kwargs
    ) -> httpx.Response:
        """_send_once with retries for retryable errors, bounded by `deadline`.

        `deadline` is a time.monotonic() value; a retry whose backoff would
        end past it is not attempted.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._send_once(method, url, **dict(kwargs))
            except PlatformError as e:
                if not e.retryable or attempt >= self.retry.max_attempts:
                    raise
                delay = self.retry.delay_for(attempt)
                if deadline is not None and time.monotonic() + delay > deadline:
                    raise
                logger.info(
                    "Retrying platform call",
                    platform=self.platform,
                    attempt=attempt,
                    delay=delay,
                    error=e.code,
                )
                await asyncio.sleep(delay)


def as_decimal(v) -> Optional[Decimal]:
    if v is None or v == "":
        return None
    try:
        return Decimal(str(v))
    except (ArithmeticError, ValueError, TypeError):
        return None


def as_int(v, default: int = 0) -> int:
    if v is None:
        return default
    try:
        return int(v)
    except (ValueError, TypeError):
        return default


def as_datetime(v) -> Optional[datetime]:
    """Parse a platform ISO-8601 timestamp; naive values are taken as UTC."""
    if not v or not isinstance(v, str):
        return None
    try:
        dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
