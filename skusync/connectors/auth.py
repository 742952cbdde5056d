"""Access-token cache with expiry tracking and single-flight refresh.

The first caller that finds the token missing or about to expire starts the
refresh and publishes it as a shared task; every concurrent caller awaits
that same task instead of issuing its own token request.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from loguru import logger


@dataclass
class AccessToken:
    value: str
    expires_in: Optional[float] = None  # seconds; None = never expires


class TokenCache:
    def __init__(
        self,
        platform: str,
        fetch: Callable[[], Awaitable[AccessToken]],
        refresh_margin: float = 60.0,
        clock=time.monotonic,
    ):
        self.platform = platform
        self._fetch = fetch
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._inflight: Optional[asyncio.Task] = None
        self.refresh_count = 0

    def _is_fresh(self) -> bool:
        if not self._token:
            return False
        if self._expires_at is None:
            return True
        return self._clock() < self._expires_at - self.refresh_margin

    async def get(self) -> str:
        if self._is_fresh():
            return self._token
        return await self.refresh()

    async def refresh(self) -> str:
        """Join the in-flight refresh, or start one."""
        if self._inflight is not None and self._inflight.done():
            self._inflight = None
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._do_refresh())
        task = self._inflight
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._inflight is task:
                self._inflight = None

    async def force_refresh(self, stale: Optional[str] = None) -> str:
        """Drop the cached token (after a 401) and fetch a new one.

        When another caller already replaced the rejected token, that newer
        token is returned instead of refreshing twice.
        """
        if stale is not None and self._token and self._token != stale and self._is_fresh():
            return self._token
        self.invalidate()
        return await self.refresh()

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = None

    async def _do_refresh(self) -> str:
        token = await self._fetch()
        self._token = token.value
        self._expires_at = (
            self._clock() + token.expires_in if token.expires_in is not None else None
        )
        self.refresh_count += 1
        logger.info("Access token refreshed", platform=self.platform, expires_in=token.expires_in)
        return token.value
