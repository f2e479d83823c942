"""
Per-client OAuth access token cache with singleflight refresh.

Concurrent callers that find the token missing or inside the refresh margin
queue on one lock; the first refreshes, the rest reuse its result.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from application.dtos.payments import AccessToken
from core.logging_config import get_logger


logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenCache:
    def __init__(
        self,
        fetch: Callable[[], Awaitable[AccessToken]],
        *,
        refresh_margin_seconds: float,
        provider: str,
        clock: Optional[Clock] = None,
    ) -> None:
        self._fetch = fetch
        self._margin = refresh_margin_seconds
        self._provider = provider
        self._clock = clock or utc_now
        self._token: Optional[AccessToken] = None
        self._issued_at: Optional[datetime] = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Optional[AccessToken]:
        return self._token

    def _is_fresh(self) -> bool:
        if self._token is None or self._issued_at is None:
            return False
        lifetime = (self._token.expires_at - self._issued_at).total_seconds()
        # Short-lived tokens would otherwise never be considered fresh
        margin = min(self._margin, max(lifetime, 0.0) / 2)
        return not self._token.expires_within(margin, self._clock())

    async def get(self) -> AccessToken:
        if self._is_fresh():
            return self._token  # type: ignore[return-value]
        async with self._lock:
            if self._is_fresh():
                return self._token  # type: ignore[return-value]
            issued_at = self._clock()
            token = await self._fetch()
            self._token, self._issued_at = token, issued_at
            logger.info(
                "provider_token_refreshed",
                provider=self._provider,
                expires_at=token.expires_at.isoformat(),
            )
            return token

    def invalidate(self, stale: Optional[AccessToken] = None) -> None:
        """Drop the cached token (only if it is still ``stale`` when given)."""
        if stale is None or self._token == stale:
            self._token = None
            self._issued_at = None
