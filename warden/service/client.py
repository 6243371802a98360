from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncGenerator, Awaitable, Callable, Generator, Optional

import httpx

from warden.logging import get_logger

logger = get_logger(__name__)


class RefreshFailed(Exception):
    """The refresh endpoint rejected the stored refresh token."""


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: str
    expires_at: Optional[datetime] = None

    @classmethod
    def from_response(cls, data: dict) -> "TokenSet":
        expires = data.get("expires_at")
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=datetime.fromisoformat(expires) if expires else None,
        )


class TokenHolder:
    """Current credential pair shared by every request of one client."""

    def __init__(self, tokens: Optional[TokenSet] = None) -> None:
        self._tokens = tokens

    @property
    def current(self) -> Optional[TokenSet]:
        return self._tokens

    @property
    def access_token(self) -> Optional[str]:
        return self._tokens.access_token if self._tokens else None

    def set(self, tokens: TokenSet) -> None:
        self._tokens = tokens

    def clear(self) -> None:
        self._tokens = None


RefreshCallable = Callable[[str], Awaitable[TokenSet]]


def http_refresher(client: httpx.AsyncClient, url: str = "/v1/auth/refresh") -> RefreshCallable:
    """Refresh through the HTTP surface with a client that does not use ``RefreshingAuth``."""

    async def _refresh(refresh_token: str) -> TokenSet:
        response = await client.post(url, json={"refresh_token": refresh_token})
        if response.status_code != 200:
            raise RefreshFailed(f"refresh returned {response.status_code}")
        body = response.json()
        return TokenSet.from_response(body.get("data", body))

    return _refresh


class RefreshingAuth(httpx.Auth):
    """Bearer auth that refreshes once on 401, no matter how many requests hit it.

    Requests that fail with a token that has already been replaced are
    simply retried with the newer token.
    """

    def __init__(self, holder: TokenHolder, refresh: RefreshCallable) -> None:
        self.holder = holder
        self._refresh = refresh
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("RefreshingAuth requires httpx.AsyncClient")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        sent = self.holder.access_token
        if sent:
            request.headers["Authorization"] = f"Bearer {sent}"
        response = yield request
        if response.status_code != 401 or sent is None:
            return
        token = await self._fresh_token(sent)
        if token is None:
            return
        request.headers["Authorization"] = f"Bearer {token}"
        yield request

    async def _fresh_token(self, sent: str) -> Optional[str]:
        async with self._lock:
            current = self.holder.current
            if current is None:
                return None
            if current.access_token != sent:
                return current.access_token
            try:
                tokens = await self._refresh(current.refresh_token)
            except (RefreshFailed, httpx.HTTPError) as exc:
                logger.warning("client_token_refresh_failed", error=str(exc))
                self.holder.clear()
                return None
            self.refresh_count += 1
            self.holder.set(tokens)
            logger.info("client_token_refreshed", refresh_count=self.refresh_count)
            return tokens.access_token
