"""
Client-side helper for calling the gateway with refresh-once semantics.
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from shared.logging import get_logger


@dataclass
class CallResult:
    """Explicit outcome of an authorized call."""
    response: Optional[httpx.Response]
    refreshed: bool = False
    error: Optional[str] = None  # "transport", "refresh_failed" or "unauthorized"

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None and self.response.is_success


class AuthorizedClient:
    """Calls protected endpoints, refreshing the access token at most once.

    The refresh token lives only in the client's cookie jar (the gateway sets
    it as an HttpOnly cookie scoped to ``/auth``); the access token is kept in
    memory and sent as a bearer header.
    """

    def __init__(self, base_url: str, access_token: Optional[str] = None, *,
                 refresh_path: str = "/auth/refresh", timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.access_token = access_token
        self.refresh_path = refresh_path
        self.logger = get_logger("gateway.authorized_client")
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def login(self, username: str, password: str, path: str = "/auth/login") -> CallResult:
        try:
            response = await self._client.post(path, json={"username": username, "password": password})
        except httpx.HTTPError as e:
            self.logger.warning("Login transport error", error=str(e))
            return CallResult(None, error="transport")

        if response.status_code != 200:
            return CallResult(response, error="unauthorized")
        self.access_token = response.json()["access_token"]
        return CallResult(response)

    async def authorized_call(self, method: str, url: str, **kwargs: Any) -> CallResult:
        """Send a request; on 401 refresh once and retry once. Never recurses."""
        try:
            response = await self._send(method, url, **kwargs)
            if response.status_code != 401:
                return CallResult(response)

            if not await self._refresh():
                return CallResult(response, error="refresh_failed")

            retry = await self._send(method, url, **kwargs)
        except httpx.HTTPError as e:
            self.logger.warning("Authorized call transport error", url=url, error=str(e))
            return CallResult(None, error="transport")

        if retry.status_code == 401:
            return CallResult(retry, refreshed=True, error="unauthorized")
        return CallResult(retry, refreshed=True)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        kwargs = dict(kwargs)
        headers = dict(kwargs.pop("headers", None) or {})
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return await self._client.request(method, url, headers=headers, **kwargs)

    async def _refresh(self) -> bool:
        response = await self._client.post(self.refresh_path)
        if response.status_code != 200:
            self.logger.info("Token refresh rejected", status_code=response.status_code)
            self.access_token = None
            return False
        self.access_token = response.json()["access_token"]
        return True
