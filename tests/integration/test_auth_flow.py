"""
Integration tests for the gateway session flow.

Drives the real ASGI app through httpx, the way a browser or API client
would: login, call, let the access token lapse, refresh, log out.
"""

import asyncio
import time

import httpx
import pytest
from jose import jwt

from service_gateway.app.adapters.authorized_client import AuthorizedClient
from service_gateway.app.main import GatewayService

from conftest import TEST_SIGNING_KEY

BASE_URL = "https://testserver"


def expired_access_token(subject_id="user-alice"):
    past = int(time.time()) - 3600
    return jwt.encode(
        {"sub": subject_id, "role": "user", "tier": "free", "kind": "access",
         "iat": past, "exp": past + 900, "iss": "access-gateway", "aud": "access-api"},
        TEST_SIGNING_KEY,
        algorithm="HS256",
    )


class TestAuthFlow:
    """Integration tests for complete auth flow."""

    @pytest.fixture
    def service(self, config, identity_provider):
        """Gateway with in-memory stores."""
        return GatewayService(config, identity_provider=identity_provider)

    @pytest.fixture
    def transport(self, service):
        return httpx.ASGITransport(app=service.app)

    @pytest.mark.asyncio
    async def test_complete_auth_flow(self, transport):
        """Login, call, refresh after expiry, log out everywhere."""
        client = AuthorizedClient(BASE_URL, transport=transport)

        # 1. Login
        login = await client.login("alice", "correct-horse")
        assert login.ok

        # 2. Call a protected route
        me = await client.authorized_call("GET", "/api/v1/me")
        assert me.ok
        assert me.response.json()["subject_id"] == "user-alice"

        # 3. Access token lapses; the client refreshes once and retries
        client.access_token = expired_access_token()
        me = await client.authorized_call("GET", "/api/v1/me")
        assert me.ok
        assert me.refreshed

        # 4. Log out everywhere
        logout = await client.authorized_call("POST", "/auth/logout-all")
        assert logout.ok
        assert logout.response.json()["revoked"] == 1

        # 5. Nothing left to refresh with
        client.access_token = expired_access_token()
        me = await client.authorized_call("GET", "/api/v1/me")
        assert me.error == "refresh_failed"

        await client.close()

    @pytest.mark.asyncio
    async def test_concurrent_refresh_single_winner(self, transport):
        """Two tabs refreshing with the same cookie: exactly one wins."""
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            response = await client.post("/auth/login", json={"username": "alice", "password": "correct-horse"})
            assert response.status_code == 200
            cookie = client.cookies.get("refresh_token")

        async def refresh():
            async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as tab:
                return await tab.post("/auth/refresh", headers={"Cookie": f"refresh_token={cookie}"})

        responses = await asyncio.gather(*(refresh() for _ in range(5)))

        statuses = sorted(r.status_code for r in responses)
        assert statuses == [200, 401, 401, 401, 401]

    @pytest.mark.asyncio
    async def test_brute_force_is_throttled(self, transport):
        """Failed logins from one address stop at the auth budget."""
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URL) as client:
            statuses = []
            for _ in range(7):
                response = await client.post("/auth/login", json={"username": "alice", "password": "guess"})
                statuses.append(response.status_code)

        assert statuses == [401] * 5 + [429] * 2
        assert int(response.headers["Retry-After"]) <= 900
