"""
Identity service client for the Gateway.

The identity service owns password hashing, user storage and OAuth provider
federation. The gateway only needs three answers from it: are these
credentials valid, which external identity does this authorization code
belong to, and which subject is linked to that identity.
"""

from typing import Any, Dict, Optional, Protocol

import httpx

from shared.errors import ExternalServiceError, InvalidCredentials
from shared.logging import get_logger

from ..tokens.models import FederatedIdentity, Principal


class IdentityProvider(Protocol):
    """Contract the gateway routes depend on."""

    async def verify_credentials(self, username: str, password: str) -> Principal: ...

    async def exchange_oauth_code(self, provider: str, code: str,
                                  redirect_uri: Optional[str] = None) -> FederatedIdentity: ...

    async def resolve_federated(self, identity: FederatedIdentity) -> Principal: ...


class IdentityServiceClient:
    """HTTP client for the external identity service.

    No retries: login latency matters more than riding out a blip, and
    retries belong to the caller.
    """

    def __init__(self, base_url: str, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.logger = get_logger("gateway.identity_client")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def verify_credentials(self, username: str, password: str) -> Principal:
        """Check a username/password pair."""
        data = await self._post("/credentials/verify", {"username": username, "password": password})
        if not data.get("valid"):
            # Same error for unknown user and wrong password
            raise InvalidCredentials()
        return self._principal(data)

    async def exchange_oauth_code(self, provider: str, code: str,
                                  redirect_uri: Optional[str] = None) -> FederatedIdentity:
        """Exchange an authorization code for a verified external identity."""
        data = await self._post(
            f"/oauth/{provider}/exchange",
            {"code": code, "redirect_uri": redirect_uri},
        )
        if not data.get("verified") or not data.get("external_id"):
            raise InvalidCredentials()
        return FederatedIdentity(
            provider=data.get("provider", provider),
            external_id=str(data["external_id"]),
            email=data.get("email"),
        )

    async def resolve_federated(self, identity: FederatedIdentity) -> Principal:
        """Find or create the subject linked to an external identity."""
        data = await self._post(
            "/oauth/link",
            {"provider": identity.provider, "external_id": identity.external_id, "email": identity.email},
        )
        if not data.get("subject_id"):
            raise InvalidCredentials()
        return self._principal(data)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            self.logger.error("Identity service HTTP error", path=path, error=str(e))
            raise ExternalServiceError("identity", "unavailable") from e

        if response.status_code in (400, 401, 404):
            raise InvalidCredentials()
        if response.status_code != 200:
            self.logger.error("Identity service error", path=path, status_code=response.status_code)
            raise ExternalServiceError("identity", f"unexpected status {response.status_code}")
        return response.json()

    @staticmethod
    def _principal(data: Dict[str, Any]) -> Principal:
        return Principal(
            subject_id=str(data["subject_id"]),
            role=data.get("role", "user"),
            tier=data.get("tier", "free"),
        )
