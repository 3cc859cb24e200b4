"""
Access Gateway service.

Issues and rotates token pairs, exposes session management for the caller,
and runs every non-exempt request through the rate limiter and bearer
authentication before it reaches a route handler.
"""

from typing import Any, Callable, Dict, Optional

from fastapi import Depends, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError, NotFoundError, RevokedToken, AccessLayerException

from .adapters.identity_client import IdentityProvider, IdentityServiceClient
from .domain.gateway_middleware import GatewayMiddleware
from .ratelimit.counter_store import CounterStore, InMemoryCounterStore
from .ratelimit.engine import RateLimiterEngine
from .ratelimit.keys import get_client_address
from .ratelimit.policies import RateLimitConfig, load_rate_limit_config
from .ratelimit.redis_store import RedisCounterStore
from .tokens.models import (
    AccessClaims,
    DeviceMeta,
    IdentityResponse,
    LoginRequest,
    OAuthLinkRequest,
    SessionListResponse,
    SessionResponse,
    TokenPair,
    TokenResponse,
)
from .tokens.postgres_store import PostgresRevocationStore
from .tokens.revocation_store import InMemoryRevocationStore, RevocationStore
from .tokens.service import TokenService
from .tokens.sweeper import RevocationSweeper


def current_identity(request: Request) -> AccessClaims:
    """Claims attached by the gateway middleware for authenticated routes."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise AuthenticationError("AUTHENTICATION_REQUIRED", "Bearer token required")
    return identity


class GatewayService(BaseService):
    """Gateway service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        revocation_store: Optional[RevocationStore] = None,
        counter_store: Optional[CounterStore] = None,
        identity_provider: Optional[IdentityProvider] = None,
        rate_limit_config: Optional[RateLimitConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        # Collaborators injected here win over the configured backends
        self._injected = {
            "revocation_store": revocation_store,
            "counter_store": counter_store,
            "identity_provider": identity_provider,
            "rate_limit_config": rate_limit_config,
        }
        self._clock = clock
        super().__init__("gateway", 8000, config=config)

    def _build_components(self):
        config = self.config

        self.revocation_store = self._injected_or("revocation_store", self._make_revocation_store)
        self.counter_store = self._injected_or("counter_store", self._make_counter_store)

        self.token_service = TokenService.from_config(config, self.revocation_store, metrics=self.metrics)
        self.rate_limiter = RateLimiterEngine(
            self.counter_store,
            failure_policy=config.rate_limit_failure_policy,
            store_timeout_seconds=config.store_timeout_seconds,
            metrics=self.metrics,
        )
        if self._clock is not None:
            self.token_service.clock = self._clock
            self.rate_limiter.clock = self._clock

        self.rate_limit_config = self._injected_or(
            "rate_limit_config", lambda: load_rate_limit_config(config.rate_limits_file)
        )
        self.identity_provider = self._injected_or(
            "identity_provider",
            lambda: IdentityServiceClient(config.identity_service_url, timeout=config.identity_service_timeout),
        )
        self.sweeper = RevocationSweeper(
            self.token_service,
            config.session_sweep_interval_seconds,
            counter_store=self.counter_store,
        )

        self.logger.info(
            "Gateway components ready",
            revocation_store=self.revocation_store.name,
            counter_store=self.counter_store.name,
            rate_limit_failure_policy=config.rate_limit_failure_policy.value,
            scopes=sorted(self.rate_limit_config.scopes),
        )

    def _injected_or(self, name: str, factory: Callable[[], Any]) -> Any:
        injected = self._injected[name]
        return injected if injected is not None else factory()

    def _make_revocation_store(self) -> RevocationStore:
        if self.config.revocation_store_backend == "postgres":
            return PostgresRevocationStore(self.config.postgres_dsn)
        return InMemoryRevocationStore()

    def _make_counter_store(self) -> CounterStore:
        if self.config.counter_store_backend == "redis":
            return RedisCounterStore(self.config.redis_url, socket_timeout=self.config.store_timeout_seconds)
        return InMemoryCounterStore()

    def _setup_service_middleware(self):
        self.gateway_middleware = GatewayMiddleware(
            self.token_service,
            self.rate_limiter,
            self.rate_limit_config,
            render_error=self.error_response,
            trust_proxy_headers=self.config.trust_proxy_headers,
        )
        self.app.add_middleware(BaseHTTPMiddleware, dispatch=self.gateway_middleware)

    async def on_startup(self):
        await self.revocation_store.start()
        self.sweeper.start()

    async def on_shutdown(self):
        await self.sweeper.stop()
        await self.revocation_store.close()
        await self.counter_store.close()
        close = getattr(self.identity_provider, "close", None)
        if close is not None:
            await close()

    async def _check_dependencies(self) -> Dict[str, str]:
        dependencies = {}
        for name, store in (("revocation_store", self.revocation_store), ("counter_store", self.counter_store)):
            try:
                dependencies[name] = "ok" if await store.ping() else "error"
            except AccessLayerException:
                dependencies[name] = "error"
        return dependencies

    def _device_meta(self, request: Request) -> DeviceMeta:
        return DeviceMeta(
            user_agent=request.headers.get("User-Agent"),
            source_address=get_client_address(request, self.config.trust_proxy_headers),
        )

    def _token_response(self, response: Response, pair: TokenPair) -> TokenResponse:
        """Access token in the body, refresh token only as an HttpOnly cookie."""
        response.set_cookie(
            key=self.config.refresh_cookie_name,
            value=pair.refresh_token,
            max_age=pair.refresh_expires_in,
            path=self.config.refresh_cookie_path,
            secure=self.config.refresh_cookie_secure,
            httponly=True,
            samesite="strict",
        )
        response.headers["Cache-Control"] = "no-store"
        return TokenResponse(access_token=pair.access_token, expires_in=pair.access_expires_in)

    def _clear_refresh_cookie(self, response: Response) -> None:
        response.delete_cookie(
            key=self.config.refresh_cookie_name,
            path=self.config.refresh_cookie_path,
            secure=self.config.refresh_cookie_secure,
            httponly=True,
            samesite="strict",
        )

    def _setup_routes(self):
        """Set up gateway routes."""
        super()._setup_routes()

        @self.app.post("/auth/login", response_model=TokenResponse)
        async def login(body: LoginRequest, request: Request, response: Response):
            """Exchange credentials for an access token and a refresh cookie."""
            principal = await self.identity_provider.verify_credentials(body.username, body.password)
            pair = await self.token_service.issue_pair(
                principal.subject_id,
                principal.role,
                principal.tier,
                device_meta=self._device_meta(request),
            )
            return self._token_response(response, pair)

        @self.app.post("/auth/oauth/{provider}", response_model=TokenResponse)
        async def oauth_login(provider: str, body: OAuthLinkRequest, request: Request, response: Response):
            """Complete an authorization-code flow with a federated provider."""
            identity = await self.identity_provider.exchange_oauth_code(provider, body.code, body.redirect_uri)
            principal = await self.identity_provider.resolve_federated(identity)
            self.logger.info("Federated login", provider=identity.provider, subject_id=principal.subject_id)
            pair = await self.token_service.issue_pair(
                principal.subject_id,
                principal.role,
                principal.tier,
                device_meta=self._device_meta(request),
            )
            return self._token_response(response, pair)

        @self.app.post("/auth/refresh", response_model=TokenResponse)
        async def refresh(request: Request, response: Response):
            """Rotate the refresh cookie and mint a new access token."""
            refresh_token = request.cookies.get(self.config.refresh_cookie_name)
            if not refresh_token:
                raise RevokedToken("Refresh token required")
            pair = await self.token_service.refresh(refresh_token, device_meta=self._device_meta(request))
            return self._token_response(response, pair)

        @self.app.post("/auth/logout")
        async def logout(request: Request, response: Response):
            """Revoke the presented refresh token. Always clears the cookie."""
            refresh_token = request.cookies.get(self.config.refresh_cookie_name)
            if refresh_token:
                try:
                    claims = self.token_service.decode_refresh(refresh_token, verify_exp=False)
                except AuthenticationError:
                    claims = None
                if claims is not None:
                    await self.token_service.revoke(claims.token_id)

            self._clear_refresh_cookie(response)
            return {"status": "logged_out"}

        @self.app.post("/auth/logout-all")
        async def logout_all(response: Response, identity: AccessClaims = Depends(current_identity)):
            """Revoke every refresh token of the caller."""
            revoked = await self.token_service.revoke_all_for_subject(identity.subject_id)
            self._clear_refresh_cookie(response)
            return {"status": "logged_out", "revoked": revoked}

        @self.app.get("/auth/sessions", response_model=SessionListResponse)
        async def list_sessions(identity: AccessClaims = Depends(current_identity)):
            """Active sessions of the caller, newest first."""
            records = await self.token_service.list_active_sessions(identity.subject_id)
            return SessionListResponse(sessions=[SessionResponse.from_record(record) for record in records])

        @self.app.delete("/auth/sessions/{token_id}")
        async def revoke_session(token_id: str, identity: AccessClaims = Depends(current_identity)):
            """Revoke one of the caller's own sessions."""
            records = await self.token_service.list_active_sessions(identity.subject_id)
            if token_id not in {record.token_id for record in records}:
                # Same answer for someone else's session and a missing one
                raise NotFoundError("Session not found")
            await self.token_service.revoke(token_id)
            return {"status": "revoked", "token_id": token_id}

        @self.app.get("/api/v1/me", response_model=IdentityResponse)
        async def whoami(identity: AccessClaims = Depends(current_identity)):
            """Verified identity of the bearer."""
            return IdentityResponse(
                subject_id=identity.subject_id,
                role=identity.role,
                tier=identity.tier,
                expires_at=identity.expires_at,
            )


def create_app(config: Optional[ServiceConfig] = None, **collaborators):
    """Create FastAPI application."""
    service = GatewayService(config or get_config("gateway", 8000), **collaborators)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
