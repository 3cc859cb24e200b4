"""
Gateway middleware: rate limiting and bearer authentication per request.
"""

from dataclasses import replace
from typing import Callable, Optional, Tuple

from fastapi import Request, Response

from shared.errors import AccessLayerException, AuthenticationError, RateLimitExceeded
from shared.logging import get_logger, set_subject_context
from shared.tracing import get_tracer

from ..ratelimit.engine import Decision, RateLimiterEngine
from ..ratelimit.keys import resolve_key
from ..ratelimit.policies import RateLimitConfig
from ..tokens.models import AccessClaims
from ..tokens.service import TokenService

ErrorRenderer = Callable[[AccessLayerException], Response]


class GatewayMiddleware:
    """Per-request flow: resolve key -> limiter -> verify identity -> handler.

    A rate limit denial takes precedence over an authentication failure, so
    unauthenticated floods are still counted and throttled.
    """

    def __init__(
        self,
        token_service: TokenService,
        rate_limiter: RateLimiterEngine,
        policies: RateLimitConfig,
        render_error: ErrorRenderer,
        trust_proxy_headers: bool = False,
    ):
        self.token_service = token_service
        self.rate_limiter = rate_limiter
        self.policies = policies
        self.render_error = render_error
        self.trust_proxy_headers = trust_proxy_headers
        self.logger = get_logger("gateway.middleware")
        self.tracer = get_tracer("gateway.middleware")

    async def __call__(self, request: Request, call_next) -> Response:
        path = request.url.path
        if self.policies.is_exempt(path):
            return await call_next(request)

        rule = self.policies.match(request.method, path)
        policy = self.policies.scope(rule.scope)

        with self.tracer.start_as_current_span("gateway.access_check") as span:
            span.set_attribute("gateway.scope", rule.scope)

            # verify_access is pure, so authenticated callers can be keyed on
            # their subject before the limiter runs; the outcome is reused below
            claims, auth_error = self._authenticate(request)
            request.state.identity = claims

            key = resolve_key(
                request,
                policy,
                subject_id=claims.subject_id if claims else None,
                trust_proxy_headers=self.trust_proxy_headers,
            )
            decision = await self.rate_limiter.check_policy(
                policy,
                key,
                tier=claims.tier if claims else None,
                cost=rule.cost,
            )
            span.set_attribute("gateway.rate_limit.allowed", decision.allowed)

            if not decision.allowed:
                error = RateLimitExceeded(decision.retry_after_seconds or policy.resolve(None).window_seconds)
                return self._with_headers(self.render_error(error), decision)

            if rule.authenticated:
                if auth_error is not None:
                    return self._with_headers(self.render_error(auth_error), decision)
                set_subject_context(claims.subject_id)

        response = await call_next(request)

        if policy.skip_successful_requests and response.status_code < 400:
            await self.rate_limiter.release(decision)
            decision = replace(decision, remaining=min(decision.limit, decision.remaining + rule.cost))

        return self._with_headers(response, decision)

    def _authenticate(self, request: Request) -> Tuple[Optional[AccessClaims], Optional[AccessLayerException]]:
        """Verify the bearer token if present; never raises."""
        authorization = request.headers.get("Authorization")
        if not authorization or not authorization.startswith("Bearer "):
            return None, AuthenticationError("AUTHENTICATION_REQUIRED", "Bearer token required")

        token = authorization[7:].strip()
        if not token:
            return None, AuthenticationError("AUTHENTICATION_REQUIRED", "Bearer token required")

        try:
            return self.token_service.verify_access(token), None
        except AuthenticationError as exc:
            return None, exc

    def _with_headers(self, response: Response, decision: Decision) -> Response:
        for name, value in decision.headers().items():
            response.headers[name] = value
        return response
