"""
Rate limit policy models for the Gateway.

A scope is a named policy bucket with its own algorithm, key strategy and
per-tier limits. Route rules map request paths to scopes and declare how many
units a request costs.
"""

from enum import Enum
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from shared.logging import get_logger

logger = get_logger("gateway.rate_limiter.policies")

DEFAULT_TIER = "default"


class WindowAlgorithm(str, Enum):
    """Window accounting strategies."""
    # Up to 2x limit can pass across a window boundary; fine for coarse scopes
    FIXED = "fixed_window"
    SLIDING = "sliding_window"


class KeyStrategy(str, Enum):
    """How the rate limit key is derived for a scope."""
    AUTO = "auto"          # subject id when authenticated, else source address
    ADDRESS = "address"
    API_KEY = "api_key"    # hashed X-API-Key, falling back to source address


class TierLimit(BaseModel):
    """Request budget for one tier."""
    limit: int = Field(..., gt=0)
    window_seconds: int = Field(..., gt=0)


class ScopePolicy(BaseModel):
    """Named rate limit policy."""
    name: str
    algorithm: WindowAlgorithm = WindowAlgorithm.FIXED
    key_strategy: KeyStrategy = KeyStrategy.AUTO
    limits: Dict[str, TierLimit]
    skip_successful_requests: bool = False

    @field_validator("limits")
    @classmethod
    def _require_default(cls, value: Dict[str, TierLimit]) -> Dict[str, TierLimit]:
        if DEFAULT_TIER not in value:
            raise ValueError(f"limits must define a '{DEFAULT_TIER}' tier")
        return value

    def resolve(self, tier: Optional[str]) -> TierLimit:
        """Pure lookup of the caller's tier budget."""
        if tier and tier in self.limits:
            return self.limits[tier]
        return self.limits[DEFAULT_TIER]


class RouteRule(BaseModel):
    """Maps a path prefix to a scope."""
    prefix: str
    scope: str
    cost: int = Field(1, gt=0)
    authenticated: bool = True
    methods: Optional[List[str]] = None

    def matches(self, method: str, path: str) -> bool:
        if self.methods and method.upper() not in {m.upper() for m in self.methods}:
            return False
        return path == self.prefix or path.startswith(self.prefix.rstrip("/") + "/")


class RateLimitConfig(BaseModel):
    """Complete policy set."""
    scopes: Dict[str, ScopePolicy]
    routes: List[RouteRule] = Field(default_factory=list)
    default_scope: str = "api"
    exempt_paths: List[str] = Field(default_factory=lambda: ["/health", "/metrics", "/docs", "/redoc", "/openapi.json"])

    @model_validator(mode="after")
    def _check_references(self) -> "RateLimitConfig":
        for name, policy in self.scopes.items():
            if policy.name != name:
                raise ValueError(f"scope key {name!r} does not match policy name {policy.name!r}")
        referenced = {rule.scope for rule in self.routes} | {self.default_scope}
        missing = referenced - set(self.scopes)
        if missing:
            raise ValueError(f"routes reference unknown scopes: {sorted(missing)}")
        return self

    def is_exempt(self, path: str) -> bool:
        return path in self.exempt_paths

    def match(self, method: str, path: str) -> RouteRule:
        """Longest matching prefix wins; unmatched paths use the default scope."""
        candidates = [rule for rule in self.routes if rule.matches(method, path)]
        if candidates:
            return max(candidates, key=lambda rule: len(rule.prefix))
        return RouteRule(prefix="/", scope=self.default_scope)

    def scope(self, name: str) -> ScopePolicy:
        return self.scopes[name]


def default_rate_limit_config() -> RateLimitConfig:
    """Built-in policies used when no policy file is configured."""
    return RateLimitConfig(
        scopes={
            "auth": ScopePolicy(
                name="auth",
                algorithm=WindowAlgorithm.SLIDING,
                key_strategy=KeyStrategy.ADDRESS,
                limits={DEFAULT_TIER: TierLimit(limit=5, window_seconds=900)},
                skip_successful_requests=True,
            ),
            "session": ScopePolicy(
                name="session",
                algorithm=WindowAlgorithm.FIXED,
                key_strategy=KeyStrategy.ADDRESS,
                limits={DEFAULT_TIER: TierLimit(limit=30, window_seconds=60)},
            ),
            "api": ScopePolicy(
                name="api",
                limits={
                    DEFAULT_TIER: TierLimit(limit=100, window_seconds=60),
                    "free": TierLimit(limit=100, window_seconds=60),
                    "basic": TierLimit(limit=500, window_seconds=60),
                    "pro": TierLimit(limit=2000, window_seconds=60),
                },
            ),
            "upload": ScopePolicy(
                name="upload",
                limits={
                    DEFAULT_TIER: TierLimit(limit=50, window_seconds=3600),
                    "pro": TierLimit(limit=500, window_seconds=3600),
                },
            ),
            "partner": ScopePolicy(
                name="partner",
                key_strategy=KeyStrategy.API_KEY,
                limits={DEFAULT_TIER: TierLimit(limit=1000, window_seconds=60)},
            ),
        },
        routes=[
            RouteRule(prefix="/auth/login", scope="auth", authenticated=False),
            RouteRule(prefix="/auth/oauth", scope="auth", authenticated=False),
            RouteRule(prefix="/auth/refresh", scope="session", authenticated=False),
            RouteRule(prefix="/auth/logout", scope="session", authenticated=False),
            RouteRule(prefix="/auth/logout-all", scope="api"),
            RouteRule(prefix="/auth/sessions", scope="api"),
            RouteRule(prefix="/api/v1/uploads", scope="upload", cost=5),
            RouteRule(prefix="/partner", scope="partner"),
            RouteRule(prefix="/api", scope="api"),
        ],
    )


def load_rate_limit_config(path: Optional[str]) -> RateLimitConfig:
    """Load policies from a YAML file, or the built-in defaults."""
    if not path:
        return default_rate_limit_config()

    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    # Allow scopes to omit their own name inside the mapping
    for name, scope in (raw.get("scopes") or {}).items():
        if isinstance(scope, dict):
            scope.setdefault("name", name)

    config = RateLimitConfig.model_validate(raw)
    logger.info("Rate limit policies loaded", path=path, scopes=sorted(config.scopes))
    return config
