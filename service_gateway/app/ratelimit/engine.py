"""
Rate limiter engine for the Gateway.

Decides allow/deny for a ``(scope, key)`` pair against a ``CounterStore``.
Unlike the token service this component fails open by default: briefly
under-limiting is cheaper than denying all traffic during a store outage.
"""

import asyncio
import math
import time
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

from shared.config import FailurePolicy
from shared.errors import RateLimitExceeded, StoreUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .counter_store import CounterStore, WindowState
from .policies import ScopePolicy, WindowAlgorithm


@dataclass(frozen=True)
class Decision:
    """Result of a rate limit check, ready for header exposure."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after_seconds: Optional[int] = None
    scope: str = ""
    key: str = ""
    degraded: bool = False
    state: Optional[WindowState] = None

    def headers(self) -> Dict[str, str]:
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed and self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


class RateLimiterEngine:
    """Window-based rate limiter over a pluggable counter store."""

    def __init__(
        self,
        store: CounterStore,
        *,
        failure_policy: FailurePolicy = FailurePolicy.FAIL_OPEN,
        store_timeout_seconds: float = 0.5,
        clock=time.time,
        metrics: Optional[MetricsCollector] = None,
        key_prefix: str = "rate_limit",
    ):
        self.store = store
        self.failure_policy = failure_policy
        self.store_timeout_seconds = store_timeout_seconds
        self.clock = clock
        self.metrics = metrics
        self.key_prefix = key_prefix
        self.logger = get_logger("gateway.rate_limiter")

    def _make_key(self, scope: str, key: str) -> str:
        """Generate rate limit key."""
        return f"{self.key_prefix}:{scope}:{key}"

    async def check(self, scope: str, key: str, limit: int, window_seconds: int,
                    cost: int = 1, algorithm: WindowAlgorithm = WindowAlgorithm.FIXED) -> Decision:
        """Count one request of ``cost`` units and decide whether it may pass."""
        if limit <= 0 or window_seconds <= 0 or cost <= 0:
            raise ValueError("limit, window_seconds and cost must be positive")

        now = self.clock()
        store_key = self._make_key(scope, key)

        try:
            if algorithm == WindowAlgorithm.SLIDING:
                operation = self.store.hit_sliding(store_key, cost, limit, window_seconds, now, uuid.uuid4().hex)
            else:
                operation = self.store.hit_fixed(store_key, cost, limit, window_seconds, now)
            state = await asyncio.wait_for(operation, timeout=self.store_timeout_seconds)
        except (StoreUnavailable, asyncio.TimeoutError, OSError) as exc:
            return self._store_failure(scope, key, limit, window_seconds, now, exc)

        if state.accepted:
            decision = Decision(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - state.count),
                reset_at=state.reset_at,
                scope=scope,
                key=key,
                state=state,
            )
        else:
            retry_after = max(1, min(window_seconds, int(math.ceil(state.reset_at - now))))
            decision = Decision(
                allowed=False,
                limit=limit,
                remaining=max(0, limit - state.count),
                reset_at=state.reset_at,
                retry_after_seconds=retry_after,
                scope=scope,
                key=key,
                state=state,
            )
            self.logger.warning(
                "Rate limit exceeded",
                scope=scope,
                key=key,
                count=state.count,
                limit=limit,
                retry_after_seconds=retry_after,
            )

        self._record(scope, "allowed" if decision.allowed else "denied")
        return decision

    async def check_policy(self, policy: ScopePolicy, key: str, tier: Optional[str] = None,
                           cost: int = 1) -> Decision:
        """Resolve the caller's tier budget from the scope policy, then check."""
        budget = policy.resolve(tier)
        return await self.check(
            policy.name,
            key,
            budget.limit,
            budget.window_seconds,
            cost=cost,
            algorithm=policy.algorithm,
        )

    async def enforce(self, scope: str, key: str, limit: int, window_seconds: int,
                      cost: int = 1, algorithm: WindowAlgorithm = WindowAlgorithm.FIXED) -> Decision:
        """Like ``check`` but raises ``RateLimitExceeded`` on denial."""
        decision = await self.check(scope, key, limit, window_seconds, cost=cost, algorithm=algorithm)
        if not decision.allowed:
            raise RateLimitExceeded(decision.retry_after_seconds or window_seconds)
        return decision

    async def release(self, decision: Decision) -> None:
        """Refund an accepted hit (skip-successful-requests)."""
        if not decision.allowed or decision.state is None:
            return
        try:
            await asyncio.wait_for(
                self.store.release(self._make_key(decision.scope, decision.key), decision.state),
                timeout=self.store_timeout_seconds,
            )
        except (StoreUnavailable, asyncio.TimeoutError, OSError) as exc:
            # Losing a refund only over-counts; never surface it to the caller
            self.logger.warning("Rate limit release failed", scope=decision.scope, error=type(exc).__name__)

    async def reset(self, scope: str, key: str) -> None:
        """Drop all state for a key (test isolation / operator tooling)."""
        await self.store.reset(self._make_key(scope, key))

    def _store_failure(self, scope: str, key: str, limit: int, window_seconds: int,
                       now: float, exc: Exception) -> Decision:
        self.logger.warning(
            "rate_limit_store_failure",
            scope=scope,
            store=self.store.name,
            policy=self.failure_policy.value,
            error=type(exc).__name__,
        )
        if self.metrics:
            self.metrics.increment_counter(
                "rate_limit_store_failures_total", scope=scope, policy=self.failure_policy.value
            )

        if self.failure_policy == FailurePolicy.FAIL_OPEN:
            self._record(scope, "degraded_allow")
            return Decision(
                allowed=True,
                limit=limit,
                remaining=limit,
                reset_at=now + window_seconds,
                scope=scope,
                key=key,
                degraded=True,
            )

        self._record(scope, "degraded_deny")
        return Decision(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=now + window_seconds,
            retry_after_seconds=window_seconds,
            scope=scope,
            key=key,
            degraded=True,
        )

    def _record(self, scope: str, decision: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("rate_limit_decisions_total", scope=scope, decision=decision)
