"""
Counter store contract and in-memory implementation.

The rate limiter engine only talks to this narrow interface: one atomic
primitive per window algorithm, plus ``release`` to give back a hit.
"""

import abc
import asyncio
import bisect
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class WindowState:
    """Outcome of one atomic counter operation."""
    count: int
    accepted: bool
    reset_at: float
    cost: int = 1
    window_start: Optional[float] = None
    members: Tuple[str, ...] = ()


def window_floor(now: float, window_seconds: int) -> float:
    return math.floor(now / window_seconds) * window_seconds


class CounterStore(abc.ABC):
    """Shared, atomically mutable counters keyed by ``rate_limit:{scope}:{key}``.

    Implementations raise ``StoreUnavailable`` when the backend is unreachable
    and must never keep state past the end of its window.
    """

    name = "counter_store"

    @abc.abstractmethod
    async def hit_fixed(self, key: str, cost: int, limit: int, window_seconds: int, now: float) -> WindowState:
        """Increment the counter of the window containing ``now`` and read it back."""

    @abc.abstractmethod
    async def hit_sliding(self, key: str, cost: int, limit: int, window_seconds: int,
                          now: float, member: str) -> WindowState:
        """Evict stale entries, count, and record ``cost`` entries if they fit."""

    @abc.abstractmethod
    async def release(self, key: str, state: WindowState) -> None:
        """Give back a previously accepted hit."""

    @abc.abstractmethod
    async def reset(self, key: str) -> None:
        ...

    @abc.abstractmethod
    async def ping(self) -> bool:
        ...

    async def purge_expired(self, now: float) -> int:
        """Drop state whose window has ended. Backends with native key expiry need nothing."""
        return 0

    async def close(self) -> None:
        """Release connections."""


@dataclass
class _FixedWindow:
    window_start: float
    expires_at: float
    count: int = 0


@dataclass
class _SlidingWindow:
    expires_at: float
    entries: List[Tuple[float, str]] = field(default_factory=list)


class InMemoryCounterStore(CounterStore):
    """Single-process counters: plain dicts behind one asyncio lock."""

    name = "memory"

    def __init__(self, purge_interval_seconds: float = 60.0):
        self._fixed: Dict[str, _FixedWindow] = {}
        self._sliding: Dict[str, _SlidingWindow] = {}
        self._lock = asyncio.Lock()
        self._purge_interval = purge_interval_seconds
        self._last_purge = 0.0

    async def ping(self) -> bool:
        return True

    async def hit_fixed(self, key: str, cost: int, limit: int, window_seconds: int, now: float) -> WindowState:
        window_start = window_floor(now, window_seconds)
        async with self._lock:
            self._maybe_purge(now)
            window = self._fixed.get(key)
            if window is None or window.window_start != window_start:
                window = _FixedWindow(window_start=window_start, expires_at=window_start + window_seconds)
                self._fixed[key] = window
            window.count += cost
            count = window.count

        return WindowState(
            count=count,
            accepted=count <= limit,
            reset_at=window_start + window_seconds,
            cost=cost,
            window_start=window_start,
        )

    async def hit_sliding(self, key: str, cost: int, limit: int, window_seconds: int,
                          now: float, member: str) -> WindowState:
        async with self._lock:
            self._maybe_purge(now)
            window = self._sliding.setdefault(key, _SlidingWindow(expires_at=now + window_seconds))
            cutoff = now - window_seconds
            window.entries = [entry for entry in window.entries if entry[0] > cutoff]

            members: Tuple[str, ...] = ()
            accepted = len(window.entries) + cost <= limit
            if accepted:
                members = tuple(f"{member}:{i}" for i in range(1, cost + 1))
                for item in members:
                    bisect.insort(window.entries, (now, item))
                window.expires_at = now + window_seconds

            count = len(window.entries)
            oldest = window.entries[0][0] if window.entries else now
            if not window.entries:
                del self._sliding[key]

        return WindowState(
            count=count,
            accepted=accepted,
            reset_at=oldest + window_seconds,
            cost=cost,
            members=members,
        )

    async def release(self, key: str, state: WindowState) -> None:
        async with self._lock:
            if state.members:
                window = self._sliding.get(key)
                if window is not None:
                    released = set(state.members)
                    window.entries = [entry for entry in window.entries if entry[1] not in released]
            elif state.window_start is not None:
                window = self._fixed.get(key)
                if window is not None and window.window_start == state.window_start:
                    window.count = max(0, window.count - state.cost)

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._fixed.pop(key, None)
            self._sliding.pop(key, None)

    async def purge_expired(self, now: float) -> int:
        async with self._lock:
            return self._purge(now)

    def size(self) -> int:
        """Number of keys currently holding window state."""
        return len(self._fixed) + len(self._sliding)

    def _maybe_purge(self, now: float) -> None:
        if now - self._last_purge < self._purge_interval:
            return
        self._purge(now)

    def _purge(self, now: float) -> int:
        self._last_purge = now
        fixed = [k for k, w in self._fixed.items() if w.expires_at <= now]
        sliding = [k for k, w in self._sliding.items() if w.expires_at <= now]
        for key in fixed:
            del self._fixed[key]
        for key in sliding:
            del self._sliding[key]
        return len(fixed) + len(sliding)
