"""
Periodic garbage collection of expired refresh-token records and, when a
counter store is attached, of rate-limit windows that have ended.
"""

import asyncio
from typing import Optional

from shared.errors import StoreUnavailable
from shared.logging import get_logger

from ..ratelimit.counter_store import CounterStore
from .service import TokenService


class RevocationSweeper:
    """Background task that calls ``TokenService.sweep_expired`` on an interval."""

    def __init__(self, token_service: TokenService, interval_seconds: float = 3600,
                 counter_store: Optional[CounterStore] = None):
        self.token_service = token_service
        self.interval_seconds = interval_seconds
        self.counter_store = counter_store
        self.logger = get_logger("gateway.tokens.sweeper")
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="revocation-sweeper")
            self.logger.info("Revocation sweeper started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.logger.info("Revocation sweeper stopped")

    async def sweep_once(self) -> int:
        """Run a single sweep; a store outage is logged and retried next interval."""
        try:
            return await self.token_service.sweep_expired()
        except StoreUnavailable:
            self.logger.warning("Revocation sweep skipped, store unavailable")
            return 0

    async def purge_counters(self) -> int:
        """Drop ended rate-limit windows that no request has touched since."""
        if self.counter_store is None:
            return 0
        try:
            purged = await self.counter_store.purge_expired(self.token_service.clock())
        except StoreUnavailable:
            self.logger.warning("Counter purge skipped, store unavailable")
            return 0
        if purged:
            self.logger.info("Purged expired rate limit windows", count=purged)
        return purged

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.sweep_once()
            await self.purge_counters()
