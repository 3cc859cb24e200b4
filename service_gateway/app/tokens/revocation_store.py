"""
Revocation store contract and in-memory implementation.
"""

import abc
import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from shared.logging import get_logger

from .models import RefreshTokenRecord


class RevocationStore(abc.ABC):
    """Durable store of refresh-token records.

    ``mark_revoked`` must be a single atomic check-and-set: of several
    concurrent callers for the same token id exactly one gets ``True``. The
    same holds for ``rotate``, which also stores the successor record.
    Implementations raise ``StoreUnavailable`` when the backend cannot be
    reached.
    """

    name = "revocation_store"

    async def start(self) -> None:
        """Open connections / create schema."""

    async def close(self) -> None:
        """Release connections."""

    @abc.abstractmethod
    async def ping(self) -> bool:
        ...

    @abc.abstractmethod
    async def put(self, record: RefreshTokenRecord) -> None:
        ...

    @abc.abstractmethod
    async def get(self, token_id: str) -> Optional[RefreshTokenRecord]:
        ...

    @abc.abstractmethod
    async def mark_revoked(self, token_id: str, revoked_at: datetime) -> bool:
        ...

    @abc.abstractmethod
    async def rotate(self, old_token_id: str, new_record: RefreshTokenRecord, revoked_at: datetime) -> bool:
        """Revoke ``old_token_id`` and insert ``new_record`` as one unit.

        Returns ``False``, writing nothing, when the old record is missing or
        already revoked. If the insert fails the revocation is rolled back.
        """

    @abc.abstractmethod
    async def mark_all_revoked_for_subject(self, subject_id: str, revoked_at: datetime) -> int:
        ...

    @abc.abstractmethod
    async def list_for_subject(self, subject_id: str) -> List[RefreshTokenRecord]:
        ...

    @abc.abstractmethod
    async def sweep_expired(self, now: datetime) -> int:
        ...


class InMemoryRevocationStore(RevocationStore):
    """Single-process revocation store guarded by an asyncio lock."""

    name = "memory"

    def __init__(self):
        self.logger = get_logger("gateway.tokens.memory_store")
        self._records: Dict[str, RefreshTokenRecord] = {}
        self._lock = asyncio.Lock()

    async def ping(self) -> bool:
        return True

    async def put(self, record: RefreshTokenRecord) -> None:
        async with self._lock:
            self._records[record.token_id] = replace(record)

    async def get(self, token_id: str) -> Optional[RefreshTokenRecord]:
        async with self._lock:
            record = self._records.get(token_id)
            # Hand out copies so callers cannot mutate stored state
            return replace(record) if record else None

    async def mark_revoked(self, token_id: str, revoked_at: datetime) -> bool:
        async with self._lock:
            record = self._records.get(token_id)
            if record is None or record.revoked_at is not None:
                return False
            record.revoked_at = revoked_at
            return True

    async def rotate(self, old_token_id: str, new_record: RefreshTokenRecord, revoked_at: datetime) -> bool:
        async with self._lock:
            record = self._records.get(old_token_id)
            if record is None or record.revoked_at is not None:
                return False
            record.revoked_at = revoked_at
            self._records[new_record.token_id] = replace(new_record)
            return True

    async def mark_all_revoked_for_subject(self, subject_id: str, revoked_at: datetime) -> int:
        async with self._lock:
            count = 0
            for record in self._records.values():
                if record.subject_id == subject_id and record.revoked_at is None:
                    record.revoked_at = revoked_at
                    count += 1
            return count

    async def list_for_subject(self, subject_id: str) -> List[RefreshTokenRecord]:
        async with self._lock:
            return [replace(r) for r in self._records.values() if r.subject_id == subject_id]

    async def sweep_expired(self, now: datetime) -> int:
        async with self._lock:
            expired = [token_id for token_id, r in self._records.items() if r.expires_at <= now]
            for token_id in expired:
                del self._records[token_id]
        if expired:
            self.logger.info("Swept expired refresh tokens", count=len(expired))
        return len(expired)
