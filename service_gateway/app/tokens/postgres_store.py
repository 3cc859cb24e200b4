"""
PostgreSQL revocation store for the Gateway.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional

import asyncpg

from shared.errors import StoreUnavailable
from shared.logging import get_logger

from .models import DeviceMeta, RefreshTokenRecord
from .revocation_store import RevocationStore

_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def _affected_rows(status: str) -> int:
    """Parse the row count out of a command tag such as ``UPDATE 3``."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


class PostgresRevocationStore(RevocationStore):
    """Refresh-token records in PostgreSQL.

    Revocation is a conditional ``UPDATE ... WHERE revoked_at IS NULL`` so the
    database row lock serialises concurrent rotations of the same token.
    """

    name = "postgres"

    def __init__(self, dsn: str, command_timeout: float = 5.0):
        self.dsn = dsn
        self.command_timeout = command_timeout
        self.logger = get_logger("gateway.tokens.postgres_store")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self) -> None:
        """Create the pool and schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=self.command_timeout
            )
            await self._create_tables()
            self.logger.info("PostgreSQL revocation store started")
        except _STORE_ERRORS as e:
            self.logger.error("Failed to start PostgreSQL revocation store", error=str(e))
            raise StoreUnavailable(self.name) from e

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL revocation store stopped")

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        if self.pool is None:
            raise StoreUnavailable(self.name, details={"reason": "not started"})
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except _STORE_ERRORS as e:
            self.logger.error("PostgreSQL revocation store error", error=str(e))
            raise StoreUnavailable(self.name) from e

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS refresh_tokens (
                    token_id VARCHAR(64) PRIMARY KEY,
                    subject_id VARCHAR(255) NOT NULL,
                    role VARCHAR(64) NOT NULL,
                    tier VARCHAR(64) NOT NULL,
                    issued_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    expires_at TIMESTAMP WITH TIME ZONE NOT NULL,
                    revoked_at TIMESTAMP WITH TIME ZONE,
                    user_agent TEXT,
                    source_address VARCHAR(64)
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_refresh_tokens_subject ON refresh_tokens(subject_id);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_refresh_tokens_expires ON refresh_tokens(expires_at);
            """)

    async def ping(self) -> bool:
        async with self._connection() as conn:
            return await conn.fetchval("SELECT 1") == 1

    async def put(self, record: RefreshTokenRecord) -> None:
        async with self._connection() as conn:
            await self._insert(conn, record)

    async def _insert(self, conn: asyncpg.Connection, record: RefreshTokenRecord) -> None:
        await conn.execute("""
            INSERT INTO refresh_tokens (
                token_id, subject_id, role, tier, issued_at, expires_at,
                revoked_at, user_agent, source_address
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
        """,
            record.token_id, record.subject_id, record.role, record.tier,
            record.issued_at, record.expires_at, record.revoked_at,
            record.device_meta.user_agent, record.device_meta.source_address
        )

    async def get(self, token_id: str) -> Optional[RefreshTokenRecord]:
        async with self._connection() as conn:
            row = await conn.fetchrow("""
                SELECT * FROM refresh_tokens WHERE token_id = $1
            """, token_id)
        return self._row_to_record(row) if row else None

    async def mark_revoked(self, token_id: str, revoked_at: datetime) -> bool:
        async with self._connection() as conn:
            status = await conn.execute("""
                UPDATE refresh_tokens SET revoked_at = $2
                WHERE token_id = $1 AND revoked_at IS NULL
            """, token_id, revoked_at)
        return _affected_rows(status) == 1

    async def rotate(self, old_token_id: str, new_record: RefreshTokenRecord, revoked_at: datetime) -> bool:
        async with self._connection() as conn:
            async with conn.transaction():
                status = await conn.execute("""
                    UPDATE refresh_tokens SET revoked_at = $2
                    WHERE token_id = $1 AND revoked_at IS NULL
                """, old_token_id, revoked_at)
                if _affected_rows(status) != 1:
                    return False
                await self._insert(conn, new_record)
        return True

    async def mark_all_revoked_for_subject(self, subject_id: str, revoked_at: datetime) -> int:
        async with self._connection() as conn:
            status = await conn.execute("""
                UPDATE refresh_tokens SET revoked_at = $2
                WHERE subject_id = $1 AND revoked_at IS NULL
            """, subject_id, revoked_at)
        return _affected_rows(status)

    async def list_for_subject(self, subject_id: str) -> List[RefreshTokenRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch("""
                SELECT * FROM refresh_tokens WHERE subject_id = $1
                ORDER BY issued_at DESC
            """, subject_id)
        return [self._row_to_record(row) for row in rows]

    async def sweep_expired(self, now: datetime) -> int:
        async with self._connection() as conn:
            status = await conn.execute("""
                DELETE FROM refresh_tokens WHERE expires_at <= $1
            """, now)
        count = _affected_rows(status)
        if count:
            self.logger.info("Swept expired refresh tokens", count=count)
        return count

    def _row_to_record(self, row) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_id=row["token_id"],
            subject_id=row["subject_id"],
            role=row["role"],
            tier=row["tier"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked_at=row["revoked_at"],
            device_meta=DeviceMeta(
                user_agent=row["user_agent"],
                source_address=row["source_address"],
            ),
        )
