"""
Unit tests for the refresh-token revocation stores.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from shared.errors import StoreUnavailable
from service_gateway.app.tokens.models import DeviceMeta, RefreshTokenRecord
from service_gateway.app.tokens.postgres_store import PostgresRevocationStore, _affected_rows
from service_gateway.app.tokens.revocation_store import InMemoryRevocationStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_record(token_id="tok-1", subject_id="user-1", issued_at=NOW, ttl=timedelta(days=14)):
    return RefreshTokenRecord(
        token_id=token_id,
        subject_id=subject_id,
        issued_at=issued_at,
        expires_at=issued_at + ttl,
        device_meta=DeviceMeta(user_agent="pytest", source_address="127.0.0.1"),
    )


class TestInMemoryRevocationStore:
    """Test cases for InMemoryRevocationStore."""

    @pytest.fixture
    def store(self):
        return InMemoryRevocationStore()

    @pytest.mark.asyncio
    async def test_put_and_get(self, store):
        await store.put(make_record())

        record = await store.get("tok-1")
        assert record.subject_id == "user-1"
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_get_returns_copy(self, store):
        await store.put(make_record())

        record = await store.get("tok-1")
        record.revoked_at = NOW

        assert (await store.get("tok-1")).revoked_at is None

    @pytest.mark.asyncio
    async def test_mark_revoked_only_once(self, store):
        await store.put(make_record())

        assert await store.mark_revoked("tok-1", NOW) is True
        assert await store.mark_revoked("tok-1", NOW + timedelta(seconds=1)) is False
        assert (await store.get("tok-1")).revoked_at == NOW

    @pytest.mark.asyncio
    async def test_mark_revoked_unknown(self, store):
        assert await store.mark_revoked("missing", NOW) is False

    @pytest.mark.asyncio
    async def test_concurrent_mark_revoked_single_winner(self, store):
        await store.put(make_record())

        results = await asyncio.gather(*(store.mark_revoked("tok-1", NOW) for _ in range(20)))

        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_rotate_revokes_and_inserts(self, store):
        await store.put(make_record())

        assert await store.rotate("tok-1", make_record("tok-2"), NOW) is True

        assert (await store.get("tok-1")).revoked_at == NOW
        assert (await store.get("tok-2")).revoked_at is None

    @pytest.mark.asyncio
    async def test_rotate_of_revoked_record_writes_nothing(self, store):
        await store.put(make_record())
        await store.mark_revoked("tok-1", NOW)

        assert await store.rotate("tok-1", make_record("tok-2"), NOW) is False
        assert await store.rotate("missing", make_record("tok-3"), NOW) is False

        assert await store.get("tok-2") is None
        assert await store.get("tok-3") is None

    @pytest.mark.asyncio
    async def test_concurrent_rotate_single_winner(self, store):
        await store.put(make_record())

        results = await asyncio.gather(
            *(store.rotate("tok-1", make_record(f"new-{i}"), NOW) for i in range(20))
        )

        assert results.count(True) == 1
        assert len(await store.list_for_subject("user-1")) == 2

    @pytest.mark.asyncio
    async def test_mark_all_revoked_for_subject(self, store):
        await store.put(make_record("a"))
        await store.put(make_record("b"))
        await store.put(make_record("c", subject_id="user-2"))
        await store.mark_revoked("b", NOW)

        assert await store.mark_all_revoked_for_subject("user-1", NOW) == 1
        assert (await store.get("c")).revoked_at is None

    @pytest.mark.asyncio
    async def test_list_for_subject(self, store):
        await store.put(make_record("a"))
        await store.put(make_record("b", subject_id="user-2"))

        records = await store.list_for_subject("user-1")

        assert [r.token_id for r in records] == ["a"]

    @pytest.mark.asyncio
    async def test_sweep_expired(self, store):
        await store.put(make_record("old", ttl=timedelta(hours=1)))
        await store.put(make_record("new"))

        assert await store.sweep_expired(NOW + timedelta(hours=2)) == 1
        assert await store.get("old") is None
        assert await store.get("new") is not None


class TestPostgresRevocationStore:
    """Test cases for PostgresRevocationStore."""

    @pytest.fixture
    def conn(self):
        """Mock asyncpg connection."""
        conn = AsyncMock()
        conn.transaction = MagicMock()
        conn.transaction.return_value.__aexit__.return_value = False
        return conn

    @pytest.fixture
    def store(self, conn):
        """Store with a mocked pool."""
        store = PostgresRevocationStore("postgres://localhost/test")
        store.pool = MagicMock()
        store.pool.acquire.return_value.__aenter__.return_value = conn
        store.pool.acquire.return_value.__aexit__.return_value = False
        return store

    def test_affected_rows(self):
        assert _affected_rows("UPDATE 3") == 3
        assert _affected_rows("DELETE 0") == 0
        assert _affected_rows("") == 0

    @pytest.mark.asyncio
    async def test_put(self, store, conn):
        await store.put(make_record())

        args = conn.execute.call_args[0]
        assert "INSERT INTO refresh_tokens" in args[0]
        assert args[1:4] == ("tok-1", "user-1", "user")

    @pytest.mark.asyncio
    async def test_get(self, store, conn):
        conn.fetchrow.return_value = {
            "token_id": "tok-1",
            "subject_id": "user-1",
            "role": "user",
            "tier": "pro",
            "issued_at": NOW,
            "expires_at": NOW + timedelta(days=14),
            "revoked_at": None,
            "user_agent": "pytest",
            "source_address": "127.0.0.1",
        }

        record = await store.get("tok-1")

        assert record.tier == "pro"
        assert record.device_meta.user_agent == "pytest"

    @pytest.mark.asyncio
    async def test_get_missing(self, store, conn):
        conn.fetchrow.return_value = None

        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_mark_revoked_is_conditional(self, store, conn):
        conn.execute.return_value = "UPDATE 1"
        assert await store.mark_revoked("tok-1", NOW) is True
        assert "revoked_at IS NULL" in conn.execute.call_args[0][0]

        conn.execute.return_value = "UPDATE 0"
        assert await store.mark_revoked("tok-1", NOW) is False

    @pytest.mark.asyncio
    async def test_rotate_runs_in_one_transaction(self, store, conn):
        conn.execute.side_effect = ["UPDATE 1", "INSERT 0 1"]

        assert await store.rotate("tok-1", make_record("tok-2"), NOW) is True

        conn.transaction.assert_called_once()
        update, insert = [call[0] for call in conn.execute.call_args_list]
        assert "revoked_at IS NULL" in update[0]
        assert "INSERT INTO refresh_tokens" in insert[0]
        assert insert[1] == "tok-2"

    @pytest.mark.asyncio
    async def test_rotate_lost_race_skips_insert(self, store, conn):
        conn.execute.return_value = "UPDATE 0"

        assert await store.rotate("tok-1", make_record("tok-2"), NOW) is False
        assert conn.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_rotate_insert_failure_rolls_back(self, store, conn):
        conn.execute.side_effect = ["UPDATE 1", asyncpg.PostgresError("insert failed")]

        with pytest.raises(StoreUnavailable):
            await store.rotate("tok-1", make_record("tok-2"), NOW)

        exc_type = conn.transaction.return_value.__aexit__.call_args[0][0]
        assert exc_type is asyncpg.PostgresError

    @pytest.mark.asyncio
    async def test_mark_all_revoked_for_subject(self, store, conn):
        conn.execute.return_value = "UPDATE 4"

        assert await store.mark_all_revoked_for_subject("user-1", NOW) == 4

    @pytest.mark.asyncio
    async def test_sweep_expired(self, store, conn):
        conn.execute.return_value = "DELETE 2"

        assert await store.sweep_expired(NOW) == 2

    @pytest.mark.asyncio
    async def test_database_error_maps_to_unavailable(self, store, conn):
        conn.execute.side_effect = asyncpg.PostgresError("connection lost")

        with pytest.raises(StoreUnavailable):
            await store.mark_revoked("tok-1", NOW)

    @pytest.mark.asyncio
    async def test_not_started(self):
        store = PostgresRevocationStore("postgres://localhost/test")

        with pytest.raises(StoreUnavailable):
            await store.get("tok-1")

    @pytest.mark.asyncio
    async def test_ping(self, store, conn):
        conn.fetchval.return_value = 1

        assert await store.ping() is True
