"""
Unit tests for the Gateway token service.
"""

import asyncio
import time

import pytest
from jose import jwt

from shared.errors import ExpiredToken, InvalidToken, RevokedToken, StoreUnavailable
from service_gateway.app.ratelimit.counter_store import InMemoryCounterStore
from service_gateway.app.tokens.models import DeviceMeta, utc_from_timestamp
from service_gateway.app.tokens.revocation_store import InMemoryRevocationStore
from service_gateway.app.tokens.service import TokenService
from service_gateway.app.tokens.sweeper import RevocationSweeper

from conftest import TEST_SIGNING_KEY, UnavailableCounterStore, UnavailableRevocationStore


def _claims(**overrides):
    now = int(time.time())
    claims = {
        "sub": "user-1",
        "role": "user",
        "tier": "free",
        "iat": now,
        "exp": now + 900,
        "kind": "access",
        "iss": "access-gateway",
        "aud": "access-api",
    }
    claims.update(overrides)
    return claims


class TestTokenIssuance:
    """Issuing and verifying access tokens."""

    @pytest.fixture
    def store(self):
        return InMemoryRevocationStore()

    @pytest.fixture
    def token_service(self, store, clock, metrics):
        """Create TokenService over an in-memory store."""
        return TokenService(store, signing_key=TEST_SIGNING_KEY, clock=clock, metrics=metrics)

    @pytest.mark.asyncio
    async def test_issue_and_verify_access(self, token_service):
        pair = await token_service.issue_pair("user-1", "admin", tier="pro")
        claims = token_service.verify_access(pair.access_token)

        assert claims.subject_id == "user-1"
        assert claims.role == "admin"
        assert claims.tier == "pro"
        assert claims.expires_at - claims.issued_at == 900
        assert pair.access_expires_in == 900
        assert pair.refresh_expires_in == 14 * 24 * 3600

    @pytest.mark.asyncio
    async def test_issue_persists_refresh_record(self, token_service, store):
        meta = DeviceMeta(user_agent="pytest", source_address="10.0.0.1")
        pair = await token_service.issue_pair("user-1", "user", device_meta=meta)

        record = await store.get(pair.token_id)
        assert record is not None
        assert record.subject_id == "user-1"
        assert record.revoked_at is None
        assert record.device_meta == meta

    @pytest.mark.asyncio
    async def test_refresh_token_is_not_an_access_token(self, token_service):
        pair = await token_service.issue_pair("user-1", "user")

        with pytest.raises(InvalidToken):
            token_service.verify_access(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_access_token_is_not_a_refresh_token(self, token_service):
        pair = await token_service.issue_pair("user-1", "user")

        with pytest.raises(InvalidToken):
            await token_service.refresh(pair.access_token)

    def test_expired_access_token(self, token_service):
        past = int(time.time()) - 3600
        token = jwt.encode(_claims(iat=past, exp=past + 900), TEST_SIGNING_KEY, algorithm="HS256")

        with pytest.raises(ExpiredToken):
            token_service.verify_access(token)

    def test_tampered_signature_rejected(self, token_service):
        token = jwt.encode(_claims(), "some-other-key", algorithm="HS256")

        with pytest.raises(InvalidToken):
            token_service.verify_access(token)

    def test_unallowed_algorithm_rejected(self, token_service):
        token = jwt.encode(_claims(), TEST_SIGNING_KEY, algorithm="HS512")

        with pytest.raises(InvalidToken):
            token_service.verify_access(token)

    def test_unsigned_token_rejected(self, token_service):
        signed = jwt.encode(_claims(), TEST_SIGNING_KEY, algorithm="HS256")
        _, payload, _ = signed.split(".")
        # {"alg":"none","typ":"JWT"}
        unsigned = "eyJhbGciOiJub25lIiwidHlwIjoiSldUIn0." + payload + "."

        with pytest.raises(InvalidToken):
            token_service.verify_access(unsigned)

    def test_wrong_audience_rejected(self, token_service):
        token = jwt.encode(_claims(aud="someone-else"), TEST_SIGNING_KEY, algorithm="HS256")

        with pytest.raises(InvalidToken):
            token_service.verify_access(token)

    def test_wrong_issuer_rejected(self, token_service):
        token = jwt.encode(_claims(iss="rogue"), TEST_SIGNING_KEY, algorithm="HS256")

        with pytest.raises(InvalidToken):
            token_service.verify_access(token)

    @pytest.mark.parametrize("claim", ["aud", "iss", "exp", "iat", "sub"])
    def test_missing_registered_claim_rejected(self, token_service, claim):
        claims = _claims()
        del claims[claim]
        token = jwt.encode(claims, TEST_SIGNING_KEY, algorithm="HS256")

        with pytest.raises(InvalidToken):
            token_service.verify_access(token)

    def test_refresh_token_without_expiry_rejected(self, token_service):
        claims = _claims(kind="refresh", jti="abc")
        del claims["exp"]
        token = jwt.encode(claims, TEST_SIGNING_KEY, algorithm="HS256")

        with pytest.raises(InvalidToken):
            token_service.decode_refresh(token, verify_exp=False)

    def test_malformed_token_rejected(self, token_service):
        with pytest.raises(InvalidToken):
            token_service.verify_access("not-a-jwt")

    def test_missing_kind_rejected(self, token_service):
        claims = _claims()
        del claims["kind"]
        token = jwt.encode(claims, TEST_SIGNING_KEY, algorithm="HS256")

        with pytest.raises(InvalidToken):
            token_service.verify_access(token)

    def test_none_algorithm_cannot_be_allowed(self, store):
        with pytest.raises(ValueError):
            TokenService(store, signing_key=TEST_SIGNING_KEY, allowed_algorithms=["HS256", "none"])

    def test_signing_algorithm_must_be_allowed(self, store):
        with pytest.raises(ValueError):
            TokenService(store, signing_key=TEST_SIGNING_KEY, algorithm="HS512", allowed_algorithms=["HS256"])

    def test_invalid_tokens_are_counted(self, token_service, metrics):
        with pytest.raises(InvalidToken):
            token_service.verify_access("not-a-jwt")

        value = metrics.registry.get_sample_value(
            "token_operations_total", {"operation": "verify", "outcome": "invalid"}
        )
        assert value == 1.0


class TestTokenRotation:
    """Refresh rotation and revocation."""

    @pytest.fixture
    def store(self):
        return InMemoryRevocationStore()

    @pytest.fixture
    def token_service(self, store, clock):
        """Create TokenService over an in-memory store."""
        return TokenService(store, signing_key=TEST_SIGNING_KEY, clock=clock)

    @pytest.mark.asyncio
    async def test_refresh_rotates_record(self, token_service, store):
        pair = await token_service.issue_pair("user-1", "user", tier="basic")

        new_pair = await token_service.refresh(pair.refresh_token)

        assert new_pair.token_id != pair.token_id
        old_record = await store.get(pair.token_id)
        assert old_record.revoked_at is not None
        new_record = await store.get(new_pair.token_id)
        assert new_record.revoked_at is None
        assert new_record.tier == "basic"
        assert token_service.verify_access(new_pair.access_token).subject_id == "user-1"

    @pytest.mark.asyncio
    async def test_reused_refresh_token_rejected(self, token_service):
        pair = await token_service.issue_pair("user-1", "user")
        await token_service.refresh(pair.refresh_token)

        with pytest.raises(RevokedToken):
            await token_service.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_concurrent_refresh_has_one_winner(self, token_service):
        pair = await token_service.issue_pair("user-1", "user")

        results = await asyncio.gather(
            *(token_service.refresh(pair.refresh_token) for _ in range(10)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 9
        assert all(isinstance(r, RevokedToken) for r in losers)

    @pytest.mark.asyncio
    async def test_refresh_after_record_expiry(self, token_service, clock):
        pair = await token_service.issue_pair("user-1", "user")
        clock.advance(14 * 24 * 3600 + 1)

        with pytest.raises(RevokedToken):
            await token_service.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_unknown_refresh_record_rejected(self, token_service, store):
        pair = await token_service.issue_pair("user-1", "user")
        await store.sweep_expired(utc_from_timestamp(time.time() + 365 * 24 * 3600))

        with pytest.raises(RevokedToken):
            await token_service.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, token_service, store):
        pair = await token_service.issue_pair("user-1", "user")

        await token_service.revoke(pair.token_id)
        await token_service.revoke(pair.token_id)
        await token_service.revoke("never-issued")

        record = await store.get(pair.token_id)
        assert record.revoked_at is not None
        with pytest.raises(RevokedToken):
            await token_service.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_revoked_refresh_leaves_access_token_valid(self, token_service):
        pair = await token_service.issue_pair("user-1", "user")
        await token_service.revoke(pair.token_id)

        assert token_service.verify_access(pair.access_token).subject_id == "user-1"

    @pytest.mark.asyncio
    async def test_revoke_all_for_subject(self, token_service):
        first = await token_service.issue_pair("user-1", "user")
        second = await token_service.issue_pair("user-1", "user")
        other = await token_service.issue_pair("user-2", "user")

        revoked = await token_service.revoke_all_for_subject("user-1")

        assert revoked == 2
        for pair in (first, second):
            with pytest.raises(RevokedToken):
                await token_service.refresh(pair.refresh_token)
        assert (await token_service.refresh(other.refresh_token)).token_id != other.token_id

    @pytest.mark.asyncio
    async def test_list_active_sessions_newest_first(self, token_service, clock):
        first = await token_service.issue_pair("user-1", "user")
        clock.advance(10)
        second = await token_service.issue_pair("user-1", "user")
        clock.advance(10)
        revoked = await token_service.issue_pair("user-1", "user")
        await token_service.revoke(revoked.token_id)

        sessions = await token_service.list_active_sessions("user-1")

        assert [s.token_id for s in sessions] == [second.token_id, first.token_id]

    @pytest.mark.asyncio
    async def test_sweep_expired(self, token_service, store, clock):
        await token_service.issue_pair("user-1", "user")
        clock.advance(14 * 24 * 3600)

        assert await token_service.sweep_expired() == 1
        assert await store.list_for_subject("user-1") == []

    @pytest.mark.asyncio
    async def test_decode_refresh_ignores_expiry_when_asked(self, token_service):
        past = int(time.time()) - 3600
        claims = _claims(kind="refresh", jti="abc", iat=past, exp=past + 60)
        token = jwt.encode(claims, TEST_SIGNING_KEY, algorithm="HS256")

        with pytest.raises(ExpiredToken):
            token_service.decode_refresh(token)
        assert token_service.decode_refresh(token, verify_exp=False).token_id == "abc"


class TestTokenServiceStoreFailures:
    """The token service fails closed."""

    @pytest.mark.asyncio
    async def test_issue_with_store_down(self):
        token_service = TokenService(UnavailableRevocationStore(), signing_key=TEST_SIGNING_KEY)

        with pytest.raises(StoreUnavailable):
            await token_service.issue_pair("user-1", "user")

    @pytest.mark.asyncio
    async def test_refresh_with_store_down(self):
        store = InMemoryRevocationStore()
        token_service = TokenService(store, signing_key=TEST_SIGNING_KEY)
        pair = await token_service.issue_pair("user-1", "user")
        token_service.store = UnavailableRevocationStore()

        with pytest.raises(StoreUnavailable):
            await token_service.refresh(pair.refresh_token)

    @pytest.mark.asyncio
    async def test_failed_rotation_keeps_old_token_usable(self, metrics):
        class FlakyRotateStore(InMemoryRevocationStore):
            failures = 1

            async def rotate(self, old_token_id, new_record, revoked_at):
                if self.failures:
                    self.failures -= 1
                    raise StoreUnavailable("revocation_store")
                return await super().rotate(old_token_id, new_record, revoked_at)

        store = FlakyRotateStore()
        token_service = TokenService(store, signing_key=TEST_SIGNING_KEY, metrics=metrics)
        pair = await token_service.issue_pair("user-1", "user")

        with pytest.raises(StoreUnavailable):
            await token_service.refresh(pair.refresh_token)

        assert (await store.get(pair.token_id)).revoked_at is None
        assert len(await store.list_for_subject("user-1")) == 1

        new_pair = await token_service.refresh(pair.refresh_token)

        assert new_pair.token_id != pair.token_id
        assert metrics.registry.get_sample_value(
            "token_operations_total", {"operation": "refresh", "outcome": "reused"}
        ) is None

    @pytest.mark.asyncio
    async def test_refresh_does_not_depend_on_put(self):
        class PutOutageStore(InMemoryRevocationStore):
            put_available = True

            async def put(self, record):
                if not self.put_available:
                    raise StoreUnavailable("revocation_store")
                await super().put(record)

        store = PutOutageStore()
        token_service = TokenService(store, signing_key=TEST_SIGNING_KEY)
        pair = await token_service.issue_pair("user-1", "user")
        store.put_available = False

        new_pair = await token_service.refresh(pair.refresh_token)

        assert (await store.get(new_pair.token_id)).revoked_at is None
        assert (await store.get(pair.token_id)).revoked_at is not None

    @pytest.mark.asyncio
    async def test_store_timeout_maps_to_unavailable(self):
        class SlowStore(InMemoryRevocationStore):
            async def put(self, record):
                await asyncio.sleep(1)

        token_service = TokenService(SlowStore(), signing_key=TEST_SIGNING_KEY, store_timeout_seconds=0.01)

        with pytest.raises(StoreUnavailable):
            await token_service.issue_pair("user-1", "user")

    @pytest.mark.asyncio
    async def test_access_verification_needs_no_store(self):
        store = InMemoryRevocationStore()
        token_service = TokenService(store, signing_key=TEST_SIGNING_KEY)
        pair = await token_service.issue_pair("user-1", "user")
        token_service.store = UnavailableRevocationStore()

        assert token_service.verify_access(pair.access_token).subject_id == "user-1"


class TestRevocationSweeper:
    """Background removal of expired records."""

    @pytest.mark.asyncio
    async def test_sweep_once(self, clock):
        store = InMemoryRevocationStore()
        token_service = TokenService(store, signing_key=TEST_SIGNING_KEY, clock=clock)
        await token_service.issue_pair("user-1", "user")
        clock.advance(15 * 24 * 3600)

        assert await RevocationSweeper(token_service).sweep_once() == 1

    @pytest.mark.asyncio
    async def test_sweep_survives_store_outage(self):
        token_service = TokenService(UnavailableRevocationStore(), signing_key=TEST_SIGNING_KEY)

        assert await RevocationSweeper(token_service).sweep_once() == 0

    @pytest.mark.asyncio
    async def test_purges_idle_counter_windows(self, clock):
        counters = InMemoryCounterStore()
        await counters.hit_fixed("rate_limit:api:ip:10.0.0.1", 1, 10, 60, clock())
        token_service = TokenService(InMemoryRevocationStore(), signing_key=TEST_SIGNING_KEY, clock=clock)
        sweeper = RevocationSweeper(token_service, counter_store=counters)
        clock.advance(120)

        assert await sweeper.purge_counters() == 1
        assert counters.size() == 0

    @pytest.mark.asyncio
    async def test_counter_purge_survives_store_outage(self):
        token_service = TokenService(InMemoryRevocationStore(), signing_key=TEST_SIGNING_KEY)
        sweeper = RevocationSweeper(token_service, counter_store=UnavailableCounterStore())

        assert await sweeper.purge_counters() == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        token_service = TokenService(InMemoryRevocationStore(), signing_key=TEST_SIGNING_KEY)
        sweeper = RevocationSweeper(token_service, interval_seconds=0.01)

        sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert sweeper._task is None
