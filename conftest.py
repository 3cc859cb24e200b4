"""
Shared fixtures and fakes for the Access Gateway test suites.
"""

import time
from typing import Dict, Optional, Tuple

import pytest

from shared.config import get_config
from shared.errors import InvalidCredentials, StoreUnavailable
from shared.metrics import MetricsCollector
from service_gateway.app.ratelimit.counter_store import InMemoryCounterStore
from service_gateway.app.tokens.models import FederatedIdentity, Principal
from service_gateway.app.tokens.revocation_store import InMemoryRevocationStore

TEST_SIGNING_KEY = "test-signing-key-0123456789abcdef"


class ManualClock:
    """Callable clock the tests move by hand."""

    def __init__(self, start: Optional[float] = None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIdentityProvider:
    """In-process identity collaborator with a fixed user table."""

    def __init__(self):
        self.users: Dict[str, Tuple[str, Principal]] = {
            "alice": ("correct-horse", Principal(subject_id="user-alice", role="user", tier="free")),
            "carol": ("battery-staple", Principal(subject_id="user-carol", role="admin", tier="basic")),
        }
        self.federated: Dict[Tuple[str, str], Principal] = {
            ("github", "gh-42"): Principal(subject_id="user-bob", role="user", tier="pro"),
        }

    async def verify_credentials(self, username: str, password: str) -> Principal:
        entry = self.users.get(username)
        if entry is None or entry[0] != password:
            raise InvalidCredentials()
        return entry[1]

    async def exchange_oauth_code(self, provider: str, code: str,
                                  redirect_uri: Optional[str] = None) -> FederatedIdentity:
        if code != "valid-code":
            raise InvalidCredentials()
        return FederatedIdentity(provider=provider, external_id="gh-42", email="bob@example.com")

    async def resolve_federated(self, identity: FederatedIdentity) -> Principal:
        principal = self.federated.get((identity.provider, identity.external_id))
        if principal is None:
            raise InvalidCredentials()
        return principal


class UnavailableRevocationStore(InMemoryRevocationStore):
    """Revocation store whose backend is down."""

    async def ping(self) -> bool:
        raise StoreUnavailable("revocation_store")

    async def put(self, record):
        raise StoreUnavailable("revocation_store")

    async def get(self, token_id):
        raise StoreUnavailable("revocation_store")

    async def mark_revoked(self, token_id, revoked_at):
        raise StoreUnavailable("revocation_store")

    async def rotate(self, old_token_id, new_record, revoked_at):
        raise StoreUnavailable("revocation_store")

    async def mark_all_revoked_for_subject(self, subject_id, revoked_at):
        raise StoreUnavailable("revocation_store")

    async def list_for_subject(self, subject_id):
        raise StoreUnavailable("revocation_store")

    async def sweep_expired(self, now):
        raise StoreUnavailable("revocation_store")


class UnavailableCounterStore(InMemoryCounterStore):
    """Counter store whose backend is down."""

    async def ping(self) -> bool:
        raise StoreUnavailable("counter_store")

    async def hit_fixed(self, key, cost, limit, window_seconds, now):
        raise StoreUnavailable("counter_store")

    async def hit_sliding(self, key, cost, limit, window_seconds, now, member):
        raise StoreUnavailable("counter_store")

    async def release(self, key, state):
        raise StoreUnavailable("counter_store")

    async def purge_expired(self, now):
        raise StoreUnavailable("counter_store")


@pytest.fixture
def clock():
    """Manual clock starting at the current wall time."""
    return ManualClock()


@pytest.fixture
def metrics():
    """Gateway metrics collector with its own registry."""
    return MetricsCollector("gateway")


@pytest.fixture
def config():
    """Gateway configuration with in-memory stores and a test signing key."""
    return get_config(
        "gateway",
        8000,
        jwt_signing_key=TEST_SIGNING_KEY,
        counter_store_backend="memory",
        revocation_store_backend="memory",
        log_level="warning",
    )


@pytest.fixture
def identity_provider():
    """Fake identity collaborator."""
    return FakeIdentityProvider()
