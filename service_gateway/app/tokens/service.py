"""
Token service for the Gateway.

Access tokens are short-lived, self-contained JWTs verified without any I/O.
Refresh tokens are JWTs carrying a ``jti`` that points at a record in the
revocation store; every refresh rotates the record so a leaked refresh token
is good for at most one use.
"""

import asyncio
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from jose import ExpiredSignatureError, JWTError, jwt

from shared.config import BaseConfig, FailurePolicy
from shared.errors import ExpiredToken, InvalidToken, RevokedToken, StoreUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .models import (
    ACCESS_KIND,
    REFRESH_KIND,
    AccessClaims,
    DeviceMeta,
    RefreshClaims,
    RefreshTokenRecord,
    TokenPair,
    utc_from_timestamp,
)
from .revocation_store import RevocationStore

T = TypeVar("T")


class TokenService:
    """Issues, verifies, rotates and revokes token pairs."""

    # Issuance and rotation are security critical: a store outage denies.
    failure_policy = FailurePolicy.FAIL_CLOSED

    def __init__(
        self,
        store: RevocationStore,
        *,
        signing_key: str,
        verification_key: Optional[str] = None,
        algorithm: str = "HS256",
        allowed_algorithms: Iterable[str] = ("HS256",),
        issuer: str = "access-gateway",
        audience: str = "access-api",
        access_ttl_seconds: int = 900,
        refresh_ttl_seconds: int = 14 * 24 * 3600,
        store_timeout_seconds: float = 0.5,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        allowed = [alg for alg in allowed_algorithms]
        if not allowed:
            raise ValueError("allowed_algorithms must not be empty")
        if any(alg.lower() == "none" for alg in allowed):
            raise ValueError("unsigned tokens ('none') are never accepted")
        if algorithm not in allowed:
            raise ValueError(f"signing algorithm {algorithm!r} is not in the allowed set")

        self.store = store
        self.algorithm = algorithm
        self.allowed_algorithms = allowed
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.store_timeout_seconds = store_timeout_seconds
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("gateway.tokens")

        self._signing_key = signing_key
        # Symmetric algorithms verify with the signing secret
        self._verification_key = verification_key or signing_key

    @classmethod
    def from_config(cls, config: BaseConfig, store: RevocationStore,
                    metrics: Optional[MetricsCollector] = None) -> "TokenService":
        return cls(
            store,
            signing_key=config.jwt_signing_key.get_secret_value(),
            verification_key=config.jwt_verification_key,
            algorithm=config.jwt_algorithm,
            allowed_algorithms=config.jwt_allowed_algorithms,
            issuer=config.jwt_issuer,
            audience=config.jwt_audience,
            access_ttl_seconds=config.access_token_ttl_seconds,
            refresh_ttl_seconds=config.refresh_token_ttl_seconds,
            store_timeout_seconds=config.store_timeout_seconds,
            metrics=metrics,
        )

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def issue_pair(self, subject_id: str, role: str, tier: str = "free",
                         device_meta: Optional[DeviceMeta] = None) -> TokenPair:
        """Mint an access/refresh pair and persist the refresh record."""
        pair, record = self._mint(subject_id, role, tier, device_meta)
        await self._store_call("put", self.store.put(record))

        self._count("issue", "ok")
        self.logger.info("Token pair issued", subject_id=subject_id, token_id=pair.token_id)
        return pair

    def _mint(self, subject_id: str, role: str, tier: str,
              device_meta: Optional[DeviceMeta]) -> Tuple[TokenPair, RefreshTokenRecord]:
        now = int(self.clock())
        token_id = uuid.uuid4().hex

        access_token = self._encode({
            "sub": subject_id,
            "role": role,
            "tier": tier,
            "iat": now,
            "exp": now + self.access_ttl_seconds,
            "kind": ACCESS_KIND,
        })
        refresh_token = self._encode({
            "sub": subject_id,
            "role": role,
            "tier": tier,
            "iat": now,
            "exp": now + self.refresh_ttl_seconds,
            "kind": REFRESH_KIND,
            "jti": token_id,
        })

        record = RefreshTokenRecord(
            token_id=token_id,
            subject_id=subject_id,
            role=role,
            tier=tier,
            issued_at=utc_from_timestamp(now),
            expires_at=utc_from_timestamp(now + self.refresh_ttl_seconds),
            device_meta=device_meta or DeviceMeta(),
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            token_id=token_id,
            access_expires_in=self.access_ttl_seconds,
            refresh_expires_in=self.refresh_ttl_seconds,
        )
        return pair, record

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_access(self, token: str) -> AccessClaims:
        """Verify an access token. Pure CPU work, never touches a store."""
        payload = self._decode(token, expected_kind=ACCESS_KIND)
        return AccessClaims.from_payload(payload)

    def decode_refresh(self, token: str, verify_exp: bool = True) -> RefreshClaims:
        """Verify a refresh token's signature and kind."""
        payload = self._decode(token, expected_kind=REFRESH_KIND, verify_exp=verify_exp)
        if not isinstance(payload.get("jti"), str):
            raise self._reject("missing_token_id")
        return RefreshClaims.from_payload(payload)

    # ------------------------------------------------------------------
    # Rotation and revocation
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str, device_meta: Optional[DeviceMeta] = None) -> TokenPair:
        """Exchange a refresh token for a new pair, revoking the old record."""
        claims = self.decode_refresh(refresh_token)
        now = utc_from_timestamp(self.clock())

        record = await self._store_call("get", self.store.get(claims.token_id))
        if record is None or record.subject_id != claims.subject_id:
            self._count("refresh", "unknown")
            self.logger.warning("Refresh token has no matching record", token_id=claims.token_id)
            raise RevokedToken()

        if record.revoked_at is not None:
            self._count("refresh", "reused")
            self.logger.warning(
                "Revoked refresh token presented, possible token theft",
                subject_id=record.subject_id,
                token_id=record.token_id,
                revoked_at=record.revoked_at.isoformat(),
            )
            raise RevokedToken()

        if now >= record.expires_at:
            self._count("refresh", "expired")
            raise RevokedToken()

        # Revoking the old record and storing its successor commit together;
        # only the caller that flips revoked_at gets the replacement
        pair, new_record = self._mint(record.subject_id, record.role, record.tier,
                                      device_meta or record.device_meta)
        claimed = await self._store_call("rotate", self.store.rotate(record.token_id, new_record, now))
        if not claimed:
            self._count("refresh", "race_lost")
            self.logger.warning(
                "Concurrent refresh lost rotation race",
                subject_id=record.subject_id,
                token_id=record.token_id,
            )
            raise RevokedToken()

        self._count("refresh", "ok")
        self.logger.info("Refresh token rotated", subject_id=record.subject_id,
                         old_token_id=record.token_id, new_token_id=pair.token_id)
        return pair

    async def revoke(self, token_id: str) -> None:
        """Revoke one refresh token. Idempotent."""
        now = utc_from_timestamp(self.clock())
        changed = await self._store_call("mark_revoked", self.store.mark_revoked(token_id, now))
        self._count("revoke", "ok" if changed else "noop")
        self.logger.info("Refresh token revoked", token_id=token_id, changed=changed)

    async def revoke_all_for_subject(self, subject_id: str) -> int:
        """Revoke every live refresh token of a subject ("log out everywhere")."""
        now = utc_from_timestamp(self.clock())
        count = await self._store_call(
            "mark_all_revoked_for_subject",
            self.store.mark_all_revoked_for_subject(subject_id, now),
        )
        self._count("revoke_all", "ok")
        self.logger.info("All refresh tokens revoked", subject_id=subject_id, count=count)
        return count

    async def list_active_sessions(self, subject_id: str) -> List[RefreshTokenRecord]:
        """Unrevoked, unexpired records for a subject, newest first."""
        now = utc_from_timestamp(self.clock())
        records = await self._store_call("list_for_subject", self.store.list_for_subject(subject_id))
        active = [record for record in records if record.is_active(now)]
        active.sort(key=lambda record: record.issued_at, reverse=True)
        return active

    async def sweep_expired(self) -> int:
        """Physically delete records whose expiry has passed."""
        now = utc_from_timestamp(self.clock())
        return await self._store_call("sweep_expired", self.store.sweep_expired(now))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _encode(self, claims: Dict[str, Any]) -> str:
        claims = dict(claims, iss=self.issuer, aud=self.audience)
        return jwt.encode(claims, self._signing_key, algorithm=self.algorithm)

    def _decode(self, token: str, expected_kind: str, verify_exp: bool = True) -> Dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            raise self._reject("malformed")
        if header.get("alg") not in self.allowed_algorithms:
            raise self._reject("algorithm_not_allowed")

        try:
            payload = jwt.decode(
                token,
                self._verification_key,
                algorithms=self.allowed_algorithms,
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "verify_exp": verify_exp,
                    "require_aud": True,
                    "require_iss": True,
                    "require_exp": True,
                    "require_iat": True,
                    "require_sub": True,
                },
            )
        except ExpiredSignatureError:
            self._count("verify", "expired")
            raise ExpiredToken()
        except JWTError as exc:
            self.logger.debug("JWT decode failed", error=str(exc))
            raise self._reject("signature_or_claims")

        if payload.get("kind") != expected_kind:
            raise self._reject("wrong_kind")
        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            raise self._reject("missing_subject")
        return payload

    def _reject(self, reason: str) -> InvalidToken:
        # Invalid tokens are a possible attack signal
        self._count("verify", "invalid")
        self.logger.warning("Token rejected", reason=reason)
        return InvalidToken()

    async def _store_call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Run one store round trip under the timeout; failures deny."""
        try:
            if self.metrics:
                with self.metrics.time_operation("store_operation_duration_seconds",
                                                 store="revocation", operation=operation):
                    return await asyncio.wait_for(awaitable, timeout=self.store_timeout_seconds)
            return await asyncio.wait_for(awaitable, timeout=self.store_timeout_seconds)
        except StoreUnavailable:
            self._count(operation, "store_unavailable")
            self.logger.error("Revocation store unavailable", operation=operation)
            raise
        except (asyncio.TimeoutError, OSError) as exc:
            self._count(operation, "store_unavailable")
            self.logger.error("Revocation store unavailable", operation=operation, error=type(exc).__name__)
            raise StoreUnavailable("revocation_store") from exc

    def _count(self, operation: str, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("token_operations_total", operation=operation, outcome=outcome)
