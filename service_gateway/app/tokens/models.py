"""
Token data models for the Gateway.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

ACCESS_KIND = "access"
REFRESH_KIND = "refresh"


def utc_from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


@dataclass(frozen=True)
class Principal:
    """Authenticated subject as reported by the identity collaborator."""
    subject_id: str
    role: str = "user"
    tier: str = "free"


@dataclass(frozen=True)
class FederatedIdentity:
    """Verified identity from a third-party provider."""
    provider: str
    external_id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class DeviceMeta:
    """Client details captured when a refresh token is issued."""
    user_agent: Optional[str] = None
    source_address: Optional[str] = None


@dataclass
class RefreshTokenRecord:
    """Durable record behind a refresh token."""
    token_id: str
    subject_id: str
    issued_at: datetime
    expires_at: datetime
    role: str = "user"
    tier: str = "free"
    revoked_at: Optional[datetime] = None
    device_meta: DeviceMeta = field(default_factory=DeviceMeta)

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


@dataclass(frozen=True)
class AccessClaims:
    """Verified claims of an access token."""
    subject_id: str
    role: str
    tier: str
    issued_at: int
    expires_at: int
    kind: str = ACCESS_KIND

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AccessClaims":
        return cls(
            subject_id=payload["sub"],
            role=payload.get("role", "user"),
            tier=payload.get("tier", "free"),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            kind=payload["kind"],
        )


@dataclass(frozen=True)
class RefreshClaims:
    """Verified claims of a refresh token."""
    token_id: str
    subject_id: str
    role: str
    tier: str
    issued_at: int
    expires_at: int

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RefreshClaims":
        return cls(
            token_id=payload["jti"],
            subject_id=payload["sub"],
            role=payload.get("role", "user"),
            tier=payload.get("tier", "free"),
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
        )


@dataclass(frozen=True)
class TokenPair:
    """Freshly minted access/refresh tokens."""
    access_token: str
    refresh_token: str
    token_id: str
    access_expires_in: int
    refresh_expires_in: int


class LoginRequest(BaseModel):
    """Request model for password login."""
    username: str = Field(..., min_length=1, max_length=256)
    password: str = Field(..., min_length=1, max_length=1024)


class OAuthLinkRequest(BaseModel):
    """Request model for completing an OAuth authorization-code flow."""
    code: str = Field(..., min_length=1)
    redirect_uri: Optional[str] = Field(None, description="Redirect URI used for the authorization request")


class TokenResponse(BaseModel):
    """Access token body; the refresh token travels only in a cookie."""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class SessionResponse(BaseModel):
    """An active refresh-token session."""
    token_id: str
    issued_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    source_address: Optional[str] = None

    @classmethod
    def from_record(cls, record: RefreshTokenRecord) -> "SessionResponse":
        return cls(
            token_id=record.token_id,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            user_agent=record.device_meta.user_agent,
            source_address=record.device_meta.source_address,
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]


class IdentityResponse(BaseModel):
    subject_id: str
    role: str
    tier: str
    expires_at: int
