from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from hcen_auth.config import ClientType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OAuthState:
    state: str
    client_type: ClientType
    redirect_uri: str
    created_at: datetime
    code_challenge: Optional[str] = None
    nonce: Optional[str] = None

    def to_payload(self) -> dict:
        return {
            "clientType": self.client_type.value,
            "redirectUri": self.redirect_uri,
            "codeChallenge": self.code_challenge,
            "nonce": self.nonce,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, state: str, payload: dict) -> "OAuthState":
        created_raw = payload.get("createdAt")
        created_at = utcnow()
        if isinstance(created_raw, str):
            try:
                created_at = datetime.fromisoformat(created_raw)
            except ValueError:
                pass
        return cls(
            state=state,
            client_type=ClientType(payload["clientType"]),
            redirect_uri=payload["redirectUri"],
            created_at=created_at,
            code_challenge=payload.get("codeChallenge"),
            nonce=payload.get("nonce"),
        )


@dataclass
class RefreshToken:
    token_hash: str
    user_ci: str
    client_type: ClientType
    issued_at: datetime
    expires_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    device_id: Optional[str] = None
    revoked_at: Optional[datetime] = None
    is_revoked: bool = False

    @classmethod
    def new(
        cls,
        token_hash: str,
        user_ci: str,
        client_type: ClientType,
        ttl_seconds: int,
        *,
        device_id: Optional[str] = None,
        issued_at: Optional[datetime] = None,
    ) -> "RefreshToken":
        now = issued_at or utcnow()
        return cls(
            token_hash=token_hash,
            user_ci=user_ci,
            client_type=client_type,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            device_id=device_id,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)


@dataclass
class InusUser:
    ci: str
    inus_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str = "PATIENT"
    status: str = "ACTIVE"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Clinic:
    clinic_id: str
    name: str
    api_key_hash: str
    status: str = "ACTIVE"
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == "ACTIVE"
