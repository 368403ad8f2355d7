from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from hcen_auth.config import ClientType
from hcen_auth.storage.models import InusUser

MAX_STATE_LENGTH = 256
MAX_CODE_LENGTH = 2048
MAX_URI_LENGTH = 2048


class CamelModel(BaseModel):
    """Wire models that speak camelCase but accept snake_case too."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, serialize_by_alias=True
    )


def _strip_or_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class LoginInitiateRequest(CamelModel):
    client_type: ClientType
    redirect_uri: Optional[str] = Field(default=None, max_length=MAX_URI_LENGTH)
    code_challenge: Optional[str] = Field(default=None, max_length=128)
    code_challenge_method: Optional[str] = Field(default=None, max_length=16)

    @field_validator("client_type", mode="before")
    @classmethod
    def _normalize_client_type(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("code_challenge", "code_challenge_method")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return _strip_or_none(value)


class LoginInitiateResponse(CamelModel):
    authorization_url: str
    state: str
    expires_in: int


class CallbackRequest(CamelModel):
    code: Optional[str] = Field(default=None, max_length=MAX_CODE_LENGTH)
    state: Optional[str] = Field(default=None, max_length=MAX_STATE_LENGTH)
    client_type: ClientType
    redirect_uri: Optional[str] = Field(default=None, max_length=MAX_URI_LENGTH)
    code_verifier: Optional[str] = Field(default=None, max_length=128)
    device_id: Optional[str] = Field(default=None, max_length=255)

    @field_validator("client_type", mode="before")
    @classmethod
    def _normalize_client_type(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class UserInfo(CamelModel):
    ci: str
    inus_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str

    @classmethod
    def from_user(cls, user: InusUser) -> "UserInfo":
        return cls(
            ci=user.ci,
            inus_id=user.inus_id,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
        )


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: UserInfo


class SessionDetails(BaseModel):
    authenticated_at: datetime
    expires_at: datetime
    remaining_seconds: int


class SessionInfoResponse(BaseModel):
    user: UserInfo
    session: SessionDetails


class ErrorResponse(BaseModel):
    error: str
    message: str


class HealthResponse(BaseModel):
    status: str
    store: str
    cache: str
