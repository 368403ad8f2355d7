"""Static OIDC federation settings resolved once at startup."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from hcen_auth.config import ClientType, Settings
from hcen_auth.service.errors import ConfigurationError


@dataclass(frozen=True)
class IdPEndpoints:
    issuer: str
    authorization: str
    token: str
    userinfo: str
    jwks: str
    end_session: str


@dataclass(frozen=True)
class ClientRegistration:
    """Credentials the provider issued for one client population."""

    client_type: ClientType
    client_id: str
    client_secret: Optional[str] = None

    @property
    def is_public(self) -> bool:
        return self.client_secret is None


@dataclass(frozen=True)
class FederationConfig:
    endpoints: IdPEndpoints
    clients: Mapping[ClientType, ClientRegistration]
    scopes: Tuple[str, ...]
    acr_values: Tuple[str, ...]

    def client(self, client_type: ClientType) -> ClientRegistration:
        return self.clients[client_type]

    def client_id(self, client_type: ClientType) -> str:
        return self.clients[client_type].client_id

    def client_secret(self, client_type: ClientType) -> Optional[str]:
        return self.clients[client_type].client_secret

    @property
    def client_ids(self) -> frozenset[str]:
        return frozenset(reg.client_id for reg in self.clients.values())

    @property
    def scope_param(self) -> str:
        return " ".join(self.scopes)

    @property
    def acr_param(self) -> str:
        return " ".join(self.acr_values)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FederationConfig":
        """Build the immutable view, naming every missing value at once.

        The mobile client is public and must not carry a secret; both web
        clients are confidential and require one.
        """
        missing: list[str] = []

        def _require(value: Optional[str], env_name: str) -> str:
            if value is None or not str(value).strip():
                missing.append(env_name)
                return ""
            return str(value).strip()

        endpoints = IdPEndpoints(
            issuer=_require(settings.oidc_issuer, "OIDC_ISSUER"),
            authorization=_require(
                settings.oidc_authorization_endpoint, "OIDC_AUTHORIZATION_ENDPOINT"
            ),
            token=_require(settings.oidc_token_endpoint, "OIDC_TOKEN_ENDPOINT"),
            userinfo=_require(settings.oidc_userinfo_endpoint, "OIDC_USERINFO_ENDPOINT"),
            jwks=_require(settings.oidc_jwks_uri, "OIDC_JWKS_URI"),
            end_session=_require(
                settings.oidc_end_session_endpoint, "OIDC_END_SESSION_ENDPOINT"
            ),
        )
        clients = {
            ClientType.MOBILE: ClientRegistration(
                ClientType.MOBILE,
                _require(settings.oidc_mobile_client_id, "OIDC_MOBILE_CLIENT_ID"),
            ),
            ClientType.WEB_PATIENT: ClientRegistration(
                ClientType.WEB_PATIENT,
                _require(settings.oidc_web_patient_client_id, "OIDC_WEB_PATIENT_CLIENT_ID"),
                _require(
                    settings.oidc_web_patient_client_secret,
                    "OIDC_WEB_PATIENT_CLIENT_SECRET",
                ),
            ),
            ClientType.WEB_ADMIN: ClientRegistration(
                ClientType.WEB_ADMIN,
                _require(settings.oidc_web_admin_client_id, "OIDC_WEB_ADMIN_CLIENT_ID"),
                _require(
                    settings.oidc_web_admin_client_secret, "OIDC_WEB_ADMIN_CLIENT_SECRET"
                ),
            ),
        }
        scopes = tuple(settings.oidc_scopes.split())
        if "openid" not in scopes:
            missing.append("OIDC_SCOPES (openid)")
        if missing:
            raise ConfigurationError(missing)
        return cls(
            endpoints=endpoints,
            clients=MappingProxyType(clients),
            scopes=scopes,
            acr_values=tuple(settings.oidc_acr_values.split()),
        )
