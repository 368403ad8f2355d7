"""Client for the national OpenID Connect identity provider.

Covers the three provider round trips a login needs: the authorization
redirect, the authorization-code exchange and ID-token verification against
the provider's published keys. User info is fetched only to fill in name
claims the ID token did not carry.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import jwt

from hcen_auth.config import ClientType
from hcen_auth.logging import get_logger, sanitize_error_message
from hcen_auth.service.errors import ExchangeFailureError, IdPError
from hcen_auth.service.federation import FederationConfig

logger = get_logger(__name__)

CLOCK_SKEW_SECONDS = 30


@dataclass
class CachedJWKS:
    keys: Dict[str, Any]
    expires_at: float


@dataclass(frozen=True)
class IdentityClaims:
    """Identity asserted by the provider for one completed login."""

    ci: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "IdentityClaims":
        # uid is the provider-specific document claim; sub is the fallback
        ci = claims.get("uid") or claims.get("sub")
        if not isinstance(ci, str) or not ci.strip():
            raise IdPError("identity claims carry no CI")
        return cls(
            ci=ci.strip(),
            first_name=claims.get("primer_nombre"),
            last_name=claims.get("primer_apellido"),
            claims=dict(claims),
        )


class OidcClient:
    def __init__(
        self,
        federation: FederationConfig,
        *,
        timeout_seconds: float = 10.0,
        jwks_cache_seconds: int = 3600,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.federation = federation
        self.timeout = httpx.Timeout(timeout_seconds)
        self.jwks_cache_seconds = jwks_cache_seconds
        self._transport = transport
        self._jwks_cache: Optional[CachedJWKS] = None
        self._jwks_lock = asyncio.Lock()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def build_authorization_url(
        self,
        client_type: ClientType,
        redirect_uri: str,
        state: str,
        *,
        nonce: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> str:
        params = {
            "response_type": "code",
            "client_id": self.federation.client_id(client_type),
            "redirect_uri": redirect_uri,
            "scope": self.federation.scope_param,
            "state": state,
        }
        if nonce:
            params["nonce"] = nonce
        if self.federation.acr_values:
            params["acr_values"] = self.federation.acr_param
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = code_challenge_method or "S256"
        return f"{self.federation.endpoints.authorization}?{urlencode(params)}"

    async def exchange_code(
        self,
        client_type: ClientType,
        code: str,
        redirect_uri: str,
        *,
        code_verifier: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Trade an authorization code for the provider's token response.

        The public mobile client proves possession with ``code_verifier``;
        confidential clients send their secret. A 4xx answer is a provider
        rejection, anything transport-level or 5xx is an exchange failure.
        """
        registration = self.federation.client(client_type)
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": registration.client_id,
        }
        if registration.is_public:
            if code_verifier:
                form["code_verifier"] = code_verifier
        else:
            form["client_secret"] = registration.client_secret

        try:
            async with self._client() as client:
                response = await client.post(
                    self.federation.endpoints.token,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            logger.error("idp_token_exchange_timeout", client_type=client_type.value)
            raise ExchangeFailureError("token endpoint timed out") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "idp_token_exchange_transport_error",
                client_type=client_type.value,
                error=str(exc),
            )
            raise ExchangeFailureError("token endpoint unreachable") from exc

        if response.status_code >= 500:
            logger.error("idp_token_exchange_failed", status_code=response.status_code)
            raise ExchangeFailureError(
                f"token endpoint returned {response.status_code}"
            )
        payload = self._json_body(response)
        if response.status_code >= 400:
            error = sanitize_error_message(str(payload.get("error") or "unknown_error"))
            description = sanitize_error_message(payload.get("error_description"))
            logger.warning(
                "idp_token_exchange_rejected",
                status_code=response.status_code,
                idp_error=error,
                idp_error_description=description,
            )
            raise IdPError(
                f"token exchange rejected: {error}",
                detail={"idp_error": error},
            )
        if not payload.get("id_token"):
            raise ExchangeFailureError("token response carries no id_token")
        return payload

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            if response.status_code >= 400:
                return {}
            raise ExchangeFailureError("provider returned a non-JSON body")
        return body if isinstance(body, dict) else {}

    async def _get_jwks(self, *, force: bool = False) -> Dict[str, Any]:
        cache = self._jwks_cache
        if not force and cache and time.time() < cache.expires_at:
            return cache.keys
        async with self._jwks_lock:
            cache = self._jwks_cache
            if not force and cache and time.time() < cache.expires_at:
                return cache.keys
            try:
                async with self._client() as client:
                    response = await client.get(self.federation.endpoints.jwks)
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.error("idp_jwks_fetch_failed", error=str(exc))
                if self._jwks_cache:
                    logger.warning("idp_jwks_stale_cache_used")
                    return self._jwks_cache.keys
                raise ExchangeFailureError("provider signing keys unavailable") from exc

            keys: Dict[str, Any] = {}
            for key_data in data.get("keys", []) if isinstance(data, dict) else []:
                kid = key_data.get("kid")
                if not kid:
                    continue
                try:
                    keys[kid] = jwt.PyJWK(key_data).key
                except jwt.PyJWTError as exc:
                    logger.warning("idp_jwks_key_skipped", kid=kid, error=str(exc))
            if not keys:
                raise ExchangeFailureError("provider published no usable signing keys")
            self._jwks_cache = CachedJWKS(
                keys=keys, expires_at=time.time() + self.jwks_cache_seconds
            )
            logger.info("idp_jwks_cached", key_count=len(keys))
            return keys

    async def validate_id_token(
        self, id_token: str, *, nonce: Optional[str] = None
    ) -> Dict[str, Any]:
        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.PyJWTError as exc:
            raise IdPError("id_token is not a JWT") from exc
        kid = header.get("kid")
        if not kid:
            raise IdPError("id_token header has no kid")

        keys = await self._get_jwks()
        if kid not in keys:
            # provider may have rotated keys since the last fetch
            keys = await self._get_jwks(force=True)
        key = keys.get(kid)
        if key is None:
            raise IdPError("id_token signed with an unknown key", detail={"kid": kid})

        try:
            claims = jwt.decode(
                id_token,
                key,
                algorithms=["RS256"],
                audience=sorted(self.federation.client_ids),
                issuer=self.federation.endpoints.issuer,
                leeway=CLOCK_SKEW_SECONDS,
                options={"require": ["exp", "iss", "aud", "sub"]},
            )
        except jwt.InvalidTokenError as exc:
            logger.warning("idp_id_token_rejected", error=str(exc), kid=kid)
            raise IdPError(f"id_token rejected: {exc}") from exc

        if nonce and claims.get("nonce") is not None and claims["nonce"] != nonce:
            logger.warning("idp_id_token_nonce_mismatch")
            raise IdPError("id_token nonce mismatch")
        return claims

    async def fetch_userinfo(self, access_token: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(
                    self.federation.endpoints.userinfo,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as exc:
            raise ExchangeFailureError("userinfo endpoint unreachable") from exc
        if response.status_code >= 500:
            raise ExchangeFailureError(f"userinfo returned {response.status_code}")
        if response.status_code >= 400:
            raise IdPError(f"userinfo rejected with {response.status_code}")
        return self._json_body(response)

    async def resolve_identity(
        self,
        client_type: ClientType,
        code: str,
        redirect_uri: str,
        *,
        code_verifier: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> IdentityClaims:
        tokens = await self.exchange_code(
            client_type, code, redirect_uri, code_verifier=code_verifier
        )
        claims = await self.validate_id_token(tokens["id_token"], nonce=nonce)
        access_token = tokens.get("access_token")
        if access_token and not (
            claims.get("primer_nombre") and claims.get("primer_apellido")
        ):
            try:
                userinfo = await self.fetch_userinfo(access_token)
            except (ExchangeFailureError, IdPError) as exc:
                logger.warning("idp_userinfo_unavailable", error=exc.message)
            else:
                # signed claims win over userinfo
                claims = {**userinfo, **claims}
        identity = IdentityClaims.from_claims(claims)
        logger.info("idp_identity_resolved", client_type=client_type.value)
        return identity
