from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, TypeVar
from urllib.parse import urlparse

import psycopg

from hcen_auth.config import ClientType
from hcen_auth.logging import get_logger, sanitize_error_message
from hcen_auth.service.blacklist import TokenBlacklist
from hcen_auth.service.errors import (
    IdPError,
    InvalidRequestError,
    InvalidStateError,
    InvalidTokenError,
    RevokedTokenError,
    ServerError,
    ServiceError,
    StoreUnavailableError,
    TokenExpiredError,
)
from hcen_auth.service.idp import OidcClient
from hcen_auth.service.registry import AuditEvent, AuditSink, UserRegistry
from hcen_auth.service.state import StateStore
from hcen_auth.service.tokens import TokenSigner
from hcen_auth.storage.common import RefreshTokenStore, hash_token, short_hash
from hcen_auth.storage.models import InusUser, RefreshToken

logger = get_logger(__name__)

T = TypeVar("T")

PKCE_METHOD = "S256"
# RFC 7636 unreserved characters
_PKCE_VALUE = re.compile(r"^[A-Za-z0-9\-._~]{1,128}$")
_FORBIDDEN_SCHEMES = {"javascript", "data", "file", "vbscript"}


@dataclass(frozen=True)
class LoginInitiation:
    authorization_url: str
    state: str
    expires_in: int


@dataclass(frozen=True)
class AuthResult:
    access_token: str
    refresh_token: str
    expires_in: int
    user: InusUser
    token_type: str = "Bearer"


def _coerce_client_type(value: Any) -> ClientType:
    if isinstance(value, ClientType):
        return value
    try:
        return ClientType(str(value).strip().upper())
    except ValueError as exc:
        raise InvalidRequestError(f"unknown client type: {value!r}") from exc


class AuthenticationOrchestrator:
    """Drives login, callback, refresh and logout across the stores and the IdP.

    Refresh rotation only issues a new pair after the conditional revoke of
    the presented token succeeds, so two concurrent refreshes of the same
    token produce exactly one winner.
    """

    def __init__(
        self,
        *,
        state_store: StateStore,
        signer: TokenSigner,
        refresh_store: RefreshTokenStore,
        blacklist: TokenBlacklist,
        idp: OidcClient,
        users: UserRegistry,
        audit: AuditSink,
        allowed_redirect_uris: Iterable[str] = (),
        max_active_sessions_per_user: int = 0,
        default_web_redirect_uri: Optional[str] = None,
    ) -> None:
        self.state_store = state_store
        self.signer = signer
        self.refresh_store = refresh_store
        self.blacklist = blacklist
        self.idp = idp
        self.users = users
        self.audit = audit
        self.allowed_redirect_uris = frozenset(allowed_redirect_uris)
        self.max_active_sessions_per_user = max_active_sessions_per_user
        self.default_web_redirect_uri = default_web_redirect_uri

    # ------------------------------------------------------------------ login
    def _validate_redirect_uri(self, client_type: ClientType, redirect_uri: Optional[str]) -> str:
        if not redirect_uri or not redirect_uri.strip():
            raise InvalidRequestError("redirectUri is required")
        redirect_uri = redirect_uri.strip()
        if self.allowed_redirect_uris and redirect_uri not in self.allowed_redirect_uris:
            raise InvalidRequestError("redirectUri is not registered")
        parsed = urlparse(redirect_uri)
        scheme = parsed.scheme.lower()
        if scheme in {"http", "https"}:
            if not parsed.netloc:
                raise InvalidRequestError("redirectUri must include a host")
            if scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
                raise InvalidRequestError("insecure redirectUri not allowed outside localhost")
            return redirect_uri
        if client_type is ClientType.MOBILE and scheme and scheme not in _FORBIDDEN_SCHEMES:
            # app-claimed custom scheme
            return redirect_uri
        raise InvalidRequestError("redirectUri scheme not allowed")

    def _validate_pkce(
        self,
        client_type: ClientType,
        code_challenge: Optional[str],
        code_challenge_method: Optional[str],
    ) -> None:
        if client_type.is_public:
            if not code_challenge:
                raise InvalidRequestError("codeChallenge is required for mobile clients")
            if code_challenge_method != PKCE_METHOD:
                raise InvalidRequestError("codeChallengeMethod must be S256")
            if not _PKCE_VALUE.match(code_challenge):
                raise InvalidRequestError("codeChallenge is malformed")
        elif code_challenge or code_challenge_method:
            raise InvalidRequestError("PKCE parameters are only accepted for mobile clients")

    async def initiate_login(
        self,
        client_type: Any,
        redirect_uri: Optional[str],
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> LoginInitiation:
        client_type = _coerce_client_type(client_type)
        self._validate_pkce(client_type, code_challenge, code_challenge_method)
        if not redirect_uri and not client_type.is_public:
            redirect_uri = self.default_web_redirect_uri
        redirect_uri = self._validate_redirect_uri(client_type, redirect_uri)
        nonce = secrets.token_urlsafe(16)
        record = await self.state_store.create_state(
            client_type, redirect_uri, code_challenge, nonce=nonce
        )
        url = self.idp.build_authorization_url(
            client_type,
            redirect_uri,
            record.state,
            nonce=nonce,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )
        logger.info("login_initiated", client_type=client_type.value)
        return LoginInitiation(
            authorization_url=url,
            state=record.state,
            expires_in=self.state_store.ttl_seconds,
        )

    # --------------------------------------------------------------- callback
    async def handle_callback(
        self,
        code: Optional[str],
        state: Optional[str],
        client_type: Any = None,
        redirect_uri: Optional[str] = None,
        code_verifier: Optional[str] = None,
        *,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> AuthResult:
        """Complete a login from the provider redirect.

        ``client_type`` and ``redirect_uri`` may be omitted (web redirect);
        they are then taken from the consumed state record. When supplied
        they must match it.
        """
        requested_type = _coerce_client_type(client_type) if client_type else None

        if error:
            description = sanitize_error_message(error_description)
            logger.warning(
                "idp_authorization_error",
                idp_error=sanitize_error_message(error),
                idp_error_description=description,
            )
            await self._discard_state(state)
            self._audit("login", False, client_type=requested_type, reason="idp_error")
            raise IdPError(f"identity provider returned error: {sanitize_error_message(error)}")

        if not state or not state.strip():
            self._audit("login", False, client_type=requested_type, reason="missing_state")
            raise InvalidStateError("state parameter missing")
        if not code or not code.strip():
            self._audit("login", False, client_type=requested_type, reason="missing_code")
            raise InvalidRequestError("code parameter missing")

        try:
            record = await self.state_store.validate_and_consume_state(state)
        except InvalidStateError:
            self._audit("login", False, client_type=requested_type, reason="invalid_state")
            raise

        if requested_type is not None and requested_type is not record.client_type:
            logger.warning(
                "oauth_state_client_type_mismatch",
                stored=record.client_type.value,
                requested=requested_type.value,
            )
            self._audit("login", False, client_type=requested_type, reason="state_mismatch")
            raise InvalidStateError("client type does not match state")
        if redirect_uri and redirect_uri.strip() != record.redirect_uri:
            logger.warning("oauth_state_redirect_mismatch", client_type=record.client_type.value)
            self._audit("login", False, client_type=record.client_type, reason="state_mismatch")
            raise InvalidStateError("redirect URI does not match state")

        effective_type = record.client_type
        try:
            identity = await self.idp.resolve_identity(
                effective_type,
                code,
                record.redirect_uri,
                code_verifier=code_verifier,
                nonce=record.nonce,
            )
        except ServiceError as exc:
            self._audit("login", False, client_type=effective_type, reason=exc.kind)
            raise

        user = self.users.provision(identity)
        result = self._issue_session(user, effective_type, device_id=device_id)
        self._enforce_session_limit(user.ci)
        self._audit("login", True, user_ci=user.ci, client_type=effective_type)
        logger.info("login_succeeded", user_ci=user.ci, client_type=effective_type.value)
        return result

    async def _discard_state(self, state: Optional[str]) -> None:
        try:
            await self.state_store.delete_state(state)
        except StoreUnavailableError as exc:
            logger.warning("oauth_state_discard_failed", error=exc.message)

    # ---------------------------------------------------------------- session
    def _store_call(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return fn(*args)
        except psycopg.OperationalError as exc:
            logger.error(
                "refresh_store_unavailable",
                operation=getattr(fn, "__name__", "store_call"),
                error=str(exc),
            )
            raise StoreUnavailableError("refresh token store unavailable") from exc

    def _issue_session(
        self,
        user: InusUser,
        client_type: ClientType,
        *,
        device_id: Optional[str] = None,
    ) -> AuthResult:
        access_token = self.signer.generate_access_token(
            user.ci, user.inus_id, user.role, {"clientType": client_type.value}
        )
        refresh_token = self.signer.generate_refresh_token(user.ci, user.inus_id)
        record = RefreshToken.new(
            hash_token(refresh_token),
            user.ci,
            client_type,
            self.signer.refresh_ttl_seconds,
            device_id=device_id,
        )
        self._store_call(self.refresh_store.save, record)
        return AuthResult(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.signer.access_ttl_seconds,
            user=user,
        )

    def _enforce_session_limit(self, user_ci: str) -> None:
        limit = self.max_active_sessions_per_user
        if limit <= 0:
            return
        active = self._store_call(self.refresh_store.find_valid_by_user_ci, user_ci)
        excess = len(active) - limit
        if excess <= 0:
            return
        oldest = sorted(active, key=lambda token: token.issued_at)[:excess]
        revoked = sum(
            1
            for token in oldest
            if self._store_call(self.refresh_store.revoke_token, token.token_hash)
        )
        logger.info("session_limit_enforced", user_ci=user_ci, revoked=revoked, limit=limit)

    async def refresh_token(self, refresh_token_value: Optional[str]) -> AuthResult:
        try:
            claims = self.signer.validate_refresh_token(refresh_token_value)
        except InvalidTokenError as exc:
            logger.warning("refresh_token_invalid", kind=exc.kind, reason=exc.message)
            self._audit("refresh", False, reason=exc.kind)
            raise

        token_hash = hash_token(refresh_token_value)
        record = self._store_call(self.refresh_store.find_by_token_hash, token_hash)
        if record is None:
            logger.warning("refresh_token_unknown", token_hash=short_hash(token_hash))
            self._audit("refresh", False, user_ci=claims.get("sub"), reason="unknown")
            raise InvalidTokenError("refresh token not found")
        if record.user_ci != claims.get("sub"):
            logger.warning("refresh_token_subject_mismatch", token_hash=short_hash(token_hash))
            self._audit("refresh", False, user_ci=record.user_ci, reason="subject_mismatch")
            raise InvalidTokenError("refresh token subject mismatch")
        if record.is_revoked:
            logger.warning(
                "refresh_token_reuse_detected",
                user_ci=record.user_ci,
                token_hash=short_hash(token_hash),
                client_type=record.client_type.value,
            )
            self._audit("refresh", False, user_ci=record.user_ci, reason="reused")
            raise RevokedTokenError("refresh token already used or revoked")
        if record.is_expired():
            self._audit("refresh", False, user_ci=record.user_ci, reason="expired")
            raise TokenExpiredError("refresh token record expired")

        if not self._store_call(self.refresh_store.revoke_token, token_hash):
            logger.warning(
                "refresh_token_rotation_conflict",
                user_ci=record.user_ci,
                token_hash=short_hash(token_hash),
            )
            self._audit("refresh", False, user_ci=record.user_ci, reason="concurrent_use")
            raise RevokedTokenError("refresh token consumed by a concurrent request")

        user = self.users.find(record.user_ci)
        if user is None:
            self._audit("refresh", False, user_ci=record.user_ci, reason="unknown_user")
            raise InvalidTokenError("user for refresh token no longer registered")

        result = self._issue_session(user, record.client_type, device_id=record.device_id)
        self._audit("refresh", True, user_ci=user.ci, client_type=record.client_type)
        logger.info(
            "refresh_token_rotated",
            user_ci=user.ci,
            client_type=record.client_type.value,
        )
        return result

    # ----------------------------------------------------------------- logout
    async def logout(
        self,
        user_ci: str,
        *,
        jti: Optional[str] = None,
        exp: Optional[int | float] = None,
    ) -> int:
        """Revoke every refresh token of the user and deny the current access token.

        Idempotent: a user without live sessions simply revokes nothing.
        """
        try:
            revoked = self.refresh_store.revoke_all_for_user(user_ci)
        except psycopg.Error as exc:
            logger.error("logout_revoke_failed", user_ci=user_ci, error=str(exc))
            self._audit("logout", False, user_ci=user_ci, reason="store_error")
            raise ServerError("logout failed") from exc
        if jti:
            try:
                await self.blacklist.blacklist_until(jti, exp)
            except StoreUnavailableError as exc:
                # refresh tokens are already revoked; the access token ages out on its own
                logger.error("logout_blacklist_failed", user_ci=user_ci, jti=jti, error=exc.message)
        self._audit("logout", True, user_ci=user_ci)
        logger.info("logout_completed", user_ci=user_ci, revoked=revoked)
        return revoked

    async def revoke_access_token(self, jti: str, exp: Optional[int | float]) -> bool:
        revoked = await self.blacklist.blacklist_until(jti, exp)
        self._audit("revoke_access_token", True, reason=None if revoked else "already_expired")
        return revoked

    def get_user(self, user_ci: str) -> Optional[InusUser]:
        return self.users.find(user_ci)

    # ------------------------------------------------------------------ audit
    def _audit(
        self,
        event_type: str,
        success: bool,
        *,
        user_ci: Optional[str] = None,
        client_type: Optional[ClientType] = None,
        reason: Optional[str] = None,
    ) -> None:
        event = AuditEvent(
            event_type=event_type,
            success=success,
            user_ci=user_ci,
            client_type=client_type.value if client_type else None,
            reason=reason,
        )
        try:
            self.audit.record(event)
        except Exception as exc:
            logger.warning("audit_sink_failed", event_type=event_type, error=str(exc))
