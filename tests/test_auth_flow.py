"""Tests for login, callback, refresh rotation and logout orchestration."""

import asyncio
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import httpx
import psycopg
import pytest

from hcen_auth.config import ClientType
from hcen_auth.service.auth import AuthenticationOrchestrator, AuthResult
from hcen_auth.service.errors import (
    IdPError,
    InvalidRequestError,
    InvalidStateError,
    InvalidTokenError,
    RevokedTokenError,
    StoreUnavailableError,
    TokenExpiredError,
)
from hcen_auth.storage.common import hash_token
from hcen_auth.storage.models import utcnow

MOBILE_REDIRECT = "uy.hcen.app://callback"
WEB_REDIRECT = "https://hcen.uy/api/auth/callback"


def state_from(url: str) -> str:
    return httpx.URL(url).params["state"]


async def login(auth, client_type=ClientType.MOBILE, redirect_uri=MOBILE_REDIRECT, **kwargs):
    challenge = "abc" if client_type is ClientType.MOBILE else None
    method = "S256" if challenge else None
    initiation = await auth.initiate_login(client_type, redirect_uri, challenge, method)
    return await auth.handle_callback(
        "code-1", state_from(initiation.authorization_url), client_type, redirect_uri, **kwargs
    )


class TestInitiateLogin:
    async def test_mobile_login_returns_authorization_url(self, runtime):
        initiation = await runtime.auth.initiate_login(
            ClientType.MOBILE, MOBILE_REDIRECT, "abc", "S256"
        )

        params = httpx.URL(initiation.authorization_url).params
        assert params["state"] == initiation.state
        assert params["code_challenge"] == "abc"
        assert params["redirect_uri"] == MOBILE_REDIRECT
        assert initiation.expires_in == 300
        assert await runtime.state_store.state_exists(initiation.state)

    async def test_web_login_defaults_redirect_uri(self, runtime):
        initiation = await runtime.auth.initiate_login(ClientType.WEB_PATIENT, None)
        params = httpx.URL(initiation.authorization_url).params
        assert params["redirect_uri"] == runtime.settings.web_callback_redirect_uri

    @pytest.mark.parametrize(
        "challenge,method",
        [(None, None), ("abc", None), ("abc", "plain"), ("abc$", "S256"), ("a" * 129, "S256")],
    )
    async def test_mobile_requires_valid_pkce(self, runtime, challenge, method):
        with pytest.raises(InvalidRequestError):
            await runtime.auth.initiate_login(ClientType.MOBILE, MOBILE_REDIRECT, challenge, method)

    async def test_web_rejects_pkce_parameters(self, runtime):
        with pytest.raises(InvalidRequestError):
            await runtime.auth.initiate_login(ClientType.WEB_ADMIN, WEB_REDIRECT, "abc", "S256")

    @pytest.mark.parametrize(
        "client_type,redirect_uri",
        [
            (ClientType.MOBILE, "http://evil.example/cb"),
            (ClientType.MOBILE, "javascript:alert(1)"),
            (ClientType.WEB_PATIENT, "uy.hcen.app://callback"),
            (ClientType.WEB_PATIENT, "https:///no-host"),
        ],
    )
    async def test_unsafe_redirect_uris_rejected(self, runtime, client_type, redirect_uri):
        challenge = "abc" if client_type is ClientType.MOBILE else None
        method = "S256" if challenge else None
        with pytest.raises(InvalidRequestError):
            await runtime.auth.initiate_login(client_type, redirect_uri, challenge, method)

    async def test_localhost_http_allowed(self, runtime):
        initiation = await runtime.auth.initiate_login(
            ClientType.WEB_PATIENT, "http://localhost:3000/callback"
        )
        assert initiation.state

    async def test_unknown_client_type(self, runtime):
        with pytest.raises(InvalidRequestError):
            await runtime.auth.initiate_login("DESKTOP", WEB_REDIRECT)


class TestCallback:
    async def test_mobile_end_to_end(self, runtime, fake_idp):
        result = await login(runtime.auth)

        assert isinstance(result, AuthResult)
        assert result.token_type == "Bearer"
        assert result.expires_in == 3600
        claims = runtime.signer.validate_access_token(result.access_token)
        assert claims["sub"] == "45678912"
        assert claims["inusId"] == result.user.inus_id
        assert claims["role"] == "PATIENT"
        assert claims["clientType"] == "MOBILE"
        assert runtime.signer.validate_refresh_token(result.refresh_token)["sub"] == "45678912"
        stored = runtime.store.find_by_token_hash(hash_token(result.refresh_token))
        assert stored is not None and not stored.is_revoked
        assert fake_idp.token_requests[-1]["client_id"] == "hcen-mobile"

    async def test_user_is_provisioned_once(self, runtime, fake_idp):
        first = await login(runtime.auth)
        fake_idp.claims = {**fake_idp.claims, "primer_nombre": "Ana Maria"}
        second = await login(runtime.auth)

        assert first.user.inus_id.startswith("inus-")
        assert second.user.inus_id == first.user.inus_id
        assert runtime.users.find("45678912").first_name == "Ana Maria"

    async def test_state_cannot_be_replayed(self, runtime, fake_idp):
        initiation = await runtime.auth.initiate_login(
            ClientType.MOBILE, MOBILE_REDIRECT, "abc", "S256"
        )
        await runtime.auth.handle_callback(
            "code-1", initiation.state, ClientType.MOBILE, MOBILE_REDIRECT
        )

        with pytest.raises(InvalidStateError):
            await runtime.auth.handle_callback(
                "code-1", initiation.state, ClientType.MOBILE, MOBILE_REDIRECT
            )

    async def test_client_type_must_match_state(self, runtime, fake_idp):
        initiation = await runtime.auth.initiate_login(
            ClientType.MOBILE, MOBILE_REDIRECT, "abc", "S256"
        )
        with pytest.raises(InvalidStateError):
            await runtime.auth.handle_callback(
                "code-1", initiation.state, ClientType.WEB_PATIENT, MOBILE_REDIRECT
            )
        assert fake_idp.token_requests == []

    async def test_redirect_uri_must_match_state(self, runtime, fake_idp):
        initiation = await runtime.auth.initiate_login(ClientType.WEB_PATIENT, WEB_REDIRECT)
        with pytest.raises(InvalidStateError):
            await runtime.auth.handle_callback(
                "code-1", initiation.state, ClientType.WEB_PATIENT, "https://hcen.uy/other"
            )

    async def test_missing_code_and_state(self, runtime):
        with pytest.raises(InvalidStateError):
            await runtime.auth.handle_callback("code-1", None, ClientType.MOBILE)
        with pytest.raises(InvalidRequestError):
            await runtime.auth.handle_callback(None, "some-state", ClientType.MOBILE)

    async def test_provider_error_consumes_state(self, runtime, fake_idp):
        initiation = await runtime.auth.initiate_login(ClientType.WEB_PATIENT, WEB_REDIRECT)

        with pytest.raises(IdPError):
            await runtime.auth.handle_callback(
                None,
                initiation.state,
                error="access_denied",
                error_description="<script>alert(1)</script>",
            )

        assert not await runtime.state_store.state_exists(initiation.state)
        assert fake_idp.token_requests == []

    async def test_provider_rejection_leaves_no_session(self, runtime, fake_idp):
        fake_idp.token_status = 400
        with pytest.raises(IdPError):
            await login(runtime.auth)
        assert runtime.store.find_by_user_ci("45678912") == []

    async def test_device_id_is_recorded(self, runtime, fake_idp):
        result = await login(runtime.auth, device_id="pixel-8")
        stored = runtime.store.find_by_token_hash(hash_token(result.refresh_token))
        assert stored.device_id == "pixel-8"


class TestRefresh:
    async def test_rotation_spends_the_presented_token(self, runtime, fake_idp):
        session = await login(runtime.auth, device_id="pixel-8")

        rotated = await runtime.auth.refresh_token(session.refresh_token)

        assert rotated.refresh_token != session.refresh_token
        old = runtime.store.find_by_token_hash(hash_token(session.refresh_token))
        new = runtime.store.find_by_token_hash(hash_token(rotated.refresh_token))
        assert old.is_revoked
        assert not new.is_revoked
        assert new.client_type is ClientType.MOBILE
        assert new.device_id == "pixel-8"
        with pytest.raises(RevokedTokenError):
            await runtime.auth.refresh_token(session.refresh_token)
        again = await runtime.auth.refresh_token(rotated.refresh_token)
        assert again.user.ci == "45678912"

    async def test_access_token_cannot_refresh(self, runtime, fake_idp):
        session = await login(runtime.auth)
        with pytest.raises(InvalidTokenError):
            await runtime.auth.refresh_token(session.access_token)

    async def test_unknown_refresh_token(self, runtime):
        forged = runtime.signer.generate_refresh_token("45678912", "inus-x")
        with pytest.raises(InvalidTokenError):
            await runtime.auth.refresh_token(forged)

    async def test_expired_record_rejected(self, runtime, fake_idp):
        session = await login(runtime.auth)
        token_hash = hash_token(session.refresh_token)
        runtime.store.refresh_tokens[token_hash].expires_at = utcnow() - timedelta(seconds=1)

        with pytest.raises(TokenExpiredError):
            await runtime.auth.refresh_token(session.refresh_token)

    def test_concurrent_refresh_has_one_winner(self, runtime, fake_idp):
        session = asyncio.run(login(runtime.auth))
        barrier = threading.Barrier(6)
        outcomes = []
        outcomes_lock = threading.Lock()

        def refresh():
            barrier.wait()
            try:
                result = asyncio.run(runtime.auth.refresh_token(session.refresh_token))
            except RevokedTokenError as exc:
                result = exc
            with outcomes_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=refresh) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [o for o in outcomes if isinstance(o, AuthResult)]
        assert len(winners) == 1
        assert len(outcomes) == 6
        active = runtime.store.find_valid_by_user_ci("45678912")
        assert [t.token_hash for t in active] == [hash_token(winners[0].refresh_token)]

    async def test_store_outage_is_service_unavailable(self, runtime):
        store = MagicMock()
        store.find_by_token_hash.side_effect = psycopg.OperationalError("connection refused")
        auth = AuthenticationOrchestrator(
            state_store=runtime.state_store,
            signer=runtime.signer,
            refresh_store=store,
            blacklist=runtime.blacklist,
            idp=runtime.idp,
            users=runtime.users,
            audit=runtime.audit,
        )
        token = runtime.signer.generate_refresh_token("45678912", "inus-x")

        with pytest.raises(StoreUnavailableError):
            await auth.refresh_token(token)


class TestLogout:
    async def test_logout_revokes_sessions_and_access_token(self, runtime, fake_idp):
        first = await login(runtime.auth)
        second = await login(runtime.auth)
        claims = runtime.signer.validate_access_token(second.access_token)

        revoked = await runtime.auth.logout("45678912", jti=claims["jti"], exp=claims["exp"])

        assert revoked == 2
        assert await runtime.blacklist.is_blacklisted(claims["jti"])
        for session in (first, second):
            with pytest.raises(RevokedTokenError):
                await runtime.auth.refresh_token(session.refresh_token)
        with pytest.raises(RevokedTokenError):
            await runtime.authenticator.authenticate(
                {"authorization": f"Bearer {second.access_token}"}
            )

    async def test_logout_is_idempotent(self, runtime):
        assert await runtime.auth.logout("00000000") == 0
        assert await runtime.auth.logout("00000000") == 0


class TestSessionLimit:
    async def test_oldest_sessions_are_revoked(self, runtime, fake_idp):
        auth = AuthenticationOrchestrator(
            state_store=runtime.state_store,
            signer=runtime.signer,
            refresh_store=runtime.store,
            blacklist=runtime.blacklist,
            idp=runtime.auth.idp,
            users=runtime.users,
            audit=runtime.audit,
            max_active_sessions_per_user=2,
        )
        sessions = [await login(auth) for _ in range(3)]

        active = {t.token_hash for t in runtime.store.find_valid_by_user_ci("45678912")}

        assert len(active) == 2
        assert hash_token(sessions[-1].refresh_token) in active


class TestExplicitRevoke:
    async def test_revoke_access_token(self, runtime):
        token = runtime.signer.generate_access_token("12345678", "inus-1", "PATIENT")
        claims = runtime.signer.validate_access_token(token)

        assert await runtime.auth.revoke_access_token(claims["jti"], claims["exp"])

        with pytest.raises(RevokedTokenError):
            await runtime.authenticator.authenticate({"authorization": f"Bearer {token}"})

    async def test_revoking_expired_token_is_a_no_op(self, runtime):
        assert not await runtime.auth.revoke_access_token("old-jti", 1)
