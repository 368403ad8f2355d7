"""Tests for settings validation, federation config and signing key loading."""

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from pydantic import ValidationError

from hcen_auth.config import (
    ClientType,
    Environment,
    Settings,
    SigningAlgorithm,
    load_or_create_jwt_secret,
)
from hcen_auth.service.errors import ConfigurationError
from hcen_auth.service.federation import FederationConfig
from hcen_auth.service.tokens import TokenSigner, load_signing_keys

SECRET = "s" * 40


def _federated_settings(**overrides) -> Settings:
    values = {
        "jwt_secret": SECRET,
        "oidc_mobile_client_id": "mobile",
        "oidc_web_patient_client_id": "web-patient",
        "oidc_web_patient_client_secret": "patient-secret",
        "oidc_web_admin_client_id": "web-admin",
        "oidc_web_admin_client_secret": "admin-secret",
    }
    values.update(overrides)
    return Settings(**values)


class TestSettings:
    def test_short_jwt_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_blank_optional_values_become_none(self):
        settings = Settings(redis_url="  ", jwt_secret="", jwt_signing_key_path="")
        assert settings.redis_url is None
        assert settings.jwt_secret is None
        assert settings.jwt_signing_key_path is None

    @pytest.mark.parametrize("ttl", [299, 601])
    def test_state_ttl_bounds(self, ttl):
        with pytest.raises(ValidationError):
            Settings(oauth_state_ttl_seconds=ttl)

    def test_state_ttl_within_bounds(self):
        assert Settings(oauth_state_ttl_seconds=600).oauth_state_ttl_seconds == 600

    def test_allowed_redirect_uris_split_on_commas(self):
        settings = Settings(allowed_redirect_uris="https://a.uy/cb, uy.hcen.app://cb ,")
        assert settings.allowed_redirect_uris == ["https://a.uy/cb", "uy.hcen.app://cb"]

    def test_environment_and_algorithm_normalized(self):
        settings = Settings(environment="PRODUCTION", jwt_algorithm="rs256")
        assert settings.environment is Environment.PRODUCTION
        assert settings.is_production
        assert settings.jwt_algorithm is SigningAlgorithm.RS256

    def test_from_env_reads_prefixed_names(self, monkeypatch):
        monkeypatch.setenv("OAUTH_STATE_TTL_SECONDS", "450")
        monkeypatch.setenv("BLACKLIST_FAIL_CLOSED", "true")
        settings = Settings.from_env()
        assert settings.oauth_state_ttl_seconds == 450
        assert settings.blacklist_fail_closed is True

    def test_settings_are_immutable_after_load(self):
        settings = Settings(jwt_secret=SECRET)
        with pytest.raises(ValidationError):
            settings.jwt_secret = "x" * 40
        with pytest.raises(ValidationError):
            settings.blacklist_fail_closed = True
        assert settings.jwt_secret == SECRET


class TestFederationConfig:
    def test_builds_per_client_view(self):
        federation = FederationConfig.from_settings(_federated_settings())

        mobile = federation.client(ClientType.MOBILE)
        assert mobile.is_public
        assert mobile.client_secret is None
        assert federation.client_secret(ClientType.WEB_PATIENT) == "patient-secret"
        assert federation.client_ids == {"mobile", "web-patient", "web-admin"}
        assert "openid" in federation.scope_param.split()

    def test_clients_mapping_is_read_only(self):
        federation = FederationConfig.from_settings(_federated_settings())
        with pytest.raises(TypeError):
            federation.clients[ClientType.MOBILE] = None

    def test_missing_values_are_all_named(self):
        settings = _federated_settings(
            oidc_mobile_client_id=None,
            oidc_web_admin_client_secret="  ",
            oidc_token_endpoint=None,
        )
        with pytest.raises(ConfigurationError) as excinfo:
            FederationConfig.from_settings(settings)

        missing = excinfo.value.missing
        assert "OIDC_MOBILE_CLIENT_ID" in missing
        assert "OIDC_WEB_ADMIN_CLIENT_SECRET" in missing
        assert "OIDC_TOKEN_ENDPOINT" in missing

    def test_scopes_must_include_openid(self):
        with pytest.raises(ConfigurationError):
            FederationConfig.from_settings(_federated_settings(oidc_scopes="personal_info"))


class TestSigningKeys:
    def test_hs256_uses_configured_secret(self):
        keys = load_signing_keys(_federated_settings())
        assert keys.algorithm is SigningAlgorithm.HS256
        assert keys.signing_key == SECRET
        assert not keys.ephemeral

    def test_hs256_without_secret_aborts_in_production(self, tmp_path):
        settings = Settings(environment="production", shared_fs_root=str(tmp_path))
        with pytest.raises(ConfigurationError):
            load_signing_keys(settings)

    def test_hs256_without_secret_persists_generated_secret(self, tmp_path):
        settings = Settings(shared_fs_root=str(tmp_path))
        first = load_signing_keys(settings)
        second = load_signing_keys(settings)
        assert first.signing_key == second.signing_key
        assert (tmp_path / ".jwt_secret").read_text() == first.signing_key

    def test_persisted_secret_reused(self, tmp_path):
        assert load_or_create_jwt_secret(str(tmp_path)) == load_or_create_jwt_secret(
            str(tmp_path)
        )

    def test_rs256_loads_pem_key(self, tmp_path):
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        key_path = tmp_path / "signing.pem"
        key_path.write_bytes(
            private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        settings = Settings(jwt_algorithm="RS256", jwt_signing_key_path=str(key_path))

        keys = load_signing_keys(settings)
        signer = TokenSigner(keys, issuer="https://hcen.uy")
        token = signer.generate_access_token("12345678", "inus-1", "PATIENT")

        assert not keys.ephemeral
        assert signer.validate_access_token(token)["sub"] == "12345678"

    def test_rs256_missing_key_generates_ephemeral_key_outside_production(self, tmp_path):
        settings = Settings(
            jwt_algorithm="RS256", jwt_signing_key_path=str(tmp_path / "missing.pem")
        )
        keys = load_signing_keys(settings)
        assert keys.ephemeral
        assert keys.algorithm is SigningAlgorithm.RS256

    def test_rs256_missing_key_aborts_in_production(self, tmp_path):
        settings = Settings(
            environment="production",
            jwt_algorithm="RS256",
            jwt_signing_key_path=str(tmp_path / "missing.pem"),
        )
        with pytest.raises(ConfigurationError):
            load_signing_keys(settings)
