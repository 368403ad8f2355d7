from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from hcen_auth.logging import get_logger

logger = get_logger(__name__)


class ClientType(str, Enum):
    """Client populations federated through the national identity provider.

    MOBILE is a public client (no secret, PKCE mandatory); both web clients
    are confidential and authenticate to the token endpoint with a secret.
    """

    MOBILE = "MOBILE"
    WEB_PATIENT = "WEB_PATIENT"
    WEB_ADMIN = "WEB_ADMIN"

    @property
    def is_public(self) -> bool:
        return self is ClientType.MOBILE


class SigningAlgorithm(str, Enum):
    """Algorithms accepted for locally issued session tokens."""

    HS256 = "HS256"
    RS256 = "RS256"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


MIN_JWT_SECRET_BYTES = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings, read once from the environment and validated eagerly."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, runtime resets).",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    shared_fs_root: str = env_field("/srv/hcen-auth", "SHARED_FS_ROOT")
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(8000, "PORT")

    # Stores
    database_url: str = env_field("postgresql://localhost:5432/hcen", "DATABASE_URL")
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")

    # Session tokens
    jwt_algorithm: SigningAlgorithm = env_field(SigningAlgorithm.HS256, "JWT_ALGORITHM")
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_signing_key_path: str | None = env_field(None, "JWT_SIGNING_KEY_PATH")
    jwt_issuer: str = env_field("https://hcen.uy", "JWT_ISSUER")
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS"
    )
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS")

    # OAuth state
    oauth_state_ttl_seconds: int = env_field(300, "OAUTH_STATE_TTL_SECONDS")

    # Identity provider (gub.uy OIDC)
    oidc_issuer: str | None = env_field(
        "https://auth-testing.iduruguay.gub.uy/oidc/v1", "OIDC_ISSUER"
    )
    oidc_authorization_endpoint: str | None = env_field(
        "https://auth-testing.iduruguay.gub.uy/oidc/v1/authorize",
        "OIDC_AUTHORIZATION_ENDPOINT",
    )
    oidc_token_endpoint: str | None = env_field(
        "https://auth-testing.iduruguay.gub.uy/oidc/v1/token", "OIDC_TOKEN_ENDPOINT"
    )
    oidc_userinfo_endpoint: str | None = env_field(
        "https://auth-testing.iduruguay.gub.uy/oidc/v1/userinfo",
        "OIDC_USERINFO_ENDPOINT",
    )
    oidc_jwks_uri: str | None = env_field(
        "https://auth-testing.iduruguay.gub.uy/oidc/v1/jwks", "OIDC_JWKS_URI"
    )
    oidc_end_session_endpoint: str | None = env_field(
        "https://auth-testing.iduruguay.gub.uy/oidc/v1/logout",
        "OIDC_END_SESSION_ENDPOINT",
    )
    oidc_mobile_client_id: str | None = env_field(None, "OIDC_MOBILE_CLIENT_ID")
    oidc_web_patient_client_id: str | None = env_field(None, "OIDC_WEB_PATIENT_CLIENT_ID")
    oidc_web_patient_client_secret: str | None = env_field(
        None, "OIDC_WEB_PATIENT_CLIENT_SECRET"
    )
    oidc_web_admin_client_id: str | None = env_field(None, "OIDC_WEB_ADMIN_CLIENT_ID")
    oidc_web_admin_client_secret: str | None = env_field(
        None, "OIDC_WEB_ADMIN_CLIENT_SECRET"
    )
    oidc_scopes: str = env_field("openid personal_info document", "OIDC_SCOPES")
    oidc_acr_values: str = env_field(
        "urn:iduruguay:nid:2 urn:iduruguay:nid:3", "OIDC_ACR_VALUES"
    )
    oidc_http_timeout_seconds: float = env_field(10.0, "OIDC_HTTP_TIMEOUT_SECONDS")
    oidc_jwks_cache_seconds: int = env_field(3600, "OIDC_JWKS_CACHE_SECONDS")

    # Web channel
    web_callback_redirect_uri: str = env_field(
        "https://hcen.uy/api/auth/callback", "WEB_CALLBACK_REDIRECT_URI"
    )
    web_post_login_url: str = env_field("/", "WEB_POST_LOGIN_URL")
    allowed_redirect_uris: list[str] = env_field(
        [],
        "ALLOWED_REDIRECT_URIS",
        description="Comma separated allowlist; empty means scheme checks only",
    )

    # Policy
    blacklist_fail_closed: bool = env_field(
        False,
        "BLACKLIST_FAIL_CLOSED",
        description="Reject bearer requests when the denylist store is unreachable",
    )
    max_active_sessions_per_user: int = env_field(
        0,
        "MAX_ACTIVE_SESSIONS_PER_USER",
        description="Oldest refresh tokens are revoked beyond this count; 0 disables",
    )

    model_config = ConfigDict(extra="ignore", frozen=True)

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment is Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("jwt_algorithm", mode="before")
    @classmethod
    def _normalize_algorithm(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("redis_url", "jwt_secret", "jwt_signing_key_path", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("allowed_redirect_uris", mode="before")
    @classmethod
    def _split_redirect_uris(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _check_secret_length(cls, value: str | None) -> str | None:
        if value is not None and len(value.encode()) < MIN_JWT_SECRET_BYTES:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_BYTES} bytes"
            )
        return value

    @field_validator("oauth_state_ttl_seconds")
    @classmethod
    def _check_state_ttl(cls, value: int) -> int:
        if not 300 <= value <= 600:
            raise ValueError("OAUTH_STATE_TTL_SECONDS must be between 300 and 600")
        return value

    @field_validator("access_token_ttl_seconds", "refresh_token_ttl_seconds")
    @classmethod
    def _check_positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value


def load_or_create_jwt_secret(fs_root: str) -> str:
    """Return the persisted development JWT secret, creating it if needed.

    Used only when HS256 is configured without ``JWT_SECRET`` outside
    production, so that tokens stay valid across restarts.
    """
    root = Path(fs_root)
    secret_path = root / ".jwt_secret"
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted.encode()) >= MIN_JWT_SECRET_BYTES:
                return persisted

    generated = secrets.token_urlsafe(64)
    # Atomic write: temp file then rename
    fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=".jwt_secret_", suffix=".tmp")
    try:
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning(
        "jwt_secret_generated",
        path=str(secret_path),
        message="Generated development JWT secret; set JWT_SECRET in production",
    )
    return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
