from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from hcen_auth.config import Settings, get_settings, reset_settings_cache
from hcen_auth.logging import get_logger
from hcen_auth.service.auth import AuthenticationOrchestrator
from hcen_auth.service.authenticator import RequestAuthenticator
from hcen_auth.service.blacklist import TokenBlacklist
from hcen_auth.service.federation import FederationConfig
from hcen_auth.service.idp import OidcClient
from hcen_auth.service.registry import ClinicRegistry, LoggingAuditSink, UserRegistry
from hcen_auth.service.state import StateStore
from hcen_auth.service.tokens import TokenSigner, load_signing_keys
from hcen_auth.storage.memory import MemoryStore
from hcen_auth.storage.postgres import PostgresStore
from hcen_auth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


def build_store(settings: Settings) -> MemoryStore | PostgresStore:
    """Open the durable store selected by ``USE_MEMORY_STORE``."""
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            # test runs keep state per runtime
            store = MemoryStore(fs_root=None if settings.test_mode else settings.shared_fs_root)
        else:
            store = PostgresStore(
                settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
            )
        logger.info("runtime_store_initialized", store_type=store_type)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    return store


class Runtime:
    """Wires configuration, stores and services once per process.

    Federation settings and signing keys are resolved here and injected into
    every consumer; a missing required value aborts construction.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )

        self.federation = FederationConfig.from_settings(self.settings)
        self.signing_keys = load_signing_keys(self.settings)
        self.signer = TokenSigner.from_settings(self.settings, self.signing_keys)

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        self.store = build_store(self.settings)

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids event loop binding
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                    )
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for OAuth state and the token blacklist; start Redis "
                    "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; OAuth state and the "
                    "token blacklist are process-local only."
                ),
                mode=fallback_mode,
            )

        self.state_store = StateStore(self.cache, ttl_seconds=self.settings.oauth_state_ttl_seconds)
        self.blacklist = TokenBlacklist(
            self.cache, fail_closed=self.settings.blacklist_fail_closed
        )
        self.idp = OidcClient(
            self.federation,
            timeout_seconds=self.settings.oidc_http_timeout_seconds,
            jwks_cache_seconds=self.settings.oidc_jwks_cache_seconds,
        )
        self.users = UserRegistry(self.store)
        self.clinics = ClinicRegistry(self.store)
        self.audit = LoggingAuditSink()
        self.auth = AuthenticationOrchestrator(
            state_store=self.state_store,
            signer=self.signer,
            refresh_store=self.store,
            blacklist=self.blacklist,
            idp=self.idp,
            users=self.users,
            audit=self.audit,
            allowed_redirect_uris=self.settings.allowed_redirect_uris,
            max_active_sessions_per_user=self.settings.max_active_sessions_per_user,
            default_web_redirect_uri=self.settings.web_callback_redirect_uri,
        )
        self.authenticator = RequestAuthenticator(
            self.signer, self.blacklist, self.clinics, self.audit
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            jwt_algorithm=self.signing_keys.algorithm.value,
            ephemeral_signing_key=self.signing_keys.ephemeral,
        )

    def close(self) -> None:
        self.store.close()
        if isinstance(self.cache, SyncRedisCache):
            self.cache.close_sync()

    async def aclose(self) -> None:
        """Release pooled connections, including the async Redis client."""
        if self.cache is not None and not isinstance(self.cache, SyncRedisCache):
            await self.cache.close()
        self.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
