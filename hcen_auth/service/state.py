from __future__ import annotations

import json
import secrets
import threading
import time
from typing import Dict, Optional, Tuple

from redis.exceptions import RedisError

from hcen_auth.config import ClientType
from hcen_auth.logging import get_logger
from hcen_auth.service.errors import InvalidStateError, StoreUnavailableError
from hcen_auth.storage.models import OAuthState, utcnow
from hcen_auth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

STATE_TOKEN_BYTES = 32


class StateStore:
    """Single-use, TTL-bound OAuth state records.

    With Redis the record is redeemed with ``GETDEL``; without it a
    lock-protected dict is used, which is only suitable for a single process.
    Store outages fail closed.
    """

    def __init__(self, cache: Optional[RedisCache], ttl_seconds: int = 300) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._local: Dict[str, Tuple[str, float]] = {}
        self._local_lock = threading.Lock()

    async def create_state(
        self,
        client_type: ClientType,
        redirect_uri: str,
        code_challenge: Optional[str] = None,
        *,
        nonce: Optional[str] = None,
    ) -> OAuthState:
        record = OAuthState(
            state=secrets.token_urlsafe(STATE_TOKEN_BYTES),
            client_type=client_type,
            redirect_uri=redirect_uri,
            created_at=utcnow(),
            code_challenge=code_challenge,
            nonce=nonce,
        )
        payload = json.dumps(record.to_payload())
        if self.cache:
            try:
                await self.cache.store_oauth_state(record.state, payload, self.ttl_seconds)
            except RedisError as exc:
                logger.error("oauth_state_store_failed", error=str(exc))
                raise StoreUnavailableError("state store unavailable") from exc
        else:
            with self._local_lock:
                self._purge_expired_locked()
                self._local[record.state] = (payload, time.monotonic() + self.ttl_seconds)
        logger.debug(
            "oauth_state_created",
            client_type=client_type.value,
            pkce=code_challenge is not None,
        )
        return record

    async def validate_and_consume_state(self, state: Optional[str]) -> OAuthState:
        if not state or not state.strip():
            raise InvalidStateError("state parameter missing")
        if self.cache:
            try:
                payload = await self.cache.consume_oauth_state(state)
            except RedisError as exc:
                logger.error("oauth_state_consume_failed", error=str(exc))
                raise StoreUnavailableError("state store unavailable") from exc
        else:
            with self._local_lock:
                entry = self._local.pop(state, None)
            payload = None
            if entry is not None and entry[1] > time.monotonic():
                payload = entry[0]
        if payload is None:
            logger.warning("oauth_state_rejected", reason="missing_expired_or_consumed")
            raise InvalidStateError("state not found, expired or already consumed")
        try:
            record = OAuthState.from_payload(state, json.loads(payload))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("oauth_state_corrupt", error=str(exc))
            raise InvalidStateError("state record unreadable") from exc
        logger.debug("oauth_state_consumed", client_type=record.client_type.value)
        return record

    async def state_exists(self, state: str) -> bool:
        if not state:
            return False
        if self.cache:
            try:
                return await self.cache.oauth_state_exists(state)
            except RedisError as exc:
                raise StoreUnavailableError("state store unavailable") from exc
        with self._local_lock:
            entry = self._local.get(state)
            return entry is not None and entry[1] > time.monotonic()

    async def delete_state(self, state: Optional[str]) -> None:
        if not state:
            return
        if self.cache:
            try:
                await self.cache.delete_oauth_state(state)
            except RedisError as exc:
                raise StoreUnavailableError("state store unavailable") from exc
            return
        with self._local_lock:
            self._local.pop(state, None)

    def _purge_expired_locked(self) -> None:
        now = time.monotonic()
        expired = [key for key, (_, deadline) in self._local.items() if deadline <= now]
        for key in expired:
            self._local.pop(key, None)
