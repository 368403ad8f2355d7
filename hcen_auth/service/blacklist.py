from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Dict, Optional

from redis.exceptions import RedisError

from hcen_auth.logging import get_logger
from hcen_auth.service.errors import StoreUnavailableError
from hcen_auth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class TokenBlacklist:
    """Denylist of access-token ids, each kept only as long as the token lives.

    Lookups fail open by default: when the denylist store is unreachable a
    Bearer request is treated as not blacklisted and a warning is logged.
    ``fail_closed=True`` turns the outage into a 503 instead.
    """

    def __init__(self, cache: Optional[RedisCache], *, fail_closed: bool = False) -> None:
        self.cache = cache
        self.fail_closed = fail_closed
        self._local: Dict[str, float] = {}
        self._local_lock = threading.Lock()

    @staticmethod
    def ttl_from_exp(exp: Optional[int | float], now: Optional[datetime] = None) -> int:
        if exp is None:
            return 0
        current = (now or datetime.now(timezone.utc)).timestamp()
        return max(0, int(exp - current))

    async def blacklist(self, jti: str, ttl_seconds: int) -> bool:
        """Deny ``jti`` for ``ttl_seconds``; returns False for already-expired tokens."""
        if not jti:
            raise ValueError("jti is required")
        if ttl_seconds <= 0:
            return False
        if self.cache:
            try:
                await self.cache.denylist_access_token(jti, ttl_seconds)
            except RedisError as exc:
                logger.error("blacklist_write_failed", jti=jti, error=str(exc))
                raise StoreUnavailableError("token blacklist unavailable") from exc
        else:
            with self._local_lock:
                self._purge_expired_locked()
                self._local[jti] = time.monotonic() + ttl_seconds
        logger.info("access_token_blacklisted", jti=jti, ttl_seconds=ttl_seconds)
        return True

    async def blacklist_until(self, jti: str, exp: Optional[int | float]) -> bool:
        return await self.blacklist(jti, self.ttl_from_exp(exp))

    async def is_blacklisted(self, jti: Optional[str]) -> bool:
        if not jti:
            return False
        if not self.cache:
            with self._local_lock:
                deadline = self._local.get(jti)
                return deadline is not None and deadline > time.monotonic()
        try:
            return await self.cache.is_access_token_denylisted(jti)
        except RedisError as exc:
            if self.fail_closed:
                logger.error("blacklist_check_failed_fail_closed", jti=jti, error=str(exc))
                raise StoreUnavailableError("token blacklist unavailable") from exc
            logger.warning("blacklist_check_failed_fail_open", jti=jti, error=str(exc))
            return False

    def _purge_expired_locked(self) -> None:
        now = time.monotonic()
        for key in [k for k, deadline in self._local.items() if deadline <= now]:
            self._local.pop(key, None)
