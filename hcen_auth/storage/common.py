"""Storage helpers shared between the memory and postgres implementations.

Both backends hash credentials the same way and expose the same refresh-token
surface, so the hashing rules and the store protocol live here.
"""

from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from hcen_auth.storage.models import Clinic, InusUser, RefreshToken


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


# ============================================================================
# HASHING
# ============================================================================

def hash_token(token: str) -> str:
    """SHA-256 digest of a token, base64 encoded.

    Refresh tokens are only ever persisted in this form.
    """
    digest = hashlib.sha256(token.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def short_hash(token_hash: Optional[str]) -> str:
    """Loggable prefix of a token hash."""
    if not token_hash:
        return ""
    return token_hash[:10] + "..."


# ============================================================================
# DATETIME / ROW HELPERS
# ============================================================================

def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive or offset datetimes to timezone-aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from a row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def validate_refresh_token(token: Optional[RefreshToken]) -> RefreshToken:
    """Reject records that would break the refresh-token invariants."""
    if token is None:
        raise ValueError("RefreshToken cannot be None")
    if not token.token_hash or not token.token_hash.strip():
        raise ValueError("Token hash cannot be null or empty")
    if not token.user_ci or not token.user_ci.strip():
        raise ValueError("User CI cannot be null or empty")
    if ensure_utc(token.expires_at) <= ensure_utc(token.issued_at):
        raise ValueError("Refresh token must expire after it is issued")
    if token.is_revoked and token.revoked_at is None:
        raise ValueError("Revoked refresh token requires revoked_at")
    return token


# ============================================================================
# STORE PROTOCOL
# ============================================================================

class RefreshTokenStore(Protocol):
    """Durable refresh-token records; implemented by MemoryStore and PostgresStore."""

    def save(self, token: RefreshToken) -> RefreshToken: ...

    def find_by_token_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def find_by_user_ci(self, user_ci: str) -> List[RefreshToken]: ...

    def find_valid_by_user_ci(self, user_ci: str) -> List[RefreshToken]: ...

    def revoke_all_for_user(self, user_ci: str) -> int: ...

    def revoke_token(self, token_hash: str) -> bool: ...

    def delete_expired(self) -> int: ...

    def delete_old_revoked_tokens(self, days_old: int) -> int: ...

    def count_active_tokens_for_user(self, user_ci: str) -> int: ...


class IdentityStore(Protocol):
    """Backing records for the INUS user registry and the clinic registry."""

    def get_inus_user(self, ci: str) -> Optional[InusUser]: ...

    def create_inus_user(self, user: InusUser) -> InusUser: ...

    def update_inus_user_names(
        self, ci: str, first_name: Optional[str], last_name: Optional[str]
    ) -> Optional[InusUser]: ...

    def get_clinic(self, clinic_id: str) -> Optional[Clinic]: ...

    def create_clinic(self, clinic: Clinic) -> Clinic: ...

    def set_clinic_status(self, clinic_id: str, status: str) -> Optional[Clinic]: ...
