from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from hcen_auth.config import ClientType
from hcen_auth.logging import get_logger
from hcen_auth.storage.common import (
    ConstraintViolation,
    ensure_utc,
    short_hash,
    validate_refresh_token,
)
from hcen_auth.storage.models import Clinic, InusUser, RefreshToken, utcnow


class MemoryStore:
    """In-process backing store for development and tests.

    Every read-modify-write runs under one re-entrant lock, which is what makes
    ``revoke_token`` a real compare-and-set: two threads rotating the same
    refresh token cannot both observe ``is_revoked == False``.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.users: Dict[str, InusUser] = {}
        self.clinics: Dict[str, Clinic] = {}
        # RLock so helpers can nest inside public operations
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # refresh tokens
    def save(self, token: RefreshToken) -> RefreshToken:
        validate_refresh_token(token)
        with self._data_lock:
            if token.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already stored", {"field": "token_hash"}
                )
            self.refresh_tokens[token.token_hash] = replace(token)
            self._persist_state()
        self.logger.debug(
            "refresh_token_saved",
            user_ci=token.user_ci,
            client_type=token.client_type.value,
        )
        return token

    def find_by_token_hash(self, token_hash: str) -> Optional[RefreshToken]:
        if not token_hash or not token_hash.strip():
            self.logger.warning("refresh_token_lookup_empty_hash")
            return None
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            return replace(token) if token else None

    def find_by_user_ci(self, user_ci: str) -> List[RefreshToken]:
        if not user_ci or not user_ci.strip():
            return []
        with self._data_lock:
            return [
                replace(token)
                for token in self.refresh_tokens.values()
                if token.user_ci == user_ci
            ]

    def find_valid_by_user_ci(self, user_ci: str) -> List[RefreshToken]:
        now = utcnow()
        return [token for token in self.find_by_user_ci(user_ci) if token.is_valid(now)]

    def revoke_all_for_user(self, user_ci: str) -> int:
        if not user_ci or not user_ci.strip():
            raise ValueError("User CI cannot be null or empty")
        now = utcnow()
        revoked = 0
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if token.user_ci == user_ci and not token.is_revoked:
                    token.is_revoked = True
                    token.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
        self.logger.info("refresh_tokens_revoked_for_user", user_ci=user_ci, count=revoked)
        return revoked

    def revoke_token(self, token_hash: str) -> bool:
        if not token_hash or not token_hash.strip():
            raise ValueError("Token hash cannot be null or empty")
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            if token is None or token.is_revoked:
                self.logger.debug(
                    "refresh_token_not_revoked",
                    token_hash=short_hash(token_hash),
                    reason="missing" if token is None else "already_revoked",
                )
                return False
            token.is_revoked = True
            token.revoked_at = utcnow()
            self._persist_state()
        self.logger.info("refresh_token_revoked", token_hash=short_hash(token_hash))
        return True

    def delete_expired(self) -> int:
        now = utcnow()
        with self._data_lock:
            expired = [
                token_hash
                for token_hash, token in self.refresh_tokens.items()
                if ensure_utc(token.expires_at) < now
            ]
            for token_hash in expired:
                self.refresh_tokens.pop(token_hash, None)
            if expired:
                self._persist_state()
        if expired:
            self.logger.info("expired_refresh_tokens_deleted", count=len(expired))
        return len(expired)

    def delete_old_revoked_tokens(self, days_old: int) -> int:
        if days_old < 0:
            raise ValueError("days_old must be non-negative")
        cutoff = utcnow() - timedelta(days=days_old)
        with self._data_lock:
            stale = [
                token_hash
                for token_hash, token in self.refresh_tokens.items()
                if token.is_revoked
                and token.revoked_at is not None
                and ensure_utc(token.revoked_at) < cutoff
            ]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            if stale:
                self._persist_state()
        if stale:
            self.logger.info(
                "old_revoked_refresh_tokens_deleted", count=len(stale), days_old=days_old
            )
        return len(stale)

    def count_active_tokens_for_user(self, user_ci: str) -> int:
        return len(self.find_valid_by_user_ci(user_ci))

    # INUS users
    def get_inus_user(self, ci: str) -> Optional[InusUser]:
        with self._data_lock:
            user = self.users.get(ci)
            return replace(user) if user else None

    def create_inus_user(self, user: InusUser) -> InusUser:
        with self._data_lock:
            if user.ci in self.users:
                raise ConstraintViolation("user already exists", {"field": "ci"})
            self.users[user.ci] = replace(user)
            self._persist_state()
        return user

    def update_inus_user_names(
        self, ci: str, first_name: Optional[str], last_name: Optional[str]
    ) -> Optional[InusUser]:
        with self._data_lock:
            user = self.users.get(ci)
            if not user:
                return None
            if first_name is not None:
                user.first_name = first_name
            if last_name is not None:
                user.last_name = last_name
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    # clinics
    def get_clinic(self, clinic_id: str) -> Optional[Clinic]:
        with self._data_lock:
            clinic = self.clinics.get(clinic_id)
            return replace(clinic) if clinic else None

    def create_clinic(self, clinic: Clinic) -> Clinic:
        with self._data_lock:
            if clinic.clinic_id in self.clinics:
                raise ConstraintViolation("clinic already exists", {"field": "clinic_id"})
            self.clinics[clinic.clinic_id] = replace(clinic)
            self._persist_state()
        return clinic

    def set_clinic_status(self, clinic_id: str, status: str) -> Optional[Clinic]:
        with self._data_lock:
            clinic = self.clinics.get(clinic_id)
            if not clinic:
                return None
            clinic.status = status
            self._persist_state()
            return replace(clinic)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # persistence
    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "clinics": [self._serialize_clinic(c) for c in self.clinics.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        tokens = [self._deserialize_refresh_token(t) for t in data.get("refresh_tokens", [])]
        self.refresh_tokens = {t.token_hash: t for t in tokens}
        users = [self._deserialize_user(u) for u in data.get("users", [])]
        self.users = {u.ci: u for u in users}
        clinics = [self._deserialize_clinic(c) for c in data.get("clinics", [])]
        self.clinics = {c.clinic_id: c for c in clinics}
        return True

    @staticmethod
    def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _deserialize_datetime(value: Optional[str]) -> Optional[datetime]:
        return ensure_utc(datetime.fromisoformat(value)) if value else None

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "token_hash": token.token_hash,
            "user_ci": token.user_ci,
            "client_type": token.client_type.value,
            "device_id": token.device_id,
            "issued_at": self._serialize_datetime(token.issued_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "revoked_at": self._serialize_datetime(token.revoked_at),
            "is_revoked": token.is_revoked,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            token_hash=data["token_hash"],
            user_ci=data["user_ci"],
            client_type=ClientType(data["client_type"]),
            device_id=data.get("device_id"),
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            is_revoked=data.get("is_revoked", False),
        )

    def _serialize_user(self, user: InusUser) -> dict:
        return {
            "ci": user.ci,
            "inus_id": user.inus_id,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role": user.role,
            "status": user.status,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> InusUser:
        return InusUser(
            ci=data["ci"],
            inus_id=data["inus_id"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            role=data.get("role", "PATIENT"),
            status=data.get("status", "ACTIVE"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_clinic(self, clinic: Clinic) -> dict:
        return {
            "clinic_id": clinic.clinic_id,
            "name": clinic.name,
            "api_key_hash": clinic.api_key_hash,
            "status": clinic.status,
            "created_at": self._serialize_datetime(clinic.created_at),
        }

    def _deserialize_clinic(self, data: dict) -> Clinic:
        return Clinic(
            clinic_id=data["clinic_id"],
            name=data["name"],
            api_key_hash=data["api_key_hash"],
            status=data.get("status", "ACTIVE"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
