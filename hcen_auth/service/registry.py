from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from hcen_auth.logging import get_logger
from hcen_auth.service.idp import IdentityClaims
from hcen_auth.storage.common import ConstraintViolation, IdentityStore, hash_api_key
from hcen_auth.storage.models import Clinic, InusUser

logger = get_logger(__name__)

DEFAULT_ROLE = "PATIENT"


class UserRegistry:
    """Resolves a CI to the INUS identity, provisioning it on first login."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def find(self, ci: str) -> Optional[InusUser]:
        return self.store.get_inus_user(ci)

    def provision(self, identity: IdentityClaims) -> InusUser:
        existing = self.store.get_inus_user(identity.ci)
        if existing:
            updated = self.store.update_inus_user_names(
                identity.ci, identity.first_name, identity.last_name
            )
            return updated or existing
        user = InusUser(
            ci=identity.ci,
            inus_id=f"inus-{uuid.uuid4()}",
            first_name=identity.first_name,
            last_name=identity.last_name,
            role=DEFAULT_ROLE,
        )
        try:
            self.store.create_inus_user(user)
        except ConstraintViolation:
            # concurrent first login for the same CI
            winner = self.store.get_inus_user(identity.ci)
            if winner is None:
                raise
            return winner
        logger.info("inus_user_provisioned", user_ci=identity.ci, inus_id=user.inus_id)
        return user


class ClinicRegistry:
    """Clinic lookup by id and API key; keys are kept as SHA-256 digests."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def register(self, clinic_id: str, name: str, api_key: str) -> Clinic:
        clinic = Clinic(clinic_id=clinic_id, name=name, api_key_hash=hash_api_key(api_key))
        return self.store.create_clinic(clinic)

    def set_status(self, clinic_id: str, status: str) -> Optional[Clinic]:
        return self.store.set_clinic_status(clinic_id, status)

    def authenticate(self, clinic_id: str, api_key: str) -> Optional[Clinic]:
        """Return the clinic when the key matches, whatever its status."""
        clinic = self.store.get_clinic(clinic_id)
        presented = hash_api_key(api_key)
        if clinic is None:
            # keep timing uniform for unknown ids
            hmac.compare_digest(presented, presented)
            return None
        if not hmac.compare_digest(clinic.api_key_hash, presented):
            return None
        return clinic


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    success: bool
    user_ci: Optional[str] = None
    client_type: Optional[str] = None
    reason: Optional[str] = None
    clinic_id: Optional[str] = None


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> Any: ...


class LoggingAuditSink:
    """Emits authentication events as structured log records."""

    def __init__(self) -> None:
        self.logger = get_logger("hcen_auth.audit")

    def record(self, event: AuditEvent) -> None:
        self.logger.info(
            "audit_event",
            event_type=event.event_type,
            success=event.success,
            user_ci=event.user_ci,
            client_type=event.client_type,
            reason=event.reason,
            clinic_id=event.clinic_id,
        )
