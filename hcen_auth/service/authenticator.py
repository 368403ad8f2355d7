from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Union

from hcen_auth.logging import get_logger
from hcen_auth.service.blacklist import TokenBlacklist
from hcen_auth.service.errors import (
    ClinicInactiveError,
    InvalidTokenError,
    RevokedTokenError,
    ServiceError,
    UnauthorizedError,
)
from hcen_auth.service.registry import AuditEvent, AuditSink, ClinicRegistry
from hcen_auth.service.tokens import TokenSigner

logger = get_logger(__name__)

CLINIC_ID_HEADER = "x-clinic-id"
API_KEY_HEADER = "x-api-key"

PUBLIC_PATH_PREFIXES = (
    "/auth/login",
    "/auth/callback",
    "/auth/token/refresh",
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
)


@dataclass(frozen=True)
class JwtPrincipal:
    ci: str
    role: str
    inus_id: Optional[str] = None
    jti: Optional[str] = None
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None


@dataclass(frozen=True)
class ClinicPrincipal:
    clinic_id: str
    name: Optional[str] = None


Principal = Union[JwtPrincipal, ClinicPrincipal]


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class RequestAuthenticator:
    """Per-request gate: exactly one of Bearer JWT or clinic API key.

    A Bearer header takes precedence; the clinic headers are only consulted
    when no Bearer token is presented. Every outcome is reported to the audit
    sink.
    """

    def __init__(
        self,
        signer: TokenSigner,
        blacklist: TokenBlacklist,
        clinics: ClinicRegistry,
        audit: AuditSink,
        *,
        public_paths: Iterable[str] = PUBLIC_PATH_PREFIXES,
    ) -> None:
        self.signer = signer
        self.blacklist = blacklist
        self.clinics = clinics
        self.audit = audit
        self.public_paths = tuple(public_paths)

    def is_public_path(self, path: str) -> bool:
        return any(
            path == prefix or path.startswith(prefix.rstrip("/") + "/")
            for prefix in self.public_paths
        )

    async def authenticate(self, headers: Mapping[str, str]) -> Principal:
        token = extract_bearer(headers.get("authorization"))
        if token is not None:
            return await self.authenticate_bearer(token)
        clinic_id = headers.get(CLINIC_ID_HEADER)
        api_key = headers.get(API_KEY_HEADER)
        if clinic_id is not None or api_key is not None:
            return self.authenticate_clinic(clinic_id, api_key)
        raise UnauthorizedError("no credentials presented")

    async def authenticate_bearer(self, token: str) -> JwtPrincipal:
        try:
            claims = self.signer.validate_access_token(token)
        except InvalidTokenError as exc:
            subject = self.signer.extract_subject_unsafe(token)
            logger.warning(
                "bearer_token_rejected",
                kind=exc.kind,
                reason=exc.message,
                subject=subject,
            )
            self._audit("bearer_auth", False, user_ci=subject, reason=exc.kind)
            raise
        jti = claims.get("jti")
        try:
            blacklisted = await self.blacklist.is_blacklisted(jti)
        except ServiceError as exc:
            self._audit("bearer_auth", False, user_ci=claims.get("sub"), reason=exc.kind)
            raise
        if blacklisted:
            logger.warning("bearer_token_blacklisted", jti=jti, user_ci=claims.get("sub"))
            self._audit("bearer_auth", False, user_ci=claims.get("sub"), reason="revoked")
            raise RevokedTokenError("access token revoked")
        self._audit("bearer_auth", True, user_ci=claims["sub"])
        return JwtPrincipal(
            ci=claims["sub"],
            role=claims.get("role") or "PATIENT",
            inus_id=claims.get("inusId"),
            jti=jti,
            issued_at=claims.get("iat"),
            expires_at=claims.get("exp"),
        )

    def authenticate_clinic(
        self, clinic_id: Optional[str], api_key: Optional[str]
    ) -> ClinicPrincipal:
        if not clinic_id or not clinic_id.strip() or not api_key or not api_key.strip():
            logger.warning("clinic_credentials_incomplete")
            self._audit(
                "clinic_auth",
                False,
                clinic_id=clinic_id.strip() if clinic_id else None,
                reason="incomplete",
            )
            raise UnauthorizedError("Invalid clinic credentials")
        clinic_id = clinic_id.strip()
        clinic = self.clinics.authenticate(clinic_id, api_key.strip())
        if clinic is None:
            logger.warning("clinic_credentials_rejected", clinic_id=clinic_id)
            self._audit("clinic_auth", False, clinic_id=clinic_id, reason="invalid_credentials")
            raise UnauthorizedError("Invalid clinic credentials")
        if not clinic.is_active:
            logger.warning("clinic_inactive", clinic_id=clinic_id, status=clinic.status)
            self._audit("clinic_auth", False, clinic_id=clinic_id, reason="inactive")
            raise ClinicInactiveError("clinic is not active", detail={"status": clinic.status})
        logger.debug("clinic_authenticated", clinic_id=clinic_id)
        self._audit("clinic_auth", True, clinic_id=clinic_id)
        return ClinicPrincipal(clinic_id=clinic.clinic_id, name=clinic.name)

    def _audit(
        self,
        event_type: str,
        success: bool,
        *,
        user_ci: Optional[str] = None,
        clinic_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        event = AuditEvent(
            event_type=event_type,
            success=success,
            user_ci=user_ci,
            clinic_id=clinic_id,
            reason=reason,
        )
        try:
            self.audit.record(event)
        except Exception as exc:
            logger.warning("audit_sink_failed", event_type=event_type, error=str(exc))
