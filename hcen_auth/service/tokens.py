from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from hcen_auth.config import SigningAlgorithm, Settings, load_or_create_jwt_secret
from hcen_auth.logging import get_logger
from hcen_auth.service.errors import (
    ConfigurationError,
    InvalidSignatureError,
    InvalidTokenError,
    MalformedTokenError,
    TokenExpiredError,
    UnsupportedAlgorithmError,
)

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

_RESERVED_CLAIMS = frozenset({"sub", "inusId", "role", "tokenType", "jti", "iat", "exp", "iss"})


@dataclass(frozen=True)
class SigningKeys:
    """Key material loaded once at startup and shared read-only."""

    algorithm: SigningAlgorithm
    signing_key: Any
    verification_key: Any
    ephemeral: bool = False


def _generate_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def load_signing_keys(settings: Settings) -> SigningKeys:
    """Resolve signing keys for the configured algorithm.

    Outside production a missing secret or key file is replaced (persisted
    secret for HS256, throwaway RSA key for RS256); in production it aborts.
    """
    if settings.jwt_algorithm is SigningAlgorithm.HS256:
        secret = settings.jwt_secret
        if secret is None:
            if settings.is_production:
                raise ConfigurationError(["JWT_SECRET"])
            secret = load_or_create_jwt_secret(settings.shared_fs_root)
        return SigningKeys(SigningAlgorithm.HS256, secret, secret)

    key_path = settings.jwt_signing_key_path
    try:
        if not key_path:
            raise FileNotFoundError("JWT_SIGNING_KEY_PATH not set")
        private_key = serialization.load_pem_private_key(
            Path(key_path).read_bytes(), password=None
        )
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise ValueError("signing key is not an RSA private key")
    except (OSError, ValueError, TypeError) as exc:
        if settings.is_production:
            raise ConfigurationError(
                ["JWT_SIGNING_KEY_PATH"], f"RS256 signing key unavailable: {exc}"
            ) from exc
        logger.warning(
            "jwt_ephemeral_signing_key",
            error=str(exc),
            message="Generated a throwaway RSA signing key; unsuitable for production",
        )
        private_key = _generate_rsa_key()
        return SigningKeys(
            SigningAlgorithm.RS256, private_key, private_key.public_key(), ephemeral=True
        )
    return SigningKeys(SigningAlgorithm.RS256, private_key, private_key.public_key())


class TokenSigner:
    """Issues and validates the session JWTs handed to clients."""

    def __init__(
        self,
        keys: SigningKeys,
        *,
        issuer: str,
        access_ttl_seconds: int = 3600,
        refresh_ttl_seconds: int = 30 * 24 * 60 * 60,
        leeway_seconds: int = 0,
    ) -> None:
        self.keys = keys
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(cls, settings: Settings, keys: SigningKeys) -> "TokenSigner":
        return cls(
            keys,
            issuer=settings.jwt_issuer,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    def _encode(
        self,
        ci: str,
        inus_id: Optional[str],
        token_type: str,
        ttl_seconds: int,
        *,
        role: Optional[str] = None,
        extra_claims: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> str:
        if not ci or not ci.strip():
            raise ValueError("ci is required to issue a token")
        issued = now or datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            k: v for k, v in (extra_claims or {}).items() if k not in _RESERVED_CLAIMS
        }
        payload.update(
            {
                "sub": ci,
                "inusId": inus_id,
                "tokenType": token_type,
                "jti": str(uuid.uuid4()),
                "iat": int(issued.timestamp()),
                "exp": int((issued + timedelta(seconds=ttl_seconds)).timestamp()),
                "iss": self.issuer,
            }
        )
        if role is not None:
            payload["role"] = role
        return jwt.encode(
            payload, self.keys.signing_key, algorithm=self.keys.algorithm.value
        )

    def generate_access_token(
        self,
        ci: str,
        inus_id: Optional[str],
        role: str,
        extra_claims: Optional[Dict[str, Any]] = None,
    ) -> str:
        return self._encode(
            ci,
            inus_id,
            ACCESS_TOKEN_TYPE,
            self.access_ttl_seconds,
            role=role,
            extra_claims=extra_claims,
        )

    def generate_refresh_token(self, ci: str, inus_id: Optional[str]) -> str:
        return self._encode(ci, inus_id, REFRESH_TOKEN_TYPE, self.refresh_ttl_seconds)

    def validate_token(self, token: Optional[str]) -> Dict[str, Any]:
        """Verify signature, issuer and expiry and return the claims.

        Failures are raised as distinct ``InvalidTokenError`` subclasses so
        logs can tell them apart; callers all see the same 401.
        """
        if not token or not isinstance(token, str) or not token.strip():
            raise MalformedTokenError("token missing")
        try:
            return jwt.decode(
                token,
                self.keys.verification_key,
                algorithms=[self.keys.algorithm.value],
                issuer=self.issuer,
                leeway=self.leeway_seconds,
                options={"require": ["sub", "exp", "iat", "jti"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError("token expired") from exc
        except jwt.InvalidSignatureError as exc:
            raise InvalidSignatureError("token signature invalid") from exc
        except jwt.InvalidAlgorithmError as exc:
            raise UnsupportedAlgorithmError("token algorithm not accepted") from exc
        except jwt.DecodeError as exc:
            raise MalformedTokenError(f"token malformed: {exc}") from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError(f"token rejected: {exc}") from exc

    def _validate_typed(self, token: Optional[str], expected: str) -> Dict[str, Any]:
        claims = self.validate_token(token)
        if claims.get("tokenType") != expected:
            raise InvalidTokenError(
                f"expected {expected} token",
                detail={"token_type": claims.get("tokenType")},
            )
        return claims

    def validate_access_token(self, token: Optional[str]) -> Dict[str, Any]:
        return self._validate_typed(token, ACCESS_TOKEN_TYPE)

    def validate_refresh_token(self, token: Optional[str]) -> Dict[str, Any]:
        return self._validate_typed(token, REFRESH_TOKEN_TYPE)

    @staticmethod
    def remaining_seconds(claims: Dict[str, Any], now: Optional[datetime] = None) -> int:
        current = now or datetime.now(timezone.utc)
        exp = claims.get("exp")
        if exp is None:
            return 0
        return max(0, int(exp - current.timestamp()))

    @staticmethod
    def extract_subject_unsafe(token: Optional[str]) -> Optional[str]:
        """Read ``sub`` without verifying anything. For log context only."""
        if not token:
            return None
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except (jwt.InvalidTokenError, ValueError, TypeError):
            return None
        subject = claims.get("sub") if isinstance(claims, dict) else None
        return subject if isinstance(subject, str) else None
