from __future__ import annotations

from typing import Optional

GENERIC_AUTH_MESSAGE = "Authentication failed"
GENERIC_TOKEN_MESSAGE = "Invalid or expired token"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    ``message`` is the internal description that goes to the logs.
    ``public_message`` is what the caller sees; authentication failures keep
    it generic so a response never reveals which credential was wrong.
    """

    status_code: int = 400
    error_code: str = "INVALID_REQUEST"
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        public_message: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if public_message is not None:
            self.public_message = public_message
        self.detail = detail or {}

    @property
    def caller_message(self) -> str:
        return self.public_message or self.message

    @property
    def kind(self) -> str:
        return type(self).__name__


class InvalidRequestError(ServiceError):
    """Malformed request parameters (400)."""
    status_code = 400
    error_code = "INVALID_REQUEST"


class InvalidStateError(ServiceError):
    """Missing, expired, reused or mismatched OAuth state (401)."""
    status_code = 401
    error_code = "AUTHENTICATION_FAILED"
    public_message = GENERIC_AUTH_MESSAGE


class IdPError(ServiceError):
    """The identity provider denied the authorization (401)."""
    status_code = 401
    error_code = "AUTHENTICATION_FAILED"
    public_message = GENERIC_AUTH_MESSAGE


class InvalidTokenError(ServiceError):
    """A session token failed validation (401)."""
    status_code = 401
    error_code = "INVALID_TOKEN"
    public_message = GENERIC_TOKEN_MESSAGE


class TokenExpiredError(InvalidTokenError):
    pass


class RevokedTokenError(InvalidTokenError):
    pass


class InvalidSignatureError(InvalidTokenError):
    pass


class MalformedTokenError(InvalidTokenError):
    pass


class UnsupportedAlgorithmError(InvalidTokenError):
    pass


class UnauthorizedError(ServiceError):
    """Credentials missing or rejected at the request gate (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"
    public_message = "Authentication required"


class ClinicInactiveError(ServiceError):
    """Clinic credentials are valid but the clinic is not active (403)."""
    status_code = 403
    error_code = "FORBIDDEN"
    public_message = "Access denied"


class ExchangeFailureError(ServiceError):
    """The identity provider could not be reached or failed (502)."""
    status_code = 502
    error_code = "EXCHANGE_FAILED"
    public_message = "Identity provider unavailable, please retry login"


class StoreUnavailableError(ServiceError):
    """A backing store is unreachable; the request fails closed (503)."""
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"
    public_message = "Service temporarily unavailable, please retry"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"
    public_message = "Internal server error"


class ConfigurationError(RuntimeError):
    """Required configuration is missing or invalid; raised at startup only."""

    def __init__(self, missing: list[str], message: Optional[str] = None) -> None:
        self.missing = list(missing)
        super().__init__(
            message or "Missing required configuration: " + ", ".join(self.missing)
        )


__all__ = [
    "GENERIC_AUTH_MESSAGE",
    "GENERIC_TOKEN_MESSAGE",
    "ServiceError",
    "InvalidRequestError",
    "InvalidStateError",
    "IdPError",
    "InvalidTokenError",
    "TokenExpiredError",
    "RevokedTokenError",
    "InvalidSignatureError",
    "MalformedTokenError",
    "UnsupportedAlgorithmError",
    "UnauthorizedError",
    "ClinicInactiveError",
    "ExchangeFailureError",
    "StoreUnavailableError",
    "ServerError",
    "ConfigurationError",
]
