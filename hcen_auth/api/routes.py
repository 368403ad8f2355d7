from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import HTMLResponse, RedirectResponse

from hcen_auth.api.error_handling import log_service_error
from hcen_auth.api.schemas import (
    CallbackRequest,
    LoginInitiateRequest,
    LoginInitiateResponse,
    SessionDetails,
    SessionInfoResponse,
    TokenRefreshRequest,
    TokenResponse,
    UserInfo,
)
from hcen_auth.api.security import get_jwt_principal
from hcen_auth.logging import get_logger
from hcen_auth.service.auth import AuthResult
from hcen_auth.service.authenticator import JwtPrincipal
from hcen_auth.service.errors import InvalidTokenError, ServiceError
from hcen_auth.service.runtime import get_runtime
from hcen_auth.service.tokens import TokenSigner
from hcen_auth.storage.models import InusUser

logger = get_logger(__name__)

router = APIRouter()

ACCESS_TOKEN_COOKIE = "access_token"
REFRESH_TOKEN_COOKIE = "refresh_token"

_CALLBACK_ERROR_PAGE = """<!DOCTYPE html>
<html lang="es">
<head><meta charset="utf-8"><title>HCEN</title></head>
<body>
<h1>{title}</h1>
<p>{message}</p>
</body>
</html>
"""


def _token_response(result: AuthResult) -> TokenResponse:
    return TokenResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
        user=UserInfo.from_user(result.user),
    )


def _apply_session_cookies(
    response: Response, result: AuthResult, *, refresh_ttl_seconds: int
) -> None:
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        result.access_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=result.expires_in,
        path="/",
    )
    response.set_cookie(
        REFRESH_TOKEN_COOKIE,
        result.refresh_token,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=refresh_ttl_seconds,
        path="/",
    )


def _callback_error_page(exc: ServiceError) -> HTMLResponse:
    # provider supplied text is never echoed back to the browser
    body = _CALLBACK_ERROR_PAGE.format(
        title=html.escape("No fue posible iniciar sesión"),
        message=html.escape(exc.caller_message),
    )
    return HTMLResponse(content=body, status_code=exc.status_code)


def _from_timestamp(value: Optional[int]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(value, tz=timezone.utc)


@router.post("/auth/login/initiate", response_model=LoginInitiateResponse, tags=["auth"])
async def login_initiate(body: LoginInitiateRequest):
    """Start an OIDC login and return the provider authorization URL.

    Mobile clients must send a PKCE ``S256`` challenge; web clients must not.
    """
    runtime = get_runtime()
    initiation = await runtime.auth.initiate_login(
        body.client_type,
        body.redirect_uri,
        body.code_challenge,
        body.code_challenge_method,
    )
    return LoginInitiateResponse(
        authorization_url=initiation.authorization_url,
        state=initiation.state,
        expires_in=initiation.expires_in,
    )


@router.post("/auth/callback", response_model=TokenResponse, tags=["auth"])
async def login_callback(body: CallbackRequest):
    """Redeem an authorization code for a session token pair."""
    runtime = get_runtime()
    result = await runtime.auth.handle_callback(
        body.code,
        body.state,
        body.client_type,
        body.redirect_uri,
        body.code_verifier,
        device_id=body.device_id,
    )
    return _token_response(result)


@router.get("/auth/callback", tags=["auth"])
async def login_callback_redirect(
    request: Request,
    code: Optional[str] = Query(default=None, max_length=2048),
    state: Optional[str] = Query(default=None, max_length=256),
    error: Optional[str] = Query(default=None, max_length=256),
    error_description: Optional[str] = Query(default=None, max_length=1024),
):
    """Browser redirect target for the web clients.

    On success the token pair is set as HttpOnly cookies and the browser is sent
    to the post-login page; on failure a generic HTML page is rendered.
    """
    runtime = get_runtime()
    try:
        result = await runtime.auth.handle_callback(
            code,
            state,
            error=error,
            error_description=error_description,
        )
    except ServiceError as exc:
        log_service_error(exc, path=request.url.path, method=request.method)
        return _callback_error_page(exc)
    response = RedirectResponse(url=runtime.settings.web_post_login_url, status_code=303)
    _apply_session_cookies(
        response, result, refresh_ttl_seconds=runtime.settings.refresh_token_ttl_seconds
    )
    return response


@router.post("/auth/token/refresh", response_model=TokenResponse, tags=["auth"])
async def refresh_token(body: TokenRefreshRequest):
    """Rotate a refresh token; the presented token is spent either way."""
    runtime = get_runtime()
    result = await runtime.auth.refresh_token(body.refresh_token)
    return _token_response(result)


@router.get("/auth/session", response_model=SessionInfoResponse, tags=["auth"])
async def session_info(principal: JwtPrincipal = Depends(get_jwt_principal)):
    runtime = get_runtime()
    user: Optional[InusUser] = runtime.auth.get_user(principal.ci)
    if user is None:
        raise InvalidTokenError("session user no longer registered")
    remaining = TokenSigner.remaining_seconds({"exp": principal.expires_at})
    return SessionInfoResponse(
        user=UserInfo.from_user(user),
        session=SessionDetails(
            authenticated_at=_from_timestamp(principal.issued_at),
            expires_at=_from_timestamp(principal.expires_at),
            remaining_seconds=remaining,
        ),
    )


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(principal: JwtPrincipal = Depends(get_jwt_principal)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.ci, jti=principal.jti, exp=principal.expires_at)
    response = Response(status_code=204)
    response.delete_cookie(ACCESS_TOKEN_COOKIE, path="/")
    response.delete_cookie(REFRESH_TOKEN_COOKIE, path="/")
    return response
