"""Request gate wiring.

The gate runs as HTTP middleware so a rejected request never reaches a route
handler; routes read the resulting principal through the dependencies below.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, FastAPI, Request

from hcen_auth.api.error_handling import service_error_response
from hcen_auth.service.authenticator import (
    JwtPrincipal,
    Principal,
    RequestAuthenticator,
)
from hcen_auth.service.errors import ServiceError, UnauthorizedError


def install_request_authentication(
    app: FastAPI, authenticator_factory: Callable[[], RequestAuthenticator]
) -> None:
    @app.middleware("http")
    async def authenticate_request(request: Request, call_next):
        request.state.principal = None
        authenticator = authenticator_factory()
        if request.method == "OPTIONS" or authenticator.is_public_path(request.url.path):
            return await call_next(request)
        try:
            principal = await authenticator.authenticate(request.headers)
        except ServiceError as exc:
            return service_error_response(exc, path=request.url.path, method=request.method)
        request.state.principal = principal
        return await call_next(request)


def get_principal(request: Request) -> Principal:
    principal: Optional[Principal] = getattr(request.state, "principal", None)
    if principal is None:
        raise UnauthorizedError("request reached a protected route without a principal")
    return principal


def get_jwt_principal(principal: Principal = Depends(get_principal)) -> JwtPrincipal:
    if not isinstance(principal, JwtPrincipal):
        raise UnauthorizedError("route requires a bearer token")
    return principal

