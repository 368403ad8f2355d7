from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hcen_auth.api.schemas import ErrorResponse
from hcen_auth.logging import get_logger
from hcen_auth.service.errors import ServiceError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "INVALID_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    500: "INTERNAL_ERROR",
    502: "EXCHANGE_FAILED",
    503: "SERVICE_UNAVAILABLE",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "INTERNAL_ERROR")


def error_response(status_code: int, message: str, code: str | None = None) -> JSONResponse:
    """Render the ``{error, message}`` body used by every failure."""
    body = ErrorResponse(error=code or _error_code_for_status(status_code), message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def log_service_error(exc: ServiceError, *, path: str, method: str) -> None:
    log_fn = logger.error if exc.status_code >= 500 else logger.warning
    log_fn(
        "service_error",
        path=path,
        method=method,
        status_code=exc.status_code,
        error_code=exc.error_code,
        kind=exc.kind,
        message=exc.message,
        detail=exc.detail,
    )


def service_error_response(exc: ServiceError, *, path: str, method: str) -> JSONResponse:
    """Log a service error with full detail and answer with its public form."""
    log_service_error(exc, path=path, method=method)
    return error_response(exc.status_code, exc.caller_message, exc.error_code)


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and framework errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        return service_error_response(exc, path=request.url.path, method=request.method)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            fields=[".".join(str(part) for part in err.get("loc", ())) for err in errors],
        )
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ())[1:]) or "request"
        message = f"{field}: {first.get('msg', 'invalid value')}"
        return error_response(400, message, "INVALID_REQUEST")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return error_response(500, "Internal server error", "INTERNAL_ERROR")
