from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from hcen_auth.api.error_handling import register_exception_handlers
from hcen_auth.api.routes import router
from hcen_auth.api.schemas import HealthResponse
from hcen_auth.api.security import install_request_authentication
from hcen_auth.config import get_settings
from hcen_auth.logging import get_logger, set_correlation_id
from hcen_auth.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Resolve configuration and stores at startup; a missing value aborts boot."""
    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except (RedisError, OSError) as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="HCEN Auth", version=__version__, lifespan=lifespan)

register_exception_handlers(app)
install_request_authentication(app, lambda: get_runtime().authenticator)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    # token bearing responses must never be cached by proxies
    if request.url.path.startswith("/auth/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of the request with ``X-Request-ID`` and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health():
    runtime = get_runtime()
    store_status = "ok"
    try:
        runtime.store.ping()
    except Exception as exc:
        logger.error("health_store_unreachable", error=str(exc))
        store_status = "unavailable"

    if runtime.cache is None:
        cache_status = "local"
    else:
        try:
            await runtime.cache.ping()
            cache_status = "ok"
        except (RedisError, OSError) as exc:
            logger.error("health_cache_unreachable", error=str(exc))
            cache_status = "unavailable"

    healthy = store_status == "ok" and cache_status != "unavailable"
    body = HealthResponse(
        status="ok" if healthy else "degraded",
        store=store_status,
        cache=cache_status,
    )
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())


app.include_router(router)


def run() -> None:
    """Console entry point: serve the app on ``HOST``:``PORT``."""
    settings = get_settings()
    uvicorn.run("hcen_auth.app:app", host=settings.host, port=settings.port)
