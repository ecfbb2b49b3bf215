from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from bureauguard.api.error_handling import error_response, register_exception_handlers
from bureauguard.api.routes import router
from bureauguard.api.schemas import Envelope, HealthResponse
from bureauguard.logging import get_logger, set_correlation_id
from bureauguard.service.network import client_origin, matches_any_range

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so misconfiguration fails before serving."""
    from bureauguard.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="BureauGuard", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with the caller's X-Request-ID, or a fresh one, and echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


WHITELIST_EXEMPT_PATHS = frozenset({"/v1/auth/login", "/healthz"})


@app.middleware("http")
async def enforce_ip_whitelist(request, call_next):
    """Turn away clients outside ALLOWED_IP_RANGES; login and health stay reachable."""
    from bureauguard.service.runtime import get_runtime

    settings = get_runtime().settings
    if not settings.allowed_ip_ranges or request.url.path in WHITELIST_EXEMPT_PATHS:
        return await call_next(request)
    origin = client_origin(request, settings.trust_proxy_headers)
    if matches_any_range(origin, settings.allowed_ip_ranges):
        return await call_next(request)
    logger.warning("ip_whitelist_denied", origin=origin, path=request.url.path)
    return error_response(403, "access denied: address not in whitelist", code="forbidden")


@app.middleware("http")
async def add_no_store_headers(request, call_next):
    response = await call_next(request)
    if request.url.path.startswith("/v1/auth/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=Envelope)
async def health():
    return Envelope(status="ok", data=HealthResponse())
