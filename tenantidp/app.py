from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tenantidp.api.error_handling import register_exception_handlers
from tenantidp.api.oidc import router as oidc_router
from tenantidp.api.routes import router
from tenantidp.config import Settings
from tenantidp.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release Redis connections on shutdown."""
    from tenantidp.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", issuer=runtime.settings.issuer, version=__version__)
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="tenantidp", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; never a wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Tenant-ID",
        "session_id",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate or mint an ``X-Request-ID`` and bind it to the logging context."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


_NO_STORE_PATHS = ("/token", "/userinfo", "/authorize", "/login", "/healthz")


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    path = request.url.path
    if path.startswith("/v1/") or path in _NO_STORE_PATHS:
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("Pragma", "no-cache")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    # The login page carries its stylesheet inline
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; style-src 'self' 'unsafe-inline'; img-src 'self' data:; "
        "frame-ancestors 'none'; base-uri 'self'",
    )
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(oidc_router)
app.include_router(router)

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness plus a Redis ping when Redis is configured."""
    from tenantidp.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    if runtime.cache is not None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.cache.verify_connection),
                timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["redis"] = {"status": "ok"}
        except Exception as exc:
            healthy = False
            logger.error("health_check_redis_failed", error=str(exc))
            checks["redis"] = {"status": "error", "error": type(exc).__name__}
    else:
        checks["redis"] = {"status": "disabled"}
    body = {
        "status": "ok" if healthy else "degraded",
        "version": __version__,
        "tenants": len(runtime.router.tenant_ids()),
        "checks": checks,
    }
    return JSONResponse(body, status_code=200 if healthy else 503)
