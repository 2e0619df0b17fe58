from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.routes import client_ip, router
from gatehouse.api.schemas import Envelope, ErrorBody
from gatehouse.config import Settings
from gatehouse.logging import get_correlation_id, get_logger, set_correlation_id
from gatehouse.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_runtime()
    logger.info("app_started", environment=_settings.environment)
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Gatehouse", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def enforce_api_rate_limit(request: Request, call_next):
    """Fixed-window throttle per client, method and path for the /v1 API."""
    if not request.url.path.startswith("/v1/") or request.method == "OPTIONS":
        return await call_next(request)
    runtime = get_runtime()
    ip_address = client_ip(request, runtime.settings.trusted_proxies) or "unknown"
    result = await runtime.rate_limiter.hit(
        f"ip:{ip_address}:{request.method}:{request.url.path}",
        runtime.settings.rate_limit_max,
        runtime.settings.rate_limit_window_seconds,
    )
    if not result.allowed:
        logger.warning(
            "api_rate_limit_exceeded",
            ip_address=ip_address,
            method=request.method,
            path=request.url.path,
        )
        envelope = Envelope(
            status="error",
            error=ErrorBody(
                code="rate_limited",
                message="Too many requests, please try again later",
                details={"retry_after": result.retry_after},
            ),
            request_id=get_correlation_id() or request.headers.get("X-Request-ID") or "",
        )
        return JSONResponse(
            status_code=429, content=envelope.model_dump(), headers=result.headers()
        )
    response = await call_next(request)
    for name, value in result.headers().items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


# Registered last so it runs first and the id is set for the other middleware
@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with X-Request-ID (or a fresh UUID)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report whether the fast store answers a ping."""
    runtime = get_runtime()
    try:
        store_ok = await asyncio.wait_for(runtime.store.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="fast_store")
        store_ok = False
    except Exception as exc:
        logger.error("health_check_fast_store_failed", error=str(exc))
        store_ok = False
    payload: Dict[str, Any] = {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": {
            "fast_store": {
                "status": "healthy" if store_ok else "unhealthy",
                "type": type(runtime.store).__name__,
            }
        },
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if store_ok else 503, content=payload)
