from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authkernel.api.error_handling import register_exception_handlers
from authkernel.api.routes import router
from authkernel.logging import get_logger, set_correlation_id
from authkernel.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so misconfigured storage fails fast."""
    runtime = get_runtime()
    logger.info("app_started", storage_backend=runtime.store.backend, issuer=runtime.settings.issuer)

    yield

    try:
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="authkernel", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with the caller's X-Request-ID (or a fresh one)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/v2/") or request.url.path.startswith("/u/login/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report storage reachability; 503 when the configured backend cannot answer."""
    runtime = get_runtime()

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    storage_ok = await _run_bounded("storage", runtime.store.ping)
    checks: Dict[str, Dict[str, Any]] = {
        "storage": {
            "status": "healthy" if storage_ok else "unhealthy",
            "type": runtime.store.backend,
        }
    }
    body = {
        "status": "healthy" if storage_ok else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if storage_ok else 503, content=body)


register_exception_handlers(app)
app.include_router(router)
