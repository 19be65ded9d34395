from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from issuetrack.api.error_handling import register_exception_handlers
from issuetrack.api.routes import router
from issuetrack.config import get_settings
from issuetrack.logging import get_logger, set_correlation_id
from issuetrack.service.rate_limit import run_rate_limit_sweep

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"
__build__ = _settings.build_sha


_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the rate-limit sweep task for the lifetime of the app."""
    global _sweep_task
    from issuetrack.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        run_rate_limit_sweep(
            runtime.rate_limiter, runtime.settings.rate_limit_sweep_interval_seconds
        )
    )
    logger.info("rate_limit_sweep_started")

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Issue Tracker", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # local dev frontends; never a wildcard while credentials are allowed
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
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
async def add_correlation_id(request, call_next):
    """Tag the request with ``X-Request-ID`` (client-supplied or fresh)."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store, Redis and filesystem health plus the build."""
    from issuetrack.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

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

    runtime = get_runtime()
    if hasattr(runtime.store, "_connect"):
        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}
    overall_healthy = overall_healthy and db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    fs_root = getattr(runtime.store, "fs_root", None)
    if fs_root:
        fs_path = Path(fs_root)

        def _fs_probe() -> None:
            if not fs_path.exists() or not fs_path.is_dir():
                raise FileNotFoundError(fs_path)
            health_file = fs_path / ".health_check"
            health_file.write_text(datetime.now(timezone.utc).isoformat())
            health_file.read_text()
            health_file.unlink(missing_ok=True)

        fs_ok = await _run_bounded("filesystem", _fs_probe)
        checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
        overall_healthy = overall_healthy and fs_ok

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
