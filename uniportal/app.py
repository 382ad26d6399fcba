from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from uniportal.api.access_filter import install_access_filter
from uniportal.api.error_handling import register_exception_handlers
from uniportal.api.routes import router
from uniportal.config import get_settings
from uniportal.logging import get_logger, start_request_context

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release Redis on shutdown."""
    from uniportal.service.runtime import get_runtime

    runtime = get_runtime()
    yield
    if runtime.cache is not None:
        try:
            await runtime.cache.close()
        except Exception as exc:
            logger.error("shutdown_cache_close_failed", error=str(exc))
    close_store = getattr(runtime.store, "close", None)
    if callable(close_store):
        close_store()
    logger.info("runtime_cleanup_complete")


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts; no wildcard because credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


def create_app() -> FastAPI:
    app = FastAPI(title="Uniportal Auth", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    # Registered first so it runs innermost; correlation ids wrap it
    install_access_filter(app)

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs and the response with X-Request-ID, generating one if absent."""
        correlation_id = start_request_context(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Dependency check for the database and, when configured, Redis."""
        from uniportal.service.runtime import get_runtime

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS
                )
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout",
                    component=label,
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}
        if hasattr(runtime.store, "_connect"):

            def _db_probe() -> None:
                with runtime.store._connect() as conn:
                    conn.execute("SELECT 1").fetchone()

            db_ok = await _run_bounded("database", _db_probe)
            checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        else:
            db_ok = True
            checks["database"] = {"status": "healthy", "type": "memory"}

        redis_ok = True
        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        else:
            checks["redis"] = {"status": "not_configured"}

        return {
            "status": "healthy" if db_ok and redis_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.utcnow().isoformat(),
        }

    return app


app = create_app()
