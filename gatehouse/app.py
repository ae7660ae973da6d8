from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gatehouse.api.error_handling import register_exception_handlers
from gatehouse.api.operations import router as operations_router
from gatehouse.api.resources import build_crud_router
from gatehouse.api.routes import router as auth_router
from gatehouse.config import Settings, get_settings
from gatehouse.logging import get_logger, sanitize_error_message, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", api_path=runtime.config.api_path)
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Credentials are allowed, so never fall back to a wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


async def health() -> Dict[str, Any]:
    """Report store, Redis and filesystem health."""
    from gatehouse.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(
                "health_check_failed", component=label, error=sanitize_error_message(str(exc))
            )
        return False

    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
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

    fs_root = runtime.store.fs_root

    def _fs_probe() -> None:
        probe = fs_root / ".health_check"
        probe.write_text(datetime.utcnow().isoformat())
        probe.read_text()
        probe.unlink(missing_ok=True)

    fs_ok = await _run_bounded("filesystem", _fs_probe)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    healthy = db_ok and redis_ok and fs_ok
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the app with routers mounted under ``/{api_path}``."""
    settings = settings or get_settings()
    config = settings.auth_config()
    prefix = f"/{config.api_path}"

    app = FastAPI(title="Gatehouse", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Echo ``X-Request-ID`` back, generating one when the client sent none."""
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
        if request.url.path.startswith(prefix + "/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    # Resource routes first so /roles/{id} wins over /{provider}/callback
    app.include_router(build_crud_router(config), prefix=prefix)
    app.include_router(operations_router, prefix=prefix)
    app.include_router(auth_router, prefix=prefix)
    app.add_api_route("/healthz", health, methods=["GET"])
    return app


app = create_app()
