from pathlib import Path

import redis
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .api import public_router, router
from .config import settings
from .core.locking import RedisLockBackend, get_lock_backend
from .core.logging_config import setup_logging
from .core.middleware import RequestLoggingMiddleware
from .db import get_session_local, init_db
from .idempotency import idempotency_middleware

logger = structlog.get_logger("shopbook.app")

_MAINTENANCE_BYPASS_PREFIXES = (
    "/health",
    "/ping",
    "/docs",
    "/redoc",
    "/openapi.json",
)


def _read_app_version() -> str:
    version_file = Path(__file__).resolve().parents[1] / "VERSION"
    try:
        value = version_file.read_text(encoding="utf-8").strip()
        return value or "0.1.0"
    except OSError:
        return "0.1.0"


async def maintenance_mode_middleware(request: Request, call_next):
    path = request.url.path or ""
    method = request.method.upper()
    retry_after = str(max(1, int(settings.MAINTENANCE_RETRY_AFTER_SECONDS)))

    if bool(settings.MAINTENANCE_MODE):
        if not any(path.startswith(prefix) for prefix in _MAINTENANCE_BYPASS_PREFIXES):
            return JSONResponse(
                status_code=503,
                content={"detail": "Service temporarily unavailable: maintenance mode"},
                headers={"Retry-After": retry_after},
            )

    if bool(settings.MAINTENANCE_READ_ONLY):
        if method not in {"GET", "HEAD", "OPTIONS"}:
            return JSONResponse(
                status_code=503,
                content={"detail": "Service is in read-only mode"},
                headers={"Retry-After": retry_after},
            )
    return await call_next(request)


async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if bool(settings.SECURITY_HEADERS_ENABLED):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
    return response


def ping():
    return {"ok": True}


def health():
    return {"status": "ok"}


def ready(request: Request):
    checks = {"db": "ok", "lock_backend": "skipped"}
    db_ok = True
    lock_ok = True

    session_local = getattr(request.app.state, "session_local", None) or get_session_local()
    try:
        with session_local() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("readiness_db_failed", error=str(exc))
        checks["db"] = "error"
        db_ok = False

    backend = get_lock_backend()
    if isinstance(backend, RedisLockBackend):
        try:
            backend.ping()
            checks["lock_backend"] = "ok"
        except redis.exceptions.RedisError as exc:
            logger.warning("readiness_redis_failed", error=str(exc))
            checks["lock_backend"] = "error"
            lock_ok = False
    else:
        checks["lock_backend"] = backend.name

    if db_ok and lock_ok:
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})


def create_app(session_local=None) -> FastAPI:
    setup_logging()
    if session_local is None:
        if settings.DATABASE_URL.startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
            init_db()
        session_local = get_session_local()

    app = FastAPI(
        title="ShopBook",
        description="Appointment booking API for service shops",
        version=_read_app_version(),
    )
    app.state.session_local = session_local

    # last registered runs outermost
    app.middleware("http")(maintenance_mode_middleware)
    app.middleware("http")(idempotency_middleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.middleware("http")(security_headers_middleware)

    app.add_api_route("/ping", ping, methods=["GET"])
    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_route("/health/ready", ready, methods=["GET"])

    app.include_router(router)
    app.include_router(public_router)
    return app


app = create_app()
