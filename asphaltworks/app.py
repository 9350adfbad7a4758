from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from asphaltworks.api import content_routes, upload_routes, user_routes
from asphaltworks.api.admission import admission_middleware
from asphaltworks.api.dependencies import client_ip
from asphaltworks.api.error_handling import register_exception_handlers
from asphaltworks.api.routes import ok
from asphaltworks.api.routes import router as auth_router
from asphaltworks.api.schemas import RateLimitInfoResponse
from asphaltworks.config import get_settings
from asphaltworks.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "1.0.0"
__build__ = _settings.build_sha


@asynccontextmanager
async def lifespan(app: FastAPI):
    from asphaltworks.service.runtime import get_runtime

    get_runtime()
    logger.info("app_started", version=__version__, build=__build__)

    yield

    try:
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Asphalt Works API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # local dev hosts only; never a wildcard while credentials are allowed
    return [
        _settings.client_url,
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


# http middlewares run outermost-last: correlation id wraps security headers wraps admission
app.middleware("http")(admission_middleware)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/metrics":
        response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag the request with ``X-Request-ID`` (client supplied or a new uuid4)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "RateLimit-Limit",
        "RateLimit-Remaining",
        "RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)

register_exception_handlers(app)
app.include_router(auth_router)
app.include_router(user_routes.router)
for _router in content_routes.routers:
    app.include_router(_router)
app.include_router(upload_routes.router)

_media_path = Path(_settings.media_path)
try:
    _media_path.mkdir(parents=True, exist_ok=True)
except OSError as exc:
    logger.warning("media_root_unavailable", path=str(_media_path), error=str(exc))
app.mount(
    "/media",
    StaticFiles(directory=str(_media_path), check_dir=False),
    name="media",
)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/api/health")
async def health():
    """Dependency checks for the database, Redis and the media filesystem."""
    from asphaltworks.service.runtime import get_runtime

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
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
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

    media_path = runtime.settings.media_path

    def _fs_probe() -> None:
        media_path.mkdir(parents=True, exist_ok=True)
        probe = media_path / ".health_check"
        probe.write_text(datetime.now(timezone.utc).isoformat())
        probe.read_text()
        probe.unlink(missing_ok=True)

    fs_ok = await _run_bounded("filesystem", _fs_probe)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    healthy = db_ok and redis_ok and fs_ok
    envelope = ok(
        {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "build": __build__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
    envelope.success = healthy
    return JSONResponse(
        status_code=200 if healthy else 503,
        content=envelope.model_dump(mode="json", by_alias=True),
    )


@app.get("/api/rate-limit-info")
async def rate_limit_info(request: Request):
    """The caller's position in the general window."""
    from asphaltworks.service.runtime import get_runtime

    runtime = get_runtime()
    ip = client_ip(request)
    decision = await runtime.admission.peek("general", ip or "unknown")
    return ok(
        RateLimitInfoResponse(
            ip=ip,
            limit=decision.policy.limit,
            remaining=decision.remaining,
            reset=decision.reset_seconds,
        )
    )


def _gauge(lines: List[str], name: str, help_text: str, value: Any, labels: str = "") -> None:
    lines.append(f"# HELP {name} {help_text}")
    lines.append(f"# TYPE {name} gauge")
    lines.append(f"{name}{labels} {value}")


@app.get("/metrics", response_class=Response)
async def metrics() -> Response:
    """Prometheus text exposition."""
    from asphaltworks.service.runtime import get_runtime

    lines: List[str] = []
    _gauge(
        lines,
        "asphaltworks_info",
        "Application version info",
        1,
        f'{{version="{__version__}",build="{__build__}"}}',
    )
    try:
        runtime = get_runtime()
        try:
            stats = runtime.users.stats()
            _gauge(lines, "asphaltworks_users_total", "Registered users", stats["total"])
            _gauge(lines, "asphaltworks_users_active", "Active users", stats["active"])
            _gauge(lines, "asphaltworks_users_verified", "Users with a verified email", stats["verified"])
        except Exception as exc:
            logger.warning("metrics_user_stats_failed", error=str(exc))
        try:
            contacts = runtime.content.contact_stats()
            _gauge(lines, "asphaltworks_contacts_unread", "Unread contact requests", contacts["unread"])
        except Exception as exc:
            logger.warning("metrics_contact_stats_failed", error=str(exc))
        _gauge(
            lines,
            "asphaltworks_cache_available",
            "Redis cache availability",
            1 if runtime.cache is not None else 0,
        )
        store = runtime.admission.store
        if hasattr(store, "__len__"):
            _gauge(
                lines,
                "asphaltworks_rate_limit_windows",
                "Live rate-limit windows held in process",
                len(store),
            )
    except Exception as exc:
        logger.error("metrics_collection_failed", error=str(exc))

    return Response(content="\n".join(lines) + "\n", media_type="text/plain; version=0.0.4")
