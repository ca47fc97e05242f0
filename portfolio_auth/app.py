from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from portfolio_auth.api.error_handling import register_exception_handlers
from portfolio_auth.api.middleware import auth_gate
from portfolio_auth.api.routes import __version__, router
from portfolio_auth.config import Settings
from portfolio_auth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime, run limiter sweeps, and release clients on exit."""
    from portfolio_auth.service.runtime import close_runtime, get_runtime

    runtime = get_runtime()
    runtime.start_background_tasks()
    logger.info("app_started", version=__version__)
    yield
    try:
        await close_runtime()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Portfolio Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return [_settings.frontend_url]


# Later registrations wrap earlier ones: the auth gate runs innermost so its
# rejections still get security headers, a request id, and CORS headers.
app.middleware("http")(auth_gate)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Reuse the client's X-Request-ID or mint one, and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)

register_exception_handlers(app)
app.include_router(router)
