from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leasekeeper.api.error_handling import register_exception_handlers
from leasekeeper.api.routes import router
from leasekeeper.config import Settings, get_settings
from leasekeeper.logging import get_logger, set_correlation_id
from leasekeeper.service.runtime import Runtime, build_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
    # Local dev hosts only; never a wildcard.
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


def create_app(runtime: Optional[Runtime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the API application.

    A ``runtime`` passed in is used as-is (tests inject one wired to a
    manual clock); otherwise one is built from ``settings`` at startup and
    closed at shutdown.
    """
    settings = settings or (runtime.settings if runtime else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = runtime or build_runtime(settings)
        app.state.runtime = active
        if settings.sweeper_enabled and not settings.test_mode:
            await active.sweeper.start()
        logger.info("leasekeeper_started", version=__version__)

        yield

        try:
            await active.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="Leasekeeper", version=__version__, lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-Lease-Token",
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of a request with its X-Request-ID."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        # Responses may carry bearer secrets
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.get("/healthz", tags=["health"])
    async def healthz():
        return {"status": "ok", "version": __version__}

    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
