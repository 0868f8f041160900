"""FastAPI application for the journalcoach reply pipeline.

Provides the application factory with routers, CORS and the domain
exception handler configured. Pipeline services are built once at
startup from CoachConfig and kept on `app.state.services`.
"""

import logging
import os
import sys
import time as _time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

# Configure logging to stdout for uvicorn to capture
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("journalcoach").setLevel(logging.INFO)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from journalcoach import __version__
from journalcoach.api.routes import (
    agenda,
    chat,
    coach_jobs,
    cron,
    notifications,
    tool_jobs,
)
from journalcoach.cli.config import CoachConfig, load_config, validate_startup_config
from journalcoach.db.connection import SessionLocal, init_db
from journalcoach.errors import DomainError, PipelineError
from journalcoach.services.pipeline import PipelineServices, build_services

logger = logging.getLogger(__name__)

_startup_time: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build pipeline services unless they were injected."""
    global _startup_time
    _startup_time = _time.time()

    if app.state.services is None:
        config: CoachConfig = app.state.config
        for warning in validate_startup_config(config):
            logger.warning(warning)
        init_db()
        app.state.services = build_services(config, SessionLocal)
        logger.info(
            "Pipeline ready (push configured: %s, queue configured: %s)",
            app.state.services.dispatcher.is_configured,
            config.queue.is_configured,
        )

    yield


def create_app(
    config: CoachConfig | None = None,
    services: PipelineServices | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Configuration; loaded from JOURNALCOACH_CONFIG_PATH or the
            standard locations when omitted.
        services: Prebuilt pipeline services (tests inject fakes here).

    Returns:
        Configured FastAPI app.
    """
    if config is None:
        config = services.config if services else load_config(
            config_path=os.environ.get("JOURNALCOACH_CONFIG_PATH")
        )

    app = FastAPI(
        title="journalcoach API",
        description="Asynchronous coach replies with debounced push delivery",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.services = services

    # CORS allowlist is config-driven. If empty, CORS is disabled (same-origin only).
    if config.server.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.server.allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-User-Id"],
        )

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        """Map domain exceptions to their HTTP status with a consistent body."""
        content: dict = {"detail": str(exc)}
        if isinstance(exc, PipelineError):
            content["error_code"] = exc.code
        if exc.status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=content)

    for module in (chat, coach_jobs, tool_jobs, notifications, agenda, cron):
        app.include_router(module.router, prefix="/api/v1")

    @app.get("/health")
    def health_check() -> dict:
        """Liveness plus whether the optional collaborators are configured."""
        current = app.state.services
        return {
            "status": "healthy",
            "version": __version__,
            "uptime_seconds": round(_time.time() - _startup_time, 1) if _startup_time else 0,
            "push_configured": bool(current and current.dispatcher.is_configured),
            "queue_configured": config.queue.is_configured,
        }

    return app


app = create_app()
