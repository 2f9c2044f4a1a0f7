"""
BotFleet Platform - Main Application Entry Point

Usage:
    uvicorn botfleet.main:app --host 0.0.0.0 --port 8000
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from botfleet import __version__
from botfleet.api import auth_router, bots_router, webhooks_router
from botfleet.config import settings
from botfleet.db import async_session_maker, init_db
from botfleet.errors import BotFleetError, RateLimited, ValidationError
from botfleet.logging_config import configure_logging, generate_request_id, set_request_context
from botfleet.services.bot_manager import BotManager
from botfleet.services.bot_store import BotStore
from botfleet.services.dispatch import DispatchRouter
from botfleet.services.governor import Governor
from botfleet.services.provisioning import ProvisioningBackend, build_backend
from botfleet.services.scheduler import setup_scheduler, start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)

# Global start time for uptime tracking
_app_start_time = None


def install_services(
    app: FastAPI,
    backend: ProvisioningBackend,
    governor: Optional[Governor] = None,
    session_factory=async_session_maker,
) -> BotManager:
    """Wire the backend and everything that depends on it into app.state."""
    governor = governor or Governor(settings)
    manager = BotManager(backend, session_factory, governor, settings)
    app.state.backend = backend
    app.state.governor = governor
    app.state.manager = manager
    app.state.dispatch = DispatchRouter(backend, session_factory, governor)
    return manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    global _app_start_time
    _app_start_time = time.time()

    configure_logging(settings.log_level, settings.log_json)
    logger.info("BotFleet Platform starting up...")
    await init_db()
    logger.info("Database initialized")

    backend = build_backend(settings, async_session_maker)
    manager = install_services(app, backend)

    scheduler = None
    if settings.enable_scheduler:
        scheduler = setup_scheduler(app.state.governor, manager, settings)
        start_scheduler(scheduler)

    yield

    logger.info("BotFleet Platform shutting down...")
    if scheduler is not None:
        stop_scheduler(scheduler)
    await manager.shutdown()
    await backend.shutdown()


app = FastAPI(
    title=settings.app_name,
    description="Create, deploy and operate AI chat-bots on messaging platforms",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or generate_request_id()
    set_request_context(request_id=request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Error mapping ────────────────────────────────────────────

@app.exception_handler(BotFleetError)
async def botfleet_error_handler(request: Request, exc: BotFleetError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(settings.debug),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    error = ValidationError("Validation error", jsonable_encoder(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    detail = str(exc) if settings.debug else "Internal server error"
    return JSONResponse(status_code=500, content={"error": detail})


# ── Routers ──────────────────────────────────────────────────

app.include_router(auth_router, prefix=settings.api_prefix)
app.include_router(bots_router, prefix=settings.api_prefix)
app.include_router(webhooks_router)


@app.get("/")
async def root():
    return {
        "name": settings.app_name,
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
async def health(request: Request):
    """Health check with database probe and fleet counts."""
    db_status = "connected"
    bots = {}
    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
            bots = await BotStore(db).count_by_status()
    except Exception as e:
        logger.warning("Health check database probe failed: %s", e)
        db_status = "error"

    backend = getattr(request.app.state, "backend", None)
    manager = getattr(request.app.state, "manager", None)
    uptime = time.time() - _app_start_time if _app_start_time else 0

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": __version__,
        "uptime_seconds": round(uptime, 1),
        "database": db_status,
        "provisioning_backend": backend.name if backend else None,
        "provisioning_tasks": len(manager.tasks) if manager else 0,
        "bots": bots,
    }
