"""PromptAudit FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan — @asynccontextmanager startup/shutdown sequence
  - /        route  — service discovery root
  - app = create_app() — module-level instance for uvicorn

Startup sequence:
  1. app.state.config         (loaded by create_app(); CORS needs it early)
  2. build_registry()       → app.state.registry   (RegistryError → exit 1)
  3. create_prompt_store()  → app.state.store      (schema guard → RuntimeError)
  4. CapturePipeline        → app.state.capture_pipeline
  5. DashboardService       → app.state.dashboard_service
  6. app.state.ready = True

Shutdown sequence (reverse):
  app.state.ready = False → close store
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from starlette.exceptions import HTTPException as StarletteHTTPException

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from promptaudit import __version__
from promptaudit.capture.limiter import limiter
from promptaudit.capture.pipeline import REQUIRED_FIELDS, CapturePipeline
from promptaudit.capture.router import (
    CaptureBody,
    missing_fields_response,
    router as capture_router,
)
from promptaudit.config import Config, load_config
from promptaudit.dashboard.api import router as dashboard_router
from promptaudit.dashboard.service import DashboardService
from promptaudit.health import router as health_router
from promptaudit.middleware import BodySizeLimitMiddleware, RequestContextMiddleware
from promptaudit.scanner.definitions import RegistryError, build_registry
from promptaudit.store.factory import create_prompt_store
from promptaudit.utils.logger import configure_from_env, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
configure_from_env()
logger = get_logger(__name__)

CAPTURE_PATH = "/api/capture"

root_router = APIRouter(tags=["root"])


@root_router.get("/")
async def root() -> dict[str, str]:
    """Root endpoint — service identity / discovery."""
    return {
        "service": "PromptAudit",
        "status": "running",
        "version": __version__,
        "health": "/health",
        "capture": CAPTURE_PATH,
    }


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    logger.info("PromptAudit starting up...")
    config: Config = app.state.config

    # ── Step 1: Detector registry ─────────────────────────────────────────────
    try:
        registry = build_registry(config.detectors.custom)
    except RegistryError as exc:
        logger.error("Invalid detector configuration", error=str(exc))
        raise SystemExit(1) from exc
    app.state.registry = registry
    logger.info(
        "Detector registry built",
        detectors=len(registry),
        categories=list(registry.categories),
    )

    # ── Step 2: Prompt store ──────────────────────────────────────────────────
    # RuntimeError from the schema version guard propagates: startup refused.
    store = await create_prompt_store(config)
    app.state.store = store

    # ── Step 3: Services ──────────────────────────────────────────────────────
    app.state.capture_pipeline = CapturePipeline(
        store=store,
        registry=registry,
        timeout_s=config.store.timeout_s,
        preview_chars=config.capture.preview_chars,
    )
    app.state.dashboard_service = DashboardService(
        store=store,
        timeout_s=config.store.timeout_s,
        default_days=config.dashboard.default_days,
    )

    # ── Step 4: Mark as ready ─────────────────────────────────────────────────
    app.state.ready = True
    logger.info("PromptAudit ready", host=config.server.host, port=config.server.port)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────────
    logger.info("PromptAudit shutting down...")
    app.state.ready = False
    await store.close()
    logger.info("PromptAudit shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Create and configure the PromptAudit FastAPI application.

    Call this function directly in tests to get an isolated app instance:
        app = create_app(Config.defaults())

    The module-level `app` is created at import time for uvicorn:
        uvicorn promptaudit.main:app --host 127.0.0.1 --port 3000

    Args:
        config: Loaded configuration. When None, load_config() is called
                (SystemExit(1) on an invalid config file).
    """
    if config is None:
        config = load_config()

    application = FastAPI(
        title="PromptAudit",
        description="Sensitive-data detection and audit trail for prompts sent to AI tools",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if DEBUG else None,
        redoc_url="/redoc" if DEBUG else None,
        openapi_url="/openapi.json" if DEBUG else None,
    )

    # Set before the lifespan runs so /health answers 503 during startup.
    application.state.ready = False
    application.state.config = config

    # Rate limiter — attached to app state as required by slowapi.
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # NOTE: In Starlette, the LAST-added middleware is OUTERMOST (runs first).
    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials="*" not in config.server.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    application.add_middleware(BodySizeLimitMiddleware)
    application.add_middleware(SlowAPIMiddleware)
    application.add_middleware(RequestContextMiddleware)

    application.include_router(root_router)
    application.include_router(health_router)
    application.include_router(capture_router)
    application.include_router(dashboard_router)

    # Global exception handlers
    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @application.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        logger.info(
            "Request validation failed",
            path=str(request.url.path),
            error_count=len(errors),
        )
        if request.url.path == CAPTURE_PATH:
            # Malformed JSON or a non-object body has no field location.
            fields = sorted(
                {
                    e["loc"][1]
                    for e in errors
                    if len(e.get("loc", ())) > 1 and e["loc"][1] in CaptureBody.model_fields
                }
            )
            return missing_fields_response(fields or list(REQUIRED_FIELDS))
        return JSONResponse(
            status_code=400,
            content={
                "error": "Invalid request parameters",
                "fields": [".".join(str(p) for p in e.get("loc", ())) for e in errors],
            },
        )

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return application


# ─── Module-Level App (for uvicorn) ───────────────────────────────────────────

app = create_app()
