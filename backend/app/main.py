"""FastAPI application entry point."""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from app.core.config import get_settings
from app.core.logging import setup_logging

# Setup logging
logger = setup_logging("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Initialize services at startup, flush settings and close the HTTP client at shutdown."""
    settings = get_settings()
    settings.media_dir.mkdir(parents=True, exist_ok=True)
    http_client = httpx.AsyncClient(follow_redirects=True)
    settings_store = None
    try:
        from app.services.avatar import HttpAvatarSource
        from app.services.generation import GenerationGuard, ImageGenerationService
        from app.services.media import LocalMediaSink
        from app.services.settings_store import JsonSettingsStore

        settings_store = JsonSettingsStore(
            settings.settings_path,
            settings.extension_name,
            debounce_seconds=settings.save_debounce_seconds,
        )
        app.state.settings_store = settings_store
        app.state.generation_service = ImageGenerationService(
            http_client=http_client,
            avatar_source=HttpAvatarSource(http_client, settings.host_base_url),
            settings_store=settings_store,
            default_headers=settings.default_headers,
            timeout=settings.request_timeout,
        )
        app.state.media_sink = LocalMediaSink(settings.media_dir)
        app.state.generation_guard = GenerationGuard()
        logger.info("Services initialized successfully")
    except Exception as exc:
        logger.error(
            "Service initialization failed, running in degraded mode",
            exc_info=True,
            extra={"service": "main", "error_type": type(exc).__name__},
        )
        # Continue without services; endpoints return 503 until fixed

    yield

    if settings_store is not None and settings_store.has_pending_write:
        settings_store.flush()
    await http_client.aclose()


# Create FastAPI app
app = FastAPI(
    title="Universal Image Bridge",
    description="Provider-agnostic image generation with avatar face reference",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS configuration
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[f"http://localhost:{settings.frontend_port}"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
from app.api.generation import router as generation_router  # noqa: E402

app.include_router(generation_router)

# Serve saved images at /media (directory is created at startup)
app.mount(
    "/media",
    StaticFiles(directory=str(settings.media_dir), check_dir=False),
    name="media",
)


@app.get("/health")
async def health_check(request: Request) -> dict:
    """Health check endpoint.

    Always returns HTTP 200; check `services.generation` for actual status.
    """
    svc = getattr(request.app.state, "generation_service", None)

    logger.info("Health check requested")
    return {
        "status": "ok",
        "version": app.version,
        "services": {
            "generation": "ok" if svc is not None else "unavailable",
        },
    }
