"""Waypoint sync service — FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI

from src.config import get_settings
from src.ingestion.config_loader import get_sync_config
from src.routers import health, strava
from src.services.db import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("waypoint")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting Waypoint sync v%s [%s]",
        settings.app_version,
        settings.environment,
    )
    get_sync_config()
    await init_pool(settings)
    app.state.http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    yield
    await app.state.http_client.aclose()
    await close_pool()
    logger.info("Waypoint sync shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Waypoint Sync",
        description="Provider activity ingestion: OAuth connect and rate-limited, resumable sync.",
        version=settings.app_version,
        lifespan=lifespan,
    )

    # Health check stays outside the v1 prefix
    app.include_router(health.router)

    app.include_router(strava.router, prefix="/api/v1")

    return app


app = create_app()
