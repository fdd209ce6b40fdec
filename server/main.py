"""
Restaurant directory FastAPI application.

Entry point for the API server.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from server import db
from server.config import settings
from server.routes import restaurants as restaurant_routes
from server.routes import ws as ws_routes
from server.services.media import open_media_store

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI application.

    Handles startup and shutdown logic:
    - Open the store (and database pool for the postgres backend)
    - Configure the media store for photo uploads
    - Close the store on shutdown, which ends open subscriptions
    """
    # Startup
    app.state.store = await db.open_store()
    app.state.media_store = open_media_store()
    logger.info("Startup complete (environment=%s)", settings.ENVIRONMENT)

    yield

    # Shutdown
    await db.close_store(app.state.store)
    logger.info("Shutdown complete")


app = FastAPI(
    title="Restaurant Directory",
    docs_url=None,
    redoc_url=None,
    lifespan=lifespan,
)

# Register routes
app.include_router(restaurant_routes.router)
app.include_router(ws_routes.router)


@app.get("/health")
async def health():
    """Health check endpoint for uptime monitoring."""
    return {"status": "ok"}
