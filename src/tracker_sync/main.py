"""FastAPI entry point for Tracker Sync."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI

from .config import settings
from .context import IntegrationContext
from .trackers.api_routes import trackers_router

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)


async def _connect_store(context: IntegrationContext, logger: logging.Logger) -> None:
    """Connect the sync store, retrying a few times while the database comes up."""
    for attempt in range(3):
        try:
            logger.info(f"Connecting sync store (attempt {attempt + 1}/3)...")
            await asyncio.wait_for(context.store.connect(), timeout=30)
            logger.info("Sync store connected")
            return
        except asyncio.TimeoutError:
            logger.warning(f"Sync store connection timeout (attempt {attempt + 1})")
        except Exception as e:
            logger.warning(f"Sync store connection failed (attempt {attempt + 1}): {e}")
        if attempt < 2:
            await asyncio.sleep(5)
    raise RuntimeError("Failed to connect sync store after 3 attempts")


def create_app(context: IntegrationContext | None = None) -> FastAPI:
    """Build the application around an integration context (one from settings by default)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        logger = logging.getLogger("tracker_sync.startup")
        logger.info("Starting Tracker Sync...")

        ctx = context or IntegrationContext()
        app.state.context = ctx
        await _connect_store(ctx, logger)
        await ctx.start()
        logger.info("Tracker Sync accepting requests")

        yield

        logger.info("Shutting down Tracker Sync...")
        await ctx.close()

    app = FastAPI(
        title="Tracker Sync",
        description="Issue tracker integration and synchronization service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(trackers_router)

    @app.get("/api/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "name": "Tracker Sync",
            "version": "0.1.0",
            "status": "running",
        }

    return app


app = create_app()


def run() -> None:
    """Run the application."""
    uvicorn.run(
        "tracker_sync.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )


if __name__ == "__main__":
    run()
