"""Render Service - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from render_service.config import settings
from render_service.api.v1.router import v1_router
from render_service.api.v1.health import router as health_root_router
from render_service.api.v1 import convert as convert_api
from render_service.api.v1 import download as download_api
from render_service.api.v1 import render as render_api
from render_service.api.v1 import status as status_api
from render_service.jobs.render_queue import RenderQueue
from render_service.render.renderer import Renderer
from render_service.storage.artifacts import ArtifactStore

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logger.info("Starting Render Service on port %d", settings.port)
    logger.info("Output dir: %s", settings.output_dir)
    logger.info("Max concurrent renders: %d", settings.max_concurrent)

    store = ArtifactStore(settings.output_dir, ttl_hours=settings.artifact_ttl_hours)
    queue = RenderQueue(Renderer(store), on_sweep=store.cleanup_expired)
    await queue.start()
    logger.info("Render queue started")

    # Wire queue and store into API endpoints
    render_api.set_dispatcher(queue)
    status_api.set_dispatcher(queue)
    status_api.set_store(store)
    download_api.set_store(store)
    convert_api.set_store(store)

    yield

    logger.info("Shutting down Render Service")
    await queue.stop()
    store.cleanup_expired()


app = FastAPI(
    title="Render Service",
    description="Audio-reactive video render queue with ffmpeg transcoding",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("render_service.main:app", host="0.0.0.0", port=settings.port)
