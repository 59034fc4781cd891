"""
Recommender FastAPI application.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from recommender.api.middleware.rate_limit import RateLimitMiddleware
from recommender.api.routes import catalog as catalog_routes
from recommender.api.routes import health, recommendations
from recommender.catalog.snapshot import CatalogSnapshotHolder
from recommender.content.generator import ContentGenerator
from recommender.core.pipeline import RecommendationPipeline
from recommender.events.log import InteractionEventLog
from recommender.events.worker import EventEmitter, EventLogWorker
from recommender.shared.config import settings
from recommender.shared.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info("Starting recommender API")

    worker: Optional[EventLogWorker] = None
    worker_task: Optional[asyncio.Task] = None

    if getattr(app.state, "pipeline", None) is None:
        emitter = None
        if settings.events.enabled:
            emitter = EventEmitter()
            worker = EventLogWorker(emitter, InteractionEventLog())
            worker_task = asyncio.create_task(worker.run_forever())
        app.state.pipeline = RecommendationPipeline.from_settings(emitter=emitter)
    app.state.emitter = app.state.pipeline.emitter

    if getattr(app.state, "catalog", None) is None:
        catalog = CatalogSnapshotHolder()
        if settings.pipeline.catalog_path and settings.pipeline.catalog_path.exists():
            catalog.load_json(settings.pipeline.catalog_path)
        app.state.catalog = catalog

    if getattr(app.state, "content_generator", None) is None:
        app.state.content_generator = ContentGenerator.from_settings()

    health.set_start_time(time.time())

    logger.info("Recommender API ready")
    yield

    logger.info("Shutting down recommender API")
    if worker:
        worker.stop()
        await worker.flush()
    if worker_task and not worker_task.done():
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass

    close = getattr(app.state.pipeline.model_client.transport, "close", None)
    if close is not None:
        await close()
    logger.info("Recommender API stopped")


def create_app(
    pipeline: Optional[RecommendationPipeline] = None,
    catalog: Optional[CatalogSnapshotHolder] = None,
    content_generator: Optional[ContentGenerator] = None,
    requests_per_minute: Optional[int] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Components passed in are used as-is; anything omitted is built from
    settings at startup.
    """
    app = FastAPI(
        title="Recommender",
        description="Recommendation orchestration engine for adaptive learning content",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.state.catalog = catalog
    app.state.content_generator = content_generator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Rate limiting (after CORS so CORS headers applied first)
    app.add_middleware(RateLimitMiddleware, requests_per_minute=requests_per_minute)

    app.include_router(health.router)
    app.include_router(recommendations.router)
    app.include_router(catalog_routes.router)

    @app.get("/")
    async def root():
        return {"service": "recommender", "status": "running"}

    return app


app = create_app()


def main():
    """CLI entry point for uvicorn."""
    import uvicorn

    uvicorn.run(
        "recommender.api.app:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
