"""
FastAPI dependency injection for recommender services.
"""

from typing import Optional

from fastapi import Request

from recommender.catalog.snapshot import CatalogSnapshotHolder
from recommender.content.generator import ContentGenerator
from recommender.core.pipeline import RecommendationPipeline
from recommender.events.worker import EventEmitter


def get_pipeline(request: Request) -> RecommendationPipeline:
    """Get RecommendationPipeline singleton from lifespan state."""
    return request.app.state.pipeline


def get_catalog(request: Request) -> CatalogSnapshotHolder:
    """Get CatalogSnapshotHolder singleton from lifespan state."""
    return request.app.state.catalog


def get_content_generator(request: Request) -> ContentGenerator:
    """Get ContentGenerator singleton from lifespan state."""
    return request.app.state.content_generator


def get_emitter(request: Request) -> Optional[EventEmitter]:
    """Get EventEmitter from lifespan state (None when events are disabled)."""
    return getattr(request.app.state, "emitter", None)
