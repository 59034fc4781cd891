"""
Health check endpoint.
"""

import time
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from recommender.api.dependencies import get_catalog, get_emitter, get_pipeline
from recommender.catalog.snapshot import CatalogSnapshotHolder
from recommender.core.pipeline import RecommendationPipeline
from recommender.events.worker import EventEmitter
from recommender.inference.breaker import CircuitStatus

router = APIRouter(tags=["health"])

# Track startup time for uptime
_start_time: Optional[float] = None


def set_start_time(t: float):
    """Set application start time."""
    global _start_time
    _start_time = t


class CircuitModel(BaseModel):
    status: str
    consecutive_failures: int


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    circuits: Dict[str, CircuitModel]
    catalog_size: int
    event_backlog: int
    uptime_seconds: float


@router.get("/health", response_model=HealthResponse)
async def health_check(
    pipeline: RecommendationPipeline = Depends(get_pipeline),
    catalog: CatalogSnapshotHolder = Depends(get_catalog),
    emitter: Optional[EventEmitter] = Depends(get_emitter),
):
    """
    Service health check.
    Returns status, per-endpoint circuit state, catalog size, event backlog, uptime.
    """
    circuits = {
        endpoint: CircuitModel(status=state.status.value, consecutive_failures=state.consecutive_failures)
        for endpoint, state in pipeline.model_client.circuit_snapshot().items()
    }
    all_closed = all(c.status == CircuitStatus.CLOSED.value for c in circuits.values())

    uptime_seconds = 0.0
    if _start_time:
        uptime_seconds = round(time.time() - _start_time, 2)

    return HealthResponse(
        status="healthy" if all_closed and len(catalog) else "degraded",
        circuits=circuits,
        catalog_size=len(catalog),
        event_backlog=emitter.backlog if emitter else 0,
        uptime_seconds=uptime_seconds,
    )
