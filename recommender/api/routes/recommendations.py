"""
Recommendation, interaction and student state endpoints.
"""

from fastapi import APIRouter, Depends, HTTPException

from recommender.api.dependencies import get_catalog, get_content_generator, get_pipeline
from recommender.api.schemas import (
    InteractionRequest,
    RecommendRequest,
    RecommendResponse,
    StudentStateModel,
)
from recommender.catalog.snapshot import CatalogSnapshotHolder
from recommender.content.generator import ContentGenerator
from recommender.core.pipeline import RecommendationPipeline
from recommender.models.domain import InteractionOutcome
from recommender.shared.exceptions import (
    DeadlineExceededError,
    NoEligibleContentError,
    PersistenceError,
)

router = APIRouter(prefix="/students", tags=["recommendations"])


@router.post("/{student_id}/recommendations", response_model=RecommendResponse)
async def recommend(
    student_id: str,
    body: RecommendRequest,
    pipeline: RecommendationPipeline = Depends(get_pipeline),
    catalog: CatalogSnapshotHolder = Depends(get_catalog),
    generator: ContentGenerator = Depends(get_content_generator),
):
    """Recommend the next content item for a student."""
    snapshot = catalog.snapshot()
    try:
        result = await pipeline.recommend(student_id, body.context, snapshot, body.deadline_ms)
    except NoEligibleContentError as e:
        raise HTTPException(status_code=422, detail={"error": "no_eligible_content", "message": str(e)})
    except DeadlineExceededError as e:
        raise HTTPException(status_code=504, detail={"error": "deadline_exceeded", "message": str(e)})

    study_note = None
    if body.include_study_note and generator.enabled:
        item = next(i for i in snapshot if i.content_id == result.recommendation.content_id)
        study_note = await generator.study_note(result.recommendation, item)

    return RecommendResponse.from_result(student_id, result, study_note)


@router.post("/{student_id}/interactions", response_model=StudentStateModel)
async def interact(
    student_id: str,
    body: InteractionRequest,
    pipeline: RecommendationPipeline = Depends(get_pipeline),
):
    """Record the outcome of a student working through a content item."""
    outcome = InteractionOutcome(
        content_id=body.content_id,
        score=body.score,
        mastery_delta=body.mastery_delta,
    )
    try:
        state = await pipeline.interact(student_id, outcome)
    except ValueError as e:
        raise HTTPException(status_code=400, detail={"error": "invalid_interaction", "message": str(e)})
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail={"error": "state_unavailable", "message": str(e)})
    return StudentStateModel.from_domain(state)


@router.get("/{student_id}/state", response_model=StudentStateModel)
async def student_state(
    student_id: str,
    pipeline: RecommendationPipeline = Depends(get_pipeline),
):
    """Current adaptation state for a student."""
    try:
        state = await pipeline.get_state(student_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail={"error": "state_unavailable", "message": str(e)})
    return StudentStateModel.from_domain(state)
