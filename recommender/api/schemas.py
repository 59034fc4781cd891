"""
Request and response models for the HTTP API.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from recommender.models.domain import (
    ContentItem,
    Downgrade,
    Explanation,
    Recommendation,
    RecommendationResult,
    StudentState,
)


class RecommendRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)
    deadline_ms: Optional[int] = None
    include_study_note: bool = False


class InteractionRequest(BaseModel):
    content_id: str
    score: float = Field(ge=0.0, le=1.0)
    mastery_delta: Dict[str, float] = Field(default_factory=dict)


class ContentItemModel(BaseModel):
    content_id: str
    difficulty: float = Field(ge=0.0, le=1.0)
    concept_ids: List[str] = Field(default_factory=list)
    prerequisite_concepts: List[str] = Field(default_factory=list)

    def to_domain(self) -> ContentItem:
        return ContentItem(
            content_id=self.content_id,
            difficulty=self.difficulty,
            concept_ids=frozenset(self.concept_ids),
            prerequisite_concepts=frozenset(self.prerequisite_concepts),
        )


class CatalogRequest(BaseModel):
    items: List[ContentItemModel]


class CatalogResponse(BaseModel):
    version: int
    size: int


class ExplanationModel(BaseModel):
    effect: float
    ci_lower: float
    ci_upper: float
    confidence_level: float

    @classmethod
    def from_domain(cls, explanation: Explanation) -> "ExplanationModel":
        return cls(
            effect=explanation.effect,
            ci_lower=explanation.ci_lower,
            ci_upper=explanation.ci_upper,
            confidence_level=explanation.confidence_level,
        )


class RecommendationModel(BaseModel):
    content_id: str
    predicted_gain: float
    difficulty: float
    stage_provenance: str
    explanation: Optional[ExplanationModel] = None

    @classmethod
    def from_domain(cls, rec: Recommendation) -> "RecommendationModel":
        return cls(
            content_id=rec.content_id,
            predicted_gain=rec.predicted_gain,
            difficulty=rec.difficulty,
            stage_provenance=rec.stage_provenance.value,
            explanation=ExplanationModel.from_domain(rec.explanation) if rec.explanation else None,
        )


class DowngradeModel(BaseModel):
    tier: str
    reason: str
    detail: str = ""

    @classmethod
    def from_domain(cls, downgrade: Downgrade) -> "DowngradeModel":
        return cls(tier=downgrade.tier.value, reason=downgrade.reason, detail=downgrade.detail)


class RecommendResponse(BaseModel):
    student_id: str
    recommendation: RecommendationModel
    downgrades: List[DowngradeModel]
    persistence_error: Optional[str] = None
    elapsed_ms: float
    study_note: Optional[str] = None

    @classmethod
    def from_result(
        cls, student_id: str, result: RecommendationResult, study_note: Optional[str] = None
    ) -> "RecommendResponse":
        return cls(
            student_id=student_id,
            recommendation=RecommendationModel.from_domain(result.recommendation),
            downgrades=[DowngradeModel.from_domain(d) for d in result.downgrades],
            persistence_error=result.persistence_error,
            elapsed_ms=result.elapsed_ms,
            study_note=study_note,
        )


class StudentStateModel(BaseModel):
    student_id: str
    knowledge_vector: List[float]
    learning_velocity: List[float]
    adaptation_context_version: int
    interaction_count: int
    last_updated: Optional[str] = None

    @classmethod
    def from_domain(cls, state: StudentState) -> "StudentStateModel":
        return cls(
            student_id=state.student_id,
            knowledge_vector=list(state.knowledge_vector),
            learning_velocity=list(state.learning_velocity),
            adaptation_context_version=state.adaptation_context.version,
            interaction_count=state.interaction_count,
            last_updated=state.last_updated.isoformat() if state.last_updated else None,
        )
