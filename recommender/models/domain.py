"""
Core domain types for the recommendation engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple


class DegradationTier(str, Enum):
    """Strategies for producing a recommendation, most to least personalized."""
    PERSONALIZED = "personalized"
    SAFE_POLICY = "safe_policy"
    HEURISTIC = "heuristic"


class ConceptCatalog:
    """Ordered concept ids; position i is the i-th entry of a mastery vector."""

    def __init__(self, concept_ids: Sequence[str]):
        if len(set(concept_ids)) != len(concept_ids):
            raise ValueError("Concept ids must be unique")
        self.concept_ids: Tuple[str, ...] = tuple(concept_ids)
        self._index = {cid: i for i, cid in enumerate(self.concept_ids)}

    def __len__(self) -> int:
        return len(self.concept_ids)

    def __contains__(self, concept_id: object) -> bool:
        return concept_id in self._index

    def index_of(self, concept_id: str) -> int:
        return self._index[concept_id]

    def mastery_of(self, vector: Sequence[float], concept_id: str) -> float:
        """Mastery score for one concept, 0.0 if the concept is unknown."""
        idx = self._index.get(concept_id)
        return vector[idx] if idx is not None else 0.0

    def mean_mastery(self, vector: Sequence[float], concept_ids: Iterable[str]) -> float:
        """Mean mastery over the given concepts, or over all when none are given."""
        ids = list(concept_ids)
        if not ids:
            return sum(vector) / len(vector) if vector else 0.0
        return sum(self.mastery_of(vector, cid) for cid in ids) / len(ids)


@dataclass(frozen=True)
class AdaptationContext:
    """Versioned embedding produced by the personalization stage."""
    version: int = 0
    vector: Tuple[float, ...] = ()


@dataclass(frozen=True)
class StudentState:
    """Per-student evolving context."""
    student_id: str
    knowledge_vector: Tuple[float, ...]
    learning_velocity: Tuple[float, ...]
    adaptation_context: AdaptationContext = field(default_factory=AdaptationContext)
    interaction_count: int = 0
    last_updated: Optional[datetime] = None

    @classmethod
    def default(cls, student_id: str, concept_count: int) -> "StudentState":
        """Zero-mastery state for a student seen for the first time."""
        return cls(
            student_id=student_id,
            knowledge_vector=(0.0,) * concept_count,
            learning_velocity=(0.0,) * concept_count,
        )

    def to_dict(self) -> Dict:
        return {
            "student_id": self.student_id,
            "knowledge_vector": list(self.knowledge_vector),
            "learning_velocity": list(self.learning_velocity),
            "adaptation_context": {
                "version": self.adaptation_context.version,
                "vector": list(self.adaptation_context.vector),
            },
            "interaction_count": self.interaction_count,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "StudentState":
        ctx = data.get("adaptation_context") or {}
        last_updated = data.get("last_updated")
        return cls(
            student_id=data["student_id"],
            knowledge_vector=tuple(float(x) for x in data["knowledge_vector"]),
            learning_velocity=tuple(float(x) for x in data["learning_velocity"]),
            adaptation_context=AdaptationContext(
                version=int(ctx.get("version", 0)),
                vector=tuple(float(x) for x in ctx.get("vector", ())),
            ),
            interaction_count=int(data.get("interaction_count", 0)),
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
        )


@dataclass(frozen=True)
class ContentItem:
    """Published learning content, owned by the external catalog."""
    content_id: str
    difficulty: float
    concept_ids: FrozenSet[str] = frozenset()
    prerequisite_concepts: FrozenSet[str] = frozenset()

    @classmethod
    def from_dict(cls, data: Mapping) -> "ContentItem":
        return cls(
            content_id=str(data["content_id"]),
            difficulty=float(data["difficulty"]),
            concept_ids=frozenset(data.get("concept_ids", ())),
            prerequisite_concepts=frozenset(data.get("prerequisite_concepts", ())),
        )


@dataclass(frozen=True)
class Explanation:
    """Causal effect estimate attached to a recommendation."""
    effect: float
    ci_lower: float
    ci_upper: float
    confidence_level: float = 0.95


@dataclass(frozen=True)
class Recommendation:
    """The content chosen for a student on one request."""
    content_id: str
    predicted_gain: float
    difficulty: float
    stage_provenance: DegradationTier
    explanation: Optional[Explanation] = None


@dataclass(frozen=True)
class Downgrade:
    """Why a tier was abandoned."""
    tier: DegradationTier
    reason: str
    detail: str = ""


@dataclass(frozen=True)
class RecommendationResult:
    """Outcome of one recommend call."""
    recommendation: Recommendation
    downgrades: Tuple[Downgrade, ...] = ()
    persistence_error: Optional[str] = None
    elapsed_ms: float = 0.0


@dataclass(frozen=True)
class InteractionOutcome:
    """Observed result of a student working through a content item."""
    content_id: str
    score: float
    mastery_delta: Mapping[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class InteractionEvent:
    """One-way record emitted after state persistence."""
    student_id: str
    kind: str  # "recommendation" or "interaction"
    content_id: str
    interaction_count: int
    timestamp: str
    tier: Optional[str] = None
    score: Optional[float] = None
