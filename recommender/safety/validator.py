"""
Safety validator: gates candidate content on the student's current mastery.
"""

from typing import Optional

from recommender.models.domain import ConceptCatalog, ContentItem, StudentState
from recommender.shared.config import SafetyConfig, settings
from recommender.shared.exceptions import UnsafeRecommendationError
from recommender.shared.logging import get_logger

logger = get_logger(__name__)

_TOLERANCE = 1e-9


class SafetyValidator:
    """Rejects content too far from current mastery or missing prerequisites."""

    def __init__(self, concepts: ConceptCatalog, config: Optional[SafetyConfig] = None):
        self.concepts = concepts
        self.config = config or settings.safety
        if self.config.bands < 1:
            raise ValueError("safety.bands must be at least 1")
        self.band_width = 1.0 / self.config.bands
        self.max_distance = self.config.max_band_distance * self.band_width

    def band_of(self, score: float) -> int:
        """Mastery band index for a score in [0, 1]; 1.0 falls in the top band."""
        return min(int(score / self.band_width), self.config.bands - 1)

    def current_mastery(self, candidate: ContentItem, state: StudentState) -> float:
        return self.concepts.mean_mastery(state.knowledge_vector, candidate.concept_ids)

    def validate(self, candidate: ContentItem, state: StudentState) -> ContentItem:
        """
        Check a candidate against the student's state.

        Returns:
            The candidate, unchanged

        Raises:
            UnsafeRecommendationError if the candidate is outside policy bounds
        """
        unknown = (candidate.concept_ids | candidate.prerequisite_concepts) - set(self.concepts.concept_ids)
        if unknown:
            raise UnsafeRecommendationError(
                f"{candidate.content_id} references unknown concepts: {sorted(unknown)}"
            )

        mastery = self.current_mastery(candidate, state)
        distance = abs(candidate.difficulty - mastery)
        if distance > self.max_distance + _TOLERANCE:
            raise UnsafeRecommendationError(
                f"{candidate.content_id} difficulty {candidate.difficulty:.2f} "
                f"(band {self.band_of(candidate.difficulty)}) is too far from mastery "
                f"{mastery:.2f} (band {self.band_of(mastery)})"
            )

        for concept_id in sorted(candidate.prerequisite_concepts):
            prereq = self.concepts.mastery_of(state.knowledge_vector, concept_id)
            if prereq < self.config.prerequisite_threshold:
                raise UnsafeRecommendationError(
                    f"{candidate.content_id} prerequisite {concept_id} mastery {prereq:.2f} "
                    f"below {self.config.prerequisite_threshold:.2f}"
                )

        return candidate

    def accepts(self, candidate: ContentItem, state: StudentState) -> bool:
        try:
            self.validate(candidate, state)
        except UnsafeRecommendationError as e:
            logger.debug(f"Rejected candidate: {e}")
            return False
        return True
