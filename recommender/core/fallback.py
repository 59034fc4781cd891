"""
Fallback chain controller: PERSONALIZED -> SAFE_POLICY -> HEURISTIC.

Every request starts at the top tier; nothing about earlier requests makes a
later one skip a tier. The circuit breakers in the model client are what make
a failing tier cheap to fall through.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from recommender.inference.client import ModelClient
from recommender.inference.schemas import (
    KNOWLEDGE_ENCODER,
    PERSONALIZATION_ADAPTER,
    POLICY,
    AdapterResponse,
    EncoderResponse,
    PolicyCandidate,
    PolicyResponse,
)
from recommender.models.domain import (
    AdaptationContext,
    ConceptCatalog,
    ContentItem,
    DegradationTier,
    Downgrade,
    StudentState,
)
from recommender.safety.validator import SafetyValidator
from recommender.shared.config import InferenceConfig, PipelineConfig, settings
from recommender.shared.deadline import Deadline
from recommender.shared.exceptions import (
    DeadlineExceededError,
    InferenceError,
    InvalidResponseError,
    NoEligibleContentError,
    UnsafeRecommendationError,
)
from recommender.shared.logging import get_logger, log_with_context

logger = get_logger(__name__)


@dataclass
class TierSelection:
    """What one tier produced, plus what the pipeline needs to persist."""
    tier: DegradationTier
    item: ContentItem
    predicted_gain: float
    mastery_delta: Dict[str, float] = field(default_factory=dict)
    adaptation_context: Optional[AdaptationContext] = None
    downgrades: Tuple[Downgrade, ...] = ()


@dataclass
class _Progress:
    tier: DegradationTier = DegradationTier.PERSONALIZED


class FallbackChainController:
    """Decides which tier serves a request and substitutes lower tiers on failure."""

    def __init__(
        self,
        model_client: ModelClient,
        validator: SafetyValidator,
        concepts: ConceptCatalog,
        pipeline_config: Optional[PipelineConfig] = None,
        inference_config: Optional[InferenceConfig] = None,
    ):
        self.model_client = model_client
        self.validator = validator
        self.concepts = concepts
        self.pipeline_config = pipeline_config or settings.pipeline
        self.inference_config = inference_config or settings.inference

    async def select(
        self,
        state: StudentState,
        request_context: Mapping[str, Any],
        catalog: Sequence[ContentItem],
        deadline: Deadline,
    ) -> TierSelection:
        """
        Produce exactly one tier's selection for this request.

        Raises:
            NoEligibleContentError if even the heuristic tier finds nothing
        """
        downgrades: List[Downgrade] = []
        progress = _Progress()
        by_id = {item.content_id: item for item in catalog}

        try:
            selection = await asyncio.wait_for(
                self._model_tiers(state, request_context, by_id, deadline, downgrades, progress),
                timeout=deadline.remaining_seconds,
            )
        except (asyncio.TimeoutError, DeadlineExceededError):
            downgrades.append(Downgrade(
                progress.tier,
                DeadlineExceededError.reason,
                "request deadline reached before the tier finished",
            ))
            log_with_context(
                logger, logging.WARNING, "Deadline reached, falling through to heuristic",
                student_id=state.student_id, action="downgrade", tier=progress.tier.value,
            )
            selection = None

        if selection is None:
            selection = self.heuristic(state, catalog)

        selection.downgrades = tuple(downgrades)
        log_with_context(
            logger, logging.INFO, f"Recommendation served by {selection.tier.value}",
            student_id=state.student_id, action="tier_served", tier=selection.tier.value,
            content_id=selection.item.content_id, downgrades=len(downgrades),
        )
        return selection

    async def _model_tiers(
        self,
        state: StudentState,
        request_context: Mapping[str, Any],
        by_id: Dict[str, ContentItem],
        deadline: Deadline,
        downgrades: List[Downgrade],
        progress: _Progress,
    ) -> Optional[TierSelection]:
        tiers = (
            (DegradationTier.PERSONALIZED, self._personalized),
            (DegradationTier.SAFE_POLICY, self._safe_policy),
        )
        for tier, run in tiers:
            if deadline.expired:
                raise DeadlineExceededError("Deadline reached between tiers")
            progress.tier = tier
            try:
                return await run(state, request_context, by_id, deadline)
            except (InferenceError, UnsafeRecommendationError) as e:
                downgrades.append(Downgrade(tier, e.reason, str(e)))
                log_with_context(
                    logger, logging.WARNING, f"Tier {tier.value} failed: {e.reason}",
                    student_id=state.student_id, action="downgrade", tier=tier.value,
                    detail=str(e),
                )
        return None

    async def _personalized(
        self,
        state: StudentState,
        request_context: Mapping[str, Any],
        by_id: Dict[str, ContentItem],
        deadline: Deadline,
    ) -> TierSelection:
        encoded = await self._call(
            KNOWLEDGE_ENCODER,
            {
                "student_id": state.student_id,
                "knowledge_vector": list(state.knowledge_vector),
                "learning_velocity": list(state.learning_velocity),
                "interaction_count": state.interaction_count,
                "context": dict(request_context),
            },
            deadline,
            EncoderResponse,
        )

        adapted = await self._call(
            PERSONALIZATION_ADAPTER,
            {
                "student_id": state.student_id,
                "embedding": encoded.embedding,
                "adaptation_context": {
                    "version": state.adaptation_context.version,
                    "vector": list(state.adaptation_context.vector),
                },
            },
            deadline,
            AdapterResponse,
        )

        item, candidate = await self._policy_select(
            state, adapted.policy_context, by_id, deadline, mode="personalized"
        )
        return TierSelection(
            tier=DegradationTier.PERSONALIZED,
            item=item,
            predicted_gain=candidate.predicted_gain,
            mastery_delta=dict(candidate.mastery_delta),
            adaptation_context=AdaptationContext(
                version=adapted.adaptation_context.version,
                vector=tuple(adapted.adaptation_context.vector),
            ),
        )

    async def _safe_policy(
        self,
        state: StudentState,
        request_context: Mapping[str, Any],
        by_id: Dict[str, ContentItem],
        deadline: Deadline,
    ) -> TierSelection:
        item, candidate = await self._policy_select(
            state, self.pipeline_config.safe_default_context, by_id, deadline, mode="safe_default"
        )
        return TierSelection(
            tier=DegradationTier.SAFE_POLICY,
            item=item,
            predicted_gain=candidate.predicted_gain,
            mastery_delta=dict(candidate.mastery_delta),
        )

    async def _policy_select(
        self,
        state: StudentState,
        context: Sequence[float],
        by_id: Dict[str, ContentItem],
        deadline: Deadline,
        mode: str,
    ) -> Tuple[ContentItem, PolicyCandidate]:
        """Ask the policy for ranked candidates and keep the best one that passes safety."""
        top_k = self.pipeline_config.top_k
        ranked: PolicyResponse = await self._call(
            POLICY,
            {
                "student_id": state.student_id,
                "context": list(context),
                "knowledge_vector": list(state.knowledge_vector),
                "candidate_ids": sorted(by_id),
                "top_k": top_k,
                "mode": mode,
            },
            deadline,
            PolicyResponse,
        )

        best_first = sorted(ranked.candidates, key=lambda c: c.predicted_gain, reverse=True)
        for candidate in best_first[:top_k]:
            unknown = set(candidate.mastery_delta) - set(self.concepts.concept_ids)
            if unknown:
                raise InvalidResponseError(
                    f"policy returned deltas for unknown concepts: {sorted(unknown)}", POLICY
                )
            item = by_id.get(candidate.content_id)
            if item is None:
                logger.debug(f"Policy proposed {candidate.content_id}, not in catalog snapshot")
                continue
            if self.validator.accepts(item, state):
                return item, candidate

        raise UnsafeRecommendationError(
            f"None of the top {top_k} {mode} candidates passed safety validation"
        )

    async def _call(self, endpoint: str, payload: Dict[str, Any], deadline: Deadline, response_model):
        timeout_ms = deadline.cap_ms(self.inference_config.stage_timeout_ms)
        if timeout_ms <= 0:
            raise DeadlineExceededError(f"No time left to call {endpoint}")
        return await self.model_client.invoke(endpoint, payload, timeout_ms, response_model)

    def is_unmastered(self, item: ContentItem, state: StudentState) -> bool:
        mastery = self.concepts.mean_mastery(state.knowledge_vector, item.concept_ids)
        return mastery < self.validator.config.mastery_threshold

    def eligible_items(self, state: StudentState, catalog: Sequence[ContentItem]) -> List[ContentItem]:
        """Unmastered items whose prerequisites are met and that pass safety."""
        return [
            item for item in catalog
            if self.is_unmastered(item, state) and self.validator.accepts(item, state)
        ]

    def heuristic(self, state: StudentState, catalog: Sequence[ContentItem]) -> TierSelection:
        """Lowest-difficulty eligible item; no model call."""
        eligible = self.eligible_items(state, catalog)
        if not eligible:
            raise NoEligibleContentError(
                f"No eligible content for {state.student_id} among {len(catalog)} items"
            )
        choice = min(eligible, key=lambda item: (item.difficulty, item.content_id))
        return TierSelection(
            tier=DegradationTier.HEURISTIC,
            item=choice,
            predicted_gain=0.0,
        )
