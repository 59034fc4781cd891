"""
Main recommendation pipeline: end-to-end request processing.
"""

import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from recommender.core.explanation import CausalExplanationAssembler
from recommender.core.fallback import FallbackChainController, TierSelection
from recommender.events.worker import EventEmitter
from recommender.inference.client import ModelClient
from recommender.inference.transport import HttpTransport, InferenceTransport
from recommender.models.domain import (
    AdaptationContext,
    ContentItem,
    DegradationTier,
    Downgrade,
    InteractionEvent,
    InteractionOutcome,
    Recommendation,
    RecommendationResult,
    StudentState,
)
from recommender.safety.validator import SafetyValidator
from recommender.shared.config import PipelineConfig, RecommenderSettings, settings
from recommender.shared.deadline import Deadline
from recommender.shared.exceptions import DeadlineExceededError, PersistenceError
from recommender.shared.logging import get_logger, log_with_context
from recommender.state.store import StudentStateStore

logger = get_logger(__name__)


def _clip(value: float) -> float:
    return min(1.0, max(0.0, value))


class RecommendationPipeline:
    """Wires state, fallback chain, explanation and persistence together."""

    def __init__(
        self,
        store: StudentStateStore,
        controller: FallbackChainController,
        explainer: CausalExplanationAssembler,
        emitter: Optional[EventEmitter] = None,
        config: Optional[PipelineConfig] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.controller = controller
        self.explainer = explainer
        self.emitter = emitter
        self.config = config or settings.pipeline
        self._now = now

    @classmethod
    def from_settings(
        cls,
        app_settings: Optional[RecommenderSettings] = None,
        transport: Optional[InferenceTransport] = None,
        emitter: Optional[EventEmitter] = None,
    ) -> "RecommendationPipeline":
        """Build the full pipeline from configuration."""
        app_settings = app_settings or settings
        store = StudentStateStore.from_config(app_settings.state)
        validator = SafetyValidator(store.concepts, app_settings.safety)
        client = ModelClient(transport or HttpTransport(app_settings.inference), app_settings.inference)
        controller = FallbackChainController(
            client, validator, store.concepts, app_settings.pipeline, app_settings.inference
        )
        return cls(
            store,
            controller,
            CausalExplanationAssembler(client),
            emitter=emitter,
            config=app_settings.pipeline,
        )

    @property
    def model_client(self) -> ModelClient:
        return self.controller.model_client

    async def recommend(
        self,
        student_id: str,
        request_context: Mapping[str, Any],
        catalog: Sequence[ContentItem],
        deadline_ms: Optional[float] = None,
    ) -> RecommendationResult:
        """
        Produce one recommendation for a student.

        Args:
            student_id: Student identifier
            request_context: Caller-supplied context forwarded to the encoder
            catalog: Content catalog snapshot for this request
            deadline_ms: End-to-end budget; defaults to pipeline.default_deadline_ms

        Returns:
            RecommendationResult with the served tier, downgrade reasons and
            any persistence failure. If state cannot be loaded the request is
            served by the heuristic tier from a default state and nothing is
            persisted.

        Raises:
            NoEligibleContentError if not even the heuristic tier has a candidate
            DeadlineExceededError if the deadline passes before state is loaded
        """
        started = time.monotonic()
        if deadline_ms is None:
            deadline_ms = self.config.default_deadline_ms
        if deadline_ms <= 0:
            raise DeadlineExceededError(f"Non-positive deadline {deadline_ms}ms for {student_id}")
        deadline = Deadline.after_ms(deadline_ms)

        load_error: Optional[PersistenceError] = None
        try:
            state = await self.store.get(student_id, timeout_ms=deadline.remaining_ms)
        except PersistenceError as e:
            if deadline.expired:
                raise DeadlineExceededError(f"Deadline reached loading state for {student_id}") from e
            load_error = e
            state = StudentState.default(student_id, len(self.store.concepts))
            log_with_context(
                logger, logging.ERROR, f"State load failed, serving heuristic: {e}",
                student_id=student_id, action="load", tier=DegradationTier.HEURISTIC.value,
            )

        if load_error is None:
            selection = await self.controller.select(state, request_context, catalog, deadline)
        else:
            # No real state to personalize from; never persist over the stored one.
            selection = self.controller.heuristic(state, catalog)
            selection.downgrades = (
                Downgrade(DegradationTier.PERSONALIZED, "state_unavailable", str(load_error)),
            )

        recommendation = Recommendation(
            content_id=selection.item.content_id,
            predicted_gain=selection.predicted_gain,
            difficulty=selection.item.difficulty,
            stage_provenance=selection.tier,
        )

        remaining_ms = deadline.remaining_ms
        if remaining_ms >= self.config.explanation_min_budget_ms:
            explanation = await self.explainer.explain(recommendation, state, remaining_ms)
            if explanation is not None:
                recommendation = replace(recommendation, explanation=explanation)

        if load_error is not None:
            return RecommendationResult(
                recommendation=recommendation,
                downgrades=selection.downgrades,
                persistence_error=str(load_error),
                elapsed_ms=round((time.monotonic() - started) * 1000.0, 2),
            )

        persistence_error = None
        try:
            updated = await self.store.update(student_id, self._recommendation_mutator(selection))
        except PersistenceError as e:
            persistence_error = str(e)
            log_with_context(
                logger, logging.ERROR, f"State persistence failed: {e}",
                student_id=student_id, action="persist", tier=selection.tier.value,
            )
        else:
            self._emit(InteractionEvent(
                student_id=student_id,
                kind="recommendation",
                content_id=recommendation.content_id,
                interaction_count=updated.interaction_count,
                timestamp=updated.last_updated.isoformat(),
                tier=selection.tier.value,
            ))

        return RecommendationResult(
            recommendation=recommendation,
            downgrades=selection.downgrades,
            persistence_error=persistence_error,
            elapsed_ms=round((time.monotonic() - started) * 1000.0, 2),
        )

    async def interact(self, student_id: str, outcome: InteractionOutcome) -> StudentState:
        """
        Record an observed interaction outcome.

        Raises:
            ValueError for an out-of-range score or unknown concepts
            PersistenceError if the state cannot be written
        """
        if not 0.0 <= outcome.score <= 1.0:
            raise ValueError(f"score must be in [0, 1], got {outcome.score}")
        unknown = set(outcome.mastery_delta) - set(self.store.concepts.concept_ids)
        if unknown:
            raise ValueError(f"Unknown concepts in mastery_delta: {sorted(unknown)}")

        updated = await self.store.update(
            student_id, self._delta_mutator(dict(outcome.mastery_delta), None)
        )
        self._emit(InteractionEvent(
            student_id=student_id,
            kind="interaction",
            content_id=outcome.content_id,
            interaction_count=updated.interaction_count,
            timestamp=updated.last_updated.isoformat(),
            score=outcome.score,
        ))
        return updated

    async def get_state(self, student_id: str) -> StudentState:
        return await self.store.get(student_id)

    def _recommendation_mutator(self, selection: TierSelection):
        return self._delta_mutator(selection.mastery_delta, selection.adaptation_context)

    def _delta_mutator(
        self,
        delta: Dict[str, float],
        adaptation_context: Optional[AdaptationContext],
    ) -> Callable[[StudentState], StudentState]:
        """Next-state function: count +1, mastery nudged by a model-supplied delta."""
        concepts = self.store.concepts
        now = self._now()

        def mutate(state: StudentState) -> StudentState:
            mastery = list(state.knowledge_vector)
            velocity = [0.0] * len(mastery)
            for concept_id, change in delta.items():
                idx = concepts.index_of(concept_id)
                nudged = _clip(mastery[idx] + change)
                velocity[idx] = nudged - mastery[idx]
                mastery[idx] = nudged
            return replace(
                state,
                knowledge_vector=tuple(mastery),
                learning_velocity=tuple(velocity),
                adaptation_context=adaptation_context or state.adaptation_context,
                interaction_count=state.interaction_count + 1,
                last_updated=now,
            )

        return mutate

    def _emit(self, event: InteractionEvent):
        if self.emitter is not None:
            self.emitter.emit(event)
