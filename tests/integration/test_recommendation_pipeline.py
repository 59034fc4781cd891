"""
End-to-end tests: load state -> tiers -> safety -> explanation -> persist -> event.
"""

import asyncio
import time
from dataclasses import replace

import pytest

from recommender.events.worker import EventEmitter
from recommender.inference.schemas import (
    CAUSAL_ESTIMATOR,
    KNOWLEDGE_ENCODER,
    PERSONALIZATION_ADAPTER,
    POLICY,
)
from recommender.models.domain import ContentItem, DegradationTier, InteractionOutcome
from recommender.shared.exceptions import (
    DeadlineExceededError,
    EndpointUnavailableError,
    NoEligibleContentError,
)
from recommender.state.backends import InMemoryStateBackend


class BrokenSaveBackend(InMemoryStateBackend):
    async def save(self, state):
        raise OSError("state volume read-only")


@pytest.mark.asyncio
async def test_personalized_recommendation_end_to_end(build_pipeline, make_transport, healthy_handlers, catalog_items):
    emitter = EventEmitter(maxsize=10)
    pipeline = build_pipeline(make_transport(healthy_handlers), emitter=emitter)

    result = await pipeline.recommend("s1", {"session": "x"}, catalog_items)

    rec = result.recommendation
    assert rec.stage_provenance == DegradationTier.PERSONALIZED
    assert rec.content_id == "loops-basics"
    assert rec.difficulty == 0.3
    assert rec.explanation is not None
    assert rec.explanation.ci_lower <= rec.explanation.effect <= rec.explanation.ci_upper
    assert result.downgrades == ()
    assert result.persistence_error is None

    state = await pipeline.get_state("s1")
    assert state.interaction_count == 1
    assert state.knowledge_vector == (0.0, 0.1, 0.0, 0.0)
    assert state.learning_velocity == (0.0, 0.1, 0.0, 0.0)
    assert state.adaptation_context.version == 1
    assert state.last_updated is not None

    [event] = emitter.drain(10)
    assert event.kind == "recommendation"
    assert event.tier == "personalized"
    assert event.interaction_count == 1


@pytest.mark.asyncio
async def test_safe_policy_keeps_adaptation_context(build_pipeline, make_transport, healthy_handlers, catalog_items):
    healthy_handlers[KNOWLEDGE_ENCODER] = EndpointUnavailableError("encoder down", KNOWLEDGE_ENCODER)
    pipeline = build_pipeline(make_transport(healthy_handlers))

    result = await pipeline.recommend("s1", {}, catalog_items)

    assert result.recommendation.stage_provenance == DegradationTier.SAFE_POLICY
    state = await pipeline.get_state("s1")
    assert state.adaptation_context.version == 0
    assert state.interaction_count == 1


@pytest.mark.asyncio
async def test_deadline_forces_heuristic(build_pipeline, make_transport, healthy_handlers, catalog_items):
    """A 600ms encoder under a 500ms deadline is abandoned at the deadline."""

    async def slow_encoder(payload):
        await asyncio.sleep(0.6)
        return {"embedding": [0.1]}

    healthy_handlers[KNOWLEDGE_ENCODER] = slow_encoder
    transport = make_transport(healthy_handlers)
    pipeline = build_pipeline(transport)

    started = time.monotonic()
    result = await pipeline.recommend("s1", {}, catalog_items, deadline_ms=500)
    elapsed = time.monotonic() - started

    assert result.recommendation.stage_provenance == DegradationTier.HEURISTIC
    assert result.recommendation.content_id == "intro-vars"
    assert result.recommendation.explanation is None
    assert result.downgrades[0].tier == DegradationTier.PERSONALIZED
    assert result.downgrades[-1].reason in ("deadline_exceeded", "timeout")
    assert 0.45 <= elapsed < 0.7
    assert transport.calls_to(PERSONALIZATION_ADAPTER) == []


@pytest.mark.asyncio
async def test_concurrent_students_get_exact_counts(build_pipeline, make_transport, healthy_handlers, catalog_items):
    pipeline = build_pipeline(make_transport(healthy_handlers))
    students = [f"student_{i}" for i in range(100)]

    results = await asyncio.gather(*(
        pipeline.recommend(sid, {}, catalog_items, deadline_ms=5000)
        for _ in range(3)
        for sid in students
    ))

    assert all(r.persistence_error is None for r in results)
    for sid in students:
        assert (await pipeline.get_state(sid)).interaction_count == 3


@pytest.mark.asyncio
async def test_persistence_failure_is_reported(build_pipeline, make_transport, healthy_handlers, catalog_items):
    emitter = EventEmitter(maxsize=10)
    pipeline = build_pipeline(make_transport(healthy_handlers), backend=BrokenSaveBackend(), emitter=emitter)

    result = await pipeline.recommend("s1", {}, catalog_items)

    assert result.recommendation.content_id == "loops-basics"
    assert "read-only" in result.persistence_error
    assert emitter.backlog == 0


@pytest.mark.asyncio
async def test_explanation_failure_does_not_fail_request(build_pipeline, make_transport, healthy_handlers, catalog_items):
    healthy_handlers[CAUSAL_ESTIMATOR] = EndpointUnavailableError("estimator down", CAUSAL_ESTIMATOR)
    pipeline = build_pipeline(make_transport(healthy_handlers))

    result = await pipeline.recommend("s1", {}, catalog_items)

    assert result.recommendation.stage_provenance == DegradationTier.PERSONALIZED
    assert result.recommendation.explanation is None


@pytest.mark.asyncio
async def test_non_positive_deadline_rejected(build_pipeline, make_transport, healthy_handlers, catalog_items):
    transport = make_transport(healthy_handlers)
    pipeline = build_pipeline(transport)

    with pytest.raises(DeadlineExceededError):
        await pipeline.recommend("s1", {}, catalog_items, deadline_ms=0)
    assert transport.calls == []


@pytest.mark.asyncio
async def test_empty_catalog_has_no_eligible_content(build_pipeline, make_transport, healthy_handlers):
    pipeline = build_pipeline(make_transport(healthy_handlers))

    with pytest.raises(NoEligibleContentError):
        await pipeline.recommend("s1", {}, [])

    assert (await pipeline.get_state("s1")).interaction_count == 0


@pytest.mark.asyncio
async def test_mastered_student_never_gets_lowest_band(build_pipeline, make_transport, healthy_handlers):
    catalog = [
        ContentItem("intro-vars", 0.05, frozenset({"variables"})),
        ContentItem("loops-basics", 0.15, frozenset({"loops"})),
        ContentItem("capstone", 0.95, frozenset({"recursion"}), frozenset({"functions"})),
    ]
    healthy_handlers[POLICY] = lambda p: {"candidates": [
        {"content_id": "intro-vars", "predicted_gain": 0.9, "mastery_delta": {}},
        {"content_id": "loops-basics", "predicted_gain": 0.8, "mastery_delta": {}},
        {"content_id": "capstone", "predicted_gain": 0.1, "mastery_delta": {}},
    ]}
    pipeline = build_pipeline(make_transport(healthy_handlers))
    await pipeline.store.update("s1", lambda s: replace(s, knowledge_vector=(1.0, 1.0, 1.0, 1.0)))

    result = await pipeline.recommend("s1", {}, catalog)

    assert result.recommendation.content_id == "capstone"
    assert result.recommendation.difficulty >= 0.2


@pytest.mark.asyncio
async def test_interaction_updates_state(build_pipeline, make_transport, healthy_handlers):
    emitter = EventEmitter(maxsize=10)
    pipeline = build_pipeline(make_transport(healthy_handlers), emitter=emitter)

    state = await pipeline.interact(
        "s1", InteractionOutcome("loops-basics", 0.8, {"loops": 0.25, "variables": 1.5})
    )

    assert state.interaction_count == 1
    assert state.knowledge_vector == (1.0, 0.25, 0.0, 0.0)
    assert state.learning_velocity == (1.0, 0.25, 0.0, 0.0)
    [event] = emitter.drain(10)
    assert event.kind == "interaction"
    assert event.score == 0.8


@pytest.mark.asyncio
@pytest.mark.parametrize("outcome", [
    InteractionOutcome("loops-basics", 1.2),
    InteractionOutcome("loops-basics", 0.5, {"quantum": 0.1}),
])
async def test_invalid_interaction_rejected(build_pipeline, make_transport, outcome):
    pipeline = build_pipeline(make_transport())

    with pytest.raises(ValueError):
        await pipeline.interact("s1", outcome)

    assert (await pipeline.get_state("s1")).interaction_count == 0


class BrokenLoadBackend(InMemoryStateBackend):
    async def load(self, student_id):
        raise OSError("state volume unreachable")

    async def save(self, state):
        raise AssertionError("state must not be written after a failed load")


@pytest.mark.asyncio
async def test_state_load_failure_serves_heuristic(build_pipeline, make_transport, healthy_handlers, catalog_items):
    """Unreadable state still yields a recommendation, from the heuristic tier."""
    emitter = EventEmitter(maxsize=10)
    transport = make_transport(healthy_handlers)
    pipeline = build_pipeline(transport, backend=BrokenLoadBackend(), emitter=emitter)

    result = await pipeline.recommend("s1", {}, catalog_items, deadline_ms=800)

    assert result.recommendation.stage_provenance == DegradationTier.HEURISTIC
    assert result.recommendation.content_id == "intro-vars"
    assert "state volume unreachable" in result.persistence_error
    assert [d.reason for d in result.downgrades] == ["state_unavailable"]
    assert transport.calls_to(KNOWLEDGE_ENCODER) == []
    assert transport.calls_to(POLICY) == []
    assert emitter.backlog == 0


@pytest.mark.asyncio
async def test_policy_stage_crash_falls_through_to_heuristic(build_pipeline, make_transport, healthy_handlers, catalog_items):
    def broken_policy(payload):
        raise RuntimeError("decoder bug")

    healthy_handlers[POLICY] = broken_policy
    pipeline = build_pipeline(make_transport(healthy_handlers))

    result = await pipeline.recommend("s1", {}, catalog_items)

    assert result.recommendation.stage_provenance == DegradationTier.HEURISTIC
    assert [(d.tier, d.reason) for d in result.downgrades] == [
        (DegradationTier.PERSONALIZED, "invalid_response"),
        (DegradationTier.SAFE_POLICY, "invalid_response"),
    ]
    assert (await pipeline.get_state("s1")).interaction_count == 1


@pytest.mark.asyncio
async def test_causal_stage_crash_keeps_recommendation(build_pipeline, make_transport, healthy_handlers, catalog_items):
    def broken_estimator(payload):
        raise RuntimeError("decoder bug")

    healthy_handlers[CAUSAL_ESTIMATOR] = broken_estimator
    pipeline = build_pipeline(make_transport(healthy_handlers))

    result = await pipeline.recommend("s1", {}, catalog_items)

    assert result.recommendation.stage_provenance == DegradationTier.PERSONALIZED
    assert result.recommendation.content_id == "loops-basics"
    assert result.recommendation.explanation is None
