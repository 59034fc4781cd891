"""
Pytest fixtures for recommender tests.
"""

import asyncio
import random
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from recommender.core.explanation import CausalExplanationAssembler
from recommender.core.fallback import FallbackChainController
from recommender.core.pipeline import RecommendationPipeline
from recommender.inference.client import ModelClient
from recommender.inference.schemas import (
    CAUSAL_ESTIMATOR,
    KNOWLEDGE_ENCODER,
    PERSONALIZATION_ADAPTER,
    POLICY,
)
from recommender.models.domain import ConceptCatalog, ContentItem
from recommender.safety.validator import SafetyValidator
from recommender.shared.config import InferenceConfig, PipelineConfig, SafetyConfig
from recommender.shared.exceptions import EndpointUnavailableError
from recommender.state.backends import InMemoryStateBackend
from recommender.state.store import StudentStateStore

CONCEPT_IDS = ["variables", "loops", "functions", "recursion"]


class ScriptedTransport:
    """Stands in for the inference endpoints.

    Each endpoint maps to an exception instance (raised on every call) or a
    callable taking the payload and returning the response, sync or async.
    Unscripted endpoints are unavailable.
    """

    def __init__(self, handlers: Optional[Dict[str, Any]] = None):
        self.handlers = dict(handlers or {})
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    async def send(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((endpoint, payload))
        handler = self.handlers.get(endpoint)
        if handler is None:
            raise EndpointUnavailableError(f"{endpoint} not scripted", endpoint)
        if isinstance(handler, Exception):
            raise handler
        result = handler(payload)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def calls_to(self, endpoint: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.calls if name == endpoint]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.advance(seconds)


DEFAULT_CANDIDATES = [
    {"content_id": "recursion-deep", "predicted_gain": 0.9, "mastery_delta": {"recursion": 0.2}},
    {"content_id": "loops-basics", "predicted_gain": 0.4, "mastery_delta": {"loops": 0.1}},
    {"content_id": "intro-vars", "predicted_gain": 0.2, "mastery_delta": {"variables": 0.1}},
]


@pytest.fixture
def concepts():
    """Concept catalog shared by state, validator and controller."""
    return ConceptCatalog(CONCEPT_IDS)


@pytest.fixture
def catalog_items():
    """Small programming curriculum, from easiest to hardest."""
    return [
        ContentItem("intro-vars", 0.1, frozenset({"variables"})),
        ContentItem("functions-intro", 0.2, frozenset({"functions"})),
        ContentItem("loops-basics", 0.3, frozenset({"loops"})),
        ContentItem("loops-nested", 0.5, frozenset({"loops"}), frozenset({"variables"})),
        ContentItem("recursion-deep", 0.9, frozenset({"recursion"}), frozenset({"functions"})),
    ]


@pytest.fixture
def healthy_handlers():
    """Handlers for all four endpoints answering well-formed payloads."""

    def encoder(payload):
        return {"embedding": [0.1, 0.2, 0.3]}

    def adapter(payload):
        return {
            "adaptation_context": {
                "version": payload["adaptation_context"]["version"] + 1,
                "vector": [0.5, 0.5],
            },
            "policy_context": [0.3, 0.7],
        }

    def policy(payload):
        return {"candidates": [dict(c) for c in DEFAULT_CANDIDATES]}

    def causal(payload):
        return {"effect": 0.12, "ci_lower": 0.05, "ci_upper": 0.2, "confidence_level": 0.9}

    return {
        KNOWLEDGE_ENCODER: encoder,
        PERSONALIZATION_ADAPTER: adapter,
        POLICY: policy,
        CAUSAL_ESTIMATOR: causal,
    }


@pytest.fixture
def make_transport() -> Callable[..., ScriptedTransport]:
    """Factory for scripted transports."""
    return ScriptedTransport


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def build_pipeline(concepts):
    """Factory for a fully wired pipeline over an in-memory backend."""

    def _build(transport, backend=None, emitter=None, stage_timeout_ms=1000, max_attempts=3):
        inference = InferenceConfig(stage_timeout_ms=stage_timeout_ms, max_attempts=max_attempts)
        pipeline_config = PipelineConfig(
            default_deadline_ms=800, top_k=5, explanation_min_budget_ms=50
        )
        store = StudentStateStore(
            backend if backend is not None else InMemoryStateBackend(), concepts, timeout_ms=2000
        )
        validator = SafetyValidator(concepts, SafetyConfig())
        client = ModelClient(transport, inference, rng=random.Random(0))
        controller = FallbackChainController(client, validator, concepts, pipeline_config, inference)
        return RecommendationPipeline(
            store,
            controller,
            CausalExplanationAssembler(client),
            emitter=emitter,
            config=pipeline_config,
        )

    return _build
