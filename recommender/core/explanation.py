"""
Causal explanation assembler. Best effort: never fails a recommendation.
"""

import asyncio
from typing import Optional

from recommender.inference.client import ModelClient
from recommender.inference.schemas import CAUSAL_ESTIMATOR, CausalResponse
from recommender.models.domain import Explanation, Recommendation, StudentState
from recommender.shared.exceptions import InferenceError
from recommender.shared.logging import get_logger

logger = get_logger(__name__)


class CausalExplanationAssembler:
    """Attaches an effect estimate and confidence interval to a recommendation."""

    def __init__(self, model_client: ModelClient):
        self.model_client = model_client

    async def explain(
        self,
        recommendation: Recommendation,
        state: StudentState,
        timeout_ms: float,
    ) -> Optional[Explanation]:
        """Return the estimate, or None on any endpoint failure or lack of time."""
        if timeout_ms <= 0:
            return None

        payload = {
            "student_id": state.student_id,
            "content_id": recommendation.content_id,
            "predicted_gain": recommendation.predicted_gain,
            "knowledge_vector": list(state.knowledge_vector),
        }

        try:
            estimate: CausalResponse = await asyncio.wait_for(
                self.model_client.invoke(CAUSAL_ESTIMATOR, payload, timeout_ms, CausalResponse),
                timeout=timeout_ms / 1000.0,
            )
        except (InferenceError, asyncio.TimeoutError) as e:
            logger.warning(
                f"No explanation for {recommendation.content_id}: {e}",
                extra={"student_id": state.student_id, "action": "explain"},
            )
            return None

        return Explanation(
            effect=estimate.effect,
            ci_lower=estimate.ci_lower,
            ci_upper=estimate.ci_upper,
            confidence_level=estimate.confidence_level or 0.95,
        )
