"""
Pydantic models for inference endpoint responses.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

KNOWLEDGE_ENCODER = "knowledge_encoder"
PERSONALIZATION_ADAPTER = "personalization_adapter"
POLICY = "policy"
CAUSAL_ESTIMATOR = "causal_estimator"

ENDPOINTS = (KNOWLEDGE_ENCODER, PERSONALIZATION_ADAPTER, POLICY, CAUSAL_ESTIMATOR)


class EncoderResponse(BaseModel):
    """Knowledge encoder output."""
    embedding: List[float]


class AdaptationContextPayload(BaseModel):
    version: int = Field(ge=0)
    vector: List[float] = Field(default_factory=list)


class AdapterResponse(BaseModel):
    """Personalization adapter output."""
    adaptation_context: AdaptationContextPayload
    policy_context: List[float]


class PolicyCandidate(BaseModel):
    content_id: str
    predicted_gain: float
    mastery_delta: Dict[str, float] = Field(default_factory=dict)


class PolicyResponse(BaseModel):
    """Ranked candidates from the policy stage."""
    candidates: List[PolicyCandidate]


class CausalResponse(BaseModel):
    """Effect estimate with confidence interval."""
    effect: float
    ci_lower: float
    ci_upper: float
    confidence_level: Optional[float] = Field(default=0.95, gt=0.0, lt=1.0)

    @model_validator(mode="after")
    def _ordered_interval(self) -> "CausalResponse":
        if self.ci_lower > self.ci_upper:
            raise ValueError("ci_lower must not exceed ci_upper")
        return self
