"""
Optional study-note generation for a finalized recommendation.
"""

from typing import Optional

from recommender.models.domain import ContentItem, Recommendation
from recommender.shared.llm import LLMClient, LLMError
from recommender.shared.logging import get_logger

logger = get_logger(__name__)

SYSTEM_PROMPT = """You write one short study note (at most three sentences) that
tells a student what to focus on in the next piece of learning content.
Do not invent facts about the content beyond the concepts listed."""


class ContentGenerator:
    """Wraps the LLM client; a missing or failing provider yields no note."""

    def __init__(self, llm: Optional[LLMClient] = None):
        self.llm = llm

    @classmethod
    def from_settings(cls) -> "ContentGenerator":
        try:
            return cls(LLMClient())
        except LLMError as e:
            logger.info(f"Study notes disabled: {e}")
            return cls(None)

    @property
    def enabled(self) -> bool:
        return self.llm is not None

    async def study_note(self, recommendation: Recommendation, item: ContentItem) -> Optional[str]:
        """Generate a note; never raises and never touches the recommendation."""
        if self.llm is None:
            return None

        prompt = (
            f"Content: {item.content_id}\n"
            f"Concepts: {', '.join(sorted(item.concept_ids)) or 'general review'}\n"
            f"Difficulty (0-1): {item.difficulty:.2f}\n"
            f"Expected learning gain: {recommendation.predicted_gain:.2f}"
        )
        try:
            note = await self.llm.get_completion(prompt=prompt, system_prompt=SYSTEM_PROMPT)
        except LLMError as e:
            logger.warning(f"Study note generation failed for {item.content_id}: {e}")
            return None
        return note.strip() or None
