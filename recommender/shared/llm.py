"""
LLM client abstraction supporting OpenAI and Anthropic.
Used only for optional study notes attached after a recommendation is final.
"""

from typing import Optional
from enum import Enum

from openai import AsyncOpenAI
from anthropic import AsyncAnthropic

from recommender.shared.config import LLMConfig, settings
from recommender.shared.exceptions import RecommenderError


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class LLMError(RecommenderError):
    """Base error for LLM operations."""
    pass


class LLMClient:
    """Unified LLM client supporting multiple providers."""

    def __init__(self, config: Optional[LLMConfig] = None, api_key: Optional[str] = None):
        self.config = config or settings.llm
        self.provider = self.config.provider
        self.model = self.config.default_model

        if self.provider == LLMProvider.OPENAI:
            api_key = api_key or self.config.openai_api_key
            if not api_key:
                raise LLMError("OpenAI API key not configured")
            self.client = AsyncOpenAI(api_key=api_key, timeout=self.config.timeout_seconds)
        elif self.provider == LLMProvider.ANTHROPIC:
            api_key = api_key or self.config.anthropic_api_key
            if not api_key:
                raise LLMError("Anthropic API key not configured")
            self.client = AsyncAnthropic(api_key=api_key, timeout=self.config.timeout_seconds)
        else:
            raise LLMError(f"Unsupported provider: {self.provider}")

    async def get_completion(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Get text completion from LLM.

        Args:
            prompt: User prompt
            system_prompt: Optional system prompt
            max_tokens: Override default max_tokens

        Returns:
            Completion text
        """
        max_tokens = max_tokens or self.config.max_tokens

        try:
            if self.provider == LLMProvider.OPENAI:
                messages = []
                if system_prompt:
                    messages.append({"role": "system", "content": system_prompt})
                messages.append({"role": "user", "content": prompt})
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=self.config.temperature,
                    max_tokens=max_tokens,
                )
                return response.choices[0].message.content or ""

            # Anthropic takes the system prompt as a parameter, not a message
            kwargs = {
                "model": self.model,
                "max_tokens": max_tokens,
                "temperature": self.config.temperature,
                "messages": [{"role": "user", "content": prompt}],
            }
            if system_prompt:
                kwargs["system"] = system_prompt
            response = await self.client.messages.create(**kwargs)
            return response.content[0].text
        except Exception as e:
            raise LLMError(f"LLM completion failed: {str(e)}") from e
