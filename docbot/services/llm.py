from typing import Dict, List, Optional, Tuple

import openai
import structlog
from openai import AsyncOpenAI

from ..config import settings

logger = structlog.get_logger(__name__)


class LLMConfigurationError(Exception):
    """LLM is not configured (missing API key etc.)"""
    pass


class LLMServiceError(Exception):
    """Error while calling the LLM service"""
    pass


class CompletionClient:
    """Chat completions against an OpenAI-compatible endpoint (Groq by default)."""

    def __init__(self, client: Optional[AsyncOpenAI], *, model: str, temperature: float = 0.2,
                 max_tokens: Optional[int] = None):
        self._client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls) -> "CompletionClient":
        client = None
        if settings.LLM_API_KEY:
            client = AsyncOpenAI(
                api_key=settings.LLM_API_KEY,
                base_url=settings.LLM_BASE_URL or None,
                timeout=settings.LLM_TIMEOUT,
                max_retries=0,
            )
        return cls(client, model=settings.LLM_MODEL, temperature=settings.LLM_TEMPERATURE,
                   max_tokens=settings.LLM_MAX_TOKENS)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Tuple[str, str]:
        """Return (text, model_used). Text may be empty; callers decide what that means."""
        if not messages:
            raise ValueError("messages must be a non-empty list")
        if self._client is None:
            raise LLMConfigurationError(
                "LLM_API_KEY is not set. Please configure LLM_API_KEY in environment variables."
            )

        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
        }
        limit = max_tokens or self.max_tokens
        if limit:
            kwargs["max_tokens"] = limit
        try:
            chat = await self._client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            raise LLMServiceError(f"LLM API error: {e}") from e

        choices = getattr(chat, "choices", None) or []
        text = (choices[0].message.content if choices else "") or ""
        model_used = getattr(chat, "model", None) or self.model
        return text, model_used
