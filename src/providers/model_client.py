from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import structlog
from openai import AsyncOpenAI

from src.infra.errors import DependencyError

logger = structlog.get_logger()


class ModelClient(ABC):
    """Abstract base class for LLM chat clients."""

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        *,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> str:
        """Send messages and return the complete response content."""
        ...


def _first_choice(response, *, context: str = ""):
    """Extract first choice from response, raising DependencyError if empty."""
    if not response.choices:
        raise DependencyError(f"Empty choices from provider ({context})")
    return response.choices[0]


class OpenAICompatModelClient(ModelClient):
    """Model client using the OpenAI SDK.

    Works with OpenAI, Gemini, and Ollama via OpenAI-compatible endpoints.
    A single attempt per call: timeouts and backoff are applied by
    src.infra.retry.call_with_retry at the call site.
    """

    def __init__(self, api_key: str, base_url: str | None = None) -> None:
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        *,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> str:
        logger.debug("chat_request", model=model, message_count=len(messages))
        kwargs: dict[str, Any] = {}
        if temperature is not None:
            kwargs["temperature"] = temperature
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self._client.chat.completions.create(
            model=model,
            messages=messages,
            **kwargs,
        )
        content = _first_choice(response, context="chat").message.content or ""
        logger.debug("chat_response", chars=len(content))
        return content
