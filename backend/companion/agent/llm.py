"""Streaming chat provider for the LLM runtime.

Wraps the OpenAI SDK pointed at OpenRouter. Retries transient failures
(429 rate limit, 5xx server errors, timeouts, connection errors) with
exponential backoff. Does NOT retry mid-stream; only the initial stream
creation is retried. Every failure that escapes is a ProviderError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Protocol

import httpx
from openai import APIConnectionError, APIError, APIStatusError, APITimeoutError, AsyncOpenAI

from companion.agent.constants import (
    LLM_MAX_RETRIES,
    LLM_RETRY_BASE_DELAY_SECONDS,
    LLM_RETRY_MAX_DELAY_SECONDS,
    LLM_RETRYABLE_STATUS_CODES,
)
from companion.agent.errors import ProviderError
from companion.config import settings

logger = logging.getLogger(__name__)


class ChatProvider(Protocol):
    def stream(
        self, messages: list[dict], tools: list[dict] | None = None
    ) -> AsyncIterator[Any]:
        """Yield OpenAI-format ``ChatCompletionChunk`` objects."""
        ...


def _is_retryable(exc: Exception) -> bool:
    """Determine if an exception is transient and worth retrying."""
    if isinstance(exc, APITimeoutError):
        return True
    if isinstance(exc, APIConnectionError):
        return True
    if isinstance(exc, APIStatusError) and exc.status_code in LLM_RETRYABLE_STATUS_CODES:
        return True
    return False


class OpenAIChatProvider:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model or settings.OPENROUTER_MODEL
        self.temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS
        self._client = client or AsyncOpenAI(
            api_key=api_key or settings.OPENROUTER_API_KEY,
            base_url=base_url or settings.OPENROUTER_BASE_URL,
            timeout=httpx.Timeout(120.0, connect=10.0),
        )

    async def _create(self, kwargs: dict):
        for attempt in range(1, LLM_MAX_RETRIES + 1):
            try:
                return await self._client.chat.completions.create(**kwargs)
            except APIError as exc:
                if attempt < LLM_MAX_RETRIES and _is_retryable(exc):
                    delay = min(
                        LLM_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1)),
                        LLM_RETRY_MAX_DELAY_SECONDS,
                    )
                    logger.warning(
                        "LLM stream creation attempt %d/%d failed (%s), retrying in %.1fs",
                        attempt,
                        LLM_MAX_RETRIES,
                        exc,
                        delay,
                    )
                    await asyncio.sleep(delay)
                else:
                    raise ProviderError(f"LLM request failed: {exc}") from exc

    async def stream(self, messages: list[dict], tools: list[dict] | None = None):
        kwargs: dict = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        stream = await self._create(kwargs)
        try:
            async for chunk in stream:
                yield chunk
        except (APIError, httpx.HTTPError) as exc:
            raise ProviderError(f"LLM stream interrupted: {exc}") from exc
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()

    async def close(self) -> None:
        await self._client.close()
