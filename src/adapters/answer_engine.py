"""LLM answer adapter.

Implements the core AnswerEnginePort over any OpenAI-compatible chat
completions endpoint (Groq by default). No retries happen here; a failed call
is an UpstreamError and the poll loop simply moves on.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
import openai
from openai import AsyncOpenAI

from core.errors import ConfigurationError, UpstreamError

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MODEL = "llama-3.1-8b-instant"
SYSTEM_PROMPT = "You are a helpful AI assistant. Provide clear, concise answers."


class OpenAIAnswerEngine:
    """AnswerEnginePort implementation using the OpenAI SDK."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 20.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError("LLM API key is not configured")
        self._model = model
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        await self._client.close()

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        try:
            completion = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
            )
        except openai.APIStatusError as exc:
            raise UpstreamError(
                f"LLM API error: {exc.status_code}", exc.status_code, exc.response.text
            ) from exc
        except openai.APIError as exc:
            raise UpstreamError(f"LLM API request failed: {exc.__class__.__name__}") from exc

        choices = completion.choices or []
        content = choices[0].message.content if choices else None
        if not content:
            raise UpstreamError("LLM API response has no message content")
        return content

    async def answer(self, question: str) -> str:
        LOGGER.info("Asking %s: %s", self._model, question[:80])
        return await self.complete(SYSTEM_PROMPT, question)
