"""
OpenRouter provider - OpenAI-compatible chat completions streaming.

The catalogue's Gemini, DeepSeek, Llama, Mistral and Qwen models are all
served through OpenRouter's OpenAI-compatible endpoint, so one client
covers them.
"""

import logging
from typing import AsyncIterator, Dict, List, Optional

from openai import AsyncOpenAI, APIError

from app.config import settings
from app.errors import UpstreamError
from app.services.providers.base import ModelProvider

logger = logging.getLogger(__name__)


class OpenRouterProvider(ModelProvider):
    name = "openrouter"

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        if client is None:
            if not settings.openrouter_api_key:
                logger.warning("OPENROUTER_API_KEY not set - OpenRouterProvider will fail on calls")
            client = AsyncOpenAI(
                api_key=settings.openrouter_api_key or "missing",
                base_url=settings.openrouter_base_url,
                default_headers={"X-Title": settings.openrouter_app_name},
                # Turns are never retried; a retry would duplicate partial output
                max_retries=0,
            )
        self.client = client

    async def stream(
        self,
        model: str,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
    ) -> AsyncIterator[str]:
        payload = list(messages)
        if system:
            payload.insert(0, {"role": "system", "content": system})

        try:
            stream = await self.client.chat.completions.create(
                model=model,
                messages=payload,
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
                stream=True,
            )
        except APIError as e:
            logger.error(f"OpenRouter request failed for {model}: {e}")
            raise UpstreamError(f"Model provider error: {e}") from e

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None and delta.content:
                    yield delta.content
                if choice.finish_reason == "error":
                    raise UpstreamError("Model provider reported an error mid-stream")
        except APIError as e:
            logger.error(f"OpenRouter stream failed for {model}: {e}")
            raise UpstreamError(f"Model provider error: {e}") from e
        finally:
            await stream.close()

    async def aclose(self) -> None:
        await self.client.close()
