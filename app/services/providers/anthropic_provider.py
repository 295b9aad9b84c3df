"""
Anthropic provider - Claude Messages API streaming.
"""

import logging
from typing import AsyncIterator, Dict, List, Optional

import anthropic

from app.config import settings
from app.errors import UpstreamError
from app.services.providers.base import ModelProvider

logger = logging.getLogger(__name__)


def merge_consecutive_roles(messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """
    The Messages API requires alternating roles starting with ``user``.
    A turn that failed without output leaves two user messages in a row,
    so neighbours with the same role are joined.
    """
    merged: List[Dict[str, str]] = []
    for message in messages:
        if merged and merged[-1]["role"] == message["role"]:
            merged[-1] = {
                "role": message["role"],
                "content": merged[-1]["content"] + "\n\n" + message["content"],
            }
        else:
            merged.append(dict(message))
    while merged and merged[0]["role"] != "user":
        merged.pop(0)
    return merged


class AnthropicProvider(ModelProvider):
    name = "anthropic"

    def __init__(self, client: Optional[anthropic.AsyncAnthropic] = None):
        if client is None:
            if not settings.anthropic_api_key:
                logger.warning("ANTHROPIC_API_KEY not set - AnthropicProvider will fail on calls")
            client = anthropic.AsyncAnthropic(
                api_key=settings.anthropic_api_key or "missing",
                max_retries=0,
            )
        self.client = client

    async def stream(
        self,
        model: str,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
    ) -> AsyncIterator[str]:
        kwargs = dict(
            model=model,
            max_tokens=settings.anthropic_max_tokens,
            temperature=settings.temperature,
            messages=merge_consecutive_roles(messages),
        )
        if system:
            kwargs["system"] = system

        try:
            async with self.client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except anthropic.APIError as e:
            logger.error(f"Anthropic stream failed for {model}: {e}")
            raise UpstreamError(f"Model provider error: {e}") from e

    async def aclose(self) -> None:
        await self.client.close()
