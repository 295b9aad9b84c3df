"""Common contract for upstream model providers."""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List, Optional


class ModelProvider(ABC):
    """
    One upstream LLM API.

    ``stream`` yields plain text fragments in arrival order and raises
    ``app.errors.UpstreamError`` when the provider fails. Translating the
    provider's event framing into fragments is the provider's job; the
    gateway only sees text.
    """

    name: str = "base"

    @abstractmethod
    def stream(
        self,
        model: str,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Stream a completion for ``messages`` (roles ``user`` / ``assistant``)."""

    async def aclose(self) -> None:
        """Release client resources."""
