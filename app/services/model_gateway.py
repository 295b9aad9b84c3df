"""
Model Gateway - one streaming interface over several upstream providers.

Usage:
    gateway = get_model_gateway()
    async for chunk in gateway.stream_completion("google/gemini-2.5-flash", history):
        if chunk.kind is ChunkKind.TEXT:
            ...

Every stream ends with exactly one terminal chunk: DONE, or ERROR carrying
an UpstreamError / UpstreamTimeout whose ``partial`` is the text produced
before the failure. Streams are lazy and not restartable. Premium
entitlement is not checked here.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

from app.config import settings
from app.errors import UnknownModel, UpstreamError, UpstreamTimeout
from app.services.providers import ModelProvider, OpenRouterProvider, AnthropicProvider

logger = logging.getLogger(__name__)


# ── Chunks ───────────────────────────────────────────────────────────

class ChunkKind(str, Enum):
    TEXT = "text"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class Chunk:
    kind: ChunkKind
    text: str = ""
    error: Optional[UpstreamError] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind is not ChunkKind.TEXT

    @classmethod
    def fragment(cls, text: str) -> "Chunk":
        return cls(kind=ChunkKind.TEXT, text=text)

    @classmethod
    def done(cls) -> "Chunk":
        return cls(kind=ChunkKind.DONE)

    @classmethod
    def failure(cls, error: UpstreamError) -> "Chunk":
        return cls(kind=ChunkKind.ERROR, error=error)


@dataclass(frozen=True)
class HistoryMessage:
    role: str  # "user" | "agent"
    content: str


# ── Model registry ───────────────────────────────────────────────────

@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    description: str
    is_premium: bool
    provider: str                     # ModelProvider.name serving this model
    vendor: str = ""                  # Display label ("Google", "Meta", ...)
    upstream_id: Optional[str] = None  # Id sent upstream when it differs from ``id``


DEFAULT_MODELS: List[ModelInfo] = [
    ModelInfo(
        id="google/gemini-2.5-flash",
        name="Gemini 2.5 Flash",
        description="Fast and efficient Google model",
        is_premium=False,
        provider="openrouter",
        vendor="Google",
    ),
    ModelInfo(
        id="google/gemini-2.5-pro",
        name="Gemini 2.5 Pro",
        description="Google's most advanced model",
        is_premium=True,
        provider="openrouter",
        vendor="Google",
    ),
    ModelInfo(
        id="deepseek/deepseek-r1:free",
        name="DeepSeek R1",
        description="Advanced reasoning model",
        is_premium=True,
        provider="openrouter",
        vendor="DeepSeek",
    ),
    ModelInfo(
        id="meta-llama/llama-3.3-70b-instruct:free",
        name="Llama 3.3 70B",
        description="Meta's powerful language model",
        is_premium=True,
        provider="openrouter",
        vendor="Meta",
    ),
    ModelInfo(
        id="mistralai/mistral-small-24b-instruct-2501:free",
        name="Mistral Small 24B",
        description="Mistral's efficient instruction model",
        is_premium=True,
        provider="openrouter",
        vendor="Mistral",
    ),
    ModelInfo(
        id="qwen/qwen-2.5-72b-instruct:free",
        name="Qwen 2.5 72B",
        description="Alibaba's powerful language model",
        is_premium=True,
        provider="openrouter",
        vendor="Qwen",
    ),
    ModelInfo(
        id="anthropic/claude-sonnet-4-5",
        name="Claude Sonnet 4.5",
        description="Anthropic's balanced model for writing and analysis",
        is_premium=True,
        provider="anthropic",
        vendor="Anthropic",
        upstream_id="claude-sonnet-4-5",
    ),
    ModelInfo(
        id="anthropic/claude-haiku-4-5",
        name="Claude Haiku 4.5",
        description="Anthropic's fastest model",
        is_premium=True,
        provider="anthropic",
        vendor="Anthropic",
        upstream_id="claude-haiku-4-5",
    ),
]


class ModelRegistry:
    """Known models keyed by id, in catalogue order."""

    def __init__(self, models: Iterable[ModelInfo] = ()):
        self._models: Dict[str, ModelInfo] = {}
        for model in models:
            self.register(model)

    @classmethod
    def from_settings(cls) -> "ModelRegistry":
        """Default catalogue with the premium / disabled overrides applied."""
        premium = set(settings.premium_model_overrides)
        disabled = set(settings.disabled_models)
        models = []
        for model in DEFAULT_MODELS:
            if model.id in disabled:
                continue
            if model.id in premium and not model.is_premium:
                model = replace(model, is_premium=True)
            models.append(model)
        return cls(models)

    def register(self, model: ModelInfo) -> ModelInfo:
        self._models[model.id] = model
        return model

    def get(self, model_id: str) -> Optional[ModelInfo]:
        return self._models.get(model_id)

    def resolve(self, model_id: str) -> ModelInfo:
        model = self._models.get(model_id)
        if model is None:
            raise UnknownModel(f"Unknown model: {model_id}", model=model_id)
        return model

    def list_models(self) -> List[ModelInfo]:
        return list(self._models.values())


# ── Gateway ──────────────────────────────────────────────────────────

def to_provider_messages(history: Sequence[Any]) -> List[Dict[str, str]]:
    """Map stored roles onto the chat-completions roles."""
    messages = []
    for entry in history:
        role = "assistant" if entry.role == "agent" else "user"
        messages.append({"role": role, "content": entry.content})
    return messages


class ModelGateway:
    """Routes a model id to its provider and normalizes the stream."""

    def __init__(
        self,
        providers: Dict[str, ModelProvider],
        registry: Optional[ModelRegistry] = None,
        idle_timeout: Optional[float] = None,
    ):
        self._providers = dict(providers)
        self.registry = registry or ModelRegistry.from_settings()
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.upstream_idle_timeout

    def resolve(self, model_id: str) -> ModelInfo:
        """Look up a model; raises UnknownModel when absent or unserved."""
        model = self.registry.resolve(model_id)
        if model.provider not in self._providers:
            raise UnknownModel(f"No provider configured for model: {model_id}", model=model_id)
        return model

    def list_models(self) -> List[ModelInfo]:
        return [m for m in self.registry.list_models() if m.provider in self._providers]

    def stream_completion(
        self,
        model_id: str,
        history: Sequence[Any],
        system: Optional[str] = None,
    ) -> AsyncIterator[Chunk]:
        """
        Validate ``model_id`` now and return the lazy chunk stream.

        ``history`` is the ordered conversation (objects with ``role`` and
        ``content``), newest message last.
        """
        model = self.resolve(model_id)
        provider = self._providers[model.provider]
        return self._relay(model, provider, to_provider_messages(history), system)

    async def _relay(
        self,
        model: ModelInfo,
        provider: ModelProvider,
        messages: List[Dict[str, str]],
        system: Optional[str],
    ) -> AsyncIterator[Chunk]:
        produced: List[str] = []
        terminal = Chunk.done()
        upstream = provider.stream(model.upstream_id or model.id, messages, system)

        try:
            while True:
                try:
                    fragment = await asyncio.wait_for(upstream.__anext__(), timeout=self.idle_timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    logger.warning(f"Upstream idle for {self.idle_timeout}s on {model.id}; aborting")
                    terminal = Chunk.failure(UpstreamTimeout(
                        f"No output from {model.name} for {self.idle_timeout:g}s",
                        partial="".join(produced),
                    ))
                    break
                except UpstreamError as e:
                    e.partial = "".join(produced)
                    terminal = Chunk.failure(e)
                    break
                except Exception as e:
                    logger.error(f"Upstream stream for {model.id} failed: {e}", exc_info=True)
                    terminal = Chunk.failure(UpstreamError(
                        f"Model provider error: {e}",
                        partial="".join(produced),
                    ))
                    break

                if fragment:
                    produced.append(fragment)
                    yield Chunk.fragment(fragment)
        finally:
            await upstream.aclose()

        yield terminal

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()


# Singleton instance
_model_gateway: Optional[ModelGateway] = None


def get_model_gateway() -> ModelGateway:
    """Get the model gateway singleton."""
    global _model_gateway
    if _model_gateway is None:
        _model_gateway = ModelGateway(
            providers={
                OpenRouterProvider.name: OpenRouterProvider(),
                AnthropicProvider.name: AnthropicProvider(),
            },
        )
    return _model_gateway
