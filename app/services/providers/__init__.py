from app.services.providers.base import ModelProvider
from app.services.providers.openrouter_provider import OpenRouterProvider
from app.services.providers.anthropic_provider import AnthropicProvider

__all__ = [
    "ModelProvider",
    "OpenRouterProvider",
    "AnthropicProvider",
]
