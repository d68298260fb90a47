"""
LLM Provider Factory

Auto-detects and creates the appropriate LLM provider based on model name.
"""

from typing import List, Optional

from .base import LLMProvider
from core.errors import ConfigurationError
from .openai_provider import OpenAIProvider
from .gemini_provider import GeminiProvider
from .claude_provider import ClaudeProvider

# Substring patterns checked in order; first hit decides the provider
MODEL_PATTERNS = [
    ('openai', ('gpt', 'o1', 'o3', 'o4')),
    ('gemini', ('gemini',)),
    ('claude', ('claude', 'anthropic')),
]


class LLMProviderFactory:
    """Factory for creating LLM provider instances."""

    _providers = {
        'openai': OpenAIProvider,
        'gemini': GeminiProvider,
        'google': GeminiProvider,  # Alias
        'claude': ClaudeProvider,
        'anthropic': ClaudeProvider,  # Alias
    }

    @classmethod
    def create(
        cls,
        provider_name: str,
        model: str,
        api_key: Optional[str] = None
    ) -> LLMProvider:
        """
        Create an LLM provider instance.

        Raises:
            ConfigurationError: If provider not supported
        """
        provider_name = provider_name.lower()

        if provider_name not in cls._providers:
            supported = ', '.join(cls._providers.keys())
            raise ConfigurationError(
                f"Provider '{provider_name}' not supported. "
                f"Supported providers: {supported}",
                model=model,
            )

        return cls._providers[provider_name](model=model, api_key=api_key)

    @classmethod
    def detect_provider(cls, model: str) -> Optional[str]:
        model_lower = model.lower()
        for provider_name, patterns in MODEL_PATTERNS:
            if any(pattern in model_lower for pattern in patterns):
                return provider_name
        return None

    @classmethod
    def auto_detect(cls, model: str, api_key: Optional[str] = None) -> LLMProvider:
        """
        Auto-detect provider from model name.

        Raises:
            ConfigurationError: If model name doesn't match known patterns
        """
        provider_name = cls.detect_provider(model)
        if provider_name is None:
            raise ConfigurationError(
                f"Could not auto-detect provider for model '{model}'. "
                f"Please specify provider explicitly.",
                model=model,
            )
        return cls.create(provider_name, model, api_key)

    @classmethod
    def list_providers(cls) -> List[str]:
        return list(cls._providers.keys())
