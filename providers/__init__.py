"""
LLM provider adapters used behind the extraction oracle.

Usage:
    from providers import LLMProviderFactory, LLMConfig

    provider = LLMProviderFactory.auto_detect("claude-sonnet-4")
    response = provider.generate(messages, LLMConfig(max_tokens=4000))
"""

from .base import LLMConfig, LLMResponse, LLMProvider
from .tracker import TokenUsageTracker, usage_tracker
from .openai_provider import OpenAIProvider
from .gemini_provider import GeminiProvider
from .claude_provider import ClaudeProvider
from .factory import LLMProviderFactory

__all__ = [
    "LLMConfig",
    "LLMResponse",
    "LLMProvider",
    "LLMProviderFactory",
    "OpenAIProvider",
    "ClaudeProvider",
    "GeminiProvider",
    "TokenUsageTracker",
    "usage_tracker",
]
