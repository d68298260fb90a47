"""
Unified LLM Client - the single place the extraction passes reach a model.

The orchestrator only needs a single-shot text completion, so everything
provider-specific hides behind the ``Oracle`` contract:

    complete(system_prompt, messages, max_tokens) -> str

Usage:
    from core.llm_client import create_oracle

    oracle = create_oracle("claude-sonnet-4")
    text = oracle.complete("You are ...", [{"role": "user", "content": "..."}], 4000)
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

from core.errors import LLMResponseError
from providers import LLMConfig, LLMProvider, LLMProviderFactory

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4"

# Load environment variables once at module level
_env_loaded = False


def _ensure_env_loaded():
    """Ensure .env is loaded exactly once."""
    global _env_loaded
    if not _env_loaded:
        env_path = Path(__file__).parent.parent / '.env'
        if env_path.exists():
            load_dotenv(env_path)
        _env_loaded = True


def get_default_model() -> str:
    """Model from ``LLM_MODEL`` or the library default."""
    _ensure_env_loaded()
    return os.environ.get("LLM_MODEL", DEFAULT_MODEL)


def get_llm_client(model_name: Optional[str] = None, api_key: Optional[str] = None) -> LLMProvider:
    """
    Get a configured LLM provider for the specified model.

    Args:
        model_name: Model identifier (e.g., 'gpt-4o', 'gemini-2.5-pro', 'claude-sonnet-4')
        api_key: Optional API key override. If None, reads from environment.

    Raises:
        ConfigurationError: If the provider can't be detected or the key is missing
    """
    _ensure_env_loaded()
    return LLMProviderFactory.auto_detect(model_name or get_default_model(), api_key=api_key)


class Oracle(ABC):
    """Opaque, possibly unreliable text-completion capability."""

    @abstractmethod
    def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        max_tokens: int,
    ) -> str:
        """Return the completion text for ``messages`` under ``system_prompt``."""
        pass


class ProviderOracle(Oracle):
    """Adapts an ``LLMProvider`` to the ``Oracle`` contract."""

    def __init__(
        self,
        provider: LLMProvider,
        temperature: float = 0.0,
        json_mode: bool = True,
    ):
        self.provider = provider
        self.temperature = temperature
        self.json_mode = json_mode

    @property
    def model(self) -> str:
        return self.provider.model

    def complete(
        self,
        system_prompt: str,
        messages: List[Dict[str, str]],
        max_tokens: int,
    ) -> str:
        payload = []
        if system_prompt:
            payload.append({"role": "system", "content": system_prompt})
        payload.extend(messages)

        config = LLMConfig(
            temperature=self.temperature,
            max_tokens=max_tokens,
            json_mode=self.json_mode,
        )
        response = self.provider.generate(payload, config)
        if not response.content:
            raise LLMResponseError(
                f"Empty completion from {self.provider.model}",
                model=self.provider.model,
            )
        logger.debug(f"Oracle completion: {len(response.content)} chars from {response.model}")
        return response.content


def create_oracle(
    model_name: Optional[str] = None,
    api_key: Optional[str] = None,
    temperature: float = 0.0,
) -> ProviderOracle:
    """Build a ``ProviderOracle`` for a model name, auto-detecting the provider."""
    provider = get_llm_client(model_name, api_key=api_key)
    return ProviderOracle(provider, temperature=temperature)
