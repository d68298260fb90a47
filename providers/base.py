"""
LLM Provider Base Classes and Configuration

Provides the abstract base class for LLM providers, configuration dataclasses,
and the shared rate-limit retry helper.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
from dataclasses import dataclass
import time
import logging

_logger = logging.getLogger(__name__)

# Retry configuration for rate limiting (429 errors)
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 5
MAX_BACKOFF_SECONDS = 60

_RATE_LIMIT_MARKERS = ('429', 'rate', 'exhausted', 'quota', 'overloaded')


def is_rate_limit_error(error: Exception) -> bool:
    error_str = str(error).lower()
    return any(marker in error_str for marker in _RATE_LIMIT_MARKERS)


def _retry_with_backoff(func, max_retries=MAX_RETRIES, initial_backoff=INITIAL_BACKOFF_SECONDS,
                        sleep=time.sleep):
    """
    Retry a function with exponential backoff for rate limit (429) errors.

    Args:
        func: Callable to retry
        max_retries: Maximum number of retries
        initial_backoff: Initial backoff in seconds (doubles each retry)
        sleep: Sleep function, injectable for tests

    Returns:
        Result of successful function call

    Raises:
        The original exception when it isn't a rate limit or retries run out
    """
    backoff = initial_backoff

    for attempt in range(max_retries + 1):
        try:
            return func()
        except Exception as e:
            if not is_rate_limit_error(e) or attempt >= max_retries:
                raise
            wait_time = min(backoff, MAX_BACKOFF_SECONDS)
            _logger.warning(f"Rate limit hit, retrying in {wait_time}s (attempt {attempt + 1}/{max_retries + 1}): {e}")
            sleep(wait_time)
            backoff *= 2


@dataclass
class LLMConfig:
    """Configuration for LLM generation."""
    temperature: float = 0.0
    max_tokens: Optional[int] = None
    json_mode: bool = True
    stop_sequences: Optional[List[str]] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class LLMResponse:
    """Standardized response from any LLM provider."""
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None
    finish_reason: Optional[str] = None
    raw_response: Optional[Any] = None


def split_system_prompt(messages: List[Dict[str, str]]):
    """Separate system messages from the conversation turns."""
    system_parts = []
    turns = []
    for msg in messages:
        role = msg.get('role', 'user')
        content = msg.get('content', '')
        if role == 'system':
            system_parts.append(content)
        else:
            turns.append({"role": role, "content": content})
    return "\n\n".join(p for p in system_parts if p), turns


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    def __init__(self, model: str, api_key: Optional[str] = None):
        """
        Initialize provider.

        Args:
            model: Model identifier (e.g., "gpt-4o", "gemini-2.5-pro")
            api_key: API key (if None, reads from environment)
        """
        self.model = model
        self.api_key = api_key or self._get_api_key_from_env()

    @abstractmethod
    def _get_api_key_from_env(self) -> str:
        """Get API key from environment variable."""
        pass

    @abstractmethod
    def generate(
        self,
        messages: List[Dict[str, str]],
        config: Optional[LLMConfig] = None
    ) -> LLMResponse:
        """
        Generate completion from messages.

        Args:
            messages: List of message dicts with 'role' and 'content'
            config: Generation configuration

        Returns:
            LLMResponse with content and metadata
        """
        pass

    @abstractmethod
    def supports_json_mode(self) -> bool:
        """Check if model supports native JSON mode."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model='{self.model}')"
