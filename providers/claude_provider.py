"""
Anthropic Claude LLM Provider

Streams responses so long detail passes don't hit the non-streaming
request timeout.
"""

import os
import logging
from typing import Dict, List, Optional

import anthropic

from core.errors import ConfigurationError, LLMError, LLMRateLimitError, LLMConnectionError
from .base import LLMProvider, LLMConfig, LLMResponse, _retry_with_backoff, split_system_prompt
from .tracker import usage_tracker

_logger = logging.getLogger(__name__)

JSON_INSTRUCTION = "You must respond with valid JSON only. No markdown, no explanation, just the JSON object."
DEFAULT_MAX_TOKENS = 16384


class ClaudeProvider(LLMProvider):
    """Anthropic Claude provider; JSON mode is enforced through the system prompt."""

    def __init__(self, model: str, api_key: Optional[str] = None):
        super().__init__(model, api_key)
        self.client = anthropic.Anthropic(api_key=self.api_key)

    def _get_api_key_from_env(self) -> str:
        api_key = os.environ.get("ANTHROPIC_API_KEY") or os.environ.get("CLAUDE_API_KEY")
        if not api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY or CLAUDE_API_KEY environment variable not set", model=self.model)
        return api_key

    def supports_json_mode(self) -> bool:
        return True

    def _build_params(self, messages: List[Dict[str, str]], config: LLMConfig) -> Dict:
        system_content, turns = split_system_prompt(messages)
        if config.json_mode:
            system_content = f"{system_content}\n\n{JSON_INSTRUCTION}" if system_content else JSON_INSTRUCTION

        params = {
            "model": self.model,
            "messages": turns,
            "max_tokens": config.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": config.temperature,
        }
        if system_content:
            params["system"] = system_content
        if config.stop_sequences:
            params["stop_sequences"] = config.stop_sequences
        if config.top_p is not None:
            params["top_p"] = config.top_p
        return params

    def _stream(self, params: Dict) -> LLMResponse:
        content = ""
        with self.client.messages.stream(**params) as stream:
            for text in stream.text_stream:
                content += text
            final_message = stream.get_final_message()

        stop_reason = getattr(final_message, 'stop_reason', None)
        usage = None
        if final_message is not None and final_message.usage:
            input_tokens = final_message.usage.input_tokens
            output_tokens = final_message.usage.output_tokens
            usage = {
                "prompt_tokens": input_tokens,
                "completion_tokens": output_tokens,
                "total_tokens": input_tokens + output_tokens,
            }
            usage_tracker.add_usage(input_tokens, output_tokens)

        if stop_reason == 'max_tokens':
            _logger.warning(f"Claude response was truncated (max_tokens={params['max_tokens']} reached)")

        return LLMResponse(
            content=content,
            model=getattr(final_message, 'model', None) or self.model,
            usage=usage,
            finish_reason=stop_reason,
        )

    def generate(
        self,
        messages: List[Dict[str, str]],
        config: Optional[LLMConfig] = None
    ) -> LLMResponse:
        if config is None:
            config = LLMConfig()
        params = self._build_params(messages, config)

        try:
            return _retry_with_backoff(lambda: self._stream(params))
        except anthropic.RateLimitError as e:
            raise LLMRateLimitError(f"Anthropic rate limit for '{self.model}': {e}", model=self.model, cause=e)
        except anthropic.APIConnectionError as e:
            raise LLMConnectionError(f"Anthropic connection failed for '{self.model}': {e}", model=self.model, cause=e)
        except Exception as e:
            raise LLMError(f"Anthropic API call failed for model '{self.model}': {e}",
                           model=self.model, cause=e)
