"""
OpenAI LLM Provider

Supports GPT-4o, GPT-4.1, GPT-5 and the o-series reasoning models through
the Responses API.
"""

import os
from typing import Dict, List, Optional

import openai
from openai import OpenAI

from core.errors import ConfigurationError, LLMError, LLMRateLimitError, LLMConnectionError
from .base import LLMProvider, LLMConfig, LLMResponse, _retry_with_backoff
from .tracker import usage_tracker


class OpenAIProvider(LLMProvider):
    """OpenAI provider with native JSON mode."""

    # Reasoning models reject the temperature parameter
    NO_TEMP_PREFIXES = ('o1', 'o3', 'o4', 'gpt-5')

    def __init__(self, model: str, api_key: Optional[str] = None):
        super().__init__(model, api_key)
        self.client = OpenAI(api_key=self.api_key)

    def _get_api_key_from_env(self) -> str:
        api_key = os.environ.get("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY environment variable not set", model=self.model)
        return api_key

    def supports_json_mode(self) -> bool:
        return True

    def supports_temperature(self) -> bool:
        return not self.model.lower().startswith(self.NO_TEMP_PREFIXES)

    def _build_params(self, messages: List[Dict[str, str]], config: LLMConfig) -> Dict:
        params = {
            "model": self.model,
            "input": [{"role": m.get('role', 'user'), "content": m.get('content', '')} for m in messages],
        }
        if self.supports_temperature():
            params["temperature"] = config.temperature
            if config.top_p is not None:
                params["top_p"] = config.top_p
        if config.json_mode:
            params["text"] = {"format": {"type": "json_object"}}
        if config.max_tokens:
            params["max_output_tokens"] = config.max_tokens
        return params

    def generate(
        self,
        messages: List[Dict[str, str]],
        config: Optional[LLMConfig] = None
    ) -> LLMResponse:
        if config is None:
            config = LLMConfig()
        params = self._build_params(messages, config)

        try:
            response = _retry_with_backoff(lambda: self.client.responses.create(**params))
        except openai.RateLimitError as e:
            raise LLMRateLimitError(f"OpenAI rate limit for '{self.model}': {e}", model=self.model, cause=e)
        except openai.APIConnectionError as e:
            raise LLMConnectionError(f"OpenAI connection failed for '{self.model}': {e}", model=self.model, cause=e)
        except Exception as e:
            raise LLMError(f"OpenAI Responses API call failed for model '{self.model}': {e}",
                           model=self.model, cause=e)

        usage = None
        if getattr(response, 'usage', None):
            input_tokens = getattr(response.usage, 'input_tokens', 0) or 0
            output_tokens = getattr(response.usage, 'output_tokens', 0) or 0
            usage = {
                "prompt_tokens": input_tokens,
                "completion_tokens": output_tokens,
                "total_tokens": input_tokens + output_tokens,
            }
            usage_tracker.add_usage(input_tokens, output_tokens)

        return LLMResponse(
            content=getattr(response, 'output_text', '') or '',
            model=getattr(response, 'model', self.model),
            usage=usage,
            finish_reason=getattr(response, 'status', None),
            raw_response=response,
        )
