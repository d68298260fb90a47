"""
Google Gemini LLM Provider

Uses the google-genai SDK. Routes through Vertex AI when
GOOGLE_CLOUD_PROJECT is set, otherwise through Google AI Studio with
GOOGLE_API_KEY. Safety filters are disabled: measure specifications
routinely describe conditions and procedures that trip them.
"""

import os
import logging
from typing import Dict, List, Optional

from google import genai
from google.genai import types as genai_types

from core.errors import ConfigurationError, LLMError
from .base import LLMProvider, LLMConfig, LLMResponse, _retry_with_backoff, split_system_prompt
from .tracker import usage_tracker

logger = logging.getLogger(__name__)

# Gemini 3 previews only serve from the global endpoint on Vertex AI
GLOBAL_ENDPOINT_PREFIXES = ('gemini-3',)

_SAFETY_CATEGORIES = (
    genai_types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    genai_types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
    genai_types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    genai_types.HarmCategory.HARM_CATEGORY_HARASSMENT,
)


class GeminiProvider(LLMProvider):
    """Google Gemini provider with native JSON mode (response_mime_type)."""

    def __init__(self, model: str, api_key: Optional[str] = None):
        self.use_vertex = bool(os.environ.get("GOOGLE_CLOUD_PROJECT"))
        super().__init__(model, api_key)

        if self.use_vertex:
            location = os.environ.get("GOOGLE_CLOUD_LOCATION", "us-central1")
            if model.startswith(GLOBAL_ENDPOINT_PREFIXES):
                location = 'global'
            self.client = genai.Client(
                vertexai=True,
                project=os.environ.get("GOOGLE_CLOUD_PROJECT"),
                location=location,
            )
        else:
            self.client = genai.Client(api_key=self.api_key)

    def _get_api_key_from_env(self) -> str:
        api_key = os.environ.get("GOOGLE_API_KEY")
        if not api_key and not self.use_vertex:
            raise ConfigurationError("GOOGLE_API_KEY environment variable not set", model=self.model)
        return api_key or ""

    def supports_json_mode(self) -> bool:
        return True

    def _build_config(self, system_content: str, config: LLMConfig) -> genai_types.GenerateContentConfig:
        return genai_types.GenerateContentConfig(
            system_instruction=system_content or None,
            temperature=config.temperature,
            top_p=config.top_p,
            top_k=config.top_k,
            max_output_tokens=config.max_tokens,
            stop_sequences=config.stop_sequences,
            response_mime_type="application/json" if config.json_mode else None,
            safety_settings=[
                genai_types.SafetySetting(category=category, threshold=genai_types.HarmBlockThreshold.BLOCK_NONE)
                for category in _SAFETY_CATEGORIES
            ],
        )

    def generate(
        self,
        messages: List[Dict[str, str]],
        config: Optional[LLMConfig] = None
    ) -> LLMResponse:
        if config is None:
            config = LLMConfig()

        system_content, turns = split_system_prompt(messages)
        contents = [
            genai_types.Content(
                role='model' if turn['role'] == 'assistant' else 'user',
                parts=[genai_types.Part(text=turn['content'])],
            )
            for turn in turns
        ]
        gen_config = self._build_config(system_content, config)

        try:
            response = _retry_with_backoff(lambda: self.client.models.generate_content(
                model=self.model,
                contents=contents,
                config=gen_config,
            ))
        except Exception as e:
            raise LLMError(f"Gemini API call failed for model '{self.model}': {e}",
                           model=self.model, cause=e)

        usage = None
        metadata = getattr(response, 'usage_metadata', None)
        if metadata:
            input_tokens = getattr(metadata, 'prompt_token_count', 0) or 0
            output_tokens = getattr(metadata, 'candidates_token_count', 0) or 0
            usage = {
                "prompt_tokens": input_tokens,
                "completion_tokens": output_tokens,
                "total_tokens": input_tokens + output_tokens,
            }
            usage_tracker.add_usage(input_tokens, output_tokens)

        finish_reason = None
        if getattr(response, 'candidates', None):
            finish_reason = str(response.candidates[0].finish_reason)

        return LLMResponse(
            content=response.text or "",
            model=self.model,
            usage=usage,
            finish_reason=finish_reason,
            raw_response=response,
        )
