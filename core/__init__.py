"""
Core infrastructure shared by the extraction and code generation packages.

Modules:
- errors: PipelineError hierarchy
- logging_config: JSON / console logging setup
- json_utils: tolerant JSON parsing of oracle responses
- llm_client: environment loading and the Oracle contract
- document_loader: PDF / text extraction
"""

from .errors import (
    PipelineError,
    ConfigurationError,
    LLMError,
    ExtractionError,
    StructuralError,
)
from .json_utils import parse_json_response

__all__ = [
    "PipelineError",
    "ConfigurationError",
    "LLMError",
    "ExtractionError",
    "StructuralError",
    "parse_json_response",
]
