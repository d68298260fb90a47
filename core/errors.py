"""
PipelineError hierarchy for Measure2Code.

Typed exceptions let callers separate retryable oracle failures from
structural input errors, and let logging categorize failures without
parsing message strings.

Hierarchy:
    PipelineError                       (base, all library errors)
    ├── ConfigurationError              (missing env vars, bad model name)
    ├── LLMError                        (any LLM provider failure)
    │   ├── LLMRateLimitError           (retryable: 429 / quota)
    │   ├── LLMResponseError            (malformed / unparseable response)
    │   └── LLMConnectionError          (network / timeout)
    ├── ExtractionError                 (pass-level extraction failure)
    │   ├── SkeletonExtractionError     (fatal skeleton pass failure)
    │   └── DocumentLoadError           (PDF / text read failure)
    └── StructuralError                 (missing required IR input)
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base exception for all Measure2Code errors."""

    def __init__(self, message: str, *, phase: Optional[str] = None,
                 model: Optional[str] = None, cause: Optional[Exception] = None):
        self.phase = phase
        self.model = model
        self.cause = cause
        super().__init__(message)
        if cause and not self.__cause__:
            self.__cause__ = cause

    def to_dict(self) -> dict:
        """Structured representation for logging."""
        d = {
            "error_type": type(self).__name__,
            "message": str(self),
        }
        if self.phase:
            d["phase"] = self.phase
        if self.model:
            d["model"] = self.model
        if self.cause:
            d["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return d


# ── Configuration ────────────────────────────────────────────────────

class ConfigurationError(PipelineError):
    """Missing environment variable, invalid model name, bad config file."""
    pass


# ── LLM Provider ─────────────────────────────────────────────────────

class LLMError(PipelineError):
    """Base for all LLM provider errors."""

    def __init__(self, message: str, *, phase: Optional[str] = None,
                 model: Optional[str] = None, cause: Optional[Exception] = None,
                 retryable: bool = False):
        self.retryable = retryable
        super().__init__(message, phase=phase, model=model, cause=cause)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["retryable"] = self.retryable
        return d


class LLMRateLimitError(LLMError):
    """429 / quota exhausted; always retryable."""

    def __init__(self, message: str = "Rate limit exceeded", **kwargs):
        super().__init__(message, retryable=True, **kwargs)


class LLMResponseError(LLMError):
    """LLM returned an empty or unusable response."""

    def __init__(self, message: str = "Malformed LLM response", **kwargs):
        super().__init__(message, retryable=True, **kwargs)


class LLMConnectionError(LLMError):
    """Network timeout or connection failure; retryable."""

    def __init__(self, message: str = "LLM connection failed", **kwargs):
        super().__init__(message, retryable=True, **kwargs)


# ── Extraction ───────────────────────────────────────────────────────

class ExtractionError(PipelineError):
    """Pass-level extraction failure."""
    pass


class SkeletonExtractionError(ExtractionError):
    """The skeleton pass produced no usable measure structure."""
    pass


class DocumentLoadError(ExtractionError):
    """PDF read failure, unsupported file, or corrupt input."""
    pass


# ── Structural ───────────────────────────────────────────────────────

class StructuralError(PipelineError):
    """Required IR input is missing (no measure id, no populations, ...)."""

    def __init__(self, message: str, *, problems: Optional[List[str]] = None, **kwargs):
        self.problems = list(problems) if problems else [message]
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["problems"] = list(self.problems)
        return d
