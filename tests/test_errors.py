"""
Tests for core.errors — PipelineError hierarchy.

Validates:
- Hierarchy relationships (isinstance checks)
- Structured to_dict() output
- Retryable flag on LLM errors
- StructuralError problem lists
"""

import pytest
from core.errors import (
    PipelineError,
    ConfigurationError,
    LLMError,
    LLMRateLimitError,
    LLMResponseError,
    LLMConnectionError,
    ExtractionError,
    SkeletonExtractionError,
    DocumentLoadError,
    StructuralError,
)


# ── Hierarchy ────────────────────────────────────────────────────────

class TestHierarchy:
    """All errors inherit from PipelineError and Exception."""

    @pytest.mark.parametrize("cls", [
        ConfigurationError,
        LLMError, LLMRateLimitError, LLMResponseError, LLMConnectionError,
        ExtractionError, SkeletonExtractionError, DocumentLoadError,
        StructuralError,
    ])
    def test_is_pipeline_error(self, cls):
        err = cls("test")
        assert isinstance(err, PipelineError)
        assert isinstance(err, Exception)

    def test_llm_subtypes(self):
        assert issubclass(LLMRateLimitError, LLMError)
        assert issubclass(LLMResponseError, LLMError)
        assert issubclass(LLMConnectionError, LLMError)

    def test_extraction_subtypes(self):
        assert issubclass(SkeletonExtractionError, ExtractionError)
        assert issubclass(DocumentLoadError, ExtractionError)

    def test_structural_is_not_extraction(self):
        assert not issubclass(StructuralError, ExtractionError)


# ── Attributes ───────────────────────────────────────────────────────

class TestAttributes:
    """Test phase, model, cause attributes."""

    def test_base_attributes(self):
        err = PipelineError("boom", phase="skeleton", model="claude-sonnet-4")
        assert str(err) == "boom"
        assert err.phase == "skeleton"
        assert err.model == "claude-sonnet-4"
        assert err.cause is None

    def test_cause_chaining(self):
        original = ValueError("bad json")
        err = LLMResponseError("parse failed", cause=original)
        assert err.cause is original
        assert err.__cause__ is original

    def test_defaults_are_none(self):
        err = PipelineError("simple")
        assert err.phase is None
        assert err.model is None
        assert err.cause is None


# ── to_dict ──────────────────────────────────────────────────────────

class TestToDict:
    """Structured output for logging."""

    def test_minimal(self):
        d = PipelineError("oops").to_dict()
        assert d == {"error_type": "PipelineError", "message": "oops"}

    def test_full(self):
        cause = RuntimeError("timeout")
        err = LLMError(
            "call failed",
            phase="population_detail",
            model="gpt-4o",
            cause=cause,
            retryable=True,
        )
        d = err.to_dict()
        assert d["error_type"] == "LLMError"
        assert d["message"] == "call failed"
        assert d["phase"] == "population_detail"
        assert d["model"] == "gpt-4o"
        assert d["retryable"] is True
        assert "RuntimeError: timeout" in d["cause"]

    def test_subclass_type_name(self):
        d = LLMRateLimitError().to_dict()
        assert d["error_type"] == "LLMRateLimitError"

    def test_structural_problems_in_dict(self):
        err = StructuralError("bad measure", problems=["No measure id", "No populations"])
        assert err.to_dict()["problems"] == ["No measure id", "No populations"]


# ── Retryable ────────────────────────────────────────────────────────

class TestRetryable:
    """LLM errors carry a retryable flag."""

    def test_rate_limit_is_retryable(self):
        assert LLMRateLimitError().retryable is True

    def test_response_error_retryable(self):
        assert LLMResponseError().retryable is True

    def test_connection_error_retryable(self):
        assert LLMConnectionError().retryable is True

    def test_base_llm_default_not_retryable(self):
        assert LLMError("generic").retryable is False


# ── StructuralError ──────────────────────────────────────────────────

class TestStructuralError:

    def test_problems_default_to_message(self):
        assert StructuralError("missing id").problems == ["missing id"]

    def test_problems_are_copied(self):
        problems = ["a", "b"]
        err = StructuralError("x", problems=problems)
        problems.append("c")
        assert err.problems == ["a", "b"]


# ── Catch patterns ───────────────────────────────────────────────────

class TestCatchPatterns:
    """Verify real-world except clauses work as expected."""

    def test_catch_all_pipeline_errors(self):
        with pytest.raises(PipelineError):
            raise LLMRateLimitError()

    def test_catch_llm_errors(self):
        with pytest.raises(LLMError):
            raise LLMConnectionError("reset")

    def test_catch_extraction_errors(self):
        with pytest.raises(ExtractionError):
            raise SkeletonExtractionError("no json")

    def test_catch_as_exception(self):
        with pytest.raises(Exception):
            raise ConfigurationError("no key")
# ── Retryable ───────────────────────────────────────────────────────────

class TestRetryable:

    @pytest.mark.parametrize("err,retryable", [
        (LLMRateLimitError(), True),
        (LLMResponseError(), True),
        (LLMConnectionError(), True),
        (LLMError("generic"), False),
        (LLMError("quota", retryable=True), True),
    ])
    def test_flag(self, err, retryable):
        assert err.retryable is retryable

    def test_default_messages(self):
        assert str(LLMRateLimitError()) == "Rate limit exceeded"
        assert str(LLMConnectionError()) == "LLM connection failed"


# ── StructuralError ─────────────────────────────────────────────────────

class TestStructuralError:

    def test_problems_default_to_message(self):
        assert StructuralError("missing id").problems == ["missing id"]

    def test_problems_are_copied(self):
        problems = ["a", "b"]
        err = StructuralError("x", problems=problems)
        problems.append("c")
        assert err.problems == ["a", "b"]

    def test_raised_for_empty_measure(self):
        from codegen.common import require_generation_inputs
        from ums.schema import MeasureMetadata, UniversalMeasureSpec

        with pytest.raises(StructuralError) as info:
            require_generation_inputs(UniversalMeasureSpec(id="ums_", metadata=MeasureMetadata(measure_id="")))
        assert info.value.problems == [
            "Measure ID is required",
            "At least one population definition is required",
        ]
        assert info.value.phase == "codegen"
