"""
Token Usage Tracker

Thread-safe tracking of cumulative token usage across oracle calls, broken
down by extraction pass (skeleton, population_detail, validation).
"""

import logging
import threading
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class TokenUsageTracker:
    """
    Tracks cumulative token usage across all LLM calls.

    The current pass name is thread-local so detail passes running on a
    worker pool attribute usage to the right bucket.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._thread_local = threading.local()
        self.reset()

    def reset(self):
        """Reset all counters."""
        with self._lock:
            self.total_input_tokens = 0
            self.total_output_tokens = 0
            self.call_count = 0
            self.calls_by_phase = {}
        self._thread_local.current_phase = "unknown"

    @property
    def current_phase(self) -> str:
        return getattr(self._thread_local, 'current_phase', 'unknown')

    def set_phase(self, phase: str):
        """Set the pass name used for subsequent calls on this thread."""
        self._thread_local.current_phase = phase

    def add_usage(self, input_tokens: int, output_tokens: int, phase: Optional[str] = None):
        phase_name = phase if phase is not None else self.current_phase

        with self._lock:
            self.total_input_tokens += input_tokens
            self.total_output_tokens += output_tokens
            self.call_count += 1

            bucket = self.calls_by_phase.setdefault(phase_name, {"input": 0, "output": 0, "calls": 0})
            bucket["input"] += input_tokens
            bucket["output"] += output_tokens
            bucket["calls"] += 1

    def get_summary(self) -> Dict[str, Any]:
        """Get usage summary (thread-safe)."""
        with self._lock:
            return {
                "total_input_tokens": self.total_input_tokens,
                "total_output_tokens": self.total_output_tokens,
                "total_tokens": self.total_input_tokens + self.total_output_tokens,
                "call_count": self.call_count,
                "by_phase": {k: dict(v) for k, v in self.calls_by_phase.items()},
            }

    def log_summary(self):
        summary = self.get_summary()
        lines = [f"LLM usage: {summary['call_count']} calls, {summary['total_tokens']:,} tokens"]
        for phase, data in summary["by_phase"].items():
            lines.append(f"  {phase:24} {data['input']:>9,} in / {data['output']:>8,} out ({data['calls']} calls)")
        logger.info("\n".join(lines))


# Global tracker instance
usage_tracker = TokenUsageTracker()
