"""
JSON helpers for oracle responses.

Models wrap JSON in markdown fences, prepend chatter, or get cut off at
max_tokens. ``parse_json_response`` copes with the first two and reports
the third; a ``None`` return is the parse-failure signal for callers.
"""

import json
import logging
import re
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r'```(?:json)?\s*([\s\S]*?)\s*```')
_OBJECT_RE = re.compile(r'\{[\s\S]*\}')


def is_truncated_json(error: json.JSONDecodeError) -> bool:
    """Check if a JSON parse error looks like truncated output."""
    error_msg = str(error).lower()
    truncation_patterns = [
        'unterminated string',
        'expecting',
        'end of data',
        'unexpected end',
    ]
    return any(p in error_msg for p in truncation_patterns)


def parse_json_response(response_text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Parse a JSON object out of an LLM response.

    Returns:
        The decoded object, or None when no JSON object can be recovered.
    """
    if not response_text:
        return None

    fence = _FENCE_RE.search(response_text)
    if fence:
        response_text = fence.group(1)
    response_text = response_text.strip()

    try:
        parsed = json.loads(response_text)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    # Leading or trailing prose around the object
    match = _OBJECT_RE.search(response_text)
    if not match:
        logger.warning("No JSON object found in response")
        return None

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse JSON response: {e}")
        if is_truncated_json(e):
            logger.warning("Response appears to be truncated (max_tokens hit)")
        return None
    return parsed if isinstance(parsed, dict) else None
