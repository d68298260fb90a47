"""
Tests for core.json_utils — JSON recovery from oracle responses.
"""

import json
import logging

import pytest

from core.json_utils import is_truncated_json, parse_json_response


class TestParseJsonResponse:

    def test_plain_object(self):
        assert parse_json_response('{"measureId": "CMS130v12"}') == {"measureId": "CMS130v12"}

    def test_markdown_fence(self):
        text = 'Here you go:\n```json\n{"valid": true}\n```\nLet me know.'
        assert parse_json_response(text) == {"valid": True}

    def test_fence_without_language(self):
        assert parse_json_response('```\n{"a": 1}\n```') == {"a": 1}

    def test_surrounding_prose(self):
        text = 'The skeleton is {"populations": [{"type": "numerator"}]} as requested.'
        assert parse_json_response(text) == {"populations": [{"type": "numerator"}]}

    @pytest.mark.parametrize("text", [
        None,
        "",
        "No JSON here at all.",
        "[1, 2, 3]",
        '{"criteria": {"operator": "AND", "children": [',
        '"just a string"',
    ])
    def test_unrecoverable(self, text):
        assert parse_json_response(text) is None

    def test_truncation_logged(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert parse_json_response('prefix {"a": "unterminated} and more') is None
        assert "Failed to parse JSON response" in caplog.text


class TestIsTruncated:

    def test_unterminated_string(self):
        with pytest.raises(json.JSONDecodeError) as info:
            json.loads('{"a": "b')
        assert is_truncated_json(info.value)

    def test_extra_data_is_not_truncation(self):
        with pytest.raises(json.JSONDecodeError) as info:
            json.loads('{"a": 1} {"b": 2}')
        assert not is_truncated_json(info.value)
