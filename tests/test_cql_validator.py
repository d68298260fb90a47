"""
Tests for codegen.cql_validator — offline CQL checks and ELM translation.

The CQL Services endpoint is never contacted; requests is patched.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from codegen.cql_generator import generate_cql
from codegen.cql_validator import check_cql_syntax, is_cql_service_available, validate_cql

VALID_CQL = """library Screening version '1.0.0'

using FHIR version '4.0.1'

// Value Sets
valueset "Office Visit": 'http://cts.nlm.nih.gov/fhir/ValueSet/2.16.840.1.113883.3.464.1003.101.12.1001'

context Patient

define "Has Visit":
  exists ([Encounter: "Office Visit"] E where E.status = 'finished')
"""

HEADER = "library Screening version '1.0.0'\nusing FHIR version '4.0.1'\ncontext Patient\n"


def _response(ok=True, status_code=200, payload=None, text="{}"):
    response = MagicMock()
    response.ok = ok
    response.status_code = status_code
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload if payload is not None else {}
    return response


# ── Offline checks ───────────────────────────────────────────────────

class TestCheckSyntax:

    def test_valid_library(self):
        result = check_cql_syntax(VALID_CQL)
        assert result.valid
        assert result.errors == []
        assert result.warnings == []
        assert result.metadata == {
            "libraryName": "Screening", "version": "1.0.0", "definitionCount": 1, "valueSetCount": 1,
        }

    def test_generated_library_passes(self, cms130):
        assert check_cql_syntax(generate_cql(cms130).cql).valid

    def test_unclosed_parenthesis_reports_position(self):
        result = check_cql_syntax(HEADER + 'define "X":\n  exists ((true)\n')
        assert not result.valid
        error = result.errors[0]
        assert error.code == "UNBALANCED_PARENS"
        assert error.message == "Unclosed parenthesis"
        assert error.line == 5

    def test_unexpected_closing_bracket(self):
        result = check_cql_syntax(HEADER + 'define "X":\n  Interval[1, 2]]\n')
        assert [e.code for e in result.errors] == ["UNBALANCED_BRACKETS"]
        assert result.errors[0].message == "Unexpected closing bracket"

    def test_delimiters_in_comments_and_strings_ignored(self):
        cql = HEADER + '// (not closed\n/* [also\n not closed */\ndefine "X":\n  \'(\' = \'(\'\n'
        assert check_cql_syntax(cql).valid

    def test_unclosed_string(self):
        result = check_cql_syntax(HEADER + "define \"X\":\n  'open\n")
        assert "UNBALANCED_QUOTES" in [e.code for e in result.errors]

    @pytest.mark.parametrize("missing,code", [
        ("library Screening version '1.0.0'\n", "MISSING_LIBRARY"),
        ("using FHIR version '4.0.1'\n", "MISSING_USING"),
        ("context Patient\n", "MISSING_CONTEXT"),
    ])
    def test_missing_declarations(self, missing, code):
        result = check_cql_syntax(HEADER.replace(missing, ""))
        assert [e.code for e in result.errors] == [code]

    def test_empty_identifier(self):
        result = check_cql_syntax(HEADER + 'define "":\n  true\n')
        assert "INVALID_IDENTIFIER" in [e.code for e in result.errors]
        assert str(result.errors[0]).startswith("Line 4:8")

    def test_placeholder_and_unused_value_set_warn(self):
        cql = HEADER + "valueset \"Unused\": 'urn:oid:1.2.3'\n" + 'define "Stub":\n  true\n'
        result = check_cql_syntax(cql)
        assert result.valid
        assert sorted(w.code for w in result.warnings) == ["EMPTY_DEFINITION", "UNUSED_VALUESET"]


# ── Remote translation ───────────────────────────────────────────────

class TestValidateCQL:

    @patch("codegen.cql_validator.requests.post")
    def test_skip_remote(self, mock_post):
        assert validate_cql(VALID_CQL, skip_remote=True).valid
        mock_post.assert_not_called()

    @patch("codegen.cql_validator.requests.post")
    def test_local_errors_skip_remote(self, mock_post):
        result = validate_cql("define \"X\":\n  (")
        assert not result.valid
        mock_post.assert_not_called()

    @patch("codegen.cql_validator.requests.post")
    def test_successful_translation_returns_elm(self, mock_post):
        mock_post.return_value = _response(payload={"library": {"annotation": []}}, text='{"library": {}}')
        result = validate_cql(VALID_CQL, service_url="http://cql.local")
        assert result.valid
        assert result.elm == '{"library": {}}'
        url = mock_post.call_args[0][0]
        assert url == "http://cql.local/cql/translator"
        assert mock_post.call_args[1]["headers"]["Content-Type"] == "application/cql"

    @patch("codegen.cql_validator.requests.post")
    def test_elm_error_annotations(self, mock_post):
        mock_post.return_value = _response(payload={"library": {"annotation": [
            {"errorSeverity": "error", "message": "Could not resolve identifier", "locator": {"start": {"line": 9, "column": 3}}},
            {"errorSeverity": "warning", "message": "Implicit conversion"},
        ]}})
        result = validate_cql(VALID_CQL)
        assert not result.valid
        assert result.elm is None
        assert str(result.errors[0]) == "Line 9:3: Could not resolve identifier"
        assert [w.message for w in result.warnings] == ["Implicit conversion"]

    @patch("codegen.cql_validator.requests.post")
    def test_http_error_with_translator_messages(self, mock_post):
        mock_post.return_value = _response(ok=False, status_code=400, payload=[
            {"severity": "error", "message": "Syntax error at define", "line": 3},
            {"severity": "warning", "message": "Deprecated"},
        ])
        result = validate_cql(VALID_CQL)
        assert not result.valid
        assert [e.message for e in result.errors] == ["Syntax error at define"]
        assert [w.message for w in result.warnings] == ["Deprecated"]

    @patch("codegen.cql_validator.requests.post")
    def test_http_error_without_json(self, mock_post):
        mock_post.return_value = _response(ok=False, status_code=500, payload=ValueError("no json"), text="boom")
        result = validate_cql(VALID_CQL)
        assert result.errors[0].message == "Translation failed: boom"

    @patch("codegen.cql_validator.requests.post")
    def test_service_unreachable(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("refused")
        result = validate_cql(VALID_CQL)
        assert not result.valid
        assert result.errors[0].code == "SERVICE_UNAVAILABLE"

    @patch("codegen.cql_validator.requests.post")
    def test_timeout(self, mock_post):
        mock_post.side_effect = requests.Timeout()
        result = validate_cql(VALID_CQL, timeout=7)
        assert result.errors[0].message == "CQL Services request timed out after 7s"


class TestServiceAvailability:

    @patch("codegen.cql_validator.requests.head")
    def test_available(self, mock_head):
        mock_head.return_value = MagicMock(status_code=405)
        assert is_cql_service_available("http://cql.local")

    @patch("codegen.cql_validator.requests.head")
    def test_not_found(self, mock_head):
        mock_head.return_value = MagicMock(status_code=404)
        assert not is_cql_service_available()

    @patch("codegen.cql_validator.requests.head")
    def test_unreachable(self, mock_head):
        mock_head.side_effect = requests.ConnectionError()
        assert not is_cql_service_available()
