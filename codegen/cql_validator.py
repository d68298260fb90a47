"""
CQL validation.

- ``check_cql_syntax``: offline checks (balanced delimiters, library /
  using / context declarations, empty identifiers, placeholder defines)
- ``validate_cql``: local checks, then translation to ELM by a CQL
  Services endpoint (``POST {service_url}/cql/translator``)

Network problems never raise; they come back as ``valid=False`` results.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_URL = "http://localhost:8080"


@dataclass
class CQLIssue:
    severity: str  # error / warning
    code: str
    message: str
    line: Optional[int] = None
    column: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"severity": self.severity, "code": self.code, "message": self.message}
        if self.line is not None:
            result["line"] = self.line
        if self.column is not None:
            result["column"] = self.column
        return result

    def __str__(self) -> str:
        if self.line is None:
            return self.message
        position = f"{self.line}:{self.column}" if self.column is not None else f"{self.line}"
        return f"Line {position}: {self.message}"


@dataclass
class CQLValidationResult:
    valid: bool
    errors: List[CQLIssue] = field(default_factory=list)
    warnings: List[CQLIssue] = field(default_factory=list)
    elm: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "elm": self.elm,
            "metadata": dict(self.metadata),
        }


def _error(code: str, message: str, line: Optional[int] = None, column: Optional[int] = None) -> CQLIssue:
    return CQLIssue("error", code, message, line, column)


def _warning(code: str, message: str, line: Optional[int] = None, column: Optional[int] = None) -> CQLIssue:
    return CQLIssue("warning", code, message, line, column)


# ── Local checks ─────────────────────────────────────────────────────

def _check_delimiters(cql: str) -> List[CQLIssue]:
    errors: List[CQLIssue] = []
    stacks = {"(": [], "[": []}
    closers = {")": "(", "]": "["}
    quote = None
    line, column = 1, 0
    i = 0
    while i < len(cql):
        char = cql[i]
        nxt = cql[i + 1] if i + 1 < len(cql) else ""
        if char == "\n":
            line, column = line + 1, 0
            i += 1
            continue
        column += 1

        if quote is None:
            if char == "/" and nxt == "/":
                end = cql.find("\n", i)
                i = len(cql) if end == -1 else end
                continue
            if char == "/" and nxt == "*":
                end = cql.find("*/", i + 2)
                if end == -1:
                    errors.append(_error("SYNTAX_ERROR", "Unclosed block comment", line, column))
                    break
                skipped = cql[i:end + 2]
                newlines = skipped.count("\n")
                if newlines:
                    line += newlines
                    column = len(skipped) - skipped.rfind("\n") - 1
                else:
                    column += len(skipped) - 1
                i = end + 2
                continue
            if char in ("'", '"'):
                quote = char
            elif char in stacks:
                stacks[char].append((line, column))
            elif char in closers:
                opener = closers[char]
                if stacks[opener]:
                    stacks[opener].pop()
                else:
                    kind = "UNBALANCED_PARENS" if char == ")" else "UNBALANCED_BRACKETS"
                    name = "parenthesis" if char == ")" else "bracket"
                    errors.append(_error(kind, f"Unexpected closing {name}", line, column))
        elif char == "\\":
            i += 2
            column += 1
            continue
        elif char == quote:
            quote = None
        i += 1

    if quote is not None:
        errors.append(_error("UNBALANCED_QUOTES", f"Unclosed string literal (started with {quote})"))
    for open_line, open_column in stacks["("]:
        errors.append(_error("UNBALANCED_PARENS", "Unclosed parenthesis", open_line, open_column))
    for open_line, open_column in stacks["["]:
        errors.append(_error("UNBALANCED_BRACKETS", "Unclosed bracket", open_line, open_column))
    return errors


_REQUIRED_DECLARATIONS = (
    (re.compile(r"^\s*library\s+\w+", re.MULTILINE), "MISSING_LIBRARY", "Missing library declaration"),
    (re.compile(r"^\s*using\s+FHIR\s+version\s+'[^']+'", re.MULTILINE), "MISSING_USING", "Missing FHIR using declaration"),
    (re.compile(r"^\s*context\s+(Patient|Unfiltered|Population)\b", re.MULTILINE), "MISSING_CONTEXT", "Missing context declaration"),
)

_PLACEHOLDER_DEFINE = re.compile(r'^define\s+"([^"]+)":\s*\n\s*true\s*$', re.MULTILINE)
_VALUESET_DECL = re.compile(r'^valueset\s+"((?:[^"\\]|\\.)+)":', re.MULTILINE)


def cql_metadata(cql: str) -> Dict[str, Any]:
    library = re.search(r"^\s*library\s+(\w+)(?:\s+version\s+'([^']+)')?", cql, re.MULTILINE)
    return {
        "libraryName": library.group(1) if library else None,
        "version": library.group(2) if library else None,
        "definitionCount": len(re.findall(r'^define\s+"', cql, re.MULTILINE)),
        "valueSetCount": len(_VALUESET_DECL.findall(cql)),
    }


def check_cql_syntax(cql: str) -> CQLValidationResult:
    """Fast offline checks; no service needed."""
    errors = _check_delimiters(cql)

    for pattern, code, message in _REQUIRED_DECLARATIONS:
        if not pattern.search(cql):
            errors.append(_error(code, message))

    for number, text in enumerate(cql.split("\n"), start=1):
        stripped = text.strip()
        if stripped.startswith(("//", "/*", "*")):
            continue
        if '""' in text:
            errors.append(_error("INVALID_IDENTIFIER", "Empty quoted identifier", number, text.index('""') + 1))

    warnings = []
    for match in _PLACEHOLDER_DEFINE.finditer(cql):
        number = cql.count("\n", 0, match.start()) + 1
        warnings.append(_warning(
            "EMPTY_DEFINITION", f'Definition "{match.group(1)}" always returns true - may be a placeholder', number,
        ))
    for name in _VALUESET_DECL.findall(cql):
        if cql.count(f'"{name}"') <= 1:
            warnings.append(_warning("UNUSED_VALUESET", f'Value set "{name}" is declared but never referenced'))

    return CQLValidationResult(valid=not errors, errors=errors, warnings=warnings, metadata=cql_metadata(cql))


# ── Remote translation ───────────────────────────────────────────────

def _translator_errors(data: Any) -> List[CQLIssue]:
    if isinstance(data, list):
        return [
            _error("TRANSLATION_ERROR", item.get("message") or "Unknown error", item.get("line"), item.get("column"))
            for item in data
            if isinstance(item, dict) and item.get("severity") == "error"
        ]
    if isinstance(data, dict):
        if data.get("errorExceptions"):
            return [
                _error("TRANSLATION_ERROR", e.get("message") or "Translation error", e.get("startLine"), e.get("startChar"))
                for e in data["errorExceptions"]
                if isinstance(e, dict)
            ]
        if data.get("message"):
            return [_error("TRANSLATION_ERROR", str(data["message"]))]
    return []


def _translator_warnings(data: Any) -> List[CQLIssue]:
    if not isinstance(data, list):
        return []
    return [
        _warning("TRANSLATION_WARNING", item.get("message") or "Warning", item.get("line"), item.get("column"))
        for item in data
        if isinstance(item, dict) and item.get("severity") == "warning"
    ]


def _annotations(elm: Dict[str, Any], severity: str) -> List[CQLIssue]:
    issues = []
    for annotation in (elm.get("library") or {}).get("annotation") or []:
        if not isinstance(annotation, dict) or annotation.get("errorSeverity") != severity:
            continue
        start = (annotation.get("locator") or {}).get("start") or {}
        code = "TRANSLATION_ERROR" if severity == "error" else "TRANSLATION_WARNING"
        issues.append(CQLIssue(severity, code, annotation.get("message", ""), start.get("line"), start.get("column")))
    return issues


def is_cql_service_available(service_url: str = DEFAULT_SERVICE_URL, timeout: int = 5) -> bool:
    try:
        response = requests.head(f"{service_url}/cql/translator", timeout=timeout)
    except requests.RequestException:
        return False
    return response.status_code != 404


def validate_cql(
    cql: str,
    service_url: str = DEFAULT_SERVICE_URL,
    timeout: int = 30,
    skip_remote: bool = False,
) -> CQLValidationResult:
    """
    Validate CQL locally, then by translating it to ELM.

    The remote step runs only when the local checks pass. On success the
    ELM JSON text is returned in ``elm``.
    """
    result = check_cql_syntax(cql)
    if not result.valid or skip_remote:
        return result

    url = f"{service_url}/cql/translator"
    try:
        response = requests.post(
            url,
            data=cql.encode("utf-8"),
            headers={"Content-Type": "application/cql", "Accept": "application/elm+json"},
            timeout=timeout,
        )
    except requests.ConnectionError:
        logger.warning(f"CQL Services not reachable at {service_url}")
        result.valid = False
        result.errors.append(_error(
            "SERVICE_UNAVAILABLE", f"Cannot connect to CQL Services at {service_url}. Ensure the service is running.",
        ))
        return result
    except requests.Timeout:
        result.valid = False
        result.errors.append(_error("SERVICE_UNAVAILABLE", f"CQL Services request timed out after {timeout}s"))
        return result
    except requests.RequestException as e:
        result.valid = False
        result.errors.append(_error("TRANSLATION_ERROR", str(e)))
        return result

    if not response.ok:
        try:
            data = response.json()
        except ValueError:
            result.errors.append(_error("TRANSLATION_ERROR", f"Translation failed: {response.text}"))
        else:
            result.errors.extend(_translator_errors(data) or [
                _error("TRANSLATION_ERROR", f"Translation failed with HTTP {response.status_code}")
            ])
            result.warnings.extend(_translator_warnings(data))
        result.valid = False
        return result

    try:
        elm = response.json()
    except ValueError:
        result.valid = False
        result.errors.append(_error("TRANSLATION_ERROR", "Translator returned invalid ELM JSON"))
        return result

    elm_errors = _annotations(elm, "error")
    result.errors.extend(elm_errors)
    result.warnings.extend(_annotations(elm, "warning"))
    result.valid = not result.errors
    if not elm_errors:
        result.elm = response.text
    logger.info(f"CQL translation: {len(elm_errors)} errors, {len(result.warnings)} warnings")
    return result
