"""
Tests for core.document_loader — PDF and text extraction.
"""

from pathlib import Path

import fitz
import pytest

from core.document_loader import detect_file_type, extract_from_files, extract_pdf_text, extract_text_file
from core.errors import DocumentLoadError


def write_pdf(path, *pages):
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text)
    doc.save(str(path))
    doc.close()
    return path


class TestDetectFileType:

    @pytest.mark.parametrize("name,expected", [
        ("spec.PDF", "pdf"),
        ("spec.txt", "text"),
        ("library.cql", "cql"),
        ("page.htm", "html"),
        ("notes.md", "markdown"),
        ("sheet.xlsx", "unknown"),
        ("README", "unknown"),
    ])
    def test_detect(self, name, expected):
        assert detect_file_type(Path(name)) == expected


class TestTextFiles:

    def test_plain_text(self, tmp_path):
        path = tmp_path / "spec.txt"
        path.write_text("Numerator: colonoscopy", encoding="utf-8")
        document = extract_text_file(path)
        assert document.file_type == "text"
        assert document.content == "Numerator: colonoscopy"

    def test_html_reduced_to_text(self, tmp_path):
        path = tmp_path / "spec.html"
        path.write_text("<h1>Numerator</h1><p>Age &ge; 45 &amp; screened</p>", encoding="utf-8")
        content = extract_text_file(path).content
        assert "<" not in content
        assert "Numerator" in content
        assert "Age ≥ 45 & screened" in content

    def test_missing_file(self, tmp_path):
        with pytest.raises(DocumentLoadError, match="Cannot read missing.txt"):
            extract_text_file(tmp_path / "missing.txt")


class TestPDF:

    def test_pages_fenced(self, tmp_path):
        path = write_pdf(tmp_path / "spec.pdf", "Initial Population", "Numerator")
        document = extract_pdf_text(path)
        assert document.file_type == "pdf"
        assert document.content.startswith("--- Page 1 ---\nInitial Population")
        assert "--- Page 2 ---\nNumerator" in document.content
        assert document.metadata["pageCount"] == "2"

    def test_unreadable_pdf(self, tmp_path):
        with pytest.raises(DocumentLoadError, match="Cannot open PDF nope.pdf"):
            extract_pdf_text(tmp_path / "nope.pdf")


class TestExtractFromFiles:

    def test_combined_text(self, tmp_path):
        spec = tmp_path / "spec.txt"
        spec.write_text("Denominator: equals initial population", encoding="utf-8")
        cql = tmp_path / "measure.cql"
        cql.write_text("library CMS130v12", encoding="utf-8")
        result = extract_from_files([spec, str(cql)])
        assert result.errors == []
        assert [d.filename for d in result.documents] == ["spec.txt", "measure.cql"]
        assert "\n=== FILE: spec.txt (text) ===\nDenominator: equals initial population" in result.combined_text
        assert "=== FILE: measure.cql (cql) ===\nlibrary CMS130v12" in result.combined_text

    def test_failures_recorded_and_skipped(self, tmp_path):
        spec = tmp_path / "spec.txt"
        spec.write_text("Numerator", encoding="utf-8")
        sheet = tmp_path / "codes.xlsx"
        sheet.write_bytes(b"PK")
        result = extract_from_files([sheet, spec])
        assert result.errors == ["Unsupported file type: codes.xlsx"]
        assert result.documents[0].error == "Unsupported file type: codes.xlsx"
        assert result.documents[0].to_dict()["error"] == "Unsupported file type: codes.xlsx"
        assert "codes.xlsx" not in result.combined_text
        assert "=== FILE: spec.txt (text) ===" in result.combined_text
