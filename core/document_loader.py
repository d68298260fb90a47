"""
Document text extraction for measure specifications.

Turns PDF and text-like files into one combined text blob for the
extraction passes. Each document is fenced with a ``=== FILE: ... ===``
header so the oracle can tell sources apart; PDF pages are fenced with
``--- Page N ---``.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from core.errors import DocumentLoadError

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = {
    '.txt': 'text',
    '.md': 'markdown',
    '.cql': 'cql',
    '.json': 'json',
    '.xml': 'xml',
    '.html': 'html',
    '.htm': 'html',
}

_TAG_RE = re.compile(r'<[^>]+>')
_BLANK_RUN_RE = re.compile(r'\n{3,}')


@dataclass
class ExtractedDocument:
    """Text pulled from one input file."""
    filename: str
    file_type: str
    content: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        result = {
            "filename": self.filename,
            "fileType": self.file_type,
            "content": self.content,
            "metadata": dict(self.metadata),
        }
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class DocumentExtractionResult:
    """Combined output of ``extract_from_files``."""
    documents: List[ExtractedDocument] = field(default_factory=list)
    combined_text: str = ""
    errors: List[str] = field(default_factory=list)


def detect_file_type(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix == '.pdf':
        return 'pdf'
    return TEXT_SUFFIXES.get(suffix, 'unknown')


def extract_pdf_text(pdf_path: Union[str, Path]) -> ExtractedDocument:
    """
    Extract page-fenced text from a PDF with PyMuPDF.

    Raises:
        DocumentLoadError: If the file can't be opened or read
    """
    import fitz

    path = Path(pdf_path)
    try:
        doc = fitz.open(str(path))
    except Exception as e:
        raise DocumentLoadError(f"Cannot open PDF {path.name}: {e}", cause=e)

    try:
        pages = []
        for page_num in range(len(doc)):
            text = doc[page_num].get_text().strip()
            pages.append(f"--- Page {page_num + 1} ---\n{text}")
        metadata = {k: str(v) for k, v in (doc.metadata or {}).items() if v}
        metadata["pageCount"] = str(len(doc))
    finally:
        doc.close()

    content = "\n\n".join(pages)
    logger.info(f"Extracted {len(content)} characters from {path.name} ({len(pages)} pages)")
    return ExtractedDocument(
        filename=path.name,
        file_type='pdf',
        content=content,
        metadata=metadata,
    )


def extract_text_file(path: Union[str, Path]) -> ExtractedDocument:
    """Read a text-like file; HTML is reduced to its visible text."""
    path = Path(path)
    file_type = detect_file_type(path)
    try:
        content = path.read_text(encoding='utf-8', errors='replace')
    except OSError as e:
        raise DocumentLoadError(f"Cannot read {path.name}: {e}", cause=e)

    if file_type == 'html':
        content = html.unescape(_TAG_RE.sub('\n', content))
        content = _BLANK_RUN_RE.sub('\n\n', content).strip()

    return ExtractedDocument(filename=path.name, file_type=file_type, content=content)


def extract_from_files(paths: List[Union[str, Path]]) -> DocumentExtractionResult:
    """
    Extract text from every file and combine it.

    A file that fails to load is recorded in ``errors`` and skipped; the
    remaining files still contribute to ``combined_text``.
    """
    result = DocumentExtractionResult()

    for raw_path in paths:
        path = Path(raw_path)
        file_type = detect_file_type(path)
        try:
            if file_type == 'pdf':
                document = extract_pdf_text(path)
            elif file_type == 'unknown':
                raise DocumentLoadError(f"Unsupported file type: {path.name}")
            else:
                document = extract_text_file(path)
        except DocumentLoadError as e:
            logger.warning(str(e))
            result.errors.append(str(e))
            result.documents.append(ExtractedDocument(
                filename=path.name, file_type=file_type, error=str(e),
            ))
            continue
        result.documents.append(document)

    result.combined_text = "\n".join(
        f"\n=== FILE: {d.filename} ({d.file_type}) ===\n{d.content}"
        for d in result.documents
        if d.content
    )
    return result
