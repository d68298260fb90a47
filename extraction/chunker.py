"""
Document chunking for large measure specifications.

Documents over ``LARGE_DOCUMENT_THRESHOLD`` characters are split into
overlapping chunks. Breaks prefer a section header, then a paragraph,
then a sentence, and never fall below ``min_chunk_size``. Each chunk is
scanned for population section markers so that detail extraction only
runs against chunks that mention the population.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ums.schema import PopulationType

logger = logging.getLogger(__name__)

LARGE_DOCUMENT_THRESHOLD = 20000

# More specific markers first; each span is claimed by one marker only
SECTION_PATTERNS = (
    (PopulationType.DENOMINATOR_EXCLUSION, re.compile(r"\bdenominator[\s_-]+exclusions?\b", re.IGNORECASE)),
    (PopulationType.DENOMINATOR_EXCEPTION, re.compile(r"\bdenominator[\s_-]+exceptions?\b", re.IGNORECASE)),
    (PopulationType.NUMERATOR_EXCLUSION, re.compile(r"\bnumerator[\s_-]+exclusions?\b", re.IGNORECASE)),
    (PopulationType.INITIAL_POPULATION, re.compile(r"\binitial[\s_-]+(patient[\s_-]+)?population\b", re.IGNORECASE)),
    (PopulationType.DENOMINATOR, re.compile(r"\bdenominators?\b", re.IGNORECASE)),
    (PopulationType.NUMERATOR, re.compile(r"\bnumerators?\b", re.IGNORECASE)),
)

_HEADER_LINE = re.compile(
    r"^(?:#{1,6}\s+\S.*|\d+(?:\.\d+)*\.?\s+[A-Z].{0,80}|[A-Z][A-Z0-9 /&()-]{3,80}:?)$",
    re.MULTILINE,
)


@dataclass
class ChunkingOptions:
    max_chunk_size: int = 40000
    overlap_size: int = 2000
    min_chunk_size: int = 5000
    preserve_headers: bool = True

    def __post_init__(self):
        if self.max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be positive")
        self.overlap_size = max(0, min(self.overlap_size, self.max_chunk_size // 2))
        self.min_chunk_size = max(1, min(self.min_chunk_size, self.max_chunk_size))


@dataclass
class SectionMarker:
    type: PopulationType
    start: int
    end: int
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "start": self.start, "end": self.end, "text": self.text}


@dataclass
class DocumentChunk:
    index: int
    content: str
    start_offset: int
    end_offset: int
    sections: List[SectionMarker] = field(default_factory=list)
    header: Optional[str] = None

    @property
    def section_types(self) -> List[PopulationType]:
        seen: List[PopulationType] = []
        for marker in self.sections:
            if marker.type not in seen:
                seen.append(marker.type)
        return seen

    def has_section(self, population_type: PopulationType) -> bool:
        return any(marker.type == population_type for marker in self.sections)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "startOffset": self.start_offset,
            "endOffset": self.end_offset,
            "length": len(self.content),
            "sections": [s.to_dict() for s in self.sections],
            "header": self.header,
        }


@dataclass
class ChunkingResult:
    chunks: List[DocumentChunk] = field(default_factory=list)
    total_length: int = 0

    @property
    def was_chunked(self) -> bool:
        return len(self.chunks) > 1


def is_large_document(text: str, threshold: int = LARGE_DOCUMENT_THRESHOLD) -> bool:
    return len(text) > threshold


def detect_sections(text: str, offset: int = 0) -> List[SectionMarker]:
    """Population markers in ``text``, ordered by position."""
    claimed: List[Tuple[int, int]] = []
    markers: List[SectionMarker] = []
    for population_type, pattern in SECTION_PATTERNS:
        for match in pattern.finditer(text):
            start, end = match.span()
            if any(start < c_end and end > c_start for c_start, c_end in claimed):
                continue
            claimed.append((start, end))
            markers.append(SectionMarker(population_type, start + offset, end + offset, match.group(0)))
    markers.sort(key=lambda m: m.start)
    return markers


def _header_positions(text: str) -> List[int]:
    return [m.start() for m in _HEADER_LINE.finditer(text)]


def _last_header_before(text: str, position: int) -> Optional[str]:
    header = None
    for match in _HEADER_LINE.finditer(text, 0, position):
        header = match.group(0).strip()
    return header


def _break_point(text: str, start: int, hard_end: int, floor: int, headers: List[int]) -> int:
    """Best break in (floor, hard_end]: header, paragraph, sentence, else hard_end."""
    candidates = [h for h in headers if floor < h <= hard_end]
    if candidates:
        return candidates[-1]
    paragraph = text.rfind("\n\n", floor, hard_end)
    if paragraph > floor:
        return paragraph + 2
    sentence = text.rfind(". ", floor, hard_end)
    if sentence > floor:
        return sentence + 2
    return hard_end


def _spans(text: str, max_size: int, overlap: int, min_size: int, headers: List[int]) -> List[Tuple[int, int]]:
    spans = []
    start = 0
    while start < len(text):
        hard_end = min(start + max_size, len(text))
        end = hard_end
        if hard_end < len(text):
            end = _break_point(text, start, hard_end, start + min_size, headers)
        spans.append((start, end))
        if end >= len(text):
            break
        start = max(end - overlap, start + 1)
    return spans


def split_text(text: str, max_chunk_size: int = 30000, overlap: int = 1000) -> List[str]:
    """Plain boundary-aware split; breaks fall in the second half of each chunk."""
    if len(text) <= max_chunk_size:
        return [text]
    return [text[s:e] for s, e in _spans(text, max_chunk_size, overlap, max_chunk_size // 2, [])]


def chunk_document(text: str, options: Optional[ChunkingOptions] = None) -> ChunkingResult:
    """
    Split ``text`` into overlapping chunks with section markers.

    Offsets refer to ``text``. With ``preserve_headers`` a chunk that starts
    mid-section carries the nearest preceding header, prepended to its
    content for context.
    """
    options = options or ChunkingOptions()
    if len(text) <= options.max_chunk_size:
        chunk = DocumentChunk(0, text, 0, len(text), detect_sections(text))
        return ChunkingResult(chunks=[chunk], total_length=len(text))

    headers = _header_positions(text) if options.preserve_headers else []
    chunks = []
    for index, (start, end) in enumerate(
        _spans(text, options.max_chunk_size, options.overlap_size, options.min_chunk_size, headers)
    ):
        body = text[start:end]
        header = None
        if options.preserve_headers and start > 0 and start not in headers:
            header = _last_header_before(text, start)
        content = f"{header}\n\n{body}" if header else body
        chunks.append(DocumentChunk(index, content, start, end, detect_sections(body, start), header))

    logger.info(f"Chunked {len(text)} chars into {len(chunks)} chunks")
    return ChunkingResult(chunks=chunks, total_length=len(text))
