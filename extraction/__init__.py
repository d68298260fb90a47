"""
Multi-pass extraction of measure specifications from document text.

Usage:
    from extraction import extract_with_multipass, MultiPassOptions

    result = extract_with_multipass(text, oracle, MultiPassOptions(max_workers=4))
"""

from .chunker import ChunkingOptions, ChunkingResult, DocumentChunk, chunk_document, detect_sections, split_text
from .merge import ChunkExtraction, MergedExtraction, dedupe_value_sets, merge_chunk_results, merge_value_sets
from .multipass import (
    ExtractionProgress,
    ExtractionResult,
    ExtractionTimings,
    MultiPassOptions,
    assemble_ums,
    extract_with_chunking,
    extract_with_multipass,
)
from .oid_validator import validate_oid, validate_oid_batch, validate_oid_format, validate_oid_via_vsac
from .schema import CrossReferenceResult, MeasureSkeleton, PopulationExtractionResult, PopulationSkeleton

__all__ = [
    "ChunkingOptions",
    "ChunkingResult",
    "DocumentChunk",
    "chunk_document",
    "detect_sections",
    "split_text",
    "ChunkExtraction",
    "MergedExtraction",
    "dedupe_value_sets",
    "merge_chunk_results",
    "merge_value_sets",
    "ExtractionProgress",
    "ExtractionResult",
    "ExtractionTimings",
    "MultiPassOptions",
    "assemble_ums",
    "extract_with_chunking",
    "extract_with_multipass",
    "validate_oid",
    "validate_oid_batch",
    "validate_oid_format",
    "validate_oid_via_vsac",
    "CrossReferenceResult",
    "MeasureSkeleton",
    "PopulationExtractionResult",
    "PopulationSkeleton",
]
