"""
Multi-pass measure extraction.

    start -> skeleton -> population detail (x N) -> [validation] -> assembled

- Pass 1 (skeleton): one oracle call over the start of the document. A
  response without JSON ends the run with no measure.
- Pass 2 (detail): one call per skeleton population. Failures are recorded
  per population and the run continues.
- Pass 3 (validation): optional cross-reference; only ever adds warnings.

Documents longer than ``LARGE_DOCUMENT_THRESHOLD`` are chunked: the
skeleton comes from the first chunk, each population is extracted from
every chunk whose section markers mention it, and chunk results are merged
with ``merge_chunk_results``.

Usage:
    from core.llm_client import create_oracle
    from extraction import extract_with_multipass, MultiPassOptions

    result = extract_with_multipass(text, create_oracle("claude-sonnet-4"))
    if result.success:
        measure = result.ums
"""

import itertools
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.errors import PipelineError, SkeletonExtractionError
from core.json_utils import parse_json_response
from core.llm_client import Oracle
from core.logging_config import PhaseLoggerAdapter
from providers.tracker import usage_tracker
from ums.schema import (
    CodeReference,
    Confidence,
    DataElement,
    LogicalClause,
    LogicalOperator,
    MeasureMetadata,
    MeasurementPeriod,
    Node,
    PopulationDefinition,
    ReviewProgress,
    SiblingConnection,
    Thresholds,
    TimingRequirement,
    UniversalMeasureSpec,
    ValueSetReference,
)
from ums.tree import validate_tree

from .chunker import LARGE_DOCUMENT_THRESHOLD, ChunkingOptions, DocumentChunk, chunk_document, is_large_document
from .llm_task_config import get_llm_task_config
from .merge import ChunkExtraction, dedupe_value_sets, merge_chunk_results
from .oid_validator import OIDValidationResult, validate_oid
from .prompts import (
    SKELETON_SYSTEM_PROMPT,
    VALIDATION_SYSTEM_PROMPT,
    build_population_detail_prompt,
    build_population_user_prompt,
    build_skeleton_prompt,
    build_validation_prompt,
    extraction_summary,
)
from .schema import CrossReferenceResult, MeasureSkeleton, PopulationExtractionResult, PopulationSkeleton

logger = logging.getLogger(__name__)

VALUE_SET_URL_BASE = "http://cts.nlm.nih.gov/fhir/ValueSet/"

OIDValidator = Callable[[str, Optional[str]], OIDValidationResult]


@dataclass
class ExtractionProgress:
    phase: str  # skeleton / populations / validation / complete
    current_step: int
    total_steps: int
    message: str
    details: Optional[str] = None


ProgressCallback = Callable[[ExtractionProgress], None]


@dataclass
class MultiPassOptions:
    skip_validation_pass: bool = False
    max_workers: int = 1
    model: Optional[str] = None
    on_progress: Optional[ProgressCallback] = None
    oid_validator: OIDValidator = validate_oid
    large_document_threshold: int = LARGE_DOCUMENT_THRESHOLD
    chunking: ChunkingOptions = field(default_factory=ChunkingOptions)


@dataclass
class ExtractionTimings:
    skeleton_ms: float = 0.0
    populations_ms: float = 0.0
    validation_ms: float = 0.0
    total_ms: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "skeletonMs": round(self.skeleton_ms, 1),
            "populationsMs": round(self.populations_ms, 1),
            "validationMs": round(self.validation_ms, 1),
            "totalMs": round(self.total_ms, 1),
        }


@dataclass
class ExtractionResult:
    success: bool
    ums: Optional[UniversalMeasureSpec] = None
    skeleton: Optional[MeasureSkeleton] = None
    population_results: List[PopulationExtractionResult] = field(default_factory=list)
    validation_result: Optional[CrossReferenceResult] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    timings: ExtractionTimings = field(default_factory=ExtractionTimings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "ums": self.ums.to_dict() if self.ums else None,
            "skeleton": self.skeleton.to_dict() if self.skeleton else None,
            "populationResults": [r.to_dict() for r in self.population_results],
            "validationResult": self.validation_result.to_dict() if self.validation_result else None,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "timings": self.timings.to_dict(),
        }


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


# ── Assembly ─────────────────────────────────────────────────────────

class IdFactory:
    """Sequential ids per prefix; deterministic for a given response."""

    def __init__(self, scope: str = ""):
        self.scope = scope
        self._counters: Dict[str, "itertools.count"] = {}

    def __call__(self, prefix: str) -> str:
        counter = self._counters.setdefault(prefix, itertools.count(1))
        scope = f"{self.scope}_" if self.scope else ""
        return f"{prefix}_{scope}{next(counter)}"


def normalize_value_set(raw: Dict[str, Any], ids: Optional[IdFactory] = None) -> ValueSetReference:
    ids = ids or IdFactory()
    oid = (raw.get("oid") or "").strip() or None
    return ValueSetReference(
        id=str(raw.get("id") or ids("vs")),
        name=str(raw.get("name") or ""),
        oid=oid,
        url=raw.get("url") or (f"{VALUE_SET_URL_BASE}{oid}" if oid else None),
        version=raw.get("version") or None,
        codes=tuple(CodeReference.from_dict(c) for c in raw.get("codes") or [] if isinstance(c, dict)),
        confidence=raw.get("confidence") or Confidence.MEDIUM,
    )


def build_data_element(raw: Dict[str, Any], ids: Optional[IdFactory] = None) -> DataElement:
    ids = ids or IdFactory()
    value_set = raw.get("valueSet")
    thresholds = raw.get("thresholds")
    return DataElement(
        id=str(raw.get("id") or ids("elem")),
        clinical_type=raw.get("type") or raw.get("clinicalType") or "observation",
        description=str(raw.get("description") or ""),
        value_set=normalize_value_set(value_set, ids) if isinstance(value_set, dict) else None,
        timing_requirements=tuple(
            TimingRequirement.from_dict(t) for t in raw.get("timingRequirements") or [] if isinstance(t, dict)
        ),
        negation=bool(raw.get("negation", False)),
        thresholds=Thresholds.from_dict(thresholds) if isinstance(thresholds, dict) else None,
        confidence=raw.get("confidence") or Confidence.MEDIUM,
    )


def _build_node(raw: Dict[str, Any], ids: IdFactory) -> Node:
    if "operator" in raw and isinstance(raw.get("children"), list):
        return build_logical_clause(raw, ids)
    return build_data_element(raw, ids)


def build_logical_clause(raw: Optional[Dict[str, Any]], ids: Optional[IdFactory] = None) -> LogicalClause:
    """Criteria tree from oracle JSON; a missing tree becomes an empty AND group."""
    ids = ids or IdFactory()
    if not isinstance(raw, dict):
        return LogicalClause(
            id=ids("clause"),
            operator=LogicalOperator.AND,
            description="Empty criteria",
            confidence=Confidence.LOW,
        )

    operator = raw.get("operator") or LogicalOperator.AND
    if isinstance(operator, str):
        operator = operator.strip().upper()
    return LogicalClause(
        id=str(raw.get("id") or ids("clause")),
        operator=operator,
        description=str(raw.get("description") or ""),
        children=tuple(_build_node(child, ids) for child in raw.get("children") or [] if isinstance(child, dict)),
        sibling_connections=tuple(
            SiblingConnection.from_dict(c) for c in raw.get("siblingConnections") or [] if isinstance(c, dict)
        ),
        confidence=raw.get("confidence") or Confidence.MEDIUM,
    )


def _confidence(value: str) -> Confidence:
    try:
        return Confidence(value.lower())
    except ValueError:
        return Confidence.MEDIUM


def assemble_ums(
    skeleton: MeasureSkeleton,
    population_results: List[PopulationExtractionResult],
    value_sets: List[ValueSetReference],
) -> UniversalMeasureSpec:
    """Final measure from the skeleton and the successful population results."""
    populations = [r.population for r in population_results if r.success and r.population is not None]
    period = skeleton.measurement_period or MeasurementPeriod()
    metadata = MeasureMetadata(
        measure_id=skeleton.measure_id,
        title=skeleton.title,
        version=skeleton.version or "1.0.0",
        steward=skeleton.steward or "Unknown",
        program=skeleton.program_type,
        measure_type=skeleton.measure_type,
        scoring=skeleton.scoring,
        description=skeleton.description,
        measurement_period=MeasurementPeriod(start=period.start, end=period.end),
    )
    return UniversalMeasureSpec(
        id=f"ums_{skeleton.measure_id or 'measure'}",
        metadata=metadata,
        populations=populations,
        value_sets=dedupe_value_sets(value_sets),
        global_constraints=skeleton.global_constraints,
        status="in_progress",
        overall_confidence=_confidence(skeleton.confidence),
        review_progress=ReviewProgress(total=len(populations), pending=len(populations)),
    )


# ── Passes ───────────────────────────────────────────────────────────

class _ExtractionRun:
    """State of one extraction: oracle, options, accumulated diagnostics."""

    def __init__(self, oracle: Oracle, options: MultiPassOptions):
        self.oracle = oracle
        self.options = options
        self.model = options.model or getattr(oracle, "model", None)
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.timings = ExtractionTimings()
        self.started = time.perf_counter()

    def log(self, phase: str, **context) -> PhaseLoggerAdapter:
        return PhaseLoggerAdapter(logger, {"phase": phase, "model": self.model or "", **context})

    def progress(self, phase: str, step: int, total: int, message: str, details: Optional[str] = None) -> None:
        callback = self.options.on_progress
        if callback is None:
            return
        try:
            callback(ExtractionProgress(phase, step, total, message, details))
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}")

    def complete(self, pass_name: str, system_prompt: str, user_prompt: str) -> str:
        task = get_llm_task_config(pass_name, self.model)
        usage_tracker.set_phase(pass_name)
        return self.oracle.complete(system_prompt, [{"role": "user", "content": user_prompt}], task.max_tokens)

    def finish(self, **kwargs) -> ExtractionResult:
        self.timings.total_ms = _elapsed_ms(self.started)
        if usage_tracker.call_count > 0:
            usage_tracker.log_summary()
        return ExtractionResult(
            success=not self.errors and kwargs.get("ums") is not None,
            errors=self.errors,
            warnings=self.warnings,
            timings=self.timings,
            **kwargs,
        )

    # Pass 1

    def skeleton(self, text: str) -> MeasureSkeleton:
        log = self.log("skeleton")
        start = time.perf_counter()
        try:
            response = self.complete("skeleton", SKELETON_SYSTEM_PROMPT, build_skeleton_prompt(text))
        finally:
            self.timings.skeleton_ms += _elapsed_ms(start)

        parsed = parse_json_response(response)
        if parsed is None:
            log.error("Skeleton response contained no JSON object")
            raise SkeletonExtractionError("No JSON found in skeleton response", phase="skeleton")

        skeleton = MeasureSkeleton.from_dict(parsed)
        log.info(f"Skeleton: {skeleton.measure_id or '(no id)'} with {len(skeleton.populations)} populations")
        return skeleton

    # Pass 2

    def population_detail(
        self, text: str, skeleton: MeasureSkeleton, population: PopulationSkeleton, scope: str = ""
    ) -> PopulationExtractionResult:
        population_type = population.population_type
        log = self.log("populations", population=population_type.value, chunk=scope)
        warnings: List[str] = []

        try:
            response = self.complete(
                "population_detail",
                build_population_detail_prompt(skeleton, population),
                build_population_user_prompt(text, population.type_name),
            )
        except PipelineError as e:
            log.error(f"Detail pass failed: {e}")
            return PopulationExtractionResult(population_type, success=False, errors=[str(e)])
        except Exception as e:
            log.error(f"Detail pass failed: {type(e).__name__}: {e}")
            return PopulationExtractionResult(population_type, success=False, errors=[f"{type(e).__name__}: {e}"])

        parsed = parse_json_response(response)
        if parsed is None:
            log.warning("Detail response contained no JSON object")
            return PopulationExtractionResult(population_type, success=False, errors=["No JSON found in response"])

        ids = IdFactory(scope)
        try:
            value_sets = [normalize_value_set(vs, ids) for vs in parsed.get("valueSets") or [] if isinstance(vs, dict)]
            criteria = build_logical_clause(parsed.get("criteria"), ids)
        except (TypeError, ValueError) as e:
            log.warning(f"Detail response has malformed criteria: {e}")
            return PopulationExtractionResult(
                population_type, success=False, errors=[f"Malformed criteria in response: {e}"],
            )

        validations = []
        for vs in value_sets:
            if not vs.oid:
                continue
            validation = self.options.oid_validator(vs.oid, vs.name)
            validations.append(validation)
            if not validation.valid:
                messages = ", ".join(e.message for e in validation.errors)
                warnings.append(f'OID validation failed for "{vs.name}": {messages}')

        definition = PopulationDefinition(
            id=f"pop_{population_type.value}",
            population_type=population_type,
            description=population.brief_description,
            narrative=str(parsed.get("narrative") or population.brief_description),
            criteria=criteria,
            confidence=criteria.confidence,
        )
        warnings.extend(str(w) for w in parsed.get("warnings") or [] if w)
        warnings.extend(
            f"{population.name}: {issue.message}"
            for issue in validate_tree(criteria).warnings if issue.code == "INVALID_SIBLING_CONNECTION"
        )

        log.info(f"Extracted {len(criteria.children)} criteria, {len(value_sets)} value sets")
        return PopulationExtractionResult(
            population_type=population_type,
            success=True,
            population=definition,
            value_sets=value_sets,
            oid_validations=validations,
            warnings=warnings,
        )

    def run_details(
        self, skeleton: MeasureSkeleton, tasks: List[Tuple[str, PopulationSkeleton, str]]
    ) -> List[PopulationExtractionResult]:
        """Detail passes in submission order, on a bounded pool when ``max_workers > 1``."""
        start = time.perf_counter()
        total = len(tasks)
        results: List[Optional[PopulationExtractionResult]] = [None] * total

        if self.options.max_workers > 1 and total > 1:
            with ThreadPoolExecutor(max_workers=min(self.options.max_workers, total)) as executor:
                futures = {
                    executor.submit(self.population_detail, text, skeleton, population, scope): index
                    for index, (text, population, scope) in enumerate(tasks)
                }
                for done, future in enumerate(as_completed(futures), start=1):
                    index = futures[future]
                    results[index] = future.result()
                    population = tasks[index][1]
                    self.progress("populations", done, total, f"Extracted {population.name}", population.brief_description)
        else:
            for index, (text, population, scope) in enumerate(tasks):
                self.progress("populations", index + 1, total, f"Extracting {population.name}...", population.brief_description)
                results[index] = self.population_detail(text, skeleton, population, scope)

        self.timings.populations_ms += _elapsed_ms(start)
        return results

    def record(self, results: List[PopulationExtractionResult]) -> None:
        for result in results:
            if not result.success:
                self.errors.append(f"Failed to extract {result.population_type.value}: {', '.join(result.errors)}")
            self.warnings.extend(result.warnings)

    # Pass 3

    def validation(
        self, text: str, skeleton: MeasureSkeleton, results: List[PopulationExtractionResult]
    ) -> Optional[CrossReferenceResult]:
        if self.options.skip_validation_pass:
            return None
        self.progress("validation", 1, 1, "Validating extraction completeness...")
        log = self.log("validation")
        start = time.perf_counter()

        summary = extraction_summary(skeleton.measure_id, [
            {
                "type": r.population_type.value,
                "criteriaCount": len(r.population.criteria.children) if r.population and r.population.criteria else 0,
                "criteria": [
                    child.description
                    for child in (r.population.criteria.children if r.population and r.population.criteria else ())
                ],
            }
            for r in results
        ])
        try:
            response = self.complete("validation", VALIDATION_SYSTEM_PROMPT, build_validation_prompt(text, summary))
        except PipelineError as e:
            log.warning(f"Validation pass failed: {e}")
            validation = CrossReferenceResult.unavailable(f"Validation error: {e}")
        except Exception as e:
            log.warning(f"Validation pass failed: {type(e).__name__}: {e}")
            validation = CrossReferenceResult.unavailable(f"Validation error: {type(e).__name__}: {e}")
        else:
            parsed = parse_json_response(response)
            validation = (
                CrossReferenceResult.from_dict(parsed) if parsed is not None
                else CrossReferenceResult.unavailable("Could not parse validation response")
            )
        self.timings.validation_ms += _elapsed_ms(start)

        if not validation.valid:
            self.warnings.append(f"Validation found potential issues: {'; '.join(validation.suggestions)}")
        for name in validation.missing_populations:
            self.warnings.append(f"Validation pass reports missing population: {name}")
        log.info(
            f"Validation: {len(validation.missing_criteria)} missing criteria, "
            f"{len(validation.possible_hallucinations)} possible hallucinations"
        )
        return validation


# ── Entry points ─────────────────────────────────────────────────────

def extract_with_multipass(
    document_text: str,
    oracle: Oracle,
    options: Optional[MultiPassOptions] = None,
) -> ExtractionResult:
    """
    Extract a measure from document text.

    Never raises for oracle or parse problems: the result carries
    ``errors``/``warnings`` and per-pass timings. ``success`` is False when
    the skeleton failed (no measure) or any population failed (partial
    measure).
    """
    options = options or MultiPassOptions()
    if is_large_document(document_text, options.large_document_threshold):
        return extract_with_chunking(document_text, oracle, options)

    run = _ExtractionRun(oracle, options)
    run.progress("skeleton", 1, 3, "Extracting measure structure...")
    try:
        skeleton = run.skeleton(document_text)
    except PipelineError as e:
        run.errors.append(f"Failed to extract measure skeleton: {e}")
        return run.finish()
    except Exception as e:
        logger.error(f"Skeleton pass failed: {type(e).__name__}: {e}")
        run.errors.append(f"Failed to extract measure skeleton: {type(e).__name__}: {e}")
        return run.finish()

    tasks = [(document_text, population, "") for population in skeleton.populations]
    results = run.run_details(skeleton, tasks)
    run.record(results)

    validation = run.validation(document_text, skeleton, results)

    run.progress("complete", 1, 1, "Assembling measure specification...")
    all_value_sets = [vs for r in results for vs in r.value_sets]
    ums = assemble_ums(skeleton, results, all_value_sets)
    return run.finish(ums=ums, skeleton=skeleton, population_results=results, validation_result=validation)


def _chunk_tasks(
    chunks: List[DocumentChunk], skeleton: MeasureSkeleton, warnings: List[str]
) -> List[Tuple[DocumentChunk, PopulationSkeleton]]:
    tasks = []
    for population in skeleton.populations:
        matching = [c for c in chunks if c.has_section(population.population_type)]
        if not matching:
            warnings.append(f"No section markers found for {population.name}; extracting from the first chunk")
            matching = chunks[:1]
        tasks.extend((chunk, population) for chunk in matching)
    # chunk order, then skeleton order within a chunk
    tasks.sort(key=lambda task: task[0].index)
    return tasks


def extract_with_chunking(
    document_text: str,
    oracle: Oracle,
    options: Optional[MultiPassOptions] = None,
) -> ExtractionResult:
    """Chunked variant of ``extract_with_multipass`` for large documents."""
    options = options or MultiPassOptions()
    run = _ExtractionRun(oracle, options)

    chunking = chunk_document(document_text, options.chunking)
    chunks = chunking.chunks
    run.warnings.append(f"Document chunked into {len(chunks)} parts for processing")

    run.progress("skeleton", 1, len(chunks), f"Processing chunk 1 of {len(chunks)}...",
                 f"Sections: {', '.join(t.value for t in chunks[0].section_types)}")
    try:
        skeleton = run.skeleton(chunks[0].content)
    except PipelineError as e:
        run.errors.append(f"Failed to extract measure skeleton from any chunk: {e}")
        return run.finish()
    except Exception as e:
        logger.error(f"Skeleton pass failed: {type(e).__name__}: {e}")
        run.errors.append(f"Failed to extract measure skeleton from any chunk: {type(e).__name__}: {e}")
        return run.finish()

    tasks = _chunk_tasks(chunks, skeleton, run.warnings)
    results = run.run_details(skeleton, [
        (chunk.content, population, f"c{chunk.index}") for chunk, population in tasks
    ])

    partials = [ChunkExtraction(chunk=chunk) for chunk in chunks]
    partials[0].skeleton = skeleton
    for (chunk, _), result in zip(tasks, results):
        partials[chunk.index].population_results.append(result)
        partials[chunk.index].value_sets.extend(result.value_sets)

    merged = merge_chunk_results(partials)
    run.record(merged.population_results)

    validation = run.validation(document_text, skeleton, merged.population_results)

    run.progress("complete", 1, 1, "Assembling measure specification...")
    ums = assemble_ums(skeleton, merged.population_results, merged.value_sets)
    return run.finish(
        ums=ums,
        skeleton=skeleton,
        population_results=merged.population_results,
        validation_result=validation,
    )
