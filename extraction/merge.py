"""
Merging of per-chunk extraction results.

Everything here groups by key first and then merges each group, so the
outcome does not depend on which chunk finished first:

- populations are grouped by type; a multi-chunk type keeps the union of
  top-level criteria (deduplicated on description, else id) and the
  longest narrative
- value sets are grouped by OID, else lower-cased trimmed name; codes are
  unioned on (code, system)
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Set

from ums.schema import (
    LogicalClause,
    LogicalOperator,
    Node,
    PopulationType,
    ValueSetReference,
    is_clause,
)

from .chunker import DocumentChunk
from .schema import MeasureSkeleton, PopulationExtractionResult

logger = logging.getLogger(__name__)


@dataclass
class ChunkExtraction:
    """Everything extracted from one chunk."""
    chunk: DocumentChunk
    skeleton: Optional[MeasureSkeleton] = None
    population_results: List[PopulationExtractionResult] = field(default_factory=list)
    value_sets: List[ValueSetReference] = field(default_factory=list)


@dataclass
class MergedExtraction:
    skeleton: Optional[MeasureSkeleton] = None
    population_results: List[PopulationExtractionResult] = field(default_factory=list)
    value_sets: List[ValueSetReference] = field(default_factory=list)


def _criterion_key(node: Node) -> str:
    return node.description or node.id


def _reassign_ids(node: Node, taken: Set[str]) -> Node:
    """Copy of ``node`` with every id already in ``taken`` replaced by a fresh one."""
    def fresh(node_id: str) -> str:
        suffix = 2
        candidate = f"{node_id}_{suffix}"
        while candidate in taken:
            suffix += 1
            candidate = f"{node_id}_{suffix}"
        return candidate

    new_id = fresh(node.id) if node.id in taken else node.id
    taken.add(new_id)
    if not is_clause(node):
        return replace(node, id=new_id) if new_id != node.id else node
    children = tuple(_reassign_ids(child, taken) for child in node.children)
    return replace(node, id=new_id, children=children)


def merge_population_results(results: List[PopulationExtractionResult]) -> PopulationExtractionResult:
    """Merge results for the same population type from several chunks."""
    errors = [e for r in results for e in r.errors]
    warnings = [w for r in results for w in r.warnings]
    successful = [r for r in results if r.success and r.population is not None]
    if not successful:
        return PopulationExtractionResult(
            population_type=results[0].population_type, success=False, errors=errors, warnings=warnings,
        )

    base = successful[0].population
    seen_keys: Set[str] = set()
    taken_ids: Set[str] = set()
    children: List[Node] = []
    for result in successful:
        criteria = result.population.criteria
        if criteria is None:
            continue
        for child in criteria.children:
            key = _criterion_key(child)
            if key in seen_keys:
                continue
            seen_keys.add(key)
            children.append(_reassign_ids(child, taken_ids))

    root = base.criteria or LogicalClause(id=f"{base.id}_criteria", operator=LogicalOperator.AND)
    if root.id in taken_ids:
        root = replace(root, id=f"{root.id}_root")
    # sibling overrides index into one chunk's child list and cannot survive a union
    criteria = replace(root, children=tuple(children), sibling_connections=())

    narrative = max((r.population.narrative for r in successful), key=len)
    population = replace(base, criteria=criteria, narrative=narrative)
    logger.debug(f"Merged {len(successful)} chunk results for {base.population_type.value}: {len(children)} criteria")

    return PopulationExtractionResult(
        population_type=base.population_type,
        success=True,
        population=population,
        value_sets=[vs for r in successful for vs in r.value_sets],
        oid_validations=[v for r in successful for v in r.oid_validations],
        errors=errors,
        warnings=warnings,
    )


def _group_value_sets(value_sets: Iterable[ValueSetReference]) -> Dict[str, List[ValueSetReference]]:
    groups: Dict[str, List[ValueSetReference]] = {}
    for vs in value_sets:
        groups.setdefault(vs.dedup_key, []).append(vs)
    return groups


def merge_value_sets(value_sets: Iterable[ValueSetReference]) -> List[ValueSetReference]:
    """One value set per key; codes unioned in first-seen order."""
    merged = []
    for group in _group_value_sets(value_sets).values():
        if len(group) == 1:
            merged.append(group[0])
            continue
        codes, seen = [], set()
        for vs in group:
            for code in vs.codes:
                if code.key not in seen:
                    seen.add(code.key)
                    codes.append(code)
        merged.append(replace(group[0], codes=tuple(codes)))
    return merged


def dedupe_value_sets(value_sets: Iterable[ValueSetReference]) -> List[ValueSetReference]:
    """First value set per key wins."""
    return [group[0] for group in _group_value_sets(value_sets).values()]


def merge_chunk_results(partials: List[ChunkExtraction]) -> MergedExtraction:
    """Combine chunk extractions; the skeleton comes from the first chunk that has one."""
    if not partials:
        return MergedExtraction()
    if len(partials) == 1:
        only = partials[0]
        return MergedExtraction(only.skeleton, list(only.population_results), list(only.value_sets))

    skeleton = next((p.skeleton for p in partials if p.skeleton is not None), None)

    by_type: Dict[PopulationType, List[PopulationExtractionResult]] = {}
    for partial in partials:
        for result in partial.population_results:
            by_type.setdefault(result.population_type, []).append(result)

    population_results = [
        group[0] if len(group) == 1 else merge_population_results(group)
        for group in by_type.values()
    ]
    value_sets = merge_value_sets(vs for partial in partials for vs in partial.value_sets)
    return MergedExtraction(skeleton, population_results, value_sets)
