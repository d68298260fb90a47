"""
Authoring complexity scorer.

Atomic:    base(1) + timing clauses + 2 if negated
Composite: sum of child scores
           + (children - 1) for AND groups with more than one child
           + 2 per level of composite nesting below the group

Levels: low (<= 3), medium (4-7), high (>= 8). Scores are derived on demand
and never stored on the nodes they describe.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .schema import (
    ComponentComplexity,
    DataElement,
    LogicalClause,
    LogicalOperator,
    Node,
    PopulationDefinition,
    UniversalMeasureSpec,
    is_clause,
)

LOW_MAX = 3
MEDIUM_MAX = 7


def complexity_level(score: int) -> str:
    if score <= LOW_MAX:
        return "low"
    if score <= MEDIUM_MAX:
        return "medium"
    return "high"


def count_timing_clauses(element: DataElement) -> int:
    """1 for plain timing; 2 when any requirement carries a window or an anchor."""
    for requirement in element.timing_requirements:
        if requirement.window is not None or requirement.relative_to:
            return 2
    return 1


def score_atomic(element: DataElement) -> ComponentComplexity:
    base = 1
    timing_clauses = count_timing_clauses(element)
    negation_score = 2 if element.negation else 0
    score = base + timing_clauses + negation_score

    return ComponentComplexity(
        score=score,
        level=complexity_level(score),
        factors={
            "base": base,
            "timingClauses": timing_clauses,
            "negations": 1 if element.negation else 0,
        },
    )


ChildResolver = Callable[[Node], Optional[ComponentComplexity]]


def score_composite(clause: LogicalClause, resolve_child: ChildResolver) -> ComponentComplexity:
    """
    Score a group from its children's scores.

    ``resolve_child`` returns a child's complexity, or None when the child
    cannot be resolved. An unresolved child adds nothing to the children sum
    but still counts toward the AND connectives.
    """
    children_sum = 0
    max_nesting = 0

    for child in clause.children:
        child_complexity = resolve_child(child)
        if child_complexity is None:
            continue
        children_sum += child_complexity.score
        if is_clause(child):
            max_nesting = max(max_nesting, child_complexity.factors.get("nestingDepth", 0) + 1)

    child_count = len(clause.children)
    and_operators = child_count - 1 if clause.operator == LogicalOperator.AND and child_count > 1 else 0
    score = children_sum + and_operators + 2 * max_nesting

    return ComponentComplexity(
        score=score,
        level=complexity_level(score),
        factors={
            "base": 0,
            "timingClauses": 0,
            "negations": 0,
            "childrenSum": children_sum,
            "andOperators": and_operators,
            "nestingDepth": max_nesting,
        },
    )


def score_node(node: Node) -> ComponentComplexity:
    if is_clause(node):
        return score_clause(node)
    return score_atomic(node)


def score_clause(clause: LogicalClause) -> ComponentComplexity:
    return score_composite(clause, score_node)


def score_population(population: PopulationDefinition) -> ComponentComplexity:
    if population.criteria is None or not population.criteria.children:
        return ComponentComplexity(score=0, level="low", factors={})
    return score_clause(population.criteria)


@dataclass
class MeasureComplexity:
    score: int
    level: str
    populations: Dict[str, ComponentComplexity] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "score": self.score,
            "level": self.level,
            "populations": {k: v.to_dict() for k, v in self.populations.items()},
        }


def score_measure(measure: UniversalMeasureSpec) -> MeasureComplexity:
    """Per-population scores keyed by population id, plus their sum."""
    populations: Dict[str, ComponentComplexity] = {}
    for population in measure.populations:
        populations[population.id or population.population_type.value] = score_population(population)
    total = sum(c.score for c in populations.values())
    return MeasureComplexity(score=total, level=complexity_level(total), populations=populations)

