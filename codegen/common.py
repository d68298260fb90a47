"""Input checks and helpers shared by the CQL and SQL generators."""

import logging
from typing import Dict, List, Optional

from core.errors import StructuralError
from ums.complexity import score_measure
from ums.schema import DataElement, PopulationDefinition, PopulationType, UniversalMeasureSpec, ValueSetReference

logger = logging.getLogger(__name__)


def require_generation_inputs(measure: UniversalMeasureSpec) -> None:
    """Raise StructuralError when the measure lacks an id or any population."""
    problems = []
    if not measure.metadata.measure_id:
        problems.append("Measure ID is required")
    if not measure.populations:
        problems.append("At least one population definition is required")
    if problems:
        raise StructuralError("; ".join(problems), problems=problems, phase="codegen")


def complexity_warnings(measure: UniversalMeasureSpec) -> List[str]:
    """One warning per population whose authoring complexity is high."""
    complexity = score_measure(measure)
    warnings = []
    for population in measure.populations:
        score = complexity.populations.get(population.id or population.population_type.value)
        if score is not None and score.level == "high":
            warnings.append(
                f'Population "{population.population_type.label}" has high authoring complexity '
                f'(score {score.score}); review the generated logic'
            )
    return warnings


def populations_by_type(
    measure: UniversalMeasureSpec, warnings: List[str]
) -> Dict[PopulationType, PopulationDefinition]:
    """First population of each type; later duplicates are reported and ignored."""
    found: Dict[PopulationType, PopulationDefinition] = {}
    for population in measure.populations:
        if population.population_type in found:
            warnings.append(f"Duplicate {population.population_type.label} population '{population.id}' ignored")
            continue
        found[population.population_type] = population
    return found


def resolve_value_set(element: DataElement, measure: Optional[UniversalMeasureSpec]) -> Optional[ValueSetReference]:
    if measure is None:
        return element.value_set
    return measure.find_value_set(element.value_set)


def element_label(element: DataElement) -> str:
    return element.description or f"{element.clinical_type.value} criterion"


def truncate(text: str, limit: int = 200) -> str:
    text = " ".join((text or "").split())
    return text[:limit] + ("..." if len(text) > limit else "")
