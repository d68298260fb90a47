"""
Intermediate results of multi-pass extraction.

The skeleton and population results are what the orchestrator hands to
merge and assembly; the final product is a ``ums.UniversalMeasureSpec``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ums.schema import (
    GlobalConstraints,
    MeasurementPeriod,
    PopulationDefinition,
    PopulationType,
    ValueSetReference,
)

from .oid_validator import OIDValidationResult


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class PopulationSkeleton:
    population_type: PopulationType
    name: str
    brief_description: str = ""
    spec_section: Optional[str] = None
    estimated_criteria_count: int = 0

    @property
    def type_name(self) -> str:
        """Kebab-case type, as prompts and the oracle use it."""
        return self.population_type.value.replace("_", "-")

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "type": self.type_name,
            "name": self.name,
            "briefDescription": self.brief_description,
            "estimatedCriteriaCount": self.estimated_criteria_count,
        }
        if self.spec_section:
            result["specSection"] = self.spec_section
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["PopulationSkeleton"]:
        population_type = PopulationType.parse(data.get("type"))
        if population_type is None:
            return None
        return cls(
            population_type=population_type,
            name=str(data.get("name") or population_type.label),
            brief_description=str(data.get("briefDescription") or ""),
            spec_section=data.get("specSection") or None,
            estimated_criteria_count=_int(data.get("estimatedCriteriaCount")),
        )


@dataclass
class MeasureSkeleton:
    """Pass 1 output: measure metadata and the populations present."""
    measure_id: str
    title: str = ""
    version: Optional[str] = None
    program_type: str = ""
    measure_type: str = "process"
    scoring: str = "proportion"
    steward: str = ""
    description: str = ""
    measurement_period: Optional[MeasurementPeriod] = None
    global_constraints: Optional[GlobalConstraints] = None
    populations: List[PopulationSkeleton] = field(default_factory=list)
    confidence: str = "medium"

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "measureId": self.measure_id,
            "title": self.title,
            "programType": self.program_type,
            "measureType": self.measure_type,
            "scoring": self.scoring,
            "steward": self.steward,
            "description": self.description,
            "populations": [p.to_dict() for p in self.populations],
            "confidence": self.confidence,
        }
        if self.version:
            result["version"] = self.version
        if self.measurement_period:
            result["measurementPeriod"] = self.measurement_period.to_dict()
        if self.global_constraints:
            result["globalConstraints"] = self.global_constraints.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MeasureSkeleton":
        period = data.get("measurementPeriod")
        constraints = data.get("globalConstraints")
        populations = [
            p for p in (
                PopulationSkeleton.from_dict(raw) for raw in data.get("populations") or [] if isinstance(raw, dict)
            )
            if p is not None
        ]
        return cls(
            measure_id=str(data.get("measureId") or ""),
            title=str(data.get("title") or ""),
            version=data.get("version") or None,
            program_type=str(data.get("programType") or ""),
            measure_type=str(data.get("measureType") or "process"),
            scoring=str(data.get("scoring") or "proportion"),
            steward=str(data.get("steward") or ""),
            description=str(data.get("description") or ""),
            measurement_period=(
                MeasurementPeriod(start=period.get("start"), end=period.get("end"))
                if isinstance(period, dict) else None
            ),
            global_constraints=GlobalConstraints.from_dict(constraints) if isinstance(constraints, dict) else None,
            populations=populations,
            confidence=str(data.get("confidence") or "medium"),
        )


@dataclass
class PopulationExtractionResult:
    population_type: PopulationType
    success: bool
    population: Optional[PopulationDefinition] = None
    value_sets: List[ValueSetReference] = field(default_factory=list)
    oid_validations: List[OIDValidationResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "populationType": self.population_type.value,
            "success": self.success,
            "population": self.population.to_dict() if self.population else None,
            "valueSets": [vs.to_dict() for vs in self.value_sets],
            "oidValidations": [v.to_dict() for v in self.oid_validations],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass
class MissingCriterion:
    spec_text: str
    population_type: str = ""
    confidence: str = "medium"


@dataclass
class PossibleHallucination:
    criterion_description: str
    population_type: str = ""
    reason: str = ""


@dataclass
class CrossReferenceResult:
    """Pass 3 output. Never fatal; surfaces as warnings."""
    valid: bool = True
    missing_populations: List[str] = field(default_factory=list)
    missing_criteria: List[MissingCriterion] = field(default_factory=list)
    possible_hallucinations: List[PossibleHallucination] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "missingPopulations": list(self.missing_populations),
            "missingCriteria": [
                {"specText": m.spec_text, "populationType": m.population_type, "confidence": m.confidence}
                for m in self.missing_criteria
            ],
            "possibleHallucinations": [
                {"criterionDescription": h.criterion_description, "populationType": h.population_type, "reason": h.reason}
                for h in self.possible_hallucinations
            ],
            "suggestions": list(self.suggestions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CrossReferenceResult":
        return cls(
            valid=bool(data.get("valid", True)),
            missing_populations=[str(p) for p in data.get("missingPopulations") or []],
            missing_criteria=[
                MissingCriterion(
                    spec_text=str(m.get("specText") or ""),
                    population_type=str(m.get("populationType") or ""),
                    confidence=str(m.get("confidence") or "medium"),
                )
                for m in data.get("missingCriteria") or [] if isinstance(m, dict)
            ],
            possible_hallucinations=[
                PossibleHallucination(
                    criterion_description=str(h.get("criterionDescription") or ""),
                    population_type=str(h.get("populationType") or ""),
                    reason=str(h.get("reason") or ""),
                )
                for h in data.get("possibleHallucinations") or [] if isinstance(h, dict)
            ],
            suggestions=[str(s) for s in data.get("suggestions") or []],
        )

    @classmethod
    def unavailable(cls, reason: str) -> "CrossReferenceResult":
        return cls(valid=True, suggestions=[reason])
