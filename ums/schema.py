"""
Universal Measure Specification (UMS) data model.

The criteria tree is a tagged union of two node kinds:

- ``DataElement``: a leaf criterion (clinical type, value set, timing)
- ``LogicalClause``: an AND / OR / NOT group of child nodes

There is no shared base class; tree functions dispatch on ``is_clause``.
Tree nodes are frozen and hold their children in tuples, so every edit
builds new nodes and earlier snapshots stay valid.

Serialization uses camelCase keys (``to_dict`` / ``from_dict``).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class Confidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReviewStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    FLAGGED = "flagged"


class PopulationType(Enum):
    INITIAL_POPULATION = "initial_population"
    DENOMINATOR = "denominator"
    DENOMINATOR_EXCLUSION = "denominator_exclusion"
    DENOMINATOR_EXCEPTION = "denominator_exception"
    NUMERATOR = "numerator"
    NUMERATOR_EXCLUSION = "numerator_exclusion"

    @classmethod
    def parse(cls, value: Any) -> Optional["PopulationType"]:
        """Accept enum members, snake_case and FHIR kebab-case names."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower().replace('-', '_').replace(' ', '_')
        try:
            return cls(normalized)
        except ValueError:
            return None

    @property
    def label(self) -> str:
        return POPULATION_LABELS[self]


POPULATION_LABELS = {
    PopulationType.INITIAL_POPULATION: "Initial Population",
    PopulationType.DENOMINATOR: "Denominator",
    PopulationType.DENOMINATOR_EXCLUSION: "Denominator Exclusion",
    PopulationType.DENOMINATOR_EXCEPTION: "Denominator Exception",
    PopulationType.NUMERATOR: "Numerator",
    PopulationType.NUMERATOR_EXCLUSION: "Numerator Exclusion",
}


class ClinicalType(Enum):
    DEMOGRAPHIC = "demographic"
    ENCOUNTER = "encounter"
    DIAGNOSIS = "diagnosis"
    PROCEDURE = "procedure"
    OBSERVATION = "observation"
    MEDICATION = "medication"
    IMMUNIZATION = "immunization"
    ASSESSMENT = "assessment"


class LogicalOperator(Enum):
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class TimingUnit(Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"


class TimingDirection(Enum):
    BEFORE = "before"
    AFTER = "after"
    WITHIN = "within"


def _enum(enum_cls, value, default=None):
    """Coerce a raw value to ``enum_cls``; unknown values give ``default``."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        for candidate in (value, value.lower(), value.upper()):
            try:
                return enum_cls(candidate)
            except ValueError:
                continue
    return default


def _value(member) -> Any:
    return member.value if isinstance(member, Enum) else member


# ── Value sets ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class CodeReference:
    code: str
    system: str = ""
    display: str = ""

    @property
    def key(self) -> Tuple[str, str]:
        return (self.code, self.system)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "system": self.system, "display": self.display}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CodeReference":
        return cls(
            code=str(data.get("code", "")),
            system=str(data.get("system", "") or ""),
            display=str(data.get("display", "") or ""),
        )


@dataclass(frozen=True)
class ValueSetReference:
    """A named, optionally OID-identified collection of clinical codes."""
    id: str
    name: str
    oid: Optional[str] = None
    url: Optional[str] = None
    version: Optional[str] = None
    codes: Tuple[CodeReference, ...] = ()
    confidence: Confidence = Confidence.MEDIUM

    def __post_init__(self):
        object.__setattr__(self, "codes", tuple(self.codes))
        object.__setattr__(self, "confidence", _enum(Confidence, self.confidence, Confidence.MEDIUM))

    @property
    def dedup_key(self) -> str:
        """``oid`` when present, else the lower-cased trimmed name."""
        return self.oid or self.name.lower().strip()

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "name": self.name,
            "codes": [c.to_dict() for c in self.codes],
            "confidence": self.confidence.value,
        }
        if self.oid:
            result["oid"] = self.oid
        if self.url:
            result["url"] = self.url
        if self.version:
            result["version"] = self.version
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValueSetReference":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "") or ""),
            oid=data.get("oid") or None,
            url=data.get("url") or None,
            version=data.get("version") or None,
            codes=tuple(CodeReference.from_dict(c) for c in data.get("codes") or [] if isinstance(c, dict)),
            confidence=_enum(Confidence, data.get("confidence"), Confidence.MEDIUM),
        )


# ── Timing / thresholds ──────────────────────────────────────────────

@dataclass(frozen=True)
class TimingWindow:
    value: float
    unit: TimingUnit
    direction: TimingDirection

    def __post_init__(self):
        object.__setattr__(self, "unit", _enum(TimingUnit, self.unit, TimingUnit.DAYS))
        object.__setattr__(self, "direction", _enum(TimingDirection, self.direction, TimingDirection.WITHIN))

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "unit": self.unit.value, "direction": self.direction.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["TimingWindow"]:
        try:
            value = float(data.get("value"))
        except (TypeError, ValueError):
            return None
        if value.is_integer():
            value = int(value)
        return cls(value=value, unit=data.get("unit"), direction=data.get("direction"))


@dataclass(frozen=True)
class TimingRequirement:
    description: str = ""
    relative_to: Optional[str] = None
    window: Optional[TimingWindow] = None
    confidence: Confidence = Confidence.MEDIUM

    def __post_init__(self):
        object.__setattr__(self, "confidence", _enum(Confidence, self.confidence, Confidence.MEDIUM))

    def to_dict(self) -> Dict[str, Any]:
        result = {"description": self.description, "confidence": self.confidence.value}
        if self.relative_to:
            result["relativeTo"] = self.relative_to
        if self.window:
            result["window"] = self.window.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimingRequirement":
        window = data.get("window")
        return cls(
            description=str(data.get("description", "") or ""),
            relative_to=data.get("relativeTo") or None,
            window=TimingWindow.from_dict(window) if isinstance(window, dict) else None,
            confidence=_enum(Confidence, data.get("confidence"), Confidence.MEDIUM),
        )


@dataclass(frozen=True)
class Thresholds:
    age_min: Optional[float] = None
    age_max: Optional[float] = None
    value_min: Optional[float] = None
    value_max: Optional[float] = None
    unit: Optional[str] = None
    comparator: Optional[str] = None

    _KEYS = (
        ("age_min", "ageMin"), ("age_max", "ageMax"),
        ("value_min", "valueMin"), ("value_max", "valueMax"),
        ("unit", "unit"), ("comparator", "comparator"),
    )

    @property
    def has_age(self) -> bool:
        return self.age_min is not None or self.age_max is not None

    def to_dict(self) -> Dict[str, Any]:
        return {camel: getattr(self, attr) for attr, camel in self._KEYS if getattr(self, attr) is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Thresholds":
        return cls(**{attr: data.get(camel) for attr, camel in cls._KEYS})


# ── Tree nodes ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class DataElement:
    """Leaf criterion. Identity is ``id``; replaced wholesale on edit."""
    id: str
    clinical_type: ClinicalType
    description: str = ""
    value_set: Optional[ValueSetReference] = None
    timing_requirements: Tuple[TimingRequirement, ...] = ()
    negation: bool = False
    thresholds: Optional[Thresholds] = None
    confidence: Confidence = Confidence.MEDIUM
    review_status: ReviewStatus = ReviewStatus.PENDING

    def __post_init__(self):
        object.__setattr__(self, "clinical_type", _enum(ClinicalType, self.clinical_type, ClinicalType.OBSERVATION))
        object.__setattr__(self, "timing_requirements", tuple(self.timing_requirements))
        object.__setattr__(self, "confidence", _enum(Confidence, self.confidence, Confidence.MEDIUM))
        object.__setattr__(self, "review_status", _enum(ReviewStatus, self.review_status, ReviewStatus.PENDING))

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "type": self.clinical_type.value,
            "description": self.description,
            "timingRequirements": [t.to_dict() for t in self.timing_requirements],
            "negation": self.negation,
            "confidence": self.confidence.value,
            "reviewStatus": self.review_status.value,
        }
        if self.value_set:
            result["valueSet"] = self.value_set.to_dict()
        if self.thresholds:
            result["thresholds"] = self.thresholds.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataElement":
        value_set = data.get("valueSet")
        thresholds = data.get("thresholds")
        return cls(
            id=str(data.get("id", "")),
            clinical_type=data.get("type") or data.get("clinicalType"),
            description=str(data.get("description", "") or ""),
            value_set=ValueSetReference.from_dict(value_set) if isinstance(value_set, dict) else None,
            timing_requirements=tuple(
                TimingRequirement.from_dict(t) for t in data.get("timingRequirements") or [] if isinstance(t, dict)
            ),
            negation=bool(data.get("negation", False)),
            thresholds=Thresholds.from_dict(thresholds) if isinstance(thresholds, dict) else None,
            confidence=data.get("confidence"),
            review_status=data.get("reviewStatus"),
        )


@dataclass(frozen=True)
class SiblingConnection:
    """Overrides the connective between two adjacent children of a clause."""
    from_index: int
    to_index: int
    operator: LogicalOperator

    def __post_init__(self):
        object.__setattr__(self, "operator", _enum(LogicalOperator, self.operator, self.operator))

    def to_dict(self) -> Dict[str, Any]:
        return {"fromIndex": self.from_index, "toIndex": self.to_index, "operator": _value(self.operator)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SiblingConnection":
        return cls(
            from_index=int(data.get("fromIndex", 0)),
            to_index=int(data.get("toIndex", 0)),
            operator=data.get("operator"),
        )


@dataclass(frozen=True)
class LogicalClause:
    """
    Internal node combining children with a default operator.

    ``operator`` keeps an unrecognized raw value as-is so that validation
    can report it instead of the constructor rejecting it.
    """
    id: str
    operator: LogicalOperator
    children: Tuple["Node", ...] = ()
    description: str = ""
    sibling_connections: Tuple[SiblingConnection, ...] = ()
    confidence: Confidence = Confidence.MEDIUM
    review_status: ReviewStatus = ReviewStatus.PENDING

    def __post_init__(self):
        object.__setattr__(self, "operator", _enum(LogicalOperator, self.operator, self.operator))
        object.__setattr__(self, "children", tuple(self.children))
        object.__setattr__(self, "sibling_connections", tuple(self.sibling_connections))
        object.__setattr__(self, "confidence", _enum(Confidence, self.confidence, Confidence.MEDIUM))
        object.__setattr__(self, "review_status", _enum(ReviewStatus, self.review_status, ReviewStatus.PENDING))

    def connection_between(self, from_index: int, to_index: int) -> Optional[SiblingConnection]:
        for conn in self.sibling_connections:
            if {conn.from_index, conn.to_index} == {from_index, to_index}:
                return conn
        return None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "operator": _value(self.operator),
            "description": self.description,
            "children": [child.to_dict() for child in self.children],
            "confidence": self.confidence.value,
            "reviewStatus": self.review_status.value,
        }
        if self.sibling_connections:
            result["siblingConnections"] = [c.to_dict() for c in self.sibling_connections]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogicalClause":
        return cls(
            id=str(data.get("id", "")),
            operator=data.get("operator") or LogicalOperator.AND,
            children=tuple(node_from_dict(c) for c in data.get("children") or [] if isinstance(c, dict)),
            description=str(data.get("description", "") or ""),
            sibling_connections=tuple(
                SiblingConnection.from_dict(c) for c in data.get("siblingConnections") or [] if isinstance(c, dict)
            ),
            confidence=data.get("confidence"),
            review_status=data.get("reviewStatus"),
        )


Node = Union[DataElement, LogicalClause]


def is_clause(node: Any) -> bool:
    return isinstance(node, LogicalClause)


def node_from_dict(data: Dict[str, Any]) -> Node:
    """Dispatch on the tag: ``operator`` + ``children`` means a clause."""
    if "operator" in data and "children" in data:
        return LogicalClause.from_dict(data)
    return DataElement.from_dict(data)


# ── Populations and measure ──────────────────────────────────────────

@dataclass(frozen=True)
class PopulationDefinition:
    id: str
    population_type: PopulationType
    narrative: str = ""
    criteria: Optional[LogicalClause] = None
    description: str = ""
    confidence: Confidence = Confidence.MEDIUM
    review_status: ReviewStatus = ReviewStatus.PENDING

    def __post_init__(self):
        object.__setattr__(self, "confidence", _enum(Confidence, self.confidence, Confidence.MEDIUM))
        object.__setattr__(self, "review_status", _enum(ReviewStatus, self.review_status, ReviewStatus.PENDING))

    @property
    def has_criteria(self) -> bool:
        return self.criteria is not None and len(self.criteria.children) > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.population_type.value,
            "description": self.description,
            "narrative": self.narrative,
            "criteria": self.criteria.to_dict() if self.criteria else None,
            "confidence": self.confidence.value,
            "reviewStatus": self.review_status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PopulationDefinition":
        criteria = data.get("criteria")
        pop_type = PopulationType.parse(data.get("type") or data.get("populationType"))
        if pop_type is None:
            raise ValueError(f"Unknown population type: {data.get('type')!r}")
        return cls(
            id=str(data.get("id", "")),
            population_type=pop_type,
            narrative=str(data.get("narrative", "") or ""),
            criteria=LogicalClause.from_dict(criteria) if isinstance(criteria, dict) else None,
            description=str(data.get("description", "") or ""),
            confidence=data.get("confidence"),
            review_status=data.get("reviewStatus"),
        )


@dataclass
class MeasurementPeriod:
    start: Optional[str] = None
    end: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end}


@dataclass
class MeasureMetadata:
    measure_id: str
    title: str = ""
    version: str = "1.0.0"
    steward: str = ""
    program: str = ""
    measure_type: str = "process"
    scoring: str = "proportion"
    description: str = ""
    measurement_period: MeasurementPeriod = field(default_factory=MeasurementPeriod)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "measureId": self.measure_id,
            "title": self.title,
            "version": self.version,
            "steward": self.steward,
            "program": self.program,
            "measureType": self.measure_type,
            "scoring": self.scoring,
            "description": self.description,
            "measurementPeriod": self.measurement_period.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MeasureMetadata":
        period = data.get("measurementPeriod") or {}
        return cls(
            measure_id=str(data.get("measureId", "") or ""),
            title=str(data.get("title", "") or ""),
            version=str(data.get("version") or "1.0.0"),
            steward=str(data.get("steward", "") or ""),
            program=str(data.get("program", "") or ""),
            measure_type=str(data.get("measureType") or "process"),
            scoring=str(data.get("scoring") or "proportion"),
            description=str(data.get("description", "") or ""),
            measurement_period=MeasurementPeriod(start=period.get("start"), end=period.get("end")),
        )


@dataclass
class GlobalConstraints:
    age_min: Optional[int] = None
    age_max: Optional[int] = None
    gender: Optional[str] = None  # male / female / all

    @property
    def has_age_range(self) -> bool:
        return self.age_min is not None or self.age_max is not None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.has_age_range:
            result["ageRange"] = {"min": self.age_min, "max": self.age_max}
        if self.gender:
            result["gender"] = self.gender
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlobalConstraints":
        age_range = data.get("ageRange") or {}
        return cls(age_min=age_range.get("min"), age_max=age_range.get("max"), gender=data.get("gender"))


@dataclass
class ReviewProgress:
    total: int = 0
    approved: int = 0
    pending: int = 0
    flagged: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"total": self.total, "approved": self.approved, "pending": self.pending, "flagged": self.flagged}


@dataclass
class UniversalMeasureSpec:
    """Aggregate root: owns all populations and value sets."""
    id: str
    metadata: MeasureMetadata
    populations: List[PopulationDefinition] = field(default_factory=list)
    value_sets: List[ValueSetReference] = field(default_factory=list)
    global_constraints: Optional[GlobalConstraints] = None
    status: str = "in_progress"
    overall_confidence: Confidence = Confidence.MEDIUM
    review_progress: ReviewProgress = field(default_factory=ReviewProgress)

    def find_population(self, population_type: PopulationType) -> Optional[PopulationDefinition]:
        for population in self.populations:
            if population.population_type == population_type:
                return population
        return None

    def find_value_set(self, reference: Optional[ValueSetReference]) -> Optional[ValueSetReference]:
        """Resolve an element's value set reference against the measure's catalog."""
        if reference is None:
            return None
        for vs in self.value_sets:
            if (reference.id and vs.id == reference.id) or vs.dedup_key == reference.dedup_key:
                return vs
        return reference

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "metadata": self.metadata.to_dict(),
            "populations": [p.to_dict() for p in self.populations],
            "valueSets": [vs.to_dict() for vs in self.value_sets],
            "status": self.status,
            "overallConfidence": _value(self.overall_confidence),
            "reviewProgress": self.review_progress.to_dict(),
        }
        if self.global_constraints:
            result["globalConstraints"] = self.global_constraints.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UniversalMeasureSpec":
        progress = data.get("reviewProgress") or {}
        constraints = data.get("globalConstraints")
        return cls(
            id=str(data.get("id", "")),
            metadata=MeasureMetadata.from_dict(data.get("metadata") or {}),
            populations=[PopulationDefinition.from_dict(p) for p in data.get("populations") or []],
            value_sets=[ValueSetReference.from_dict(v) for v in data.get("valueSets") or []],
            global_constraints=GlobalConstraints.from_dict(constraints) if isinstance(constraints, dict) else None,
            status=str(data.get("status") or "in_progress"),
            overall_confidence=_enum(Confidence, data.get("overallConfidence"), Confidence.MEDIUM),
            review_progress=ReviewProgress(
                total=progress.get("total", 0),
                approved=progress.get("approved", 0),
                pending=progress.get("pending", 0),
                flagged=progress.get("flagged", 0),
            ),
        )


@dataclass(frozen=True)
class ComponentComplexity:
    """Derived authoring complexity of one node; never stored apart from it."""
    score: int
    level: str
    factors: Dict[str, int] = field(default_factory=dict, hash=False, compare=True)

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "level": self.level, "factors": dict(self.factors)}


__all__ = [
    "Confidence", "ReviewStatus", "PopulationType", "POPULATION_LABELS", "ClinicalType",
    "LogicalOperator", "TimingUnit", "TimingDirection",
    "CodeReference", "ValueSetReference", "TimingWindow", "TimingRequirement", "Thresholds",
    "DataElement", "SiblingConnection", "LogicalClause", "Node", "is_clause", "node_from_dict",
    "PopulationDefinition", "MeasurementPeriod", "MeasureMetadata", "GlobalConstraints",
    "ReviewProgress", "UniversalMeasureSpec", "ComponentComplexity",
]
