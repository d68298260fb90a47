"""
Clinical-type classification and timing normalization shared by the CQL
and SQL generators.

Each ClinicalType maps to one resource family: the QI-Core resource and
status filter used in CQL, and the table family used by the SQL schema
binding. Timing is normalized once per element, in this order:

1. index-event anchors (e.g. "within 30 days prior to IPSD")
2. the keyword lookback table (first match wins)
3. the first structured timing window
4. a "N years/months/weeks/days" phrase in the timing description
5. the measurement period
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from ums.schema import ClinicalType, DataElement, TimingDirection, TimingUnit


# ── Resource families ────────────────────────────────────────────────

@dataclass(frozen=True)
class ResourceFamily:
    clinical_types: Tuple[ClinicalType, ...]
    cql_resource: Optional[str]
    cql_alias: str
    cql_filters: Tuple[str, ...]
    cql_timing_attribute: Optional[str]
    sql_family: str
    sql_prefix: str
    data_model: str
    # Conditions are active-status checks, not measurement period events
    default_period_filter: bool = True


RESOURCE_FAMILIES = (
    ResourceFamily(
        clinical_types=(ClinicalType.DIAGNOSIS,),
        cql_resource="Condition",
        cql_alias="C",
        cql_filters=('C.clinicalStatus ~ QICoreCommon."active"',),
        cql_timing_attribute="C.prevalenceInterval()",
        sql_family="condition",
        sql_prefix="COND",
        data_model="Condition",
        default_period_filter=False,
    ),
    ResourceFamily(
        clinical_types=(ClinicalType.ENCOUNTER,),
        cql_resource="Encounter",
        cql_alias="E",
        cql_filters=("E.status = 'finished'",),
        cql_timing_attribute="E.period",
        sql_family="encounter",
        sql_prefix="ENC",
        data_model="Encounter",
    ),
    ResourceFamily(
        clinical_types=(ClinicalType.PROCEDURE,),
        cql_resource="Procedure",
        cql_alias="P",
        cql_filters=("P.status = 'completed'",),
        cql_timing_attribute="P.performed.toInterval()",
        sql_family="procedure",
        sql_prefix="PROC",
        data_model="Procedure",
    ),
    ResourceFamily(
        clinical_types=(ClinicalType.OBSERVATION, ClinicalType.ASSESSMENT),
        cql_resource="Observation",
        cql_alias="O",
        cql_filters=("O.status in { 'final', 'amended', 'corrected' }", "O.value is not null"),
        cql_timing_attribute="O.effective.toInterval()",
        sql_family="result",
        sql_prefix="RESULT",
        data_model="Result",
    ),
    ResourceFamily(
        clinical_types=(ClinicalType.MEDICATION,),
        cql_resource="MedicationRequest",
        cql_alias="M",
        cql_filters=("M.status in { 'active', 'completed' }",),
        cql_timing_attribute="M.authoredOn",
        sql_family="medication",
        sql_prefix="MED",
        data_model="Medication",
    ),
    ResourceFamily(
        clinical_types=(ClinicalType.IMMUNIZATION,),
        cql_resource="Immunization",
        cql_alias="I",
        cql_filters=("I.status = 'completed'",),
        cql_timing_attribute="I.occurrence.toInterval()",
        sql_family="immunization",
        sql_prefix="IMMUN",
        data_model="Immunization",
    ),
    ResourceFamily(
        clinical_types=(ClinicalType.DEMOGRAPHIC,),
        cql_resource=None,
        cql_alias="",
        cql_filters=(),
        cql_timing_attribute=None,
        sql_family="demographics",
        sql_prefix="DEMOG",
        data_model="Demographics",
        default_period_filter=False,
    ),
)

_FAMILY_BY_TYPE = {t: family for family in RESOURCE_FAMILIES for t in family.clinical_types}


def resource_family(clinical_type: ClinicalType) -> ResourceFamily:
    return _FAMILY_BY_TYPE[clinical_type]


# ── Keyword lookback table ───────────────────────────────────────────

@dataclass(frozen=True)
class Lookback:
    value: int
    unit: TimingUnit


# Ordered: more specific keywords come first.
LOOKBACK_TABLE: Tuple[Tuple[str, Lookback], ...] = (
    ("colonoscopy", Lookback(10, TimingUnit.YEARS)),
    ("fobt", Lookback(1, TimingUnit.YEARS)),
    ("fecal occult", Lookback(1, TimingUnit.YEARS)),
    ("fecal immunochemical", Lookback(1, TimingUnit.YEARS)),
    ("fit-dna", Lookback(3, TimingUnit.YEARS)),
    ("fit dna", Lookback(3, TimingUnit.YEARS)),
    ("cologuard", Lookback(3, TimingUnit.YEARS)),
    ("stool dna", Lookback(3, TimingUnit.YEARS)),
    ("fit", Lookback(1, TimingUnit.YEARS)),
    ("sigmoidoscopy", Lookback(5, TimingUnit.YEARS)),
    ("ct colonography", Lookback(5, TimingUnit.YEARS)),
    ("mammogra", Lookback(2, TimingUnit.YEARS)),
    ("pap", Lookback(3, TimingUnit.YEARS)),
    ("papanicolaou", Lookback(3, TimingUnit.YEARS)),
    ("cervical cytology", Lookback(3, TimingUnit.YEARS)),
    ("hpv", Lookback(5, TimingUnit.YEARS)),
)

# Short abbreviations only match as whole words ("fit" but not "fitness").
WHOLE_WORD_KEYWORDS = frozenset({"fit", "pap", "hpv"})

_KEYWORD_PATTERNS = tuple(
    (
        re.compile(r"\b" + re.escape(keyword) + (r"\b" if keyword in WHOLE_WORD_KEYWORDS else ""), re.IGNORECASE),
        lookback,
    )
    for keyword, lookback in LOOKBACK_TABLE
)

LookbackStrategy = Callable[[DataElement], Optional[Lookback]]


def detect_lookback(text: str) -> Optional[Lookback]:
    """First keyword of the lookback table found in ``text``."""
    if not text:
        return None
    for pattern, lookback in _KEYWORD_PATTERNS:
        if pattern.search(text):
            return lookback
    return None


def keyword_lookback(element: DataElement) -> Optional[Lookback]:
    """Default strategy: match the element description, then its value set name."""
    lookback = detect_lookback(element.description)
    if lookback is None and element.value_set is not None:
        lookback = detect_lookback(element.value_set.name)
    return lookback


# ── Timing normalization ─────────────────────────────────────────────

_INDEX_PATTERN = re.compile(r"\b(ipsd|index\s*(prescription|event|date)|prior\s+to\s+ipsd|of\s+ipsd)\b", re.IGNORECASE)
_DAYS_PATTERN = re.compile(r"(\d+)\s*days?", re.IGNORECASE)
_BEFORE_PATTERN = re.compile(r"\b(prior|before)\b", re.IGNORECASE)
_AFTER_PATTERN = re.compile(r"\b(after|following)\b", re.IGNORECASE)
_PERIOD_PATTERN = re.compile(r"(\d+)\s*(year|month|week|day)s?\b", re.IGNORECASE)

_UNIT_WORDS = {
    "year": TimingUnit.YEARS,
    "month": TimingUnit.MONTHS,
    "week": TimingUnit.WEEKS,
    "day": TimingUnit.DAYS,
}

_DAYS_PER_UNIT = {TimingUnit.DAYS: 1, TimingUnit.WEEKS: 7, TimingUnit.MONTHS: 30}


@dataclass(frozen=True)
class IndexEventTiming:
    """Window around the index prescription start date, in days."""
    days_before: Optional[int] = None
    days_after: Optional[int] = None


@dataclass(frozen=True)
class NormalizedTiming:
    source: str  # index_event / keyword / window / description / measurement_period
    value: Optional[int] = None
    unit: Optional[TimingUnit] = None
    direction: TimingDirection = TimingDirection.BEFORE
    index_event: Optional[IndexEventTiming] = None

    @property
    def is_lookback(self) -> bool:
        return self.value is not None and self.unit is not None

    @property
    def lookback_years(self) -> Optional[int]:
        if self.is_lookback and self.unit == TimingUnit.YEARS:
            return self.value
        return None

    @property
    def lookback_days(self) -> Optional[int]:
        if self.is_lookback and self.unit != TimingUnit.YEARS:
            return self.value * _DAYS_PER_UNIT[self.unit]
        return None


MEASUREMENT_PERIOD = NormalizedTiming(source="measurement_period")


def _as_int(value) -> int:
    return int(round(float(value)))


def _index_event(text: str) -> Optional[IndexEventTiming]:
    if not _INDEX_PATTERN.search(text):
        return None
    days_match = _DAYS_PATTERN.search(text)
    days = int(days_match.group(1)) if days_match else 0
    before = bool(_BEFORE_PATTERN.search(text))
    after = bool(_AFTER_PATTERN.search(text))
    if not before and not after:
        return IndexEventTiming(days_before=days, days_after=days)
    return IndexEventTiming(days_before=days if before else None, days_after=days if after else None)


def normalize_timing(element: DataElement, lookback_strategy: LookbackStrategy = keyword_lookback) -> NormalizedTiming:
    """Resolve an element's timing requirements to one normalized window."""
    for requirement in element.timing_requirements:
        index_event = _index_event(" ".join(filter(None, [requirement.description, requirement.relative_to])))
        if index_event is not None:
            return NormalizedTiming(source="index_event", index_event=index_event)

    lookback = lookback_strategy(element)
    if lookback is not None:
        return NormalizedTiming(source="keyword", value=lookback.value, unit=lookback.unit)

    for requirement in element.timing_requirements:
        window = requirement.window
        if window is not None and window.value:
            return NormalizedTiming(
                source="window",
                value=_as_int(window.value),
                unit=window.unit,
                direction=window.direction,
            )

    for requirement in element.timing_requirements:
        match = _PERIOD_PATTERN.search(requirement.description)
        if match:
            direction = TimingDirection.AFTER if _AFTER_PATTERN.search(requirement.description) else TimingDirection.BEFORE
            return NormalizedTiming(
                source="description",
                value=int(match.group(1)),
                unit=_UNIT_WORDS[match.group(2).lower()],
                direction=direction,
            )

    return MEASUREMENT_PERIOD
