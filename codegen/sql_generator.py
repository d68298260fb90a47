"""
SQL (CTE chain) generation for the HealtheIntent data platform.

Query layout:

    ONT            terminology contexts
    DEMOG          demographics with concept names and age
    ALL_PATIENTS   anchor set used by negation
    IPSD, MED_COVERAGE          (index-event / adherence measures only)
    PRED_*         one predicate CTE per data element
    PRED_MED_* adherence rates  (auxiliary)
    INITIAL_POPULATION ... NUM_EXCLUSION
    MEASURE_RESULT and the final select

Population CTEs are set algebra over predicates: AND is ``intersect``,
OR is ``union``, NOT and negated leaves are ``except`` against
ALL_PATIENTS.

Usage:
    from codegen import generate_sql, SQLGenerationConfig

    result = generate_sql(measure, SQLGenerationConfig(population_id="ABC"))
"""

import itertools
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.errors import ConfigurationError, StructuralError
from ums.schema import (
    ClinicalType,
    DataElement,
    GlobalConstraints,
    MeasurementPeriod,
    PopulationDefinition,
    PopulationType,
    UniversalMeasureSpec,
    ValueSetReference,
)
from ums.tree import Connectives, collect_elements, tree_to_expression, walk_tree

from . import sql_templates as templates
from .classification import (
    LookbackStrategy,
    ResourceFamily,
    keyword_lookback,
    normalize_timing,
    resource_family,
)
from .common import (
    complexity_warnings,
    element_label,
    populations_by_type,
    require_generation_inputs,
    resolve_value_set,
)
from .overrides import CodeTarget, OverrideRegistry, format_notes, measure_overrides, override_header
from .schema_binding import DEFAULT_HDI_BINDING, SchemaBinding

logger = logging.getLogger(__name__)

DEFAULT_POPULATION_ID = "${POPULATION_ID}"
DEFAULT_INTAKE_START = "'${INTAKE_PERIOD_START}'"
DEFAULT_INTAKE_END = "'${INTAKE_PERIOD_END}'"

DEMOGRAPHICS_CONTEXT = "HEALTHE INTENT Demographics"

ONTOLOGY_CONTEXTS = {
    "encounter": "HEALTHE INTENT Encounters",
    "condition": "HEALTHE INTENT Conditions",
    "procedure": "HEALTHE INTENT Procedures",
    "result": "HEALTHE INTENT Results",
    "medication": "HEALTHE INTENT Medications",
    "immunization": "HEALTHE INTENT Immunizations",
}

GENDER_CONCEPTS = {
    "male": ("FHIR Male", "FHIR Male Gender Identity"),
    "female": ("FHIR Female", "FHIR Female Gender Identity"),
}

_GENDER_WORDS = (
    (re.compile(r"\b(female|women|woman|girls?)\b", re.IGNORECASE), "female"),
    (re.compile(r"\b(male|men|man|boys?)\b", re.IGNORECASE), "male"),
)

_OID_IN_URL = re.compile(r"(\d+(?:\.\d+)+)/?$")

# (population type, CTE alias, comment)
POPULATION_CTES = (
    (PopulationType.INITIAL_POPULATION, "INITIAL_POPULATION", "Initial Population: Patients meeting all baseline criteria"),
    (PopulationType.DENOMINATOR, "DENOMINATOR", "Denominator: Patients eligible for the measure"),
    (PopulationType.DENOMINATOR_EXCLUSION, "DENOM_EXCLUSION", "Denominator Exclusions: Patients to exclude from calculation"),
    (PopulationType.DENOMINATOR_EXCEPTION, "DENOM_EXCEPTION", "Denominator Exceptions: Patients with valid exceptions"),
    (PopulationType.NUMERATOR, "NUMERATOR", "Numerator: Patients meeting the measure criteria"),
    (PopulationType.NUMERATOR_EXCLUSION, "NUM_EXCLUSION", "Numerator Exclusions: Patients excluded from numerator"),
)

ALWAYS_EMITTED = (PopulationType.INITIAL_POPULATION, PopulationType.DENOMINATOR, PopulationType.NUMERATOR)

EMPTY_SET = "select empi_id from ALL_PATIENTS where 1 = 0"


def _negate(text: str) -> str:
    return f"(select empi_id from ALL_PATIENTS\n  except\n  ({text}))"


def _group(text: str) -> str:
    return f"({text})"


SQL_CONNECTIVES = Connectives(
    and_op="\n  intersect\n  ",
    or_op="\n  union\n  ",
    negate=_negate,
    group=_group,
    group_root=False,
    empty="",
)


# ── Configuration and results ────────────────────────────────────────

@dataclass
class AdherenceRate:
    """Cumulative days supply of at least ``required_days_supply`` within ``window_days`` of IPSD."""
    label: str
    window_days: int
    required_days_supply: int


@dataclass
class MedicationAdherenceConfig:
    value_set_oid: str
    rates: List[AdherenceRate] = field(default_factory=list)


@dataclass
class SQLGenerationConfig:
    population_id: str = DEFAULT_POPULATION_ID
    ontology_contexts: List[str] = field(default_factory=lambda: [DEMOGRAPHICS_CONTEXT])
    exclude_snapshots_and_archives: bool = True
    dialect: str = "snowflake"
    include_comments: bool = True
    measurement_period: Optional[MeasurementPeriod] = None
    intake_period: Optional[MeasurementPeriod] = None
    medication_adherence: Optional[MedicationAdherenceConfig] = None
    binding: SchemaBinding = field(default_factory=lambda: DEFAULT_HDI_BINDING)

    def __post_init__(self):
        dialect = (self.dialect or "snowflake").lower()
        if dialect == "standard":
            dialect = "postgres"
        if dialect not in templates.SUPPORTED_DIALECTS:
            raise ConfigurationError(
                f"Unsupported SQL dialect '{self.dialect}'. Expected one of {templates.SUPPORTED_DIALECTS}"
            )
        self.dialect = dialect


@dataclass
class SQLGenerationResult:
    success: bool
    sql: str = ""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "sql": self.sql,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "metadata": dict(self.metadata),
        }


@dataclass
class _Predicate:
    alias: str
    data_model: str
    cte: str


def value_set_oid(value_set: Optional[ValueSetReference]) -> Optional[str]:
    """OID of a value set, taken from its URL when only the URL is known."""
    if value_set is None:
        return None
    if value_set.oid:
        return value_set.oid
    if value_set.url:
        match = _OID_IN_URL.search(value_set.url)
        if match:
            return match.group(1)
    return None


def _quoted_date(value: str) -> str:
    return value if value.startswith("'") else templates.quote(value)


def _gender_filter(gender: Optional[str]) -> Optional[str]:
    concepts = GENDER_CONCEPTS.get((gender or "").lower())
    if not concepts:
        return None
    return f"gender_concept_name in ({templates.quote_list(concepts)})"


def _number(value) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else str(value)


def estimate_complexity(predicate_count: int, data_model_count: int) -> str:
    if predicate_count <= 3 and data_model_count <= 2:
        return "low"
    if predicate_count <= 8 and data_model_count <= 4:
        return "medium"
    return "high"


# ── Builder ──────────────────────────────────────────────────────────

class _SQLBuilder:
    """Accumulates predicate and auxiliary CTEs while populations are lowered."""

    def __init__(
        self,
        measure: Optional[UniversalMeasureSpec],
        config: SQLGenerationConfig,
        warnings: List[str],
        overrides: Optional[OverrideRegistry] = None,
        lookback_strategy: LookbackStrategy = keyword_lookback,
    ):
        self.measure = measure
        self.config = config
        self.binding = config.binding
        self.warnings = warnings
        self.overrides = overrides
        self.lookback_strategy = lookback_strategy
        self.predicates: List[_Predicate] = []
        self.auxiliary: List[_Predicate] = []
        self._by_element: Dict[str, str] = {}
        self._counter = itertools.count(1)
        self.ipsd_oid: Optional[str] = None
        self.uses_ipsd = False

    @property
    def dialect(self) -> str:
        return self.config.dialect

    @property
    def comments(self) -> bool:
        return self.config.include_comments

    def next_alias(self, prefix: str) -> str:
        return f"PRED_{prefix}_{next(self._counter)}"

    def measurement_period(self) -> Optional[MeasurementPeriod]:
        period = self.config.measurement_period
        if period is None and self.measure is not None:
            period = self.measure.metadata.measurement_period
        if period is not None and period.start and period.end:
            return period
        return None

    def data_models(self) -> List[str]:
        return sorted({p.data_model for p in self.predicates + self.auxiliary})

    # ── Predicates ──

    def global_predicate(self, constraints: Optional[GlobalConstraints]) -> Optional[str]:
        if constraints is None:
            return None
        conditions = []
        if constraints.age_min is not None:
            conditions.append(f"age_in_years >= {_number(constraints.age_min)}")
        if constraints.age_max is not None:
            conditions.append(f"age_in_years <= {_number(constraints.age_max)}")
        gender = _gender_filter(constraints.gender)
        if gender:
            conditions.append(gender)
        if not conditions:
            return None

        alias = self.next_alias("DEMOG")
        cte = templates.demographics_predicate_cte(alias, "Global age and gender constraints", conditions, False, self.comments)
        self.predicates.append(_Predicate(alias, "Demographics", cte))
        return alias

    def predicate_for(self, element: DataElement) -> str:
        if element.id in self._by_element:
            return self._by_element[element.id]

        family = resource_family(element.clinical_type)
        alias = self.next_alias(family.sql_prefix)
        override = self.overrides.get(element.id, CodeTarget.SQL) if self.overrides is not None else None
        if override is not None:
            cte = templates.override_cte(alias, format_notes(override), override.code)
        elif element.clinical_type == ClinicalType.DEMOGRAPHIC:
            cte = self._demographic_cte(element, alias)
        else:
            cte = self._clinical_cte(element, alias, family)

        self.predicates.append(_Predicate(alias, family.data_model, cte))
        self._by_element[element.id] = alias
        return alias

    def _index_event_available(self, element: DataElement) -> bool:
        if self.ipsd_oid:
            self.uses_ipsd = True
            return True
        self.warnings.append(
            f'Index-event timing for "{element_label(element)}" needs a medication value set OID; timing dropped'
        )
        return False

    def _demographic_cte(self, element: DataElement, alias: str) -> str:
        conditions = []
        index_join = False
        thresholds = element.thresholds
        if thresholds is not None and thresholds.has_age:
            timing = normalize_timing(element, self.lookback_strategy)
            if timing.source == "index_event" and self._index_event_available(element):
                index_join = True
                age = templates.age_expression(self.dialect, "D.birth_date", f"I.{templates.IPSD_COLUMN}")
            else:
                age = "age_in_years"
            if thresholds.age_min is not None:
                conditions.append(f"{age} >= {_number(thresholds.age_min)}")
            if thresholds.age_max is not None:
                conditions.append(f"{age} <= {_number(thresholds.age_max)}")

        for pattern, gender in _GENDER_WORDS:
            if pattern.search(element.description):
                conditions.append(_gender_filter(gender))
                break

        if not conditions:
            self.warnings.append(f'Demographic criterion "{element_label(element)}" has no age or gender constraint')
        return templates.demographics_predicate_cte(alias, element.description, conditions, index_join, self.comments)

    def _clinical_cte(self, element: DataElement, alias: str, family: ResourceFamily) -> str:
        table = self.binding.for_family(family.sql_family)
        label = element_label(element)
        conditions = [f"{table.alias}.population_id = {templates.quote(self.config.population_id)}"]

        code_ref = table.ref("code")
        value_set = resolve_value_set(element, self.measure)
        oid = value_set_oid(value_set)
        if oid:
            conditions.append(templates.valueset_exists(self.binding, oid, code_ref))
        elif value_set is not None and value_set.codes:
            conditions.append(f"{code_ref} in ({templates.quote_list(c.code for c in value_set.codes)})")
        else:
            self.warnings.append(f'No value set defined for "{label}"; predicate is not filtered by code')

        conditions.extend(self._threshold_conditions(element, table))

        index_join = False
        date_ref = table.ref("date")
        timing = normalize_timing(element, self.lookback_strategy)
        if timing.source == "index_event":
            if self._index_event_available(element):
                index_join = True
                anchor = f"I.{templates.IPSD_COLUMN}"
                event = timing.index_event
                if event.days_before is not None:
                    conditions.append(f"{date_ref} >= {templates.date_add(self.dialect, 'day', -event.days_before, anchor)}")
                if event.days_after is not None:
                    conditions.append(f"{date_ref} <= {templates.date_add(self.dialect, 'day', event.days_after, anchor)}")
                elif family.sql_family == "medication":
                    conditions.append(f"{date_ref} < {anchor}")
        elif timing.is_lookback:
            today = templates.current_date(self.dialect)
            if timing.lookback_years is not None:
                start = templates.date_add(self.dialect, "year", -timing.lookback_years, today)
            else:
                start = templates.date_add(self.dialect, "day", -timing.lookback_days, today)
            conditions.append(f"{date_ref} >= {start}")
        elif family.default_period_filter:
            period = self.measurement_period()
            if period is not None:
                conditions.append(f"{date_ref} >= {templates.quote(period.start[:10])}")
                conditions.append(f"{date_ref} <= {templates.quote(period.end[:10])}")

        return templates.clinical_predicate_cte(
            alias, table, family.data_model, element.description, conditions, index_join, self.comments,
        )

    @staticmethod
    def _threshold_conditions(element: DataElement, table) -> List[str]:
        thresholds = element.thresholds
        value_ref = table.ref("numeric_value")
        if thresholds is None or value_ref is None:
            return []
        conditions = []
        if thresholds.value_min is not None and thresholds.value_max is not None:
            conditions.append(f"{value_ref} between {_number(thresholds.value_min)} and {_number(thresholds.value_max)}")
        elif thresholds.value_min is not None:
            op = ">" if thresholds.comparator == ">" else ">="
            conditions.append(f"{value_ref} {op} {_number(thresholds.value_min)}")
        elif thresholds.value_max is not None:
            op = "<" if thresholds.comparator == "<" else "<="
            conditions.append(f"{value_ref} {op} {_number(thresholds.value_max)}")
        unit_ref = table.ref("unit")
        if thresholds.unit and unit_ref:
            conditions.append(f"{unit_ref} in ({templates.quote(thresholds.unit)})")
        return conditions

    # ── Population expressions ──

    def leaf(self, element: DataElement) -> str:
        select = f"select empi_id from {self.predicate_for(element)}"
        return _negate(select) if element.negation else select

    def criteria(self, population: Optional[PopulationDefinition]) -> Optional[str]:
        if population is None or not population.has_criteria:
            return None
        for entry in walk_tree(population.criteria):
            if entry.is_clause and entry.depth > 0 and not entry.node.children:
                self.warnings.append(
                    f"{population.population_type.label}: empty group at {entry.path} omitted from the generated SQL"
                )
        return tree_to_expression(population.criteria, self.leaf, SQL_CONNECTIVES) or None

    def adherence_predicates(self, adherence: MedicationAdherenceConfig) -> List[Tuple[AdherenceRate, str]]:
        rates = []
        for rate in adherence.rates:
            alias = self.next_alias("MED")
            cte = templates.cumulative_days_supply_cte(
                alias, rate.label, rate.window_days, rate.required_days_supply, self.dialect, self.comments,
            )
            self.auxiliary.append(_Predicate(alias, "Medication", cte))
            rates.append((rate, alias))
        return rates


def _intersect(parts: Sequence[str]) -> str:
    if len(parts) == 1:
        return parts[0]
    return SQL_CONNECTIVES.and_op.join(f"({p})" if "\n" in p else p for p in parts)


def _first_medication_oid(measure: UniversalMeasureSpec) -> Optional[str]:
    for population in measure.populations:
        if population.criteria is None:
            continue
        for element in collect_elements(population.criteria):
            if element.clinical_type == ClinicalType.MEDICATION:
                oid = value_set_oid(measure.find_value_set(element.value_set))
                if oid:
                    return oid
    return None


def element_to_sql(
    element: DataElement,
    measure: Optional[UniversalMeasureSpec] = None,
    warnings: Optional[List[str]] = None,
    config: Optional[SQLGenerationConfig] = None,
) -> str:
    """Predicate CTE for one data element, without override handling."""
    builder = _SQLBuilder(measure, config or SQLGenerationConfig(), warnings if warnings is not None else [])
    if measure is not None:
        builder.ipsd_oid = _first_medication_oid(measure)
    builder.predicate_for(element)
    return builder.predicates[-1].cte


# ── Entry point ──────────────────────────────────────────────────────

def generate_sql(
    measure: UniversalMeasureSpec,
    config: Optional[SQLGenerationConfig] = None,
    overrides: Optional[OverrideRegistry] = None,
    lookback_strategy: LookbackStrategy = keyword_lookback,
) -> SQLGenerationResult:
    """
    Generate the full CTE chain for a measure.

    Like ``generate_cql`` this never raises for content problems; a missing
    measure id or an empty population list gives ``success=False``.
    """
    try:
        require_generation_inputs(measure)
    except StructuralError as e:
        logger.error(f"SQL generation aborted: {e}")
        return SQLGenerationResult(success=False, errors=list(e.problems))

    config = config or SQLGenerationConfig()
    warnings: List[str] = []
    builder = _SQLBuilder(measure, config, warnings, overrides, lookback_strategy)
    adherence = config.medication_adherence
    builder.ipsd_oid = adherence.value_set_oid if adherence else _first_medication_oid(measure)

    try:
        populations = populations_by_type(measure, warnings)
        global_alias = builder.global_predicate(measure.global_constraints)
        expressions = {ptype: builder.criteria(populations.get(ptype)) for ptype, _, _ in POPULATION_CTES}
        rates = builder.adherence_predicates(adherence) if adherence else []
        population_ctes, result_rows = _population_ctes(populations, expressions, global_alias, rates, config, warnings)
    except Exception as e:
        logger.exception(f"SQL generation failed for {measure.metadata.measure_id}")
        return SQLGenerationResult(success=False, errors=[f"SQL generation failed: {e}"], warnings=warnings)

    if not builder.predicates:
        warnings.append("No clinical criteria found - generating demographics-only query")

    contexts = list(config.ontology_contexts)
    for predicate in builder.predicates:
        context = ONTOLOGY_CONTEXTS.get(predicate.data_model.lower())
        if context and context not in contexts:
            contexts.append(context)

    ctes = [
        templates.ontology_cte(config.binding, contexts, config.exclude_snapshots_and_archives, config.include_comments),
        templates.demographics_cte(config.binding, config.population_id, config.dialect, config.include_comments),
        templates.all_patients_cte(config.include_comments),
    ]
    if builder.uses_ipsd or adherence:
        intake = config.intake_period
        intake_start = _quoted_date(intake.start) if intake and intake.start else DEFAULT_INTAKE_START
        intake_end = _quoted_date(intake.end) if intake and intake.end else DEFAULT_INTAKE_END
        ctes.append(templates.ipsd_cte(
            config.binding, config.population_id, builder.ipsd_oid, intake_start, intake_end, config.include_comments,
        ))
    if adherence:
        ctes.append(templates.med_coverage_cte(
            config.binding, config.population_id, adherence.value_set_oid, config.dialect, config.include_comments,
        ))
    ctes.extend(p.cte for p in builder.predicates)
    ctes.extend(p.cte for p in builder.auxiliary)
    ctes.extend(population_ctes)
    ctes.append(templates.measure_result_cte(result_rows, config.include_comments))

    header = _header(measure, config, overrides)
    sql = templates.full_sql(header, ctes, "select * from MEASURE_RESULT")

    warnings.extend(complexity_warnings(measure))
    data_models = builder.data_models()
    predicate_count = len(builder.predicates) + len(builder.auxiliary)
    metadata = {
        "predicateCount": predicate_count,
        "dataModelsUsed": data_models,
        "estimatedComplexity": estimate_complexity(predicate_count, len(data_models)),
        "generatedAt": datetime.now(timezone.utc).isoformat(),
        "dialect": config.dialect,
        "populationId": config.population_id,
        "overrideCount": len(measure_overrides(measure, overrides, CodeTarget.SQL)),
    }
    logger.info(f"Generated SQL for {measure.metadata.measure_id}: {predicate_count} predicates, {len(warnings)} warnings")
    return SQLGenerationResult(success=True, sql=sql, warnings=warnings, metadata=metadata)


def _header(measure: UniversalMeasureSpec, config: SQLGenerationConfig, overrides: Optional[OverrideRegistry]) -> str:
    banner = override_header(measure, overrides, CodeTarget.SQL)
    if not config.include_comments:
        return banner
    rule = "-- " + "=" * 76
    lines = [
        rule,
        "-- Generated SQL for HDI Platform",
        f"-- Measure: {templates.comment_text(measure.metadata.measure_id)} {templates.comment_text(measure.metadata.title)}".rstrip(),
        f"-- Population ID: {config.population_id}",
        f"-- Dialect: {config.dialect}",
        f"-- Generated: {datetime.now(timezone.utc).isoformat()}",
        rule,
    ]
    return banner + "\n".join(lines) + "\n"


def _population_ctes(
    populations: Dict[PopulationType, PopulationDefinition],
    expressions: Dict[PopulationType, Optional[str]],
    global_alias: Optional[str],
    rates: List[Tuple[AdherenceRate, str]],
    config: SQLGenerationConfig,
    warnings: List[str],
) -> Tuple[List[str], List[Tuple[str, str]]]:
    ctes: List[str] = []
    rows: List[Tuple[str, str]] = []
    comments = config.include_comments

    for ptype, alias, comment in POPULATION_CTES:
        if ptype not in populations and ptype not in ALWAYS_EMITTED:
            continue
        expression = expressions.get(ptype)

        if ptype == PopulationType.INITIAL_POPULATION:
            parts = [f"select empi_id from {global_alias}"] if global_alias else []
            if expression:
                parts.append(expression)
            if ptype not in populations:
                warnings.append("No Initial Population defined; using all patients matching global constraints")
            body = _intersect(parts) if parts else "select distinct empi_id from ALL_PATIENTS"
        elif ptype == PopulationType.DENOMINATOR and not expression:
            body, comment = "select empi_id from INITIAL_POPULATION", "Denominator: Equals Initial Population"
        elif ptype == PopulationType.NUMERATOR:
            parts = [expression] if expression else []
            if rates:
                parts.append(f"select empi_id from {rates[0][1]}")
            if not parts:
                warnings.append("No numerator criteria defined in measure specification")
                body = "select distinct empi_id from ALL_PATIENTS"
            else:
                body = _intersect(parts)
        elif expression:
            body = expression
        else:
            warnings.append(f"{ptype.label} has no criteria; generated as an empty set")
            body = EMPTY_SET

        ctes.append(templates.population_cte(alias, body, comment, comments))
        rows.append((ptype.label, alias))

        if ptype == PopulationType.NUMERATOR:
            for index, (rate, rate_alias) in enumerate(rates[1:], start=2):
                rate_cte = f"NUMERATOR_RATE_{index}"
                parts = [expression] if expression else []
                parts.append(f"select empi_id from {rate_alias}")
                ctes.append(templates.population_cte(rate_cte, _intersect(parts), f"Numerator: {rate.label}", comments))
                rows.append((f"Numerator: {rate.label}", rate_cte))

    return ctes, rows


# ── Basic validation ─────────────────────────────────────────────────

@dataclass
class SQLValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


def _strip_literals(sql: str) -> Tuple[str, bool]:
    """SQL with comments and string literals removed; flag set when a quote is left open."""
    out = []
    i = 0
    in_quote = False
    while i < len(sql):
        char = sql[i]
        if in_quote:
            if char == "'":
                if sql[i + 1:i + 2] == "'":
                    i += 2
                    continue
                in_quote = False
            i += 1
            continue
        if char == "'":
            in_quote = True
        elif sql.startswith("--", i):
            end = sql.find("\n", i)
            i = len(sql) if end == -1 else end
            continue
        else:
            out.append(char)
        i += 1
    return "".join(out), in_quote


def validate_sql_basic(sql: str) -> SQLValidationResult:
    """Structural sanity checks on generated SQL; not a parser."""
    errors = []
    code, open_quote = _strip_literals(sql)

    opened, closed = code.count("("), code.count(")")
    if opened != closed:
        errors.append(f"Unbalanced parentheses: {opened} open, {closed} close")
    if open_quote:
        errors.append("Unclosed single quote detected")
    if not re.search(r"\bONT\s+as\s*\(", code, re.IGNORECASE):
        errors.append("Missing ONT (Ontology) CTE")
    if not re.search(r"\bDEMOG\s+as\s*\(", code, re.IGNORECASE):
        errors.append("Missing DEMOG (Demographics) CTE")
    if not re.search(r"\bselect\b", code, re.IGNORECASE):
        errors.append("No SELECT statement found")

    return SQLValidationResult(valid=not errors, errors=errors)
