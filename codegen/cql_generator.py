"""
CQL library generation from a UniversalMeasureSpec.

Produces a FHIR R4 / QI-Core CQL library:

    header comment
    library / using / include / codesystem declarations
    value sets
    parameters, context
    helper definitions (demographics, encounters, hospice, measure family)
    population definitions
    supplemental data elements

Criteria trees are lowered leaf by leaf; each data element becomes an
``exists`` over a QI-Core retrieve filtered by status and timing. Locked
manual overrides replace the generated code of their element verbatim.

Usage:
    from codegen import generate_cql

    result = generate_cql(measure)
    if result.success:
        print(result.cql)
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from core.errors import StructuralError
from ums.schema import (
    ClinicalType,
    DataElement,
    PopulationDefinition,
    PopulationType,
    TimingDirection,
    TimingUnit,
    UniversalMeasureSpec,
    ValueSetReference,
)
from ums.tree import Connectives, collect_elements, tree_to_expression

from .classification import (
    LookbackStrategy,
    NormalizedTiming,
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
    truncate,
)
from .cql_families import MEASURE_FAMILIES, MeasureFamily, detect_families
from .overrides import CodeTarget, OverrideRegistry, apply_override, measure_overrides, override_header

logger = logging.getLogger(__name__)

FHIR_VERSION = "4.0.1"

INCLUDES = (
    ("FHIRHelpers", "4.0.1", "FHIRHelpers"),
    ("QICoreCommon", "2.0.0", "QICoreCommon"),
    ("MATGlobalCommonFunctions", "7.0.000", "Global"),
    ("SupplementalDataElements", "3.4.000", "SDE"),
    ("Hospice", "6.9.000", "Hospice"),
)

CODE_SYSTEMS = (
    ("LOINC", "http://loinc.org"),
    ("SNOMEDCT", "http://snomed.info/sct"),
    ("ICD10CM", "http://hl7.org/fhir/sid/icd-10-cm"),
    ("CPT", "http://www.ama-assn.org/go/cpt"),
    ("HCPCS", "https://www.cms.gov/Medicare/Coding/HCPCSReleaseCodeSets"),
    ("RxNorm", "http://www.nlm.nih.gov/research/umls/rxnorm"),
    ("CVX", "http://hl7.org/fhir/sid/cvx"),
)

VSAC_BASE_URL = "http://cts.nlm.nih.gov/fhir/ValueSet/"
MISSING_OID = "OID_NOT_SPECIFIED"

DEFAULT_PERIOD_START = "2025-01-01"
DEFAULT_PERIOD_END = "2025-12-31"

SUPPLEMENTAL_DATA_ELEMENTS = ("SDE Ethnicity", "SDE Payer", "SDE Race", "SDE Sex")

AGE_AT_END = 'AgeInYearsAt(date from end of "Measurement Period")'

_GENDER_WORDS = re.compile(r"\b(male|female|men|women|gender|sex)\b", re.IGNORECASE)


def _negate(text: str) -> str:
    return f"not ({text})"


def _group(text: str) -> str:
    return f"({text})"


CQL_CONNECTIVES = Connectives(
    and_op="\n    and ",
    or_op="\n    or ",
    negate=_negate,
    group=_group,
    group_root=False,
    empty="true",
)


@dataclass
class CQLGenerationResult:
    success: bool
    cql: str = ""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "cql": self.cql,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "metadata": dict(self.metadata),
        }


def library_name(measure_id: str) -> str:
    """CQL library identifier: alphanumerics only, never starting with a digit."""
    name = re.sub(r"[^A-Za-z0-9]", "", measure_id or "")
    if name and name[0].isdigit():
        name = f"_{name}"
    return name or "Measure"


def sanitize_identifier(name: str) -> str:
    return (name or "").replace('"', '\\"').strip()


def _comment_safe(text: str) -> str:
    return (text or "").replace("*/", "* /")


def _number(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else str(value)


def _quantity(value: int, unit: TimingUnit) -> str:
    word = unit.value
    if value == 1:
        word = word[:-1]
    return f"{value} {word}"


@dataclass
class _Context:
    measure: Optional[UniversalMeasureSpec]
    warnings: List[str]
    overrides: Optional[OverrideRegistry] = None
    lookback_strategy: LookbackStrategy = keyword_lookback
    has_age_helper: bool = False
    has_gender_helper: bool = False


def _context_for(measure: Optional[UniversalMeasureSpec], warnings: List[str], **kwargs) -> _Context:
    constraints = measure.global_constraints if measure is not None else None
    return _Context(
        measure=measure,
        warnings=warnings,
        has_age_helper=bool(constraints and constraints.has_age_range),
        has_gender_helper=bool(constraints and constraints.gender and constraints.gender.lower() != "all"),
        **kwargs,
    )


# ── Element lowering ─────────────────────────────────────────────────

def _timing_clause(family: ResourceFamily, timing: NormalizedTiming) -> Optional[str]:
    attribute = family.cql_timing_attribute
    if attribute is None:
        return None
    if timing.is_lookback:
        amount = _quantity(timing.value, timing.unit)
        if timing.direction == TimingDirection.AFTER:
            return f'{attribute} starts {amount} or less after start of "Measurement Period"'
        return f'{attribute} ends {amount} or less before end of "Measurement Period"'
    if family.default_period_filter or timing.source == "index_event":
        return f'{attribute} during "Measurement Period"'
    return None


def _threshold_conditions(element: DataElement, alias: str) -> List[str]:
    thresholds = element.thresholds
    if thresholds is None or element.clinical_type not in (ClinicalType.OBSERVATION, ClinicalType.ASSESSMENT):
        return []
    unit = f" '{thresholds.unit}'" if thresholds.unit else ""
    conditions = []
    if thresholds.value_min is not None:
        conditions.append(f"({alias}.value as Quantity) >= {_number(thresholds.value_min)}{unit}")
    if thresholds.value_max is not None:
        conditions.append(f"({alias}.value as Quantity) <= {_number(thresholds.value_max)}{unit}")
    return conditions


def _demographic_expression(element: DataElement, ctx: _Context) -> str:
    thresholds = element.thresholds
    if thresholds is not None and thresholds.has_age:
        low = _number(thresholds.age_min) if thresholds.age_min is not None else "0"
        high = _number(thresholds.age_max) if thresholds.age_max is not None else "999"
        expression = f"{AGE_AT_END} in Interval[{low}, {high}]"
    elif ctx.has_gender_helper and _GENDER_WORDS.search(element.description):
        expression = '"Patient Gender Valid"'
    elif ctx.has_age_helper:
        expression = '"Patient Age Valid"'
    else:
        label = element_label(element)
        ctx.warnings.append(f'Demographic criterion "{label}" has no age thresholds')
        return f'/* WARNING: Demographic criterion "{_comment_safe(label)}" has no age thresholds */\n  true'
    return f"not ({expression})" if element.negation else expression


def _lower_element(element: DataElement, ctx: _Context) -> str:
    if ctx.overrides is not None:
        override = ctx.overrides.get(element.id, CodeTarget.CQL)
        if override is not None:
            return apply_override(override)

    if element.clinical_type == ClinicalType.DEMOGRAPHIC:
        return _demographic_expression(element, ctx)

    label = element_label(element)
    value_set = resolve_value_set(element, ctx.measure)
    if value_set is None:
        ctx.warnings.append(f'No value set defined for "{label}"')
        return f'/* WARNING: No value set defined for "{_comment_safe(label)}" */\n  true'

    family = resource_family(element.clinical_type)
    alias = family.cql_alias
    timing = normalize_timing(element, ctx.lookback_strategy)
    if timing.source == "index_event":
        ctx.warnings.append(f'Index-event timing for "{label}" approximated by the measurement period in CQL')

    conditions = list(family.cql_filters)
    conditions.extend(_threshold_conditions(element, alias))
    clause = _timing_clause(family, timing)
    if clause:
        conditions.append(clause)

    retrieve = f'[{family.cql_resource}: "{sanitize_identifier(_value_set_name(value_set))}"] {alias}'
    where = "\n        and ".join(conditions)
    expression = f"exists ({retrieve}\n      where {where})"
    return f"not {expression}" if element.negation else expression


def element_to_cql(
    element: DataElement,
    measure: Optional[UniversalMeasureSpec] = None,
    warnings: Optional[List[str]] = None,
    lookback_strategy: LookbackStrategy = keyword_lookback,
) -> str:
    """CQL expression for one data element, without override handling."""
    ctx = _context_for(measure, warnings if warnings is not None else [], lookback_strategy=lookback_strategy)
    return _lower_element(element, ctx)


def criteria_to_cql(population: Optional[PopulationDefinition], ctx: _Context) -> str:
    if population is None or not population.has_criteria:
        return "true"
    return tree_to_expression(population.criteria, lambda e: _lower_element(e, ctx), CQL_CONNECTIVES)


# ── Library sections ─────────────────────────────────────────────────

def _value_set_name(value_set: ValueSetReference) -> str:
    return value_set.name or value_set.oid or value_set.id


def _header(measure: UniversalMeasureSpec, name: str, version: str) -> str:
    md = measure.metadata
    lines = [
        "/*",
        f" * Library: {name}",
        f" * Title: {_comment_safe(md.title) or name}",
        f" * Measure ID: {_comment_safe(md.measure_id)}",
        f" * Version: {version}",
        f" * Steward: {_comment_safe(md.steward) or 'Not specified'}",
        f" * Type: {md.measure_type or 'process'}",
        f" * Scoring: {md.scoring or 'proportion'}",
        " *",
        f" * Description: {truncate(_comment_safe(md.description), 500) or 'No description provided'}",
        " *",
        f" * Generated: {datetime.now().isoformat()}",
        " */",
        "",
    ]
    return "\n".join(lines)


def _declarations(name: str, version: str) -> str:
    lines = [f"library {name} version '{version}'", "", f"using FHIR version '{FHIR_VERSION}'", ""]
    for library, library_version, alias in INCLUDES:
        lines.append(f"include {library} version '{library_version}' called {alias}")
    lines.append("")
    lines.append("// Code Systems")
    for system, url in CODE_SYSTEMS:
        lines.append(f"codesystem \"{system}\": '{url}'")
    lines.append("")
    return "\n".join(lines)


def declared_value_sets(measure: UniversalMeasureSpec) -> List[ValueSetReference]:
    """Catalog value sets plus any referenced only from criteria, deduplicated."""
    found: List[ValueSetReference] = []
    seen = set()

    def add(value_set: Optional[ValueSetReference]) -> None:
        if value_set is None:
            return
        keys = {value_set.dedup_key, _value_set_name(value_set).lower()}
        if keys & seen:
            return
        seen.update(keys)
        found.append(value_set)

    for value_set in measure.value_sets:
        add(value_set)
    for population in measure.populations:
        if population.criteria is not None:
            for element in collect_elements(population.criteria):
                add(measure.find_value_set(element.value_set))
    return found


def _value_sets_section(
    value_sets: Sequence[ValueSetReference],
    placeholders: Sequence[str],
    warnings: List[str],
) -> str:
    if not value_sets and not placeholders:
        return "// No value sets defined\n"

    lines = ["// Value Sets"]
    for value_set in value_sets:
        name = sanitize_identifier(_value_set_name(value_set))
        if value_set.url:
            url = value_set.url
        elif value_set.oid:
            url = f"{VSAC_BASE_URL}{value_set.oid}"
        else:
            url = MISSING_OID
            warnings.append(f'Value set "{name}" has no OID or URL specified')

        line = f"valueset \"{name}\": '{url}'"
        if value_set.version:
            line += f" version '{value_set.version}'"
        lines.append(line)
        if not value_set.codes:
            lines.append(f'  /* WARNING: Value set "{name}" has no codes defined - may need expansion */')
            warnings.append(f'Value set "{name}" has no codes defined')

    for name in placeholders:
        lines.append(f"valueset \"{sanitize_identifier(name)}\": '{MISSING_OID}'")
    lines.append("")
    return "\n".join(lines)


def _parameters(measure: UniversalMeasureSpec) -> str:
    period = measure.metadata.measurement_period
    start = (period.start or DEFAULT_PERIOD_START)[:10]
    end = (period.end or DEFAULT_PERIOD_END)[:10]
    return "\n".join([
        "// Parameters",
        'parameter "Measurement Period" Interval<DateTime>',
        f"  default Interval[@{start}T00:00:00.0, @{end}T23:59:59.999]",
        "",
        "context Patient",
        "",
    ])


def _encounter_value_set_names(measure: UniversalMeasureSpec) -> List[str]:
    names: List[str] = []
    for population in measure.populations:
        if population.criteria is None:
            continue
        for element in collect_elements(population.criteria):
            if element.clinical_type != ClinicalType.ENCOUNTER:
                continue
            value_set = measure.find_value_set(element.value_set)
            if value_set is not None:
                name = sanitize_identifier(_value_set_name(value_set))
                if name not in names:
                    names.append(name)
    return names


def _helpers(measure: UniversalMeasureSpec, ctx: _Context, families: Sequence[MeasureFamily]) -> str:
    lines = ["// Helper Definitions"]
    constraints = measure.global_constraints

    if ctx.has_age_helper:
        low = constraints.age_min if constraints.age_min is not None else 0
        high = constraints.age_max if constraints.age_max is not None else 999
        lines.append(f'''
define "Age at End of Measurement Period":
  {AGE_AT_END}

define "Patient Age Valid":
  "Age at End of Measurement Period" in Interval[{low}, {high}]''')

    if ctx.has_gender_helper:
        gender = constraints.gender.lower()
        lines.append(f"\ndefine \"Patient Gender Valid\":\n  Patient.gender = '{gender}'")

    encounter_names = _encounter_value_set_names(measure)
    if encounter_names:
        retrieves = "\n    union ".join(f'[Encounter: "{name}"]' for name in encounter_names)
        lines.append(f'''
define "Qualifying Encounter During Measurement Period":
  ( {retrieves}
  ) Encounter
    where Encounter.status = 'finished'
      and Encounter.period during "Measurement Period"''')

    lines.append('''
define "Has Hospice Services":
  Hospice."Has Hospice Services"''')

    for family in families:
        lines.append(family.helpers)

    lines.append("")
    return "\n".join(lines)


def _define(name: str, expression: str, comment: Optional[str] = None) -> str:
    block = f"\n/*\n * {name}\n * {_comment_safe(comment)}\n */" if comment else ""
    return f"{block}\ndefine \"{name}\":\n  {expression}"


def _population_definitions(
    measure: UniversalMeasureSpec,
    ctx: _Context,
    families: Sequence[MeasureFamily],
) -> str:
    populations = populations_by_type(measure, ctx.warnings)
    lines = ["// Population Definitions"]

    # Initial Population: global constraints and extracted criteria
    initial = populations.get(PopulationType.INITIAL_POPULATION)
    items = []
    if ctx.has_age_helper:
        items.append('"Patient Age Valid"')
    if ctx.has_gender_helper:
        items.append('"Patient Gender Valid"')
    if initial is not None and initial.has_criteria:
        expression = criteria_to_cql(initial, ctx)
        items.append(f"({expression})" if items else expression)
    if initial is None:
        ctx.warnings.append('No Initial Population defined; "Initial Population" is generated from global constraints only')
    lines.append(_define(
        "Initial Population",
        "\n    and ".join(items) or "true",
        truncate(initial.narrative) if initial is not None and initial.narrative else None,
    ))

    denominator = populations.get(PopulationType.DENOMINATOR)
    if denominator is not None and denominator.has_criteria:
        lines.append(_define("Denominator", criteria_to_cql(denominator, ctx), truncate(denominator.narrative) or None))
    else:
        lines.append(_define("Denominator", '"Initial Population"', "Equals Initial Population"))

    exclusion = populations.get(PopulationType.DENOMINATOR_EXCLUSION)
    exclusion_items = ['"Has Hospice Services"']
    for family in families:
        exclusion_items.extend(family.exclusions)
    if exclusion is not None and exclusion.has_criteria:
        custom = criteria_to_cql(exclusion, ctx)
        if custom not in ("true", "false"):
            exclusion_items.append(f"({custom})")
    lines.append(_define(
        "Denominator Exclusion",
        "\n    or ".join(exclusion_items),
        truncate(exclusion.narrative) if exclusion is not None and exclusion.narrative else "Patients meeting exclusion criteria",
    ))

    exception = populations.get(PopulationType.DENOMINATOR_EXCEPTION)
    if exception is not None:
        lines.append(_define("Denominator Exception", criteria_to_cql(exception, ctx), truncate(exception.narrative) or None))

    numerator = populations.get(PopulationType.NUMERATOR)
    if families:
        numerator_expression = families[0].numerator.lstrip()
    elif numerator is not None and numerator.has_criteria:
        numerator_expression = criteria_to_cql(numerator, ctx)
    else:
        ctx.warnings.append("No numerator criteria defined in measure specification")
        numerator_expression = "/* WARNING: No numerator criteria defined in measure specification */\n  true"
    lines.append(_define(
        "Numerator",
        numerator_expression,
        truncate(numerator.narrative) if numerator is not None and numerator.narrative else "Patients meeting numerator criteria",
    ))

    numerator_exclusion = populations.get(PopulationType.NUMERATOR_EXCLUSION)
    if numerator_exclusion is not None:
        lines.append(_define(
            "Numerator Exclusion",
            criteria_to_cql(numerator_exclusion, ctx),
            truncate(numerator_exclusion.narrative) or None,
        ))

    lines.append("")
    return "\n".join(lines)


def _supplemental_data() -> str:
    lines = ["// Supplemental Data Elements"]
    for name in SUPPLEMENTAL_DATA_ELEMENTS:
        lines.append(f'\ndefine "{name}":\n  SDE."{name}"')
    lines.append("")
    return "\n".join(lines)


# ── Entry point ──────────────────────────────────────────────────────

def generate_cql(
    measure: UniversalMeasureSpec,
    overrides: Optional[OverrideRegistry] = None,
    families: Sequence[MeasureFamily] = MEASURE_FAMILIES,
    lookback_strategy: LookbackStrategy = keyword_lookback,
) -> CQLGenerationResult:
    """
    Generate a complete CQL library.

    Never raises for content problems: a missing measure id or an empty
    population list gives ``success=False`` and no text; every degraded
    element is reported in ``warnings``.
    """
    try:
        require_generation_inputs(measure)
    except StructuralError as e:
        logger.error(f"CQL generation aborted: {e}")
        return CQLGenerationResult(success=False, errors=list(e.problems))

    warnings: List[str] = []
    name = library_name(measure.metadata.measure_id)
    version = measure.metadata.version or "1.0.0"
    ctx = _context_for(measure, warnings, overrides=overrides, lookback_strategy=lookback_strategy)
    matched = detect_families(measure.metadata, tuple(families))
    if matched:
        logger.info(f"Measure {measure.metadata.measure_id} matches families: {[f.name for f in matched]}")

    value_sets = declared_value_sets(measure)
    declared_names = {_value_set_name(vs).lower() for vs in value_sets}
    placeholders: List[str] = []
    for family in matched:
        for vs_name in family.value_sets:
            if vs_name.lower() not in declared_names and vs_name not in placeholders:
                placeholders.append(vs_name)
    if placeholders:
        warnings.append(
            f"Measure-family helpers reference value sets missing from the measure: {', '.join(placeholders)}"
        )

    try:
        sections = [
            override_header(measure, overrides, CodeTarget.CQL),
            _header(measure, name, version),
            _declarations(name, version),
            _value_sets_section(value_sets, placeholders, warnings),
            _parameters(measure),
            _helpers(measure, ctx, matched),
            _population_definitions(measure, ctx, matched),
            _supplemental_data(),
        ]
    except Exception as e:
        logger.exception(f"CQL generation failed for {measure.metadata.measure_id}")
        return CQLGenerationResult(success=False, errors=[f"CQL generation failed: {e}"], warnings=warnings)

    warnings.extend(complexity_warnings(measure))
    cql = "\n".join(s for s in sections if s)
    applied = measure_overrides(measure, overrides, CodeTarget.CQL)

    metadata = {
        "libraryName": name,
        "version": version,
        "populationCount": len(measure.populations),
        "valueSetCount": len(value_sets) + len(placeholders),
        "definitionCount": len(re.findall(r'^define\s+"', cql, re.MULTILINE)),
        "overrideCount": len(applied),
        "measureFamilies": [f.name for f in matched],
    }
    logger.info(
        f"Generated CQL library {name}: {metadata['definitionCount']} definitions, {len(warnings)} warnings"
    )
    return CQLGenerationResult(success=True, cql=cql, warnings=warnings, metadata=metadata)
