"""
SQL text templates for the HDI generator.

Every function returns one CTE (``NAME as (...)``) or a fragment of one.
Physical names come from the SchemaBinding; dialect differences are
confined to the small date helpers at the top of this module.
"""

from typing import Iterable, List, Optional, Sequence, Tuple

from .schema_binding import SchemaBinding, TableBinding

SUPPORTED_DIALECTS = ("snowflake", "postgres")

IPSD_ALIAS = "IPSD"
IPSD_COLUMN = "index_prescription_start_date"

CTE_SEPARATOR = ",\n--\n"


# ── Literals and dialect helpers ─────────────────────────────────────

def quote(value) -> str:
    return "'" + str(value).replace("'", "''") + "'"


def quote_list(values: Iterable) -> str:
    return ", ".join(quote(v) for v in values)


def comment_text(text: str) -> str:
    """Single-line comment body."""
    return " ".join((text or "").split())


def current_date(dialect: str) -> str:
    return "current_date()" if dialect == "snowflake" else "current_date"


def date_add(dialect: str, unit: str, amount: int, expr: str) -> str:
    if dialect == "snowflake":
        return f"dateadd({unit}, {amount}, {expr})"
    sign = "-" if amount < 0 else "+"
    return f"{expr} {sign} interval '{abs(amount)} {unit}s'"


def days_between(dialect: str, start: str, end: str) -> str:
    if dialect == "snowflake":
        return f"datediff(day, {start}, {end})"
    return f"({end}::date - {start}::date)"


def age_expression(dialect: str, birth_date: str, as_of: str) -> str:
    if dialect == "snowflake":
        return f"""datediff(year, {birth_date}, {as_of})
      - case
        when to_char({as_of}, 'MMDD') < to_char({birth_date}, 'MMDD') then 1
        else 0
      end"""
    return f"DATE_PART('year', AGE({as_of}, {birth_date}))"


def _lead(comment: Optional[str], include_comments: bool) -> str:
    return f"-- {comment_text(comment)}\n" if comment and include_comments else ""


# ── Base CTEs ────────────────────────────────────────────────────────

def ontology_cte(binding: SchemaBinding, contexts: Sequence[str], exclude_snapshots: bool, include_comments: bool) -> str:
    context_list = ",\n        ".join(quote(c) for c in contexts)
    exclusions = (
        "O.population_id not like '%SNAPSHOT%'\n"
        "    and O.population_id not like '%ARCHIVE%'\n"
        "    and "
        if exclude_snapshots else ""
    )
    return f"""{_lead("Retrieve necessary terminology contexts and concepts.", include_comments)}ONT as (
  select distinct
    O.*
  from {binding.ontology_table} O
  where
    {exclusions}(
      O.context_name in (
        {context_list}
      )
    )
)"""


def demographics_cte(binding: SchemaBinding, population_id: str, dialect: str, include_comments: bool) -> str:
    lead = "--\n-- Retrieve demographics for all persons along with relevant terminology concepts.\n" if include_comments else ""
    parameter_note = "    -- PARAMETER: Use appropriate HDI population_id.\n" if include_comments else ""
    age = age_expression(dialect, "P.birth_date", current_date(dialect))
    return f"""{lead}DEMOG as (
  select
    P.population_id
    , P.empi_id
    , P.gender_coding_system_id
    , P.gender_code
    , GENDO.concept_name as gender_concept_name
    , P.birth_date
    , {age} as age_in_years
    , P.deceased
    , P.deceased_dt_tm
    , P.postal_cd as raw_postal_cd
    , STATEO.concept_name as state_concept_name
    , CO.concept_name as country_concept_name
    , MSO.concept_name as marital_status_concept_name
    , EO.concept_name as ethnicity_concept_name
    , RACEO.concept_name as race_concept_name
    , RO.concept_name as religion_concept_name
  from {binding.person_table} P
  left join ONT GENDO
    on P.gender_coding_system_id = GENDO.code_system_id
    and P.gender_code = GENDO.code_oid
    and GENDO.concept_class_name = 'Gender'
  left join ONT STATEO
    on P.state_coding_system_id = STATEO.code_system_id
    and P.state_code = STATEO.code_oid
    and STATEO.concept_class_name = 'Environment'
  left join ONT CO
    on P.country_coding_system_id = CO.code_system_id
    and P.country_code = CO.code_oid
    and CO.concept_class_name = 'Unspecified'
  left join {binding.person_demographics_table} PD
    on P.empi_id = PD.empi_id
    and P.population_id = PD.population_id
  left join ONT MSO
    on PD.marital_coding_system_id = MSO.code_system_id
    and PD.marital_status_code = MSO.code_oid
    and MSO.concept_class_name = 'Marital Status'
  left join ONT EO
    on PD.ethnicity_coding_system_id = EO.code_system_id
    and PD.ethnicity_code = EO.code_oid
    and EO.concept_class_name in ('Race', 'Ethnicity')
  left join ONT RO
    on PD.religion_coding_system_id = RO.code_system_id
    and PD.religion_code = RO.code_oid
    and RO.concept_class_name = 'Unspecified'
  left join {binding.person_race_table} RD
    on RD.empi_id = P.empi_id
    and RD.population_id = P.population_id
  left join ONT RACEO
    on RD.race_coding_system_id = RACEO.code_system_id
    and RD.race_code = RACEO.code_oid
    and RACEO.concept_class_name in ('Race', 'Ethnicity')
  where
{parameter_note}    P.population_id = {quote(population_id)}
)"""


def all_patients_cte(include_comments: bool) -> str:
    return f"""{_lead("Anchor set: every person in the population", include_comments)}ALL_PATIENTS as (
  select distinct
    population_id
    , empi_id
  from DEMOG
)"""


def valueset_exists(binding: SchemaBinding, oid: str, code_ref: str) -> str:
    vs = binding.value_sets
    return f"""exists (
      select 1 from {vs.table} VS
      where VS.{vs.oid_column} = {quote(oid)}
        and VS.{vs.code_column} = {code_ref}
    )"""


# ── Medication adherence CTEs ────────────────────────────────────────

def ipsd_cte(
    binding: SchemaBinding,
    population_id: str,
    oid: str,
    intake_start: str,
    intake_end: str,
    include_comments: bool,
) -> str:
    med = binding.for_family("medication")
    a, date = med.alias, med.ref("date")
    lead = _lead("Index Prescription Start Date: First qualifying medication dispensing during Intake Period", include_comments)
    return f"""{lead}{IPSD_ALIAS} as (
  select
    {a}.population_id
    , {a}.empi_id
    , min({date}) as {IPSD_COLUMN}
  from {med.table} {a}
  where
    {a}.population_id = {quote(population_id)}
    and {valueset_exists(binding, oid, med.ref("code"))}
    and {date} >= {intake_start}
    and {date} <= {intake_end}
  group by {a}.population_id, {a}.empi_id
)"""


def med_coverage_cte(binding: SchemaBinding, population_id: str, oid: str, dialect: str, include_comments: bool) -> str:
    med = binding.for_family("medication")
    a, date = med.alias, med.ref("date")
    end_date = med.ref("end_date") or "null"
    supply = med.ref("days_supply")
    supply_expr = f"coalesce({supply}, {days_between(dialect, date, end_date)})" if supply else days_between(dialect, date, end_date)
    lead = _lead("Medication coverage: all dispensings from IPSD forward with days_supply", include_comments)
    return f"""{lead}MED_COVERAGE as (
  select
    {a}.population_id
    , {a}.empi_id
    , {date} as effective_date
    , {end_date} as end_date
    , {supply_expr} as days_supply
    , I.{IPSD_COLUMN} as ipsd
    , {days_between(dialect, f"I.{IPSD_COLUMN}", date)} as days_from_ipsd
  from {med.table} {a}
  inner join {IPSD_ALIAS} I
    on {a}.empi_id = I.empi_id
    and {a}.population_id = I.population_id
  where
    {a}.population_id = {quote(population_id)}
    and {valueset_exists(binding, oid, med.ref("code"))}
    and {date} >= I.{IPSD_COLUMN}
)"""


def cumulative_days_supply_cte(
    alias: str,
    label: str,
    window_days: int,
    required_days_supply: int,
    dialect: str,
    include_comments: bool,
) -> str:
    return f"""{_lead(label, include_comments)}{alias} as (
  select
    MC.population_id
    , MC.empi_id
    , 'Medication' as data_model
    , null as identifier
    , MC.ipsd as clinical_start_date
    , {date_add(dialect, "day", window_days, "MC.ipsd")} as clinical_end_date
    , {quote(label)} as description
  from MED_COVERAGE MC
  where
    MC.days_from_ipsd <= {window_days}
  group by MC.population_id, MC.empi_id, MC.ipsd
  having sum(MC.days_supply) >= {required_days_supply}
)"""


# ── Predicate CTEs ───────────────────────────────────────────────────

def _description_literal(description: str) -> str:
    return quote(comment_text(description)) if description else "null"


def demographics_predicate_cte(
    alias: str,
    description: str,
    conditions: List[str],
    index_join: bool,
    include_comments: bool,
) -> str:
    prefix = "D." if index_join else ""
    source = (
        f"DEMOG D\n  inner join {IPSD_ALIAS} I\n    on D.empi_id = I.empi_id\n    and D.population_id = I.population_id"
        if index_join else "DEMOG"
    )
    where = "\n    and ".join(conditions) if conditions else "1=1"
    return f"""{_lead(description, include_comments)}{alias} as (
  select distinct
    {prefix}population_id
    , {prefix}empi_id
    , 'Demographics' as data_model
    , null as identifier
    , null as clinical_start_date
    , null as clinical_end_date
    , {_description_literal(description)} as description
  from {source}
  where
    {where}
)"""


def clinical_predicate_cte(
    alias: str,
    table: TableBinding,
    data_model: str,
    description: str,
    conditions: List[str],
    index_join: bool,
    include_comments: bool,
) -> str:
    a = table.alias
    join = (
        f"\n  inner join {IPSD_ALIAS} I\n    on {a}.empi_id = I.empi_id\n    and {a}.population_id = I.population_id"
        if index_join else ""
    )
    identifier = table.ref("id") or "null"
    end_date = table.ref("end_date") or "null"
    where = "\n    and ".join(conditions)
    return f"""{_lead(description, include_comments)}{alias} as (
  select distinct
    {a}.population_id
    , {a}.empi_id
    , {quote(data_model)} as data_model
    , {identifier} as identifier
    , {table.ref("date")} as clinical_start_date
    , {end_date} as clinical_end_date
    , {_description_literal(description)} as description
  from {table.table} {a}{join}
  where
    {where}
)"""


def override_cte(alias: str, notes: str, code: str) -> str:
    lead = f"{notes}\n" if notes else ""
    return f"{lead}{alias} as (\n{code.rstrip()}\n)"


# ── Population CTEs ──────────────────────────────────────────────────

def population_cte(alias: str, body: str, comment: Optional[str], include_comments: bool) -> str:
    return f"{_lead(comment, include_comments)}{alias} as (\n  {body}\n)"


def measure_result_cte(rows: Sequence[Tuple[str, str]], include_comments: bool) -> str:
    selects = [
        f"  select\n    {quote(label)} as population_type\n    , count(distinct empi_id) as patient_count\n  from {alias}"
        for label, alias in rows
    ]
    body = "\n  union all\n".join(selects)
    return f"{_lead('Final Measure Calculation', include_comments)}MEASURE_RESULT as (\n{body}\n)"


def full_sql(header: str, ctes: Sequence[str], final_select: str) -> str:
    return f"{header}with {CTE_SEPARATOR.join(ctes)}\n{final_select}"
