"""
Tests for codegen.sql_generator — HDI CTE-chain generation.
"""

import pytest

from codegen.overrides import CodeTarget, OverrideRegistry, create_override
from codegen.schema_binding import SchemaBinding
from codegen.sql_generator import (
    AdherenceRate,
    MedicationAdherenceConfig,
    SQLGenerationConfig,
    element_to_sql,
    estimate_complexity,
    generate_sql,
    validate_sql_basic,
    value_set_oid,
)
from core.errors import ConfigurationError
from ums.schema import (
    CodeReference,
    LogicalOperator,
    MeasureMetadata,
    PopulationDefinition,
    PopulationType,
    Thresholds,
    TimingRequirement,
    UniversalMeasureSpec,
    ValueSetReference,
)
from conftest import COLONOSCOPY_VS, clause, element

AND, OR, NOT = LogicalOperator.AND, LogicalOperator.OR, LogicalOperator.NOT


def cte(sql, name):
    """Body of one CTE, up to the separator before the next one."""
    return sql.split(f"{name} as (")[1].split("\n)")[0]


def single_population_measure(criteria, population_type=PopulationType.NUMERATOR):
    return UniversalMeasureSpec(
        id="ums_T1",
        metadata=MeasureMetadata(measure_id="T1", title="Test"),
        populations=[PopulationDefinition("pop", population_type, criteria=criteria)],
    )


# ── Colorectal measure ───────────────────────────────────────────────

class TestColorectalQuery:

    def test_base_ctes_and_header(self, cms130):
        result = generate_sql(cms130)
        assert result.success
        assert result.sql.startswith("-- " + "=" * 76)
        assert "-- Measure: CMS130v12 Colorectal Cancer Screening" in result.sql
        for name in ("ONT", "DEMOG", "ALL_PATIENTS", "MEASURE_RESULT"):
            assert f"{name} as (" in result.sql
        assert result.sql.rstrip().endswith("select * from MEASURE_RESULT")

    def test_metadata(self, cms130):
        metadata = generate_sql(cms130).metadata
        # global age constraint plus five data elements
        assert metadata["predicateCount"] == 6
        assert metadata["dataModelsUsed"] == ["Condition", "Demographics", "Encounter", "Procedure"]
        assert metadata["estimatedComplexity"] == "medium"
        assert metadata["dialect"] == "snowflake"
        assert metadata["populationId"] == "${POPULATION_ID}"

    def test_global_constraints_predicate(self, cms130):
        sql = generate_sql(cms130).sql
        body = cte(sql, "PRED_DEMOG_1")
        assert "age_in_years >= 45" in body
        assert "age_in_years <= 75" in body

    def test_initial_population_intersects_global_and_criteria(self, cms130):
        body = cte(generate_sql(cms130).sql, "INITIAL_POPULATION")
        assert body.strip().startswith("select empi_id from PRED_DEMOG_1\n  intersect\n  (select empi_id from PRED_DEMOG_2")
        assert "select empi_id from PRED_ENC_3" in body

    def test_empty_denominator_equals_initial_population(self, cms130):
        sql = generate_sql(cms130).sql
        assert "-- Denominator: Equals Initial Population" in sql
        assert cte(sql, "DENOMINATOR").strip() == "select empi_id from INITIAL_POPULATION"

    def test_exclusion_is_union(self, cms130):
        body = cte(generate_sql(cms130).sql, "DENOM_EXCLUSION")
        assert body.strip() == "select empi_id from PRED_ENC_4\n  union\n  select empi_id from PRED_COND_5"

    def test_colonoscopy_keyword_lookback(self, cms130):
        body = cte(generate_sql(cms130).sql, "PRED_PROC_6")
        assert "PR.performed_date >= dateadd(year, -10, current_date())" in body
        assert f"VS.valueset_oid = '{COLONOSCOPY_VS.oid}'" in body
        assert "PR.procedure_code" in body

    def test_encounter_limited_to_measurement_period(self, cms130):
        body = cte(generate_sql(cms130).sql, "PRED_ENC_3")
        assert "E.service_date >= '2024-01-01'" in body
        assert "E.service_date <= '2024-12-31'" in body

    def test_condition_has_no_date_filter(self, cms130):
        body = cte(generate_sql(cms130).sql, "PRED_COND_5")
        assert "C.population_id = '${POPULATION_ID}'" in body
        assert "effective_date >=" not in body

    def test_measure_result_rows(self, cms130):
        body = cte(generate_sql(cms130).sql, "MEASURE_RESULT")
        for label in ("Initial Population", "Denominator", "Denominator Exclusion", "Numerator"):
            assert f"'{label}' as population_type" in body
        assert "Numerator Exclusion" not in body

    def test_generated_sql_passes_basic_validation(self, cms130):
        assert validate_sql_basic(generate_sql(cms130).sql).valid


# ── Set algebra ──────────────────────────────────────────────────────

class TestNegation:

    def test_negated_element_uses_except_against_all_patients(self):
        criteria = clause("r", AND, element("p", "procedure", "Colonoscopy", value_set=COLONOSCOPY_VS, negation=True))
        body = cte(generate_sql(single_population_measure(criteria)).sql, "NUMERATOR")
        assert "select empi_id from ALL_PATIENTS\n  except\n  (select empi_id from PRED_PROC_1)" in body
        assert "EXCEPT" not in body

    def test_not_clause(self):
        criteria = clause(
            "r", AND,
            element("v", "encounter", "Visit", value_set=ValueSetReference(id="v", name="Visit", oid="1.2.3")),
            clause("n", NOT, element("d", "diagnosis", "Cancer", value_set=ValueSetReference(id="d", name="Cancer", oid="4.5.6"))),
        )
        body = cte(generate_sql(single_population_measure(criteria)).sql, "NUMERATOR")
        assert "intersect" in body
        assert "except" in body
        assert "ALL_PATIENTS" in body


# ── Configuration ────────────────────────────────────────────────────

class TestConfiguration:

    def test_unsupported_dialect(self):
        with pytest.raises(ConfigurationError, match="Unsupported SQL dialect 'oracle'"):
            SQLGenerationConfig(dialect="oracle")

    def test_standard_means_postgres(self):
        assert SQLGenerationConfig(dialect="Standard").dialect == "postgres"

    def test_postgres_date_arithmetic(self, cms130):
        sql = generate_sql(cms130, SQLGenerationConfig(dialect="postgres")).sql
        assert "PR.performed_date >= current_date - interval '10 years'" in sql
        assert "DATE_PART('year', AGE(current_date, P.birth_date))" in sql

    def test_population_id(self, cms130):
        sql = generate_sql(cms130, SQLGenerationConfig(population_id="ABC-123")).sql
        assert "P.population_id = 'ABC-123'" in sql
        assert "${POPULATION_ID}" not in sql

    def test_without_comments(self, cms130):
        sql = generate_sql(cms130, SQLGenerationConfig(include_comments=False)).sql
        assert sql.startswith("with ONT as (")
        assert "-- Numerator:" not in sql

    def test_binding_without_family_fails_cleanly(self, cms130):
        binding = SchemaBinding.from_dict({"tables": {
            "encounter": {"table": "enc", "columns": {"code": "c", "date": "d"}},
            "procedure": {"table": "proc", "columns": {"code": "c", "date": "d"}},
        }})
        result = generate_sql(cms130, SQLGenerationConfig(binding=binding))
        assert not result.success
        assert "no table for family 'condition'" in result.errors[0]

    def test_custom_binding_names_tables(self, cms130):
        binding = SchemaBinding.from_dict({"tables": {
            family: {"table": f"{family}_fact", "alias": "X", "columns": {"code": "code_col", "date": "date_col"}}
            for family in ("encounter", "procedure", "condition")
        }})
        sql = generate_sql(cms130, SQLGenerationConfig(binding=binding)).sql
        assert "from procedure_fact X" in sql
        assert "X.date_col >= dateadd(year, -10, current_date())" in sql


class TestMedicationAdherence:

    def test_ipsd_and_coverage_ctes(self, cms130):
        adherence = MedicationAdherenceConfig(
            value_set_oid="2.16.840.1.113883.3.526.3.1572",
            rates=[AdherenceRate("PDC 80% at 180 days", 180, 144), AdherenceRate("PDC 80% at 365 days", 365, 292)],
        )
        result = generate_sql(cms130, SQLGenerationConfig(medication_adherence=adherence))
        sql = result.sql
        assert "IPSD as (" in sql
        assert "MED_COVERAGE as (" in sql
        assert "M.effective_date >= '${INTAKE_PERIOD_START}'" in sql
        assert "having sum(MC.days_supply) >= 144" in sql
        assert "NUMERATOR_RATE_2 as (" in sql
        assert "'Numerator: PDC 80% at 365 days' as population_type" in sql

    def test_index_event_without_medication_oid_warns(self):
        criteria = clause("r", AND, element(
            "m", "medication", "Prior statin",
            value_set=ValueSetReference(id="s", name="Statins"),
            timing_requirements=(TimingRequirement(description="within 30 days prior to IPSD"),),
        ))
        result = generate_sql(single_population_measure(criteria))
        assert any("needs a medication value set OID" in w for w in result.warnings)
        assert "IPSD as (" not in result.sql


class TestWarnings:

    def test_demographics_only_query(self):
        measure = single_population_measure(clause("r", AND), PopulationType.INITIAL_POPULATION)
        result = generate_sql(measure)
        assert result.success
        assert "No clinical criteria found - generating demographics-only query" in result.warnings
        assert "No numerator criteria defined in measure specification" in result.warnings

    def test_empty_subgroup_dropped_with_warning(self):
        criteria = clause("r", AND, element("p", "procedure", "Colonoscopy", value_set=COLONOSCOPY_VS), clause("g", OR))
        result = generate_sql(single_population_measure(criteria))
        assert result.success
        assert cte(result.sql, "NUMERATOR").strip() == "select empi_id from PRED_PROC_1"
        assert any("empty group at root.children[1] omitted" in w for w in result.warnings)
        assert validate_sql_basic(result.sql).valid

    def test_only_empty_subgroups(self):
        criteria = clause("r", AND, clause("g1", OR), clause("g2", NOT))
        result = generate_sql(single_population_measure(criteria))
        assert "No numerator criteria defined in measure specification" in result.warnings
        assert sum("empty group" in w for w in result.warnings) == 2
        assert "intersect\n  \n" not in result.sql

    def test_structural_problems(self):
        measure = UniversalMeasureSpec(id="u", metadata=MeasureMetadata(measure_id=""))
        result = generate_sql(measure)
        assert not result.success
        assert result.errors == ["Measure ID is required", "At least one population definition is required"]


class TestOverrides:

    def test_sql_override_replaces_predicate_body(self, cms130):
        registry = OverrideRegistry()
        registry.set("num_colonoscopy", create_override(
            CodeTarget.SQL, "  select population_id, empi_id from colonoscopy_registry", "Registry is authoritative",
        ))
        result = generate_sql(cms130, overrides=registry)
        assert result.metadata["overrideCount"] == 1
        assert "-- MANUAL OVERRIDES APPLIED: 1 component(s)" in result.sql
        body = cte(result.sql, "PRED_PROC_6")
        assert body.strip() == "select population_id, empi_id from colonoscopy_registry"
        assert "-- EDIT NOTE (" in result.sql


# ── Element predicates ───────────────────────────────────────────────

class TestElementToSQL:

    def test_result_thresholds_and_inline_codes(self):
        e = element(
            "a1c", "observation", "HbA1c > 9",
            value_set=ValueSetReference(id="v", name="HbA1c", codes=[CodeReference("4548-4", "LOINC")]),
            thresholds=Thresholds(value_min=9, unit="%", comparator=">"),
        )
        sql = element_to_sql(e)
        assert "R.result_code in ('4548-4')" in sql
        assert "R.numeric_value > 9" in sql
        assert "R.unit_of_measure_code in ('%')" in sql

    def test_value_range(self):
        e = element("bp", "observation", "Systolic", thresholds=Thresholds(value_min=90, value_max=139.5))
        warnings = []
        sql = element_to_sql(e, warnings=warnings)
        assert "R.numeric_value between 90 and 139.5" in sql
        assert warnings == ['No value set defined for "Systolic"; predicate is not filtered by code']

    def test_gender_from_description(self):
        sql = element_to_sql(element("g", "demographic", "Women 21-64"))
        assert "gender_concept_name in ('FHIR Female', 'FHIR Female Gender Identity')" in sql

    def test_demographic_without_constraint_warns(self):
        warnings = []
        element_to_sql(element("g", "demographic", "Adults"), warnings=warnings)
        assert warnings == ['Demographic criterion "Adults" has no age or gender constraint']


class TestHelpers:

    @pytest.mark.parametrize("value_set,expected", [
        (None, None),
        (ValueSetReference(id="a", name="A", oid="1.2.3"), "1.2.3"),
        (ValueSetReference(id="a", name="A", url="http://cts.nlm.nih.gov/fhir/ValueSet/2.16.840.1.1"), "2.16.840.1.1"),
        (ValueSetReference(id="a", name="A", url="http://example.org/vs/office"), None),
    ])
    def test_value_set_oid(self, value_set, expected):
        assert value_set_oid(value_set) == expected

    @pytest.mark.parametrize("predicates,models,level", [(3, 2, "low"), (8, 4, "medium"), (9, 1, "high")])
    def test_estimate_complexity(self, predicates, models, level):
        assert estimate_complexity(predicates, models) == level


class TestValidateSQLBasic:

    def test_missing_base_ctes(self):
        result = validate_sql_basic("select 1")
        assert not result.valid
        assert result.errors == ["Missing ONT (Ontology) CTE", "Missing DEMOG (Demographics) CTE"]

    def test_unbalanced_parentheses(self):
        result = validate_sql_basic("with ONT as (select 1), DEMOG as (select (2) select * from DEMOG")
        assert result.errors == ["Unbalanced parentheses: 3 open, 2 close"]

    def test_unclosed_quote(self):
        result = validate_sql_basic("with ONT as (select 1), DEMOG as (select 1) select * from DEMOG where x = 'abc")
        assert result.errors == ["Unclosed single quote detected"]

    def test_literals_and_comments_ignored(self):
        sql = "-- note (\nwith ONT as (select ')'), DEMOG as (select 'it''s') select * from DEMOG"
        assert validate_sql_basic(sql).valid

    def test_no_select(self):
        result = validate_sql_basic("ONT as (1) DEMOG as (2)")
        assert result.errors == ["No SELECT statement found"]
