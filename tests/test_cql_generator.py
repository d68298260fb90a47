"""
Tests for codegen.cql_generator — CQL library generation from a UMS.

Uses the CMS130-shaped fixture from conftest plus small hand-built
measures for the generic (no measure family) paths.
"""

import pytest

from codegen.cql_generator import MISSING_OID, element_to_cql, generate_cql, library_name
from codegen.overrides import CodeTarget, OverrideRegistry, create_override
from ums.schema import (
    LogicalOperator,
    MeasureMetadata,
    PopulationDefinition,
    PopulationType,
    Thresholds,
    TimingRequirement,
    UniversalMeasureSpec,
    ValueSetReference,
)
from conftest import clause, element

AND, OR = LogicalOperator.AND, LogicalOperator.OR

HBA1C_VS = ValueSetReference(id="vs_a1c", name="HbA1c Laboratory Test")


def diabetes_measure(*populations):
    return UniversalMeasureSpec(
        id="ums_CMS122",
        metadata=MeasureMetadata(measure_id="CMS122v12", title="Diabetes: Glycemic Status Assessment"),
        populations=list(populations),
        value_sets=[HBA1C_VS],
    )


def a1c_numerator():
    return PopulationDefinition(
        id="pop_num",
        population_type=PopulationType.NUMERATOR,
        criteria=clause(
            "num_root", AND,
            element("a1c", "observation", "HbA1c > 9%", value_set=HBA1C_VS, thresholds=Thresholds(value_min=9, unit="%")),
        ),
    )


class TestLibraryName:

    @pytest.mark.parametrize("measure_id,expected", [
        ("CMS130v12", "CMS130v12"),
        ("CMS 122.v11", "CMS122v11"),
        ("130-v2", "_130v2"),
        ("", "Measure"),
        ("---", "Measure"),
    ])
    def test_library_name(self, measure_id, expected):
        assert library_name(measure_id) == expected


# ── Full library ─────────────────────────────────────────────────────

class TestColorectalLibrary:

    def test_success_and_metadata(self, cms130):
        result = generate_cql(cms130)
        assert result.success
        assert result.errors == []
        assert result.metadata["libraryName"] == "CMS130v12"
        assert result.metadata["version"] == "12.0.000"
        assert result.metadata["populationCount"] == 4
        assert result.metadata["measureFamilies"] == ["colorectal"]
        assert "library CMS130v12 version '12.0.000'" in result.cql
        assert "using FHIR version '4.0.1'" in result.cql

    def test_numerator_uses_colonoscopy_helper(self, cms130):
        cql = generate_cql(cms130).cql
        numerator = cql.split('define "Numerator":')[1]
        assert 'exists "Colonoscopy Performed"' in numerator
        assert 'define "Colonoscopy Performed":' in cql

    def test_value_sets_declared_with_vsac_urls(self, cms130):
        cql = generate_cql(cms130).cql
        assert (
            "valueset \"Colonoscopy\": 'http://cts.nlm.nih.gov/fhir/ValueSet/2.16.840.1.113883.3.464.1003.108.12.1020'"
            in cql
        )

    def test_missing_family_value_sets_become_placeholders(self, cms130):
        result = generate_cql(cms130)
        assert f"valueset \"Total Colectomy\": '{MISSING_OID}'" in result.cql
        missing = [w for w in result.warnings if w.startswith("Measure-family helpers reference value sets")]
        assert len(missing) == 1
        assert "Flexible Sigmoidoscopy" in missing[0]
        assert "Colonoscopy," not in missing[0]
        # four catalog value sets plus five placeholders
        assert result.metadata["valueSetCount"] == 9

    def test_value_sets_without_codes_warn(self, cms130):
        warnings = generate_cql(cms130).warnings
        assert 'Value set "Colonoscopy" has no codes defined' in warnings

    def test_initial_population_includes_age_helper(self, cms130):
        cql = generate_cql(cms130).cql
        initial = cql.split('define "Initial Population":')[1].split("define ")[0]
        assert '"Patient Age Valid"' in initial
        assert 'AgeInYearsAt(date from end of "Measurement Period") in Interval[45, 75]' in initial
        assert '[Encounter: "Office Visit"]' in initial

    def test_qualifying_encounter_helper(self, cms130):
        cql = generate_cql(cms130).cql
        assert 'define "Qualifying Encounter During Measurement Period":' in cql
        assert '[Encounter: "Hospice care ambulatory"]' in cql

    def test_empty_denominator_equals_initial_population(self, cms130):
        cql = generate_cql(cms130).cql
        assert 'define "Denominator":\n  "Initial Population"' in cql

    def test_denominator_exclusion_combines_helpers_and_criteria(self, cms130):
        cql = generate_cql(cms130).cql
        exclusion = cql.split('define "Denominator Exclusion":')[1].split("define ")[0]
        assert '"Has Hospice Services"' in exclusion
        assert '"Has Colorectal Cancer"' in exclusion
        assert '[Condition: "Malignant Neoplasm of Colon"]' in exclusion

    def test_measurement_period_parameter(self, cms130):
        cql = generate_cql(cms130).cql
        assert "default Interval[@2024-01-01T00:00:00.0, @2024-12-31T23:59:59.999]" in cql

    def test_supplemental_data_elements(self, cms130):
        cql = generate_cql(cms130).cql
        for name in ("SDE Ethnicity", "SDE Payer", "SDE Race", "SDE Sex"):
            assert f'define "{name}":' in cql

    def test_duplicate_population_ignored(self, cms130):
        cms130.populations.append(
            PopulationDefinition("pop_num2", PopulationType.NUMERATOR, criteria=clause("r", AND, element("x")))
        )
        result = generate_cql(cms130)
        assert result.success
        assert "Duplicate Numerator population 'pop_num2' ignored" in result.warnings


# ── Generic measures ─────────────────────────────────────────────────

class TestGenericLibrary:

    def test_generic_numerator_from_criteria(self):
        result = generate_cql(diabetes_measure(a1c_numerator()))
        assert result.metadata["measureFamilies"] == []
        numerator = result.cql.split('define "Numerator":')[1]
        assert '[Observation: "HbA1c Laboratory Test"] O' in numerator
        assert "(O.value as Quantity) >= 9 '%'" in numerator
        assert 'O.effective.toInterval() during "Measurement Period"' in numerator

    def test_value_set_without_oid_or_codes(self):
        result = generate_cql(diabetes_measure(a1c_numerator()))
        assert f"valueset \"HbA1c Laboratory Test\": '{MISSING_OID}'" in result.cql
        assert 'Value set "HbA1c Laboratory Test" has no OID or URL specified' in result.warnings
        assert 'Value set "HbA1c Laboratory Test" has no codes defined' in result.warnings

    def test_missing_numerator_warns(self):
        initial = PopulationDefinition(
            "pop_ip", PopulationType.INITIAL_POPULATION,
            criteria=clause("r", AND, element("a1c", "observation", "HbA1c", value_set=HBA1C_VS)),
        )
        result = generate_cql(diabetes_measure(initial))
        assert result.success
        assert "No numerator criteria defined in measure specification" in result.warnings

    def test_missing_initial_population_warns(self):
        result = generate_cql(diabetes_measure(a1c_numerator()))
        assert any(w.startswith("No Initial Population defined") for w in result.warnings)

    def test_keyword_lookback(self):
        numerator = PopulationDefinition(
            "pop_num", PopulationType.NUMERATOR,
            criteria=clause("r", OR, element(
                "p", "procedure", "Colonoscopy",
                value_set=ValueSetReference(id="vs", name="Colonoscopy", oid="1.2.3"),
            )),
        )
        cql = generate_cql(diabetes_measure(numerator)).cql
        assert 'P.performed.toInterval() ends 10 years or less before end of "Measurement Period"' in cql

    @pytest.mark.parametrize("measure_id,populations,problems", [
        ("CMS122v12", [], ["At least one population definition is required"]),
        ("", [], ["Measure ID is required", "At least one population definition is required"]),
    ])
    def test_structural_problems(self, measure_id, populations, problems):
        measure = UniversalMeasureSpec(id="u", metadata=MeasureMetadata(measure_id=measure_id), populations=populations)
        result = generate_cql(measure)
        assert not result.success
        assert result.cql == ""
        assert result.errors == problems


class TestOverrides:

    def test_override_replaces_element_and_adds_banner(self, cms130):
        registry = OverrideRegistry()
        registry.set("excl_crc", create_override(
            CodeTarget.CQL, 'exists "Custom Colorectal Cancer"', "Use the shared cancer definition", author="jdoe",
        ))
        result = generate_cql(cms130, overrides=registry)
        assert result.metadata["overrideCount"] == 1
        assert "// MANUAL OVERRIDES APPLIED: 1 component(s)" in result.cql
        assert "// EDIT NOTE" in result.cql
        assert 'exists "Custom Colorectal Cancer"' in result.cql
        assert '[Condition: "Malignant Neoplasm of Colon"] C\n' not in result.cql


# ── Single elements ──────────────────────────────────────────────────

class TestElementToCQL:

    def test_negated_element(self):
        e = element("d", "diagnosis", "Diabetes", value_set=ValueSetReference(id="v", name="Diabetes"), negation=True)
        cql = element_to_cql(e)
        assert cql.startswith('not exists ([Condition: "Diabetes"] C')
        assert "during" not in cql

    def test_element_without_value_set(self):
        warnings = []
        cql = element_to_cql(element("x", "procedure", "Mystery procedure"), warnings=warnings)
        assert cql.endswith("true")
        assert warnings == ['No value set defined for "Mystery procedure"']

    def test_demographic_without_thresholds(self):
        warnings = []
        element_to_cql(element("age", "demographic", "Adult"), warnings=warnings)
        assert warnings == ['Demographic criterion "Adult" has no age thresholds']

    def test_demographic_age_range(self):
        cql = element_to_cql(element("age", "demographic", "Age", thresholds=Thresholds(age_min=18)))
        assert cql == 'AgeInYearsAt(date from end of "Measurement Period") in Interval[18, 999]'

    def test_index_event_timing_warns(self):
        warnings = []
        e = element(
            "m", "medication", "Statin",
            value_set=ValueSetReference(id="v", name="Statins"),
            timing_requirements=(TimingRequirement(description="within 30 days prior to IPSD"),),
        )
        cql = element_to_cql(e, warnings=warnings)
        assert 'M.authoredOn during "Measurement Period"' in cql
        assert warnings == ['Index-event timing for "Statin" approximated by the measurement period in CQL']
