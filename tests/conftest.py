"""Shared pytest configuration and fixtures for the test suite."""

import pytest

from ums.schema import (
    DataElement,
    GlobalConstraints,
    LogicalClause,
    LogicalOperator,
    MeasureMetadata,
    MeasurementPeriod,
    PopulationDefinition,
    PopulationType,
    Thresholds,
    TimingRequirement,
    TimingWindow,
    UniversalMeasureSpec,
    ValueSetReference,
)


def pytest_addoption(parser):
    """Add custom CLI options."""
    parser.addoption(
        "--run-e2e", action="store_true", default=False,
        help="Run end-to-end extraction tests (requires LLM API key, slow)",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "e2e: end-to-end extraction test (slow, requires LLM)")


def pytest_collection_modifyitems(config, items):
    """Skip e2e tests unless --run-e2e is passed."""
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="need --run-e2e option to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


# ── Measure fixtures ─────────────────────────────────────────────────

def element(element_id, clinical_type="diagnosis", description="", **kwargs):
    return DataElement(id=element_id, clinical_type=clinical_type, description=description, **kwargs)


def clause(clause_id, operator, *children, **kwargs):
    return LogicalClause(id=clause_id, operator=operator, children=children, **kwargs)


COLONOSCOPY_VS = ValueSetReference(
    id="vs_colonoscopy", name="Colonoscopy", oid="2.16.840.1.113883.3.464.1003.108.12.1020",
)
OFFICE_VISIT_VS = ValueSetReference(
    id="vs_office", name="Office Visit", oid="2.16.840.1.113883.3.464.1003.101.12.1001",
)
HOSPICE_VS = ValueSetReference(
    id="vs_hospice", name="Hospice care ambulatory", oid="2.16.840.1.113762.1.4.1108.15",
)
COLORECTAL_CANCER_VS = ValueSetReference(
    id="vs_crc", name="Malignant Neoplasm of Colon", oid="2.16.840.1.113883.3.464.1003.108.12.1001",
)


def colorectal_measure() -> UniversalMeasureSpec:
    """CMS130-shaped measure: age 45-75, encounter, colonoscopy in the 10 years before MP end."""
    initial = PopulationDefinition(
        id="pop_ip",
        population_type=PopulationType.INITIAL_POPULATION,
        narrative="Patients 45-75 years of age with a visit during the measurement period",
        criteria=clause(
            "ip_root", LogicalOperator.AND,
            element("ip_age", "demographic", "Age 45 to 75", thresholds=Thresholds(age_min=45, age_max=75)),
            element(
                "ip_visit", "encounter", "Qualifying office visit",
                value_set=OFFICE_VISIT_VS,
                timing_requirements=(TimingRequirement(description="during the measurement period"),),
            ),
        ),
    )
    denominator = PopulationDefinition(
        id="pop_denom",
        population_type=PopulationType.DENOMINATOR,
        narrative="Equals Initial Population",
        criteria=clause("denom_root", LogicalOperator.AND),
    )
    exclusion = PopulationDefinition(
        id="pop_excl",
        population_type=PopulationType.DENOMINATOR_EXCLUSION,
        narrative="Hospice or colorectal cancer",
        criteria=clause(
            "excl_root", LogicalOperator.OR,
            element("excl_hospice", "encounter", "Hospice care", value_set=HOSPICE_VS),
            element("excl_crc", "diagnosis", "Colorectal cancer", value_set=COLORECTAL_CANCER_VS),
        ),
    )
    numerator = PopulationDefinition(
        id="pop_num",
        population_type=PopulationType.NUMERATOR,
        narrative="Colonoscopy in the measurement period or the nine years prior",
        criteria=clause(
            "num_root", LogicalOperator.OR,
            element(
                "num_colonoscopy", "procedure", "Colonoscopy",
                value_set=COLONOSCOPY_VS,
                timing_requirements=(TimingRequirement(
                    description="within 10 years before the end of the measurement period",
                    window=TimingWindow(value=10, unit="years", direction="before"),
                ),),
            ),
        ),
    )
    return UniversalMeasureSpec(
        id="ums_CMS130",
        metadata=MeasureMetadata(
            measure_id="CMS130v12",
            title="Colorectal Cancer Screening",
            version="12.0.000",
            steward="NCQA",
            program="eCQM",
            measurement_period=MeasurementPeriod(start="2024-01-01", end="2024-12-31"),
        ),
        populations=[initial, denominator, exclusion, numerator],
        value_sets=[OFFICE_VISIT_VS, HOSPICE_VS, COLORECTAL_CANCER_VS, COLONOSCOPY_VS],
        global_constraints=GlobalConstraints(age_min=45, age_max=75),
    )


@pytest.fixture
def cms130():
    return colorectal_measure()
