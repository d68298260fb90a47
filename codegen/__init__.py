"""
Code generation from a Universal Measure Specification.

Usage:
    from codegen import generate_cql, generate_sql, validate_cql

    cql = generate_cql(measure)
    sql = generate_sql(measure, SQLGenerationConfig(population_id="ABC"))
"""

from .classification import Lookback, NormalizedTiming, keyword_lookback, normalize_timing, resource_family
from .cql_generator import CQLGenerationResult, element_to_cql, generate_cql, library_name
from .cql_validator import CQLValidationResult, check_cql_syntax, is_cql_service_available, validate_cql
from .overrides import (
    CodeEditNote,
    CodeOverride,
    CodeTarget,
    ComponentCodeResult,
    OverrideRegistry,
    apply_override,
    create_override,
    generate_component_code,
    revise_override,
)
from .schema_binding import DEFAULT_HDI_BINDING, SchemaBinding, TableBinding
from .sql_generator import (
    AdherenceRate,
    MedicationAdherenceConfig,
    SQLGenerationConfig,
    SQLGenerationResult,
    element_to_sql,
    generate_sql,
    validate_sql_basic,
)

__all__ = [
    "Lookback", "NormalizedTiming", "keyword_lookback", "normalize_timing", "resource_family",
    "CQLGenerationResult", "element_to_cql", "generate_cql", "library_name",
    "CQLValidationResult", "check_cql_syntax", "is_cql_service_available", "validate_cql",
    "CodeEditNote", "CodeOverride", "CodeTarget", "ComponentCodeResult", "OverrideRegistry",
    "apply_override", "create_override", "generate_component_code", "revise_override",
    "DEFAULT_HDI_BINDING", "SchemaBinding", "TableBinding",
    "AdherenceRate", "MedicationAdherenceConfig", "SQLGenerationConfig", "SQLGenerationResult",
    "element_to_sql", "generate_sql", "validate_sql_basic",
]
