"""
Universal Measure Specification (UMS) package.

Usage:
    from ums import LogicalClause, DataElement, validate_tree, score_clause
"""

from .schema import (
    ClinicalType,
    CodeReference,
    ComponentComplexity,
    Confidence,
    DataElement,
    GlobalConstraints,
    LogicalClause,
    LogicalOperator,
    MeasureMetadata,
    MeasurementPeriod,
    Node,
    PopulationDefinition,
    PopulationType,
    ReviewProgress,
    ReviewStatus,
    SiblingConnection,
    Thresholds,
    TimingDirection,
    TimingRequirement,
    TimingUnit,
    TimingWindow,
    UniversalMeasureSpec,
    ValueSetReference,
    is_clause,
    node_from_dict,
)
from .tree import (
    Connectives,
    TreeDiff,
    TreeValidationResult,
    diff_trees,
    tree_to_expression,
    tree_to_natural_language,
    trees_equal,
    validate_tree,
    walk_tree,
)
from .complexity import complexity_level, score_atomic, score_clause, score_measure, score_population

__all__ = [
    "ClinicalType", "CodeReference", "ComponentComplexity", "Confidence", "DataElement",
    "GlobalConstraints", "LogicalClause", "LogicalOperator", "MeasureMetadata", "MeasurementPeriod",
    "Node", "PopulationDefinition", "PopulationType", "ReviewProgress", "ReviewStatus",
    "SiblingConnection", "Thresholds", "TimingDirection", "TimingRequirement", "TimingUnit",
    "TimingWindow", "UniversalMeasureSpec", "ValueSetReference", "is_clause", "node_from_dict",
    "Connectives", "TreeDiff", "TreeValidationResult", "diff_trees", "tree_to_expression",
    "tree_to_natural_language", "trees_equal", "validate_tree", "walk_tree",
    "complexity_level", "score_atomic", "score_clause", "score_measure", "score_population",
]
