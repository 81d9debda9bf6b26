"""
Areal Metrics - composite indices and spatial statistics for geographic units.

This package provides the analytical core shared by attribute-table analyses
keyed by geographic unit (counties, tracts, PUMAs): build a composite score
from standardized attributes, classify it into ordered buckets, test its
association with another variable and test whether it is spatially clustered
or arranged along a corridor.

Main Classes:
    Dataset, GeoRecord: Immutable input records
    IndexSpec, MissingPolicy: Composite index definition
    RuleSet: Ordered classification rules
    ArealMetricsAnalyzer: Runs the full pipeline over one Dataset

Convenience Functions:
    analyze: Full pipeline with a summary report
    run_partitioned: Same analysis over disjoint partitions (e.g. states)

Example:
    >>> from areal_metrics import Dataset, IndexSpec, MissingPolicy, RuleSet, analyze
    >>>
    >>> ds = Dataset.from_frame(df, id_column='GEOID', lon_column='lon',
    ...                         lat_column='lat', weight_column='population')
    >>> summary_df, report = analyze(
    ...     ds,
    ...     IndexSpec([('pct_single_person', 1), ('pct_long_commute', 1)]),
    ...     MissingPolicy.EXCLUDE_AND_RENORMALIZE,
    ...     outcome='log_pop_density'
    ... )
"""

from .analyzer import ArealMetricsAnalyzer, analyze
from .association import (
    correlation_strength,
    group_difference,
    natural_spline_basis,
    pearson,
    smooth_comparison,
    spearman,
    weighted_mean,
    weighted_regression,
    weighted_variance,
)
from .classifier import ClassificationRule, RuleSet, category_counts, classify, classify_many, summarize_by_category
from .dataset import Dataset, GeoRecord, geoid_prefix
from .deadline import Deadline
from .exceptions import (
    AnalysisTimeoutError,
    ArealMetricsError,
    InputValidationError,
    InsufficientDataError,
    MissingAttributeError,
    NumericInstabilityError,
    ZeroVarianceWarning,
)
from .index_builder import IndexSpec, MissingPolicy, build_index, combine, standardize
from .partition import PartitionedResult, merge_results, run_partitioned
from .results import (
    AssociationResult,
    ClusteringResult,
    CompositeIndex,
    CorridorResult,
    MoranResult,
    SmoothComparisonResult,
    SpatialResult,
    StandardizedValues,
)
from .spatial import (
    analyze_spatial,
    clustering_ratio,
    contiguity_weights,
    detect_corridor,
    knn_weights,
    lattice_weights,
    morans_i,
    row_standardize,
)

__version__ = "0.1.0"
__all__ = [
    "ArealMetricsAnalyzer", "analyze",
    "Dataset", "GeoRecord", "geoid_prefix",
    "IndexSpec", "MissingPolicy", "standardize", "combine", "build_index",
    "ClassificationRule", "RuleSet", "classify", "classify_many",
    "summarize_by_category", "category_counts",
    "pearson", "spearman", "group_difference", "weighted_regression", "smooth_comparison",
    "natural_spline_basis", "weighted_mean", "weighted_variance", "correlation_strength",
    "morans_i", "clustering_ratio", "detect_corridor", "analyze_spatial",
    "knn_weights", "lattice_weights", "contiguity_weights", "row_standardize",
    "run_partitioned", "merge_results", "PartitionedResult",
    "Deadline",
    "StandardizedValues", "CompositeIndex", "AssociationResult", "SmoothComparisonResult",
    "MoranResult", "ClusteringResult", "CorridorResult", "SpatialResult",
    "ArealMetricsError", "InputValidationError", "MissingAttributeError",
    "InsufficientDataError", "NumericInstabilityError", "AnalysisTimeoutError",
    "ZeroVarianceWarning",
]
