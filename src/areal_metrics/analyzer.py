"""
ArealMetricsAnalyzer: run the full composite-index pipeline over one Dataset.

This module provides the ArealMetricsAnalyzer class, which strings the engine's
pure functions together the way a typical analysis does:

    - Index: standardize attributes and combine them into a composite score
    - Classification: bucket the score with an ordered RuleSet
    - Association: correlation, weighted regression and smooth-vs-linear test
      against an outcome attribute
    - Spatial: Moran's I, nearest-neighbor clustering and corridor detection
      on unit centroids

Every step can also be called on its own. Results are the immutable value
objects from areal_metrics.results; generate_report() collects them into a
summary DataFrame and a plain dict for the external reporting layer.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from tqdm import tqdm

from .association import (
    correlation_strength,
    group_difference,
    pearson,
    smooth_comparison,
    spearman,
    weighted_regression,
)
from .classifier import RuleSet, category_counts, classify_many, summarize_by_category
from .config import MORAN, SMOOTHING, THRESHOLDS
from .dataset import Dataset
from .deadline import Deadline
from .exceptions import ArealMetricsError, InputValidationError
from .index_builder import IndexSpec, MissingPolicy, build_index
from .results import (
    AssociationResult,
    ClusteringResult,
    CompositeIndex,
    CorridorResult,
    MoranResult,
    SmoothComparisonResult,
    SpatialResult,
)
from .spatial import clustering_ratio, detect_corridor, knn_weights, morans_i


# =============================================================================
# CLASS DEFINITION
# =============================================================================


class ArealMetricsAnalyzer:
    """
    Composite index, classification, association and spatial metrics for one Dataset.

    Attributes:
        dataset (Dataset): Source records (never modified).
        spec (IndexSpec): Components of the composite index.
        missing_policy (MissingPolicy): How partially missing records are averaged.
        rules (RuleSet): Optional classification rules for the index.
        outcome (str): Optional attribute tested for association with the index.
        weighted (bool): Use record weights in standardization and tests.

    Example:
        >>> analyzer = ArealMetricsAnalyzer(
        ...     dataset,
        ...     IndexSpec([('pct_single_person', 1), ('pct_long_commute', 1), ('pct_elderly', 1)]),
        ...     MissingPolicy.EXCLUDE_AND_RENORMALIZE,
        ...     rules=RuleSet([(-np.inf, 'Low'), (-0.5, 'Typical'), (0.5, 'High')]),
        ...     outcome='log_pop_density'
        ... )
        >>> summary_df, report = analyzer.generate_report()
    """

    def __init__(
        self,
        dataset: Dataset,
        spec: IndexSpec,
        missing_policy: Union[MissingPolicy, str],
        rules: Optional[RuleSet] = None,
        outcome: Optional[str] = None,
        covariates: Optional[Sequence[str]] = None,
        weighted: bool = True,
        focus_labels: Optional[Sequence[str]] = None,
        clustering_threshold: float = THRESHOLDS['clustering_ratio'],
        corridor_threshold: float = THRESHOLDS['pc1_variance_share'],
        knn_k: int = MORAN['knn_k'],
        edf: int = SMOOTHING['edf'],
        permutations: int = MORAN['permutations'],
        seed: Optional[int] = None,
        time_budget: Optional[float] = None,
        verbose: bool = True
    ):
        """
        Initialize the analyzer and validate its configuration.

        Args:
            dataset: Source records.
            spec: Components (attribute, sign) of the composite index.
            missing_policy: MissingPolicy for partially missing records. Required.
            rules: RuleSet for classifying the index (optional).
            outcome: Attribute tested against the index (optional).
            covariates: Control attributes for the weighted regression.
            weighted: Use record weights (e.g. population) where the dataset has them.
            focus_labels: Only units with these labels enter the clustering
                         and corridor metrics (e.g. ['High']). Requires rules.
            clustering_threshold: Ratio above which units count as clustered.
            corridor_threshold: PC1 share above which units count as linear.
            knn_k: Neighbors per unit in the Moran's I weights.
            edf: Degrees of freedom of the smooth term.
            permutations: Moran's I permutations (0 = normal approximation only).
            seed: Seed for the permutation test.
            time_budget: Seconds allowed for generate_report() (optional).
            verbose: Print progress lines.

        Raises:
            ValueError: If a threshold or count is out of range.
            MissingAttributeError: If a spec, outcome or covariate attribute is
                                  not in the dataset.
        """
        if clustering_threshold <= 0:
            raise ValueError("clustering_threshold must be positive")
        if not 0.5 <= corridor_threshold < 1:
            raise ValueError("corridor_threshold must be in [0.5, 1)")
        if knn_k < 1:
            raise ValueError("knn_k must be at least 1")
        if permutations < 0:
            raise ValueError("permutations must be non-negative")
        if time_budget is not None and time_budget <= 0:
            raise ValueError("time_budget must be positive")
        if focus_labels is not None:
            if rules is None:
                raise ValueError("focus_labels requires rules")
            unknown = set(focus_labels) - set(rules.labels)
            if unknown:
                raise ValueError(f"focus_labels not produced by rules: {sorted(unknown)}")

        # Fail on undeclared columns now rather than mid-report
        dataset.require(*spec.names)
        if outcome is not None:
            dataset.require(outcome)
        if covariates:
            dataset.require(*covariates)

        self.dataset = dataset
        self.spec = spec
        self.missing_policy = MissingPolicy(missing_policy)
        self.rules = rules
        self.outcome = outcome
        self.covariates = list(covariates or [])
        self.weighted = weighted and dataset.has_weights
        self.focus_labels = list(focus_labels) if focus_labels is not None else None
        self.clustering_threshold = clustering_threshold
        self.corridor_threshold = corridor_threshold
        self.knn_k = knn_k
        self.edf = edf
        self.permutations = permutations
        self.seed = seed
        self.time_budget = time_budget
        self.verbose = verbose

        # Cache for derived values
        self._index: Optional[CompositeIndex] = None
        self._labels: Optional[List[str]] = None
        self._deadline: Optional[Deadline] = None

        self._print("=" * 60)
        self._print("ArealMetricsAnalyzer Initialized")
        self._print("=" * 60)
        self._print(f"  Records:    {len(dataset)}")
        self._print(f"  Index:      {', '.join(f'{s:+d}·{n}' for n, s in spec.components)}")
        self._print(f"  Policy:     {self.missing_policy.value}")
        self._print(f"  Rules:      {rules if rules is not None else 'Not provided'}")
        self._print(f"  Outcome:    {outcome or 'Not provided'}")
        self._print(f"  Weighted:   {self.weighted}")
        self._print(f"  Centroids:  {'yes' if dataset.has_centroids else 'no'}")
        self._print("=" * 60)

    def _print(self, message: str) -> None:
        if self.verbose:
            print(message)

    @property
    def _weights(self) -> Optional[np.ndarray]:
        return self.dataset.weights() if self.weighted else None

    # =========================================================================
    # INDEX & CLASSIFICATION
    # =========================================================================

    def build_index(self) -> CompositeIndex:
        """
        Build (and cache) the composite index.

        Components that had zero variance are zero-filled by standardize()
        and reported here as a warning line and in
        CompositeIndex.zero_variance_components.
        """
        if self._index is not None:
            return self._index

        self._print("\n[METRIC] Building composite index...")
        self._index = build_index(self.dataset, self.spec, self.missing_policy, weighted=self.weighted)

        values = np.asarray(self._index.values)
        n_missing = int(np.isnan(values).sum())
        if self._index.has_zero_variance:
            self._print(
                f"[WARNING] Zero-variance components set to 0: "
                f"{list(self._index.zero_variance_components)}"
            )
        self._print(f"  → Records indexed: {len(values) - n_missing} ({n_missing} with no components)")
        if n_missing < len(values):
            self._print(f"  → Range: [{np.nanmin(values):.3f}, {np.nanmax(values):.3f}]")
        return self._index

    def classify(self) -> List[str]:
        """
        Label every record with the RuleSet. Records with a NaN index get 'missing'.

        Raises:
            ValueError: If no rules were provided.
        """
        if self._labels is not None:
            return self._labels
        if self.rules is None:
            raise ValueError("Rules not provided. Cannot classify.")

        index = self.build_index()
        self._print("\n[METRIC] Classifying composite index...")
        self._labels = classify_many(index.values, self.rules, missing_label='missing')

        for label, count in category_counts(self._labels, self.rules.labels).items():
            self._print(f"  → {label:25s} {count}")
        return self._labels

    def category_summary(self) -> pd.DataFrame:
        """Outcome (or index, without an outcome) summarized per category in rule order."""
        labels = self.classify()
        values = self.dataset.column(self.outcome) if self.outcome else self.build_index().values
        return summarize_by_category(values, labels, order=self.rules.labels)

    # =========================================================================
    # ASSOCIATION
    # =========================================================================

    def _outcome_values(self) -> np.ndarray:
        if self.outcome is None:
            raise ValueError("Outcome not provided. Cannot compute association metrics.")
        return self.dataset.column(self.outcome)

    def calculate_correlation(self, method: str = 'pearson') -> AssociationResult:
        """
        Correlation between the composite index and the outcome.

        Args:
            method: 'pearson' (weighted when the analyzer is weighted) or 'spearman'.
        """
        if method not in ('pearson', 'spearman'):
            raise ValueError(f"Invalid method '{method}'. Use 'pearson' or 'spearman'.")

        self._print(f"\n[METRIC] Calculating correlation (method={method})...")
        x = self.build_index().values
        y = self._outcome_values()
        result = pearson(x, y, weights=self._weights) if method == 'pearson' else spearman(x, y)

        self._print(f"  → r = {result.estimate:.4f} ({correlation_strength(result.estimate)})")
        self._print(f"  → p-value: {result.p_value:.4g} (n={result.n})")
        return result

    def calculate_group_difference(self, a: str, b: str) -> AssociationResult:
        """
        Welch's t test of the outcome between two categories (a minus b).

        Raises:
            ValueError: If rules or outcome are missing, or a label is not a rule label.
        """
        if self.rules is None:
            raise ValueError("Rules not provided. Cannot compare categories.")
        unknown = [label for label in (a, b) if label not in self.rules.labels]
        if unknown:
            raise ValueError(f"Unknown category labels {unknown}. Valid: {self.rules.labels}")

        self._print(f"\n[METRIC] Comparing outcome: {a} vs {b}...")
        result = group_difference(self._outcome_values(), self.classify(), a, b, weights=self._weights)
        self._print(f"  → Difference: {result.estimate:.4f} ± {result.std_error:.4f}")
        self._print(f"  → t = {result.statistic:.3f}, p = {result.p_value:.4g} (n={result.n})")
        return result

    def calculate_regression(self) -> AssociationResult:
        """Weighted regression of the outcome on the index plus covariates."""
        self._print("\n[METRIC] Calculating weighted regression...")
        covariates = [self.dataset.column(name) for name in self.covariates]
        result = weighted_regression(
            self._outcome_values(),
            self.build_index().values,
            weights=self._weights,
            covariates=covariates or None
        )
        self._print(f"  → Slope: {result.estimate:.4f} ± {result.std_error:.4f}")
        self._print(f"  → t = {result.statistic:.3f}, p = {result.p_value:.4g}, R² = {result.r_squared:.3f}")
        return result

    def calculate_smooth_comparison(self) -> SmoothComparisonResult:
        """F test of a smooth fit of the outcome on the index against the linear fit."""
        self._print(f"\n[METRIC] Comparing smooth (edf={self.edf}) and linear fits...")
        result = smooth_comparison(
            self._outcome_values(),
            self.build_index().values,
            weights=self._weights,
            edf=self.edf
        )
        self._print(f"  → F = {result.f_statistic:.3f}, p = {result.p_value:.4g}")
        self._print(f"  → R² linear {result.r_squared_linear:.3f} vs smooth {result.r_squared_smooth:.3f}")
        return result

    # =========================================================================
    # SPATIAL
    # =========================================================================

    def _indexed_centroids(self) -> Tuple[np.ndarray, np.ndarray]:
        """Centroids and index values for records with a finite index."""
        coords = self.dataset.centroids()
        values = np.asarray(self.build_index().values)
        mask = np.isfinite(values)
        return coords[mask], values[mask]

    def _focus_centroids(self) -> np.ndarray:
        """Centroids of the units the point-pattern metrics run on."""
        coords = self.dataset.centroids()
        if self.focus_labels is None:
            return coords
        labels = np.array(self.classify())
        mask = np.isin(labels, self.focus_labels)
        self._print(f"  Focus units ({', '.join(self.focus_labels)}): {int(mask.sum())}")
        return coords[mask]

    def calculate_morans_i(self) -> MoranResult:
        """Moran's I of the composite index over k-nearest-neighbor weights."""
        self._print(f"\n[METRIC] Calculating Moran's I (k={self.knn_k})...")
        coords, values = self._indexed_centroids()
        W = knn_weights(coords, k=self.knn_k, deadline=self._deadline)
        result = morans_i(
            values, W,
            permutations=self.permutations,
            seed=self.seed,
            deadline=self._deadline
        )
        self._print(f"  → Moran's I: {result.moran_i:.4f} (E[I] = {result.expected_i:.4f})")
        self._print(f"  → z = {result.z_score:.2f}, p = {result.p_value:.4g}")
        if result.p_value_sim is not None:
            self._print(f"  → Permutation p ({result.permutations}): {result.p_value_sim:.4g}")
        return result

    def calculate_clustering(self) -> ClusteringResult:
        """Nearest-neighbor clustering ratio of the focus units."""
        self._print("\n[METRIC] Calculating nearest-neighbor clustering ratio...")
        result = clustering_ratio(
            self._focus_centroids(),
            threshold=self.clustering_threshold,
            deadline=self._deadline
        )
        self._print(f"  → Observed mean NND: {result.mean_observed_distance:.4f}")
        self._print(f"  → Expected mean NND: {result.mean_expected_distance:.4f}")
        self._print(f"  → Ratio: {result.clustering_ratio:.3f} ({'CLUSTERED' if result.is_clustered else 'NOT CLUSTERED'})")
        return result

    def calculate_corridor(self) -> CorridorResult:
        """PCA corridor detection on the focus units."""
        self._print("\n[METRIC] Calculating corridor orientation (PCA)...")
        result = detect_corridor(
            self._focus_centroids(),
            threshold=self.corridor_threshold,
            deadline=self._deadline
        )
        self._print(f"  → PC1 explains {result.pc1_variance_share * 100:.1f}% of spatial variance")
        self._print(f"  → Pattern: {'LINEAR' if result.is_linear else 'ISOTROPIC'}")
        return result

    def spatial_summary(self) -> SpatialResult:
        """All three spatial metrics as one SpatialResult."""
        moran = self.calculate_morans_i()
        clustering = self.calculate_clustering()
        corridor = self.calculate_corridor()
        return SpatialResult(
            moran_i=moran.moran_i,
            moran_p=moran.p_value,
            clustering_ratio=clustering.clustering_ratio,
            pc1_variance_share=corridor.pc1_variance_share,
            is_linear=corridor.is_linear,
            is_clustered=clustering.is_clustered,
            n=moran.n
        )

    # =========================================================================
    # REPORT GENERATION
    # =========================================================================

    def to_frame(self) -> pd.DataFrame:
        """One row per geography: id, component z-scores, composite index and label."""
        df = self.build_index().to_frame()
        if self.rules is not None:
            df['category'] = self.classify()
        return df

    def generate_report(self, skip_errors: bool = False) -> Tuple[pd.DataFrame, Dict[str, Any]]:
        """
        Run every metric the inputs support.

        Metrics whose inputs are absent (no outcome, no rules, no centroids)
        are skipped and listed under 'skipped_metrics'. A metric that fails
        with an engine error is re-raised unless skip_errors is True, in which
        case the error text is recorded under 'skipped_metrics' instead. No
        placeholder value is ever put in place of a failed metric.

        Returns:
            Tuple[pd.DataFrame, Dict[str, Any]]:
                - DataFrame with one summary row per computed metric
                - Dictionary with full results as plain dicts

        Raises:
            AnalysisTimeoutError: If time_budget was set and ran out.
        """
        self._print("\n" + "=" * 60)
        self._print("GENERATING AREAL METRICS REPORT")
        self._print("=" * 60)

        self._deadline = Deadline(self.time_budget) if self.time_budget is not None else None

        report: Dict[str, Any] = {
            'metadata': {
                'n_records': len(self.dataset),
                'components': [list(c) for c in self.spec.components],
                'missing_policy': self.missing_policy.value,
                'outcome': self.outcome,
                'covariates': self.covariates,
                'weighted': self.weighted,
                'rules': [[r.lower_bound, r.label] for r in self.rules] if self.rules else None,
                'focus_labels': self.focus_labels,
            },
            'metrics': {},
            'computed_metrics': [],
            'skipped_metrics': []
        }
        summary_rows = []

        has_outcome = self.outcome is not None
        has_rules = self.rules is not None
        has_centroids = self.dataset.has_centroids

        # (name, method, key measure, requires outcome, requires rules, requires centroids)
        metrics_config = [
            ('composite_index', self.build_index, None, False, False, False),
            ('classification', self.classify, None, False, True, False),
            ('correlation', self.calculate_correlation, 'estimate', True, False, False),
            ('regression', self.calculate_regression, 'estimate', True, False, False),
            ('smooth_comparison', self.calculate_smooth_comparison, 'f_statistic', True, False, False),
            ('morans_i', self.calculate_morans_i, 'moran_i', False, False, True),
            ('clustering', self.calculate_clustering, 'clustering_ratio', False, False, True),
            ('corridor', self.calculate_corridor, 'pc1_variance_share', False, False, True),
        ]

        try:
            for name, method, key, req_outcome, req_rules, req_centroids in tqdm(
                metrics_config, desc="Computing metrics", unit="metric", disable=not self.verbose
            ):
                missing = []
                if req_outcome and not has_outcome:
                    missing.append('outcome')
                if req_rules and not has_rules:
                    missing.append('rules')
                if req_centroids and not has_centroids:
                    missing.append('centroids')

                if missing:
                    self._print(f"[SKIP] {name}: requires {', '.join(missing)}")
                    report['skipped_metrics'].append({
                        'name': name,
                        'reason': f"Missing: {', '.join(missing)}"
                    })
                    continue

                if self._deadline is not None:
                    self._deadline.check(name)

                try:
                    result = method()
                except ArealMetricsError as e:
                    if not skip_errors or isinstance(e, TimeoutError):
                        raise
                    self._print(f"[ERROR] {name}: {e}")
                    report['skipped_metrics'].append({'name': name, 'reason': str(e)})
                    continue

                report['computed_metrics'].append(name)
                if name == 'composite_index':
                    report['metrics'][name] = {
                        'policy': result.policy,
                        'n_missing': int(np.isnan(result.values).sum()),
                        'zero_variance_components': list(result.zero_variance_components),
                    }
                elif name == 'classification':
                    report['metrics'][name] = category_counts(result, [*self.rules.labels, 'missing'])
                else:
                    report['metrics'][name] = result.to_dict()
                    summary_rows.append({
                        'metric': name,
                        'key_measure': key,
                        'value': getattr(result, key),
                        'p_value': getattr(result, 'p_value', np.nan)
                    })
        finally:
            # time_budget bounds this run only
            self._deadline = None

        summary_df = pd.DataFrame(summary_rows, columns=['metric', 'key_measure', 'value', 'p_value'])

        self._print("\n" + "=" * 60)
        self._print("REPORT SUMMARY")
        self._print("=" * 60)
        self._print(f"Computed: {len(report['computed_metrics'])} metrics")
        self._print(f"Skipped: {len(report['skipped_metrics'])} metrics")
        if len(summary_df) > 0:
            self._print("\nKey Results:")
            self._print("-" * 40)
            for _, row in summary_df.iterrows():
                self._print(f"  {row['metric']:20s} {row['key_measure']:20s} = {row['value']:.4f}")
        self._print("=" * 60)

        return summary_df, report


# =============================================================================
# MODULE-LEVEL CONVENIENCE FUNCTION
# =============================================================================


def analyze(
    dataset: Dataset,
    spec: IndexSpec,
    missing_policy: Union[MissingPolicy, str],
    rules: Optional[RuleSet] = None,
    outcome: Optional[str] = None,
    **kwargs: Any
) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Convenience function to run the full pipeline.

    This is a shortcut for creating an ArealMetricsAnalyzer and generating
    a report in a single call. Extra keyword arguments go to the analyzer.

    Example:
        >>> from areal_metrics import analyze, IndexSpec, MissingPolicy
        >>> df, report = analyze(
        ...     dataset,
        ...     IndexSpec.of('pct_single_person', 'pct_elderly'),
        ...     MissingPolicy.NEUTRAL_SUBSTITUTION,
        ...     outcome='log_pop_density'
        ... )
    """
    if not isinstance(dataset, Dataset):
        raise InputValidationError(f"Expected Dataset, got {type(dataset).__name__}")
    analyzer = ArealMetricsAnalyzer(
        dataset,
        spec,
        missing_policy,
        rules=rules,
        outcome=outcome,
        **kwargs
    )
    return analyzer.generate_report()
