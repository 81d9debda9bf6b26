"""
Immutable result objects returned by the engine.

Every result is a frozen dataclass. Array fields are private copies marked
read-only, so a result never aliases the Dataset it was computed from.
"""

from dataclasses import asdict, dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
import pandas as pd


def frozen_array(values: Any) -> np.ndarray:
    """Copy into a float array and mark it read-only."""
    arr = np.array(values, dtype=float, copy=True)
    arr.setflags(write=False)
    return arr


def _plain(value: Any) -> Any:
    """Convert numpy scalars/arrays to plain Python for tabular export."""
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, tuple):
        return tuple(_plain(v) for v in value)
    return value


class _ResultMixin:

    def to_dict(self) -> Dict[str, Any]:
        return {k: _plain(v) for k, v in asdict(self).items()}


# =============================================================================
# INDEX BUILDER RESULTS
# =============================================================================


@dataclass(frozen=True)
class StandardizedValues(_ResultMixin):
    """
    Output of standardize().

    Attributes:
        values: z-scores, NaN where the input was missing.
        mean: Weighted mean of the non-null inputs.
        sd: Weighted (population) standard deviation of the non-null inputs.
        zero_variance: True when sd was 0 and values were zero-filled.
    """
    values: np.ndarray
    mean: float
    sd: float
    zero_variance: bool


@dataclass(frozen=True)
class CompositeIndex(_ResultMixin):
    """
    One composite score per record on a z-score scale.

    `values` is NaN only where every component was missing. The per-component
    (signed) z-scores are kept in `component_scores` for inspection, and
    `zero_variance_components` names components that were zero-filled.
    """
    ids: Tuple[str, ...]
    values: np.ndarray
    policy: str
    components: Tuple[Tuple[str, int], ...]
    component_scores: Mapping[str, np.ndarray] = field(default_factory=dict)
    zero_variance_components: Tuple[str, ...] = ()

    def __post_init__(self):
        scores = {name: frozen_array(v) for name, v in self.component_scores.items()}
        object.__setattr__(self, 'component_scores', MappingProxyType(scores))
        object.__setattr__(self, 'values', frozen_array(self.values))

    def __reduce__(self):
        # mappingproxy is not picklable; rebuild from a plain dict
        return (CompositeIndex, (
            self.ids, self.values, self.policy, self.components,
            dict(self.component_scores), self.zero_variance_components
        ))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ids': list(self.ids),
            'values': self.values.tolist(),
            'policy': self.policy,
            'components': [list(c) for c in self.components],
            'component_scores': {k: v.tolist() for k, v in self.component_scores.items()},
            'zero_variance_components': list(self.zero_variance_components),
        }

    def __len__(self) -> int:
        return len(self.ids)

    def __getitem__(self, record_id: str) -> float:
        try:
            return float(self.values[self.ids.index(record_id)])
        except ValueError:
            raise KeyError(f"No record with id '{record_id}'")

    @property
    def has_zero_variance(self) -> bool:
        return len(self.zero_variance_components) > 0

    def to_series(self, name: str = 'composite_index') -> pd.Series:
        return pd.Series(np.array(self.values), index=pd.Index(self.ids, name='id'), name=name)

    def to_frame(self) -> pd.DataFrame:
        """One row per record: composite index plus each signed component z-score."""
        df = pd.DataFrame(
            {f"z_{name}": np.array(scores) for name, scores in self.component_scores.items()},
            index=pd.Index(self.ids, name='id')
        )
        df['composite_index'] = np.array(self.values)
        return df.reset_index()


# =============================================================================
# ASSOCIATION RESULTS
# =============================================================================


@dataclass(frozen=True)
class AssociationResult(_ResultMixin):
    """
    Outcome of a correlation or regression test.

    For correlations `estimate` is the coefficient and `r_squared` its
    square; for regressions `estimate` is the focal slope.
    """
    estimate: float
    std_error: float
    p_value: float
    r_squared: float
    model_kind: str
    n: int
    statistic: float
    df: float
    conf_int: Optional[Tuple[float, float]] = None

    def is_significant(self, alpha: float = 0.05) -> bool:
        return self.p_value < alpha


@dataclass(frozen=True)
class SmoothComparisonResult(_ResultMixin):
    """
    F-test of a smoothed (spline) fit against the linear fit.

    A small p_value means the non-linear model reduces residual variation
    by more than its extra degrees of freedom would by chance.
    """
    f_statistic: float
    p_value: float
    rss_linear: float
    rss_smooth: float
    df_linear_resid: float
    df_smooth_resid: float
    edf: int
    r_squared_linear: float
    r_squared_smooth: float
    n: int
    model_kind: str = 'smooth_vs_linear'

    def is_significant(self, alpha: float = 0.05) -> bool:
        return self.p_value < alpha


# =============================================================================
# SPATIAL RESULTS
# =============================================================================


@dataclass(frozen=True)
class MoranResult(_ResultMixin):
    """
    Global Moran's I.

    `p_value` is always the two-sided normal approximation under the
    randomization assumption. `p_value_sim` is the permutation pseudo
    p-value, present only when permutations were requested.
    """
    moran_i: float
    expected_i: float
    variance: float
    z_score: float
    p_value: float
    n: int
    p_value_sim: Optional[float] = None
    permutations: int = 0


@dataclass(frozen=True)
class ClusteringResult(_ResultMixin):
    """Nearest-neighbor clustering ratio (expected / observed mean NN distance)."""
    clustering_ratio: float
    mean_observed_distance: float
    mean_expected_distance: float
    bbox_area: float
    n: int
    threshold: float
    is_clustered: bool


@dataclass(frozen=True)
class CorridorResult(_ResultMixin):
    """PCA of standardized centroid coordinates."""
    pc1_variance_share: float
    pc2_variance_share: float
    principal_axis: Tuple[float, float]
    scores: np.ndarray
    n: int
    threshold: float
    is_linear: bool


@dataclass(frozen=True)
class SpatialResult(_ResultMixin):
    """Aggregate spatial summary of one variable over one set of geographies."""
    moran_i: float
    moran_p: float
    clustering_ratio: float
    pc1_variance_share: float
    is_linear: bool
    is_clustered: bool
    n: int
