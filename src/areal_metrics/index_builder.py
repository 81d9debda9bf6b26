"""
IndexBuilder: standardize attributes and combine them into a composite index.

A composite index averages the signed z-scores of several attributes, e.g. a
social isolation index built from the share of single-person households, the
share of long commutes and the share of elderly residents.

How records with some (but not all) components missing are averaged is an
explicit choice the caller must make through MissingPolicy:

    - NEUTRAL_SUBSTITUTION: a missing component contributes 0 (the mean) and
      the divisor stays the full declared component count. Partially missing
      records are pulled toward 0.
    - EXCLUDE_AND_RENORMALIZE: the divisor is the number of components that
      are present, so the index is the mean of what was observed.

Example:
    >>> spec = IndexSpec([('pct_single_person', 1), ('pct_long_commute', 1), ('pct_elderly', 1)])
    >>> index = build_index(dataset, spec, MissingPolicy.EXCLUDE_AND_RENORMALIZE)
    >>> index.to_series().describe()
"""

import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .dataset import Dataset
from .exceptions import InputValidationError, InsufficientDataError, ZeroVarianceWarning
from .results import CompositeIndex, StandardizedValues, frozen_array

# Relative tolerance under which a weighted SD is treated as zero
_ZERO_SD_TOLERANCE = 1e-12


class MissingPolicy(str, Enum):
    """How combine() averages records with missing components."""
    NEUTRAL_SUBSTITUTION = 'neutral_substitution'
    EXCLUDE_AND_RENORMALIZE = 'exclude_and_renormalize'


@dataclass(frozen=True)
class IndexSpec:
    """
    Ordered (attribute_name, sign) pairs feeding a composite index.

    A sign of -1 flips an attribute so that higher always means "more" of
    the concept the index measures (e.g. -1 for median income in a
    deprivation index).
    """
    components: Tuple[Tuple[str, int], ...]

    def __init__(self, components: Iterable[Tuple[str, int]]):
        components = tuple((str(name), int(sign)) for name, sign in components)
        if not components:
            raise InputValidationError("IndexSpec needs at least one component")
        names = [name for name, _ in components]
        if len(set(names)) != len(names):
            raise InputValidationError(f"IndexSpec has duplicate components: {names}")
        bad = [name for name, sign in components if sign not in (1, -1)]
        if bad:
            raise InputValidationError(f"IndexSpec signs must be +1 or -1 (bad: {bad})")
        object.__setattr__(self, 'components', components)

    @classmethod
    def of(cls, *names: str) -> 'IndexSpec':
        """All components with a positive sign."""
        return cls((name, 1) for name in names)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.components)

    def __len__(self) -> int:
        return len(self.components)


def _resolve_policy(policy: Union[MissingPolicy, str]) -> MissingPolicy:
    try:
        return MissingPolicy(policy)
    except ValueError:
        options = [p.value for p in MissingPolicy]
        raise InputValidationError(f"Unknown missing policy {policy!r}. Use one of {options}")


def _resolve_weights(weights: Optional[Sequence[float]], n: int) -> np.ndarray:
    if weights is None:
        return np.ones(n)
    w = np.asarray(weights, dtype=float)
    if w.shape != (n,):
        raise InputValidationError(f"weights has shape {w.shape}, expected ({n},)")
    if np.any(~np.isfinite(w)) or np.any(w < 0):
        raise InputValidationError("weights must be finite and non-negative")
    return w


def standardize(
    values: Sequence[float],
    weights: Optional[Sequence[float]] = None,
    name: str = 'values'
) -> StandardizedValues:
    """
    Weighted z-score over the non-null entries.

    Formula:
        z_i = (x_i - mean_w) / sd_w
        mean_w = Σ w_i x_i / Σ w_i
        sd_w = sqrt(Σ w_i (x_i - mean_w)² / Σ w_i)

    The population form is used so the output has weighted mean 0 and
    weighted SD 1 exactly. Missing (NaN) entries stay NaN.

    If sd_w is zero every non-null entry becomes 0, a ZeroVarianceWarning is
    emitted and the returned `zero_variance` flag is set.

    Raises:
        InsufficientDataError: If no entry with positive weight is present.
    """
    x = np.asarray(values, dtype=float)
    if x.ndim != 1:
        raise InputValidationError(f"{name} must be one-dimensional")
    w = _resolve_weights(weights, len(x))

    present = ~np.isnan(x)
    w_present = np.where(present, w, 0.0)
    total_weight = w_present.sum()
    if total_weight <= 0:
        raise InsufficientDataError(f"standardize({name})", int(np.sum(present & (w > 0))), 1)

    x_filled = np.where(present, x, 0.0)
    mean = float(np.sum(w_present * x_filled) / total_weight)
    var = float(np.sum(w_present * (x_filled - mean) ** 2) / total_weight)
    sd = float(np.sqrt(var))

    out = np.full(len(x), np.nan)
    zero_variance = sd <= _ZERO_SD_TOLERANCE * max(1.0, abs(mean))
    if zero_variance:
        warnings.warn(
            f"{name} has zero variance; standardized values set to 0",
            ZeroVarianceWarning,
            stacklevel=2
        )
        out[present] = 0.0
        sd = 0.0
    else:
        out[present] = (x[present] - mean) / sd

    return StandardizedValues(
        values=frozen_array(out),
        mean=mean,
        sd=sd,
        zero_variance=bool(zero_variance)
    )


def combine(
    components: Union[Mapping[str, Sequence[float]], Sequence[Sequence[float]]],
    missing_policy: Union[MissingPolicy, str],
    n_declared: Optional[int] = None
) -> np.ndarray:
    """
    Average per-component z-scores record by record.

    Args:
        components: Either a mapping name -> z-scores or a sequence of
                   z-score arrays, all of the same length. NaN marks missing.
        missing_policy: MissingPolicy (or its string value). No default:
                       the two policies differ for partially missing records.
        n_declared: Declared component count used as the divisor under
                   NEUTRAL_SUBSTITUTION. Defaults to the number of components.

    Returns:
        np.ndarray: Combined score per record; NaN only where every
                   component is missing.

    Example:
        >>> combine([[2.0], [np.nan]], MissingPolicy.NEUTRAL_SUBSTITUTION)
        array([1.])
        >>> combine([[2.0], [np.nan]], MissingPolicy.EXCLUDE_AND_RENORMALIZE)
        array([2.])
    """
    policy = _resolve_policy(missing_policy)

    arrays = list(components.values()) if isinstance(components, Mapping) else list(components)
    if not arrays:
        raise InputValidationError("combine needs at least one component")
    lengths = {len(a) for a in arrays}
    if len(lengths) != 1:
        raise InputValidationError(f"Components have different lengths: {sorted(lengths)}")

    matrix = np.column_stack([np.asarray(a, dtype=float) for a in arrays])
    present = ~np.isnan(matrix)
    n_present = present.sum(axis=1)
    totals = np.where(present, matrix, 0.0).sum(axis=1)

    if n_declared is None:
        n_declared = matrix.shape[1]
    if n_declared < matrix.shape[1]:
        raise InputValidationError(
            f"n_declared ({n_declared}) is smaller than the number of components ({matrix.shape[1]})"
        )

    if policy is MissingPolicy.NEUTRAL_SUBSTITUTION:
        divisor = np.full(len(totals), float(n_declared))
    else:
        divisor = n_present.astype(float)

    combined = np.full(len(totals), np.nan)
    has_any = n_present > 0
    combined[has_any] = totals[has_any] / divisor[has_any]
    return combined


def build_index(
    dataset: Dataset,
    spec: IndexSpec,
    missing_policy: Union[MissingPolicy, str],
    weighted: bool = False
) -> CompositeIndex:
    """
    Build a composite index from a Dataset.

    Every component column is checked before any computation, so an
    undeclared attribute fails with MissingAttributeError rather than
    producing a NaN column.

    Args:
        dataset: Source records.
        spec: Components and their signs.
        missing_policy: How partially missing records are averaged.
        weighted: Standardize with the dataset's record weights.

    Returns:
        CompositeIndex: One value per record, in dataset order.
    """
    policy = _resolve_policy(missing_policy)
    dataset.require(*spec.names)
    weights = dataset.weights() if weighted else None

    component_scores: Dict[str, np.ndarray] = {}
    zero_variance = []
    for name, sign in spec.components:
        column = dataset.column(name) * sign
        result = standardize(column, weights=weights, name=name)
        component_scores[name] = result.values
        if result.zero_variance:
            zero_variance.append(name)

    combined = combine(component_scores, policy, n_declared=len(spec))

    return CompositeIndex(
        ids=dataset.ids,
        values=frozen_array(combined),
        policy=policy.value,
        components=spec.components,
        component_scores=component_scores,
        zero_variance_components=tuple(zero_variance)
    )
