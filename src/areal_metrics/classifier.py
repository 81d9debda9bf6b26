"""
Classifier: map a continuous score to an ordered category.

A RuleSet is an ordered list of (lower_bound_inclusive, label) rules. Rules are
evaluated from the highest lower bound downward and the first rule whose bound
is <= the value wins. The lowest rule is open-ended downward, so every finite
value maps to exactly one label; a value equal to a bound belongs to the rule
that starts at that bound.

Threshold cascades of the form

    x >= 10 ~ "Extreme", x >= 5 ~ "Strong", x >= 2 ~ "Moderate", TRUE ~ "Coupled"

translate directly:

    >>> rules = RuleSet([(10, 'Extreme'), (5, 'Strong'), (2, 'Moderate'), (-np.inf, 'Coupled')])
    >>> classify(5.0, rules)
    'Strong'
"""

import math
import numbers
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .exceptions import InputValidationError


@dataclass(frozen=True)
class ClassificationRule:
    """Values >= lower_bound (and below the next higher bound) get `label`."""
    lower_bound: float
    label: str

    def __post_init__(self):
        bound = float(self.lower_bound)
        if math.isnan(bound) or bound == math.inf:
            raise InputValidationError(f"Rule bound must be a number below +inf, got {self.lower_bound!r}")
        if not isinstance(self.label, str) or not self.label:
            raise InputValidationError(f"Rule label must be a non-empty string, got {self.label!r}")
        object.__setattr__(self, 'lower_bound', bound)


RuleLike = Union[ClassificationRule, Tuple[float, str]]


class RuleSet:
    """
    Ordered, non-overlapping classification rules.

    Rules may be given in any order; they are stored sorted by lower bound,
    highest first, which is also the evaluation order (see
    `evaluation_order`).

    Raises:
        InputValidationError: If empty, or if two rules share a bound.
    """

    def __init__(self, rules: Iterable[RuleLike]):
        parsed = [
            rule if isinstance(rule, ClassificationRule) else ClassificationRule(*rule)
            for rule in rules
        ]
        if not parsed:
            raise InputValidationError("RuleSet needs at least one rule")

        bounds = [rule.lower_bound for rule in parsed]
        if len(set(bounds)) != len(bounds):
            raise InputValidationError(f"RuleSet bounds overlap: {sorted(bounds)}")

        self._rules: Tuple[ClassificationRule, ...] = tuple(
            sorted(parsed, key=lambda rule: rule.lower_bound, reverse=True)
        )
        self._bounds = np.array([rule.lower_bound for rule in self._rules])

    @classmethod
    def from_upper_bounds(cls, cuts: Sequence[Tuple[float, str]], fallback: str) -> 'RuleSet':
        """
        Build from an ascending `x < bound ~ label` cascade with a final fallback.

        Example:
            >>> RuleSet.from_upper_bounds(
            ...     [(100, 'Rural'), (1000, 'Low'), (5000, 'Medium')],
            ...     fallback='High'
            ... )

        gives Rural for x < 100, Low for 100 <= x < 1000, Medium for
        1000 <= x < 5000 and High from 5000 upward.
        """
        cuts = list(cuts)
        if not cuts:
            return cls([(-math.inf, fallback)])
        uppers = [float(bound) for bound, _ in cuts]
        if uppers != sorted(uppers):
            raise InputValidationError("from_upper_bounds needs ascending bounds")
        rules = [(-math.inf, cuts[0][1])]
        for (bound, _), (_, label) in zip(cuts, cuts[1:]):
            rules.append((bound, label))
        rules.append((uppers[-1], fallback))
        return cls(rules)

    @classmethod
    def from_quantiles(
        cls,
        values: Sequence[float],
        probs: Union[int, Sequence[float]],
        labels: Optional[Sequence[str]] = None
    ) -> 'RuleSet':
        """
        Build rules whose bounds are sample quantiles of `values`.

        Each bound starts a rule, so `x >= quantile(x, p)` cascades carry over
        unchanged. An integer `probs` k gives k equal-count groups (like
        ntile), labelled '1'..'k' from lowest to highest unless labels are given.

        Args:
            values: Sample the quantiles are taken from (NaN ignored).
            probs: Ascending cut probabilities in (0, 1), or a group count.
            labels: One label per group, lowest first (len(probs) + 1).

        Raises:
            InputValidationError: If probabilities are out of range or not
                                 ascending, labels do not match, or two
                                 quantiles coincide (ties in the data).

        Example:
            >>> RuleSet.from_quantiles(df['pct_foreign_born'], [0.9], ['Typical', 'High'])
        """
        if isinstance(probs, numbers.Integral):
            if probs < 2:
                raise InputValidationError("from_quantiles needs at least 2 groups")
            probs = [i / probs for i in range(1, probs)]
        probs = [float(p) for p in probs]
        if not probs or any(not 0 < p < 1 for p in probs) or probs != sorted(probs):
            raise InputValidationError(f"probs must be ascending and inside (0, 1), got {probs}")
        if labels is None:
            labels = [str(i) for i in range(1, len(probs) + 2)]
        labels = list(labels)
        if len(labels) != len(probs) + 1:
            raise InputValidationError(
                f"from_quantiles needs {len(probs) + 1} labels, got {len(labels)}"
            )

        x = np.asarray(values, dtype=float)
        x = x[np.isfinite(x)]
        if len(x) == 0:
            raise InputValidationError("from_quantiles needs at least one finite value")
        bounds = np.quantile(x, probs)
        return cls([(-math.inf, labels[0])] + list(zip(bounds.tolist(), labels[1:])))

    @property
    def evaluation_order(self) -> Tuple[ClassificationRule, ...]:
        """Rules in the order they are tested: highest lower bound first."""
        return self._rules

    @property
    def labels(self) -> List[str]:
        """Category levels ordered from lowest to highest bound."""
        return [rule.label for rule in reversed(self._rules)]

    def __len__(self) -> int:
        return len(self._rules)

    def __iter__(self):
        return iter(self._rules)

    def __repr__(self) -> str:
        body = ', '.join(f"{rule.lower_bound:g}: {rule.label!r}" for rule in self._rules)
        return f"RuleSet({body})"

    def match(self, value: float) -> ClassificationRule:
        """Return the rule a finite value falls under."""
        for rule in self._rules:
            if rule.lower_bound <= value:
                return rule
        # Below every bound: the lowest rule is open-ended downward
        return self._rules[-1]


def classify(value: float, rules: RuleSet, missing_label: Optional[str] = None) -> str:
    """
    Label for a single value.

    Raises:
        InputValidationError: If value is NaN/None and no missing_label was given,
                             or if value is infinite.
    """
    if value is None or (isinstance(value, float) and math.isnan(value)) or (
        isinstance(value, np.floating) and np.isnan(value)
    ):
        if missing_label is None:
            raise InputValidationError("Cannot classify a missing value (pass missing_label)")
        return missing_label
    value = float(value)
    if math.isinf(value):
        raise InputValidationError(f"Cannot classify non-finite value {value}")
    return rules.match(value).label


def classify_many(
    values: Sequence[float],
    rules: RuleSet,
    missing_label: Optional[str] = None
) -> List[str]:
    """Vectorized classify(); the same boundary semantics for every element."""
    x = np.asarray(values, dtype=float)
    missing = np.isnan(x)
    if missing.any() and missing_label is None:
        raise InputValidationError(
            f"{int(missing.sum())} missing value(s) cannot be classified (pass missing_label)"
        )
    if np.isinf(x).any():
        raise InputValidationError("Cannot classify non-finite values")

    # Bounds are descending; the first bound <= x is the count of bounds > x
    ascending = rules._bounds[::-1]
    positions = len(ascending) - np.searchsorted(ascending, x, side='right')
    positions = np.minimum(positions, len(rules) - 1)
    labels = [rule.label for rule in rules.evaluation_order]
    return [missing_label if m else labels[p] for m, p in zip(missing, positions)]


def summarize_by_category(
    values: Sequence[float],
    labels: Sequence[str],
    order: Optional[Sequence[str]] = None
) -> pd.DataFrame:
    """
    Per-category summary: n, mean, median and SD of `values`.

    Args:
        values: Numeric values (NaN ignored in the statistics, counted in n_missing).
        labels: Category label per value, typically from classify_many().
        order: Category order for the output rows (e.g. RuleSet.labels).
              Categories with no members appear with n=0.

    Returns:
        pd.DataFrame: One row per category.
    """
    x = np.asarray(values, dtype=float)
    if len(x) != len(labels):
        raise InputValidationError("values and labels must have the same length")

    df = pd.DataFrame({'category': list(labels), 'value': x})
    if order is None:
        order = list(dict.fromkeys(labels))
    df['category'] = pd.Categorical(df['category'], categories=list(order), ordered=True)

    summary = df.groupby('category', observed=False)['value'].agg(
        n='size',
        n_missing=lambda s: int(s.isna().sum()),
        mean='mean',
        median='median',
        sd='std'
    )
    return summary.reset_index()


def category_counts(labels: Sequence[str], order: Optional[Sequence[str]] = None) -> Dict[str, int]:
    """Count of each category, in rule order when given."""
    counts = pd.Series(list(labels), dtype=object).value_counts()
    keys = list(order) if order is not None else list(dict.fromkeys(labels))
    return {key: int(counts.get(key, 0)) for key in keys}
