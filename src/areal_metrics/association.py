"""
AssociationTester: linear and non-linear association between two variables.

Three tests are provided, all accepting optional per-record weights (for
example population) end to end:

    - pearson(): weighted Pearson correlation, two-sided Student's t test on
      n-2 degrees of freedom, Fisher-z confidence interval.
    - weighted_regression(): weighted least squares via the normal equations,
      reporting the focal slope, its standard error, t, p and R².
    - smooth_comparison(): a natural cubic regression spline of the predictor
      against the straight-line fit, compared with an F test on the
      reduction in residual sum of squares.

Rows where any input is missing (NaN) or the weight is zero are dropped before
the sample-size check, so `n` in every result counts the observations that
actually entered the fit.
"""

from dataclasses import replace
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import linalg, stats

from .classifier import RuleSet
from .config import CONFIDENCE_LEVEL, MINIMUM_SAMPLE_SIZE, REGRESSION, SMOOTHING
from .exceptions import InputValidationError, InsufficientDataError, NumericInstabilityError
from .results import AssociationResult, SmoothComparisonResult

CORRELATION_STRENGTH = RuleSet([
    (0.0, 'weak'),
    (0.3, 'moderate'),
    (0.7, 'strong'),
])


# =============================================================================
# HELPERS
# =============================================================================


def _clean(
    method: str,
    columns: Sequence[np.ndarray],
    weights: Optional[Sequence[float]]
) -> Tuple[Tuple[np.ndarray, ...], np.ndarray]:
    """Drop rows with any NaN or zero weight; validate shapes and weights."""
    arrays = [np.asarray(c, dtype=float) for c in columns]
    n = len(arrays[0])
    for arr in arrays:
        if arr.ndim != 1 or len(arr) != n:
            raise InputValidationError(f"{method}: inputs must be 1-D arrays of equal length")

    if weights is None:
        w = np.ones(n)
    else:
        w = np.asarray(weights, dtype=float)
        if w.shape != (n,):
            raise InputValidationError(f"{method}: weights has shape {w.shape}, expected ({n},)")
        if np.any(np.isnan(w)) or np.any(np.isinf(w)) or np.any(w < 0):
            raise InputValidationError(f"{method}: weights must be finite and non-negative")

    keep = w > 0
    for arr in arrays:
        keep &= np.isfinite(arr)
    return tuple(arr[keep] for arr in arrays), w[keep]


def _require_n(method: str, n: int, minimum: Optional[int] = None) -> None:
    minimum = MINIMUM_SAMPLE_SIZE[method] if minimum is None else minimum
    if n < minimum:
        raise InsufficientDataError(method, n, minimum)


def weighted_mean(values: Sequence[float], weights: Optional[Sequence[float]] = None) -> float:
    x = np.asarray(values, dtype=float)
    w = np.ones(len(x)) if weights is None else np.asarray(weights, dtype=float)
    if w.sum() <= 0:
        raise InsufficientDataError('weighted_mean', int(np.sum(w > 0)), 1)
    return float(np.sum(w * x) / np.sum(w))


def weighted_variance(values: Sequence[float], weights: Optional[Sequence[float]] = None) -> float:
    """Population-form weighted variance Σw(x-m)²/Σw."""
    x = np.asarray(values, dtype=float)
    w = np.ones(len(x)) if weights is None else np.asarray(weights, dtype=float)
    mean = weighted_mean(x, w)
    return float(np.sum(w * (x - mean) ** 2) / np.sum(w))


def _check_conditioning(xtwx: np.ndarray, method: str) -> None:
    """
    Raise NumericInstabilityError if X'WX is singular or ill-conditioned.

    The matrix is equilibrated by its diagonal first, so predictors on very
    different scales do not count as ill-conditioned.
    """
    diag = np.diag(xtwx)
    if np.any(diag <= 0) or not np.all(np.isfinite(xtwx)):
        raise NumericInstabilityError(f"{method}: design matrix has a constant-zero or invalid column")
    scale = np.sqrt(diag)
    scaled = xtwx / np.outer(scale, scale)
    rcond = 1.0 / np.linalg.cond(scaled)
    if not np.isfinite(rcond) or rcond < REGRESSION['rcond_limit']:
        raise NumericInstabilityError(
            f"{method}: design matrix is singular (reciprocal condition number {rcond:.3g})"
        )


def _wls(X: np.ndarray, y: np.ndarray, w: np.ndarray, method: str):
    """
    Solve the weighted normal equations (X'WX) b = X'Wy.

    Returns:
        Tuple of (coefficients, (X'WX)^-1, weighted RSS).
    """
    xtw = X.T * w
    xtwx = xtw @ X
    xtwy = xtw @ y
    _check_conditioning(xtwx, method)
    try:
        beta = linalg.solve(xtwx, xtwy, assume_a='pos')
        xtwx_inv = linalg.inv(xtwx)
    except linalg.LinAlgError as exc:
        raise NumericInstabilityError(f"{method}: {exc}") from exc
    residuals = y - X @ beta
    rss = float(np.sum(w * residuals ** 2))
    return beta, xtwx_inv, rss


def _weighted_tss(y: np.ndarray, w: np.ndarray) -> float:
    mean = np.sum(w * y) / np.sum(w)
    return float(np.sum(w * (y - mean) ** 2))


def _two_sided_t(t_stat: float, df: float) -> float:
    if np.isinf(t_stat):
        return 0.0
    return float(2 * stats.t.sf(abs(t_stat), df))


# =============================================================================
# CORRELATION
# =============================================================================


def pearson(
    x: Sequence[float],
    y: Sequence[float],
    weights: Optional[Sequence[float]] = None,
    confidence_level: float = CONFIDENCE_LEVEL
) -> AssociationResult:
    """
    (Weighted) Pearson correlation with a two-sided t test.

    Formula:
        r = cov_w(x, y) / sqrt(var_w(x) var_w(y))
        t = r sqrt((n - 2) / (1 - r²)),  df = n - 2

    The computation is symmetric: pearson(x, y) and pearson(y, x) return
    identical results.

    Args:
        x, y: Paired observations.
        weights: Optional non-negative weights.
        confidence_level: Level of the Fisher-z interval (needs n > 3).

    Returns:
        AssociationResult with model_kind 'pearson'.

    Raises:
        InsufficientDataError: Fewer than 3 complete pairs.
        NumericInstabilityError: Either variable has zero variance.
    """
    (x, y), w = _clean('pearson', [x, y], weights)
    n = len(x)
    _require_n('pearson', n)

    total = w.sum()
    mx = np.sum(w * x) / total
    my = np.sum(w * y) / total
    dx = x - mx
    dy = y - my
    vx = np.sum(w * dx * dx)
    vy = np.sum(w * dy * dy)
    if vx <= 0 or vy <= 0:
        raise NumericInstabilityError("pearson: correlation undefined, a variable has zero variance")
    # w * (dx * dy) keeps the product bitwise symmetric in x and y
    r = float(np.clip(np.sum(w * (dx * dy)) / np.sqrt(vx * vy), -1.0, 1.0))

    df = n - 2
    if abs(r) == 1.0:
        t_stat = float(np.copysign(np.inf, r))
        std_error = 0.0
    else:
        std_error = float(np.sqrt((1 - r ** 2) / df))
        t_stat = r / std_error
    p_value = _two_sided_t(t_stat, df)

    conf_int = None
    if n > 3:
        z_crit = stats.norm.ppf(0.5 + confidence_level / 2)
        z = np.arctanh(r) if abs(r) < 1 else np.copysign(np.inf, r)
        half = z_crit / np.sqrt(n - 3)
        conf_int = (float(np.tanh(z - half)), float(np.tanh(z + half)))

    return AssociationResult(
        estimate=r,
        std_error=std_error,
        p_value=p_value,
        r_squared=r ** 2,
        model_kind='pearson',
        n=n,
        statistic=t_stat,
        df=float(df),
        conf_int=conf_int
    )


def spearman(x: Sequence[float], y: Sequence[float]) -> AssociationResult:
    """Spearman rank correlation: Pearson on average ranks, same t test."""
    (x, y), _ = _clean('spearman', [x, y], None)
    _require_n('spearman', len(x))
    result = pearson(stats.rankdata(x), stats.rankdata(y))
    return replace(result, model_kind='spearman')


def correlation_strength(r: float) -> str:
    """'weak' (|r| < 0.3), 'moderate' (< 0.7) or 'strong'."""
    return CORRELATION_STRENGTH.match(abs(r)).label


# =============================================================================
# GROUP COMPARISON
# =============================================================================


def _group_moments(x: np.ndarray, w: np.ndarray, weighted: bool) -> Tuple[float, float, float]:
    """Mean, sample variance and (effective) size of one group."""
    if not weighted:
        return float(x.mean()), float(x.var(ddof=1)), float(len(x))
    # Kish effective sample size
    n_eff = w.sum() ** 2 / np.sum(w ** 2)
    return weighted_mean(x, w), weighted_variance(x, w) * n_eff / (n_eff - 1), float(n_eff)


def group_difference(
    values: Sequence[float],
    labels: Sequence[str],
    a: str,
    b: str,
    weights: Optional[Sequence[float]] = None,
    confidence_level: float = CONFIDENCE_LEVEL
) -> AssociationResult:
    """
    Welch's t test for a difference in mean `values` between two labelled groups.

    Compares, for example, the outcome in 'High' tracts against 'Typical'
    tracts. With weights, group means and variances are weighted and the
    group sizes are Kish effective sizes (Σw)² / Σw².

    Formula:
        estimate = mean_a - mean_b
        se = sqrt(v_a / n_a + v_b / n_b)
        df = se⁴ / ((v_a/n_a)² / (n_a - 1) + (v_b/n_b)² / (n_b - 1))

    Args:
        values: Numeric values (NaN rows dropped).
        labels: Group label per value, typically from classify_many().
        a, b: The two groups to compare; the estimate is a minus b.
        weights: Optional non-negative weights.
        confidence_level: Level of the t interval on the difference.

    Returns:
        AssociationResult with model_kind 'welch_t'. r_squared is the effect
        size t² / (t² + df).

    Raises:
        InputValidationError: Mismatched lengths, or a == b.
        InsufficientDataError: Fewer than 2 complete observations in a group.
        NumericInstabilityError: Both groups have zero variance.
    """
    if a == b:
        raise InputValidationError("group_difference: compare two different groups")
    labels = np.asarray(labels, dtype=object)
    positions = np.arange(len(labels), dtype=float)
    # Row positions ride along so the labels get the same row filter
    (x, positions), w = _clean('group_difference', [values, positions], weights)
    labels = labels[positions.astype(int)]

    in_a = labels == a
    in_b = labels == b
    _require_n('group_difference', int(in_a.sum()))
    _require_n('group_difference', int(in_b.sum()))

    weighted = weights is not None
    mean_a, var_a, n_a = _group_moments(x[in_a], w[in_a], weighted)
    mean_b, var_b, n_b = _group_moments(x[in_b], w[in_b], weighted)
    if var_a <= 0 and var_b <= 0:
        raise NumericInstabilityError("group_difference: both groups have zero variance")

    if weighted:
        test = stats.ttest_ind_from_stats(
            mean_a, np.sqrt(var_a), n_a, mean_b, np.sqrt(var_b), n_b, equal_var=False
        )
    else:
        test = stats.ttest_ind(x[in_a], x[in_b], equal_var=False)

    se_a = var_a / n_a
    se_b = var_b / n_b
    std_error = float(np.sqrt(se_a + se_b))
    df = float((se_a + se_b) ** 2 / (se_a ** 2 / (n_a - 1) + se_b ** 2 / (n_b - 1)))
    estimate = mean_a - mean_b
    t_stat = float(test.statistic)

    t_crit = stats.t.ppf(0.5 + confidence_level / 2, df)
    return AssociationResult(
        estimate=float(estimate),
        std_error=std_error,
        p_value=float(test.pvalue),
        r_squared=t_stat ** 2 / (t_stat ** 2 + df),
        model_kind='welch_t',
        n=int(in_a.sum() + in_b.sum()),
        statistic=t_stat,
        df=df,
        conf_int=(float(estimate - t_crit * std_error), float(estimate + t_crit * std_error))
    )


# =============================================================================
# WEIGHTED LEAST SQUARES
# =============================================================================


def weighted_regression(
    y: Sequence[float],
    x: Sequence[float],
    weights: Optional[Sequence[float]] = None,
    covariates: Optional[Sequence[Sequence[float]]] = None,
    confidence_level: float = CONFIDENCE_LEVEL
) -> AssociationResult:
    """
    Weighted least-squares regression of y on x (plus optional controls).

    Solves (X'WX) b = X'Wy with X = [1, x, covariates...] and W the
    diagonal weight matrix. The reported estimate is the coefficient on x.

    Formula:
        se(b_x) = sqrt(s² [(X'WX)^-1]_xx),  s² = Σ w e² / (n - p)
        R² = 1 - Σ w e² / Σ w (y - ȳ_w)²

    Args:
        y: Outcome.
        x: Focal predictor.
        weights: Optional non-negative weights (e.g. population).
        covariates: Optional sequence of control columns, each the length of y.
        confidence_level: Level of the t interval on the slope.

    Returns:
        AssociationResult with model_kind 'wls' (or 'ols' without weights).

    Raises:
        InsufficientDataError: Fewer than 10 complete observations, or no
                              residual degrees of freedom.
        NumericInstabilityError: X'WX is singular.
    """
    controls = [np.asarray(c, dtype=float) for c in (covariates or [])]
    columns, w = _clean('weighted_regression', [y, x, *controls], weights)
    y, x, controls = columns[0], columns[1], list(columns[2:])
    n = len(y)
    p = 2 + len(controls)
    _require_n('weighted_regression', n, max(MINIMUM_SAMPLE_SIZE['weighted_regression'], p + 1))

    X = np.column_stack([np.ones(n), x, *controls])
    beta, xtwx_inv, rss = _wls(X, y, w, 'weighted_regression')

    df = n - p
    sigma2 = rss / df
    estimate = float(beta[1])
    std_error = float(np.sqrt(sigma2 * xtwx_inv[1, 1]))
    if std_error == 0:
        t_stat = float(np.copysign(np.inf, estimate)) if estimate != 0 else 0.0
    else:
        t_stat = estimate / std_error
    p_value = _two_sided_t(t_stat, df)

    tss = _weighted_tss(y, w)
    if tss <= 0:
        raise NumericInstabilityError("weighted_regression: outcome has zero variance")
    r_squared = 1.0 - rss / tss

    t_crit = stats.t.ppf(0.5 + confidence_level / 2, df)
    conf_int = (estimate - t_crit * std_error, estimate + t_crit * std_error)

    return AssociationResult(
        estimate=estimate,
        std_error=std_error,
        p_value=p_value,
        r_squared=float(r_squared),
        model_kind='wls' if weights is not None else 'ols',
        n=n,
        statistic=float(t_stat),
        df=float(df),
        conf_int=(float(conf_int[0]), float(conf_int[1]))
    )


# =============================================================================
# NON-LINEAR COMPARISON
# =============================================================================


def natural_spline_basis(x: np.ndarray, knots: np.ndarray) -> np.ndarray:
    """
    Natural cubic spline basis without intercept.

    With K knots the basis has K - 1 columns: x itself plus K - 2 truncated
    cubic terms constrained to be linear beyond the boundary knots.

    Formula:
        d_k(x) = ((x - ξ_k)³₊ - (x - ξ_K)³₊) / (ξ_K - ξ_k)
        N_{k+1}(x) = d_k(x) - d_{K-1}(x),  k = 1..K-2
    """
    knots = np.asarray(knots, dtype=float)
    K = len(knots)

    def d(k: int) -> np.ndarray:
        return (
            np.maximum(x - knots[k], 0) ** 3 - np.maximum(x - knots[-1], 0) ** 3
        ) / (knots[-1] - knots[k])

    d_last = d(K - 2)
    columns = [x] + [d(k) - d_last for k in range(K - 2)]
    return np.column_stack(columns)


def smooth_comparison(
    y: Sequence[float],
    x: Sequence[float],
    weights: Optional[Sequence[float]] = None,
    edf: int = SMOOTHING['edf']
) -> SmoothComparisonResult:
    """
    Compare a smoothed fit of y on x against the linear fit with an F test.

    The smooth model is a weighted regression on a natural cubic spline
    basis with `edf` columns (knots at quantiles of x). With edf = 1 the
    basis collapses to the line, so edf must be at least 2.

    Formula:
        F = ((RSS_linear - RSS_smooth) / (df_linear - df_smooth))
            / (RSS_smooth / df_smooth)

    where df_* are residual degrees of freedom (n - 2 and n - edf - 1).

    Args:
        y: Outcome.
        x: Predictor to smooth.
        weights: Optional non-negative weights used in both fits.
        edf: Degrees of freedom of the smooth term.

    Returns:
        SmoothComparisonResult.

    Raises:
        InsufficientDataError: Fewer than max(10, edf + 3) complete observations.
        NumericInstabilityError: Too few distinct x values for the knots, a
                                singular basis, or an exact smooth fit.
    """
    if int(edf) != edf or edf < SMOOTHING['min_edf']:
        raise InputValidationError(
            f"smooth_comparison: edf must be an integer >= {SMOOTHING['min_edf']}, got {edf}"
        )
    edf = int(edf)

    (y, x), w = _clean('smooth_comparison', [y, x], weights)
    n = len(y)
    _require_n('smooth_comparison', n, max(MINIMUM_SAMPLE_SIZE['smooth_comparison'], edf + 3))

    lo, hi = x.min(), x.max()
    if hi <= lo:
        raise NumericInstabilityError("smooth_comparison: predictor has zero variance")
    # Rescale to [0, 1] so cubic terms stay well-conditioned
    u = (x - lo) / (hi - lo)

    knots = np.unique(np.quantile(u, np.linspace(0, 1, edf + 1)))
    if len(knots) < edf + 1:
        raise NumericInstabilityError(
            f"smooth_comparison: predictor has too few distinct values for edf={edf}"
        )

    X_linear = np.column_stack([np.ones(n), u])
    X_smooth = np.column_stack([np.ones(n), natural_spline_basis(u, knots)])

    _, _, rss_linear = _wls(X_linear, y, w, 'smooth_comparison')
    _, _, rss_smooth = _wls(X_smooth, y, w, 'smooth_comparison')

    df_linear = n - X_linear.shape[1]
    df_smooth = n - X_smooth.shape[1]
    tss = _weighted_tss(y, w)
    if tss <= 0:
        raise NumericInstabilityError("smooth_comparison: outcome has zero variance")
    if rss_smooth <= tss * 1e-14:
        raise NumericInstabilityError("smooth_comparison: smooth model fits exactly, F undefined")

    reduction = max(rss_linear - rss_smooth, 0.0)
    f_stat = (reduction / (df_linear - df_smooth)) / (rss_smooth / df_smooth)
    p_value = float(stats.f.sf(f_stat, df_linear - df_smooth, df_smooth))

    return SmoothComparisonResult(
        f_statistic=float(f_stat),
        p_value=p_value,
        rss_linear=rss_linear,
        rss_smooth=rss_smooth,
        df_linear_resid=float(df_linear),
        df_smooth_resid=float(df_smooth),
        edf=edf,
        r_squared_linear=1.0 - rss_linear / tss,
        r_squared_smooth=1.0 - rss_smooth / tss,
        n=n
    )
