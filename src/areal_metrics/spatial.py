"""
SpatialAnalyzer: spatial autocorrelation, clustering and corridor detection.

The metrics are organized in three groups:
    - Spatial weights: k-nearest-neighbor, lattice and polygon contiguity
      weights, returned as row-standardized scipy.sparse matrices so tens of
      thousands of units fit in memory.
    - Autocorrelation: global Moran's I with a normal-approximation p-value.
    - Point pattern: nearest-neighbor clustering ratio and PCA-based linear
      corridor detection on unit centroids.

Distances are Euclidean in the coordinate units supplied. With raw
longitude/latitude that means degrees, which is adequate for the ratio and
PCA share (both are scale free) over areas the size of a state.
"""

from typing import Optional, Sequence

import numpy as np
from scipy import sparse, stats
from scipy.spatial import KDTree
from shapely import STRtree
from shapely.geometry import MultiPoint, box

from .config import MINIMUM_SAMPLE_SIZE, MORAN, THRESHOLDS
from .deadline import Deadline, check_deadline
from .exceptions import InputValidationError, InsufficientDataError, NumericInstabilityError
from .results import ClusteringResult, CorridorResult, MoranResult, SpatialResult, frozen_array


def _as_coords(coords: Sequence[Sequence[float]], method: str) -> np.ndarray:
    arr = np.asarray(coords, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise InputValidationError(f"{method}: coordinates must have shape (n, 2), got {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise InputValidationError(f"{method}: coordinates must be finite")
    return arr


def _require_n(method: str, n: int) -> None:
    minimum = MINIMUM_SAMPLE_SIZE[method]
    if n < minimum:
        raise InsufficientDataError(method, n, minimum)


# =============================================================================
# SPATIAL WEIGHTS
# =============================================================================


def row_standardize(W) -> sparse.csr_matrix:
    """
    Scale each row to sum to 1. Rows with no neighbors (islands) stay zero.

    Raises:
        InputValidationError: If W is not square or has negative entries.
    """
    W = sparse.csr_matrix(W, dtype=float)
    if W.shape[0] != W.shape[1]:
        raise InputValidationError(f"Weight matrix must be square, got {W.shape}")
    if W.nnz and W.data.min() < 0:
        raise InputValidationError("Weight matrix has negative entries")
    row_sums = np.asarray(W.sum(axis=1)).ravel()
    inverse = np.divide(1.0, row_sums, out=np.zeros_like(row_sums), where=row_sums > 0)
    return sparse.csr_matrix(sparse.diags(inverse) @ W)


def knn_weights(
    coords: Sequence[Sequence[float]],
    k: int = MORAN['knn_k'],
    deadline: Optional[Deadline] = None
) -> sparse.csr_matrix:
    """
    Row-standardized k-nearest-neighbor weights.

    Each unit gets its k closest other units as neighbors (coincident points
    included). k is capped at n - 1.
    """
    coords = _as_coords(coords, 'knn_weights')
    n = len(coords)
    if n < 2:
        raise InsufficientDataError('knn_weights', n, 2)
    if k < 1:
        raise InputValidationError("k must be at least 1")
    k = min(k, n - 1)

    check_deadline(deadline, 'knn_weights')
    tree = KDTree(coords)
    _, indices = tree.query(coords, k=k + 1)
    indices = np.atleast_2d(indices)

    rows, cols = [], []
    for i, candidates in enumerate(indices):
        neighbors = [j for j in candidates if j != i][:k]
        rows.extend([i] * len(neighbors))
        cols.extend(neighbors)
    check_deadline(deadline, 'knn_weights')

    W = sparse.csr_matrix((np.ones(len(rows)), (rows, cols)), shape=(n, n))
    return row_standardize(W)


def lattice_weights(nrows: int, ncols: int, contiguity: str = 'rook') -> sparse.csr_matrix:
    """
    Row-standardized weights for a regular grid, cells numbered row-major.

    Args:
        nrows, ncols: Grid dimensions.
        contiguity: 'rook' (shared edge, up to 4 neighbors) or 'queen'
                   (shared edge or corner, up to 8 neighbors).
    """
    if contiguity not in ('rook', 'queen'):
        raise InputValidationError(f"Invalid contiguity '{contiguity}'. Use 'rook' or 'queen'.")
    if nrows < 1 or ncols < 1:
        raise InputValidationError("Grid dimensions must be positive")

    if contiguity == 'rook':
        offsets = [(-1, 0), (1, 0), (0, -1), (0, 1)]
    else:
        offsets = [(dr, dc) for dr in (-1, 0, 1) for dc in (-1, 0, 1) if (dr, dc) != (0, 0)]

    rows, cols = [], []
    for r in range(nrows):
        for c in range(ncols):
            for dr, dc in offsets:
                nr, nc = r + dr, c + dc
                if 0 <= nr < nrows and 0 <= nc < ncols:
                    rows.append(r * ncols + c)
                    cols.append(nr * ncols + nc)

    n = nrows * ncols
    W = sparse.csr_matrix((np.ones(len(rows)), (rows, cols)), shape=(n, n))
    return row_standardize(W)


def contiguity_weights(geometries: Sequence, contiguity: str = 'queen') -> sparse.csr_matrix:
    """
    Row-standardized contiguity weights from polygon geometries.

    Args:
        geometries: Shapely polygons (e.g. tract boundaries), in record order.
        contiguity: 'queen' (any shared boundary point) or 'rook' (a shared
                   boundary segment of positive length).
    """
    if contiguity not in ('rook', 'queen'):
        raise InputValidationError(f"Invalid contiguity '{contiguity}'. Use 'rook' or 'queen'.")
    geometries = list(geometries)
    n = len(geometries)
    tree = STRtree(geometries)

    rows, cols = [], []
    for i, geom in enumerate(geometries):
        for j in tree.query(geom, predicate='intersects'):
            j = int(j)
            if j == i:
                continue
            if contiguity == 'rook':
                shared = geom.boundary.intersection(geometries[j].boundary)
                if shared.length <= 0:
                    continue
            rows.append(i)
            cols.append(j)

    W = sparse.csr_matrix((np.ones(len(rows)), (rows, cols)), shape=(n, n))
    return row_standardize(W)


# =============================================================================
# AUTOCORRELATION
# =============================================================================


def morans_i(
    values: Sequence[float],
    W,
    permutations: int = MORAN['permutations'],
    seed: Optional[int] = None,
    deadline: Optional[Deadline] = None
) -> MoranResult:
    """
    Global Moran's I.

    Formula:
        I = (n / S0) × Σ_ij w_ij z_i z_j / Σ_i z_i²,  z = x - x̄,  S0 = Σ_ij w_ij

    The p-value is two-sided from the normal approximation with the
    variance under the randomization assumption (Cliff & Ord). When
    permutations > 0 a permutation pseudo p-value is reported as well, in
    `p_value_sim`; `p_value` is always the normal approximation.

    Interpretation:
        - I > E[I]: similar values sit next to each other (clustering)
        - I ≈ E[I] = -1/(n-1): no spatial pattern
        - I < E[I]: neighbors tend to differ (checkerboard)

    Args:
        values: One value per unit; NaN is not allowed.
        W: n×n spatial weights (dense or sparse), usually row-standardized.
        permutations: Number of random permutations (0 disables).
        seed: Seed for the permutation generator.
        deadline: Optional Deadline checked during permutations.

    Raises:
        InsufficientDataError: n < 4.
        NumericInstabilityError: Zero variance in values, or no neighbor links.
    """
    x = np.asarray(values, dtype=float)
    if x.ndim != 1:
        raise InputValidationError("morans_i: values must be one-dimensional")
    if np.any(~np.isfinite(x)):
        raise InputValidationError("morans_i: values contain missing or non-finite entries")
    n = len(x)
    _require_n('morans_i', n)

    W = sparse.csr_matrix(W, dtype=float)
    if W.shape != (n, n):
        raise InputValidationError(f"morans_i: weight matrix is {W.shape}, expected ({n}, {n})")
    if W.nnz and W.data.min() < 0:
        raise InputValidationError("morans_i: weight matrix has negative entries")

    S0 = float(W.sum())
    if S0 <= 0:
        raise NumericInstabilityError("morans_i: weight matrix has no neighbor links")

    z = x - x.mean()
    denominator = float(np.sum(z ** 2))
    if denominator <= 0:
        raise NumericInstabilityError("morans_i: values have zero variance")

    moran = (n / S0) * float(z @ (W @ z)) / denominator

    expected = -1.0 / (n - 1)
    S1 = 0.5 * float((W + W.T).power(2).sum())
    S2 = float(np.sum((np.asarray(W.sum(axis=1)).ravel() + np.asarray(W.sum(axis=0)).ravel()) ** 2))
    b2 = (np.sum(z ** 4) / n) / ((denominator / n) ** 2)

    A = n * ((n ** 2 - 3 * n + 3) * S1 - n * S2 + 3 * S0 ** 2)
    B = b2 * ((n ** 2 - n) * S1 - 2 * n * S2 + 6 * S0 ** 2)
    C = (n - 1) * (n - 2) * (n - 3) * S0 ** 2
    variance = (A - B) / C - expected ** 2
    if variance <= 0:
        raise NumericInstabilityError("morans_i: non-positive variance under randomization")

    z_score = (moran - expected) / np.sqrt(variance)
    p_value = float(2 * stats.norm.sf(abs(z_score)))

    p_value_sim = None
    if permutations > 0:
        rng = np.random.default_rng(seed)
        extreme = 0
        for p in range(permutations):
            if p % 100 == 0:
                check_deadline(deadline, 'morans_i permutations')
            z_perm = rng.permutation(z)
            i_perm = (n / S0) * float(z_perm @ (W @ z_perm)) / denominator
            # Two-sided: deviation from E[I] at least as large as observed
            if abs(i_perm - expected) >= abs(moran - expected):
                extreme += 1
        p_value_sim = (extreme + 1) / (permutations + 1)

    return MoranResult(
        moran_i=float(moran),
        expected_i=float(expected),
        variance=float(variance),
        z_score=float(z_score),
        p_value=p_value,
        n=n,
        p_value_sim=p_value_sim,
        permutations=int(permutations)
    )


# =============================================================================
# POINT PATTERN
# =============================================================================


def _nearest_positive_distances(coords: np.ndarray, deadline: Optional[Deadline] = None) -> np.ndarray:
    """Distance from each point to its nearest non-coincident neighbor (NaN if none)."""
    n = len(coords)
    tree = KDTree(coords)
    k = 2
    result = np.full(n, np.nan)
    pending = np.arange(n)
    while len(pending) and k <= n:
        check_deadline(deadline, 'clustering_ratio')
        distances, _ = tree.query(coords[pending], k=k)
        distances = np.atleast_2d(distances)
        positive = np.where(distances > 0, distances, np.inf).min(axis=1)
        found = np.isfinite(positive)
        result[pending[found]] = positive[found]
        pending = pending[~found]
        if k == n:
            break
        k = min(n, k * 2)
    return result


def clustering_ratio(
    coords: Sequence[Sequence[float]],
    threshold: float = THRESHOLDS['clustering_ratio'],
    deadline: Optional[Deadline] = None
) -> ClusteringResult:
    """
    Nearest-neighbor clustering ratio.

    Compares the observed mean nearest-neighbor distance with the distance
    expected under a Poisson process of the same density in the bounding box.

    Formula:
        expected = 0.5 × sqrt(area / n)
        ratio = expected / observed

    Interpretation:
        - ratio ≈ 1.0: random scatter
        - ratio > threshold (default 1.2): neighbors closer than chance, clustered
        - ratio < 1.0: more evenly spaced than chance

    Coincident points are skipped when finding each point's nearest neighbor.
    The optional deadline is checked between nearest-neighbor passes.

    Raises:
        InsufficientDataError: n < 5.
        NumericInstabilityError: Zero-area bounding box (collinear or
                                coincident points).
    """
    coords = _as_coords(coords, 'clustering_ratio')
    n = len(coords)
    _require_n('clustering_ratio', n)

    bbox_area = float(box(*MultiPoint(coords).bounds).area)
    if bbox_area <= 0:
        raise NumericInstabilityError(
            "clustering_ratio: bounding box has zero area (points are collinear or coincident)"
        )

    nearest = _nearest_positive_distances(coords, deadline)
    mean_observed = float(np.nanmean(nearest))
    mean_expected = 0.5 * np.sqrt(bbox_area / n)
    ratio = mean_expected / mean_observed

    return ClusteringResult(
        clustering_ratio=float(ratio),
        mean_observed_distance=mean_observed,
        mean_expected_distance=float(mean_expected),
        bbox_area=bbox_area,
        n=n,
        threshold=float(threshold),
        is_clustered=bool(ratio > threshold)
    )


def detect_corridor(
    coords: Sequence[Sequence[float]],
    threshold: float = THRESHOLDS['pc1_variance_share'],
    deadline: Optional[Deadline] = None
) -> CorridorResult:
    """
    Linear corridor detection by PCA of standardized coordinates.

    Both coordinates are centered and scaled to unit variance, so the first
    principal component's share of variance is (1 + |r|) / 2 where r is the
    correlation between the coordinates: 0.5 for an isotropic cloud and
    close to 1 for points along a line.

    Raises:
        InsufficientDataError: n < 10.
        NumericInstabilityError: A coordinate has zero variance.
    """
    coords = _as_coords(coords, 'detect_corridor')
    n = len(coords)
    _require_n('detect_corridor', n)
    check_deadline(deadline, 'detect_corridor')

    centered = coords - coords.mean(axis=0)
    sd = centered.std(axis=0, ddof=1)
    if np.any(sd <= 0):
        raise NumericInstabilityError("detect_corridor: a coordinate has zero variance")
    Z = centered / sd

    corr = (Z.T @ Z) / (n - 1)
    try:
        eigenvalues, eigenvectors = np.linalg.eigh(corr)
    except np.linalg.LinAlgError as exc:
        raise NumericInstabilityError(f"detect_corridor: {exc}") from exc
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = np.clip(eigenvalues[order], 0, None)
    eigenvectors = eigenvectors[:, order]
    check_deadline(deadline, 'detect_corridor')

    # Fix sign so the axis is deterministic
    for col in range(eigenvectors.shape[1]):
        pivot = np.flatnonzero(np.abs(eigenvectors[:, col]) > 1e-12)[0]
        if eigenvectors[pivot, col] < 0:
            eigenvectors[:, col] *= -1

    shares = eigenvalues / eigenvalues.sum()
    axis = eigenvectors[:, 0]

    return CorridorResult(
        pc1_variance_share=float(shares[0]),
        pc2_variance_share=float(shares[1]),
        principal_axis=(float(axis[0]), float(axis[1])),
        scores=frozen_array(Z @ eigenvectors),
        n=n,
        threshold=float(threshold),
        is_linear=bool(shares[0] > threshold)
    )


def analyze_spatial(
    values: Sequence[float],
    coords: Sequence[Sequence[float]],
    W=None,
    k: int = MORAN['knn_k'],
    clustering_threshold: float = THRESHOLDS['clustering_ratio'],
    corridor_threshold: float = THRESHOLDS['pc1_variance_share'],
    permutations: int = MORAN['permutations'],
    seed: Optional[int] = None,
    deadline: Optional[Deadline] = None
) -> SpatialResult:
    """
    Moran's I, clustering ratio and corridor detection in one call.

    If W is None, k-nearest-neighbor weights are built from coords.
    """
    coords = _as_coords(coords, 'analyze_spatial')
    if W is None:
        W = knn_weights(coords, k=k, deadline=deadline)

    moran = morans_i(values, W, permutations=permutations, seed=seed, deadline=deadline)
    clustering = clustering_ratio(coords, threshold=clustering_threshold, deadline=deadline)
    corridor = detect_corridor(coords, threshold=corridor_threshold, deadline=deadline)

    return SpatialResult(
        moran_i=moran.moran_i,
        moran_p=moran.p_value,
        clustering_ratio=clustering.clustering_ratio,
        pc1_variance_share=corridor.pc1_variance_share,
        is_linear=corridor.is_linear,
        is_clustered=clustering.is_clustered,
        n=moran.n
    )
