import time

import numpy as np
import pytest
from shapely.geometry import box

from areal_metrics import (
    AnalysisTimeoutError,
    Deadline,
    InputValidationError,
    InsufficientDataError,
    NumericInstabilityError,
    analyze_spatial,
    clustering_ratio,
    contiguity_weights,
    detect_corridor,
    knn_weights,
    lattice_weights,
    morans_i,
    row_standardize,
)


def _checkerboard(nrows, ncols):
    return np.array([(r + c) % 2 for r in range(nrows) for c in range(ncols)], dtype=float)


def _halves(nrows, ncols):
    return np.array([1.0 if c < ncols // 2 else 0.0 for r in range(nrows) for c in range(ncols)])


# =============================================================================
# SPATIAL WEIGHTS
# =============================================================================


def test_lattice_neighbor_counts():
    rook = lattice_weights(3, 3, 'rook')
    queen = lattice_weights(3, 3, 'queen')
    assert rook[4].nnz == 4
    assert queen[4].nnz == 8
    assert queen[0].nnz == 3
    np.testing.assert_allclose(np.asarray(rook.sum(axis=1)).ravel(), 1.0)


def test_contiguity_weights_from_polygons():
    cells = [box(c, r, c + 1, r + 1) for r in range(3) for c in range(3)]
    rook = contiguity_weights(cells, 'rook')
    queen = contiguity_weights(cells, 'queen')
    assert rook[4].nnz == 4
    assert queen[4].nnz == 8
    assert (rook != lattice_weights(3, 3, 'rook')).nnz == 0


def test_knn_weights_rows(rng):
    coords = rng.uniform(size=(50, 2))
    W = knn_weights(coords, k=5)
    assert W.shape == (50, 50)
    assert all(W[i].nnz == 5 for i in range(50))
    assert W.diagonal().sum() == 0
    np.testing.assert_allclose(np.asarray(W.sum(axis=1)).ravel(), 1.0)


def test_row_standardize_keeps_islands_zero():
    W = row_standardize(np.array([[0, 2, 2], [1, 0, 0], [0, 0, 0]]))
    np.testing.assert_allclose(W.toarray(), [[0, 0.5, 0.5], [1, 0, 0], [0, 0, 0]])


# =============================================================================
# MORAN'S I
# =============================================================================


def test_morans_i_checkerboard_is_negative():
    W = lattice_weights(8, 8, 'rook')
    result = morans_i(_checkerboard(8, 8), W)
    assert result.moran_i == pytest.approx(-1.0)
    assert result.moran_i < result.expected_i
    assert result.p_value < 0.001


def test_morans_i_blocks_are_positive():
    W = lattice_weights(8, 8, 'rook')
    result = morans_i(_halves(8, 8), W)
    assert result.moran_i > 0.5
    assert result.z_score > 0
    assert result.p_value < 0.001
    assert result.expected_i == pytest.approx(-1 / 63)


def test_morans_i_dense_and_sparse_agree():
    W = lattice_weights(5, 5, 'queen')
    values = np.arange(25, dtype=float) ** 1.5
    sparse_result = morans_i(values, W)
    dense_result = morans_i(values, W.toarray())
    assert sparse_result.moran_i == pytest.approx(dense_result.moran_i)
    assert sparse_result.variance == pytest.approx(dense_result.variance)


def test_morans_i_permutations_are_reproducible():
    W = lattice_weights(8, 8, 'rook')
    values = _halves(8, 8)
    first = morans_i(values, W, permutations=199, seed=7)
    second = morans_i(values, W, permutations=199, seed=7)
    assert first.p_value_sim == second.p_value_sim
    assert first.p_value_sim == pytest.approx(1 / 200)
    assert first.permutations == 199


def test_morans_i_errors():
    W = lattice_weights(2, 2)
    with pytest.raises(NumericInstabilityError):
        morans_i([1.0, 1.0, 1.0, 1.0], W)
    with pytest.raises(InputValidationError):
        morans_i([1.0, 2.0, 3.0, 4.0, 5.0], W)
    with pytest.raises(InputValidationError):
        morans_i([1.0, np.nan, 3.0, 4.0], W)
    with pytest.raises(InsufficientDataError):
        morans_i([1.0, 2.0, 3.0], lattice_weights(1, 3))
    with pytest.raises(NumericInstabilityError):
        morans_i([1.0, 2.0, 3.0, 4.0], np.zeros((4, 4)))


def test_morans_i_permutations_respect_deadline():
    deadline = Deadline(0.001)
    time.sleep(0.01)
    W = lattice_weights(8, 8, 'rook')
    with pytest.raises(AnalysisTimeoutError) as excinfo:
        morans_i(_halves(8, 8), W, permutations=999, deadline=deadline)
    assert 'morans_i' in excinfo.value.stage
    assert isinstance(excinfo.value, TimeoutError)


# =============================================================================
# CLUSTERING RATIO
# =============================================================================


def test_two_tight_clusters_are_clustered(rng):
    cluster_a = rng.normal(loc=(0, 0), scale=1.0, size=(50, 2))
    cluster_b = rng.normal(loc=(10, 10), scale=1.0, size=(50, 2))
    result = clustering_ratio(np.vstack([cluster_a, cluster_b]))
    assert result.clustering_ratio > 1.2
    assert result.is_clustered
    assert result.n == 100


def test_uniform_scatter_ratio_near_one(rng):
    coords = rng.uniform(0, 1, size=(1000, 2))
    result = clustering_ratio(coords)
    assert result.clustering_ratio == pytest.approx(1.0, abs=0.15)
    assert not result.is_clustered


def test_clustering_ignores_coincident_points():
    coords = [(0, 0), (0, 0), (1, 0), (0, 1), (1, 1)]
    result = clustering_ratio(coords)
    assert result.mean_observed_distance == pytest.approx(1.0)
    assert result.bbox_area == pytest.approx(1.0)
    assert result.mean_expected_distance == pytest.approx(0.5 * np.sqrt(1 / 5))


def test_clustering_errors():
    with pytest.raises(InsufficientDataError) as excinfo:
        clustering_ratio([(0, 0), (1, 1), (2, 0), (0, 2)])
    assert excinfo.value.minimum == 5
    with pytest.raises(NumericInstabilityError):
        clustering_ratio([(float(i), 0.0) for i in range(6)])


def test_clustering_ratio_respects_deadline(rng):
    deadline = Deadline(0.001)
    time.sleep(0.01)
    with pytest.raises(AnalysisTimeoutError) as excinfo:
        clustering_ratio(rng.uniform(0, 1, size=(200, 2)), deadline=deadline)
    assert excinfo.value.stage == 'clustering_ratio'


def test_clustering_ratio_with_fresh_deadline(rng):
    coords = rng.uniform(0, 1, size=(200, 2))
    assert clustering_ratio(coords, deadline=Deadline(60.0)) == clustering_ratio(coords)


# =============================================================================
# CORRIDOR DETECTION
# =============================================================================


def test_points_along_a_line_are_linear(rng):
    t = rng.uniform(0, 10, 200)
    coords = np.column_stack([t, 2 * t + rng.normal(scale=0.1, size=200)])
    result = detect_corridor(coords)
    assert result.pc1_variance_share > 0.95
    assert result.is_linear
    assert result.pc1_variance_share + result.pc2_variance_share == pytest.approx(1.0)
    # Positive correlation: both axis components share a sign
    assert result.principal_axis[0] * result.principal_axis[1] > 0


def test_isotropic_cloud_is_not_linear(rng):
    coords = rng.uniform(0, 1, size=(2000, 2))
    result = detect_corridor(coords)
    assert result.pc1_variance_share == pytest.approx(0.5, abs=0.1)
    assert not result.is_linear


def test_corridor_share_ignores_coordinate_scale(rng):
    coords = rng.normal(size=(100, 2))
    scaled = coords * np.array([1000.0, 0.01])
    assert detect_corridor(coords).pc1_variance_share == pytest.approx(
        detect_corridor(scaled).pc1_variance_share
    )


def test_corridor_errors():
    with pytest.raises(InsufficientDataError):
        detect_corridor(np.random.default_rng(0).normal(size=(9, 2)))
    with pytest.raises(NumericInstabilityError):
        detect_corridor([(float(i), 3.0) for i in range(12)])


def test_corridor_scores_are_read_only(rng):
    result = detect_corridor(rng.normal(size=(20, 2)))
    assert result.scores.shape == (20, 2)
    with pytest.raises(ValueError):
        result.scores[0, 0] = 1.0


# =============================================================================
# COMBINED
# =============================================================================


def test_analyze_spatial(rng):
    coords = rng.uniform(0, 10, size=(400, 2))
    values = coords[:, 0] + rng.normal(scale=0.5, size=400)
    result = analyze_spatial(values, coords, k=6)
    assert result.n == 400
    assert result.moran_i > 0.5
    assert result.moran_p < 0.001
    assert not result.is_clustered
    assert not result.is_linear


def test_analyze_spatial_with_explicit_weights():
    coords = np.array([(c, r) for r in range(8) for c in range(8)], dtype=float)
    result = analyze_spatial(_checkerboard(8, 8), coords, W=lattice_weights(8, 8))
    assert result.moran_i == pytest.approx(-1.0)
