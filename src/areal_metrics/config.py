"""
Default thresholds and sample-size minimums.

Every public function takes its threshold as a keyword argument that falls back
to the values below, so one analysis can override a single setting without
touching the others.
"""

THRESHOLDS = {
    'clustering_ratio': 1.2,
    'pc1_variance_share': 0.60,
    'significance_alpha': 0.05,
}

MINIMUM_SAMPLE_SIZE = {
    'pearson': 3,
    'spearman': 3,
    'group_difference': 2,
    'weighted_regression': 10,
    'smooth_comparison': 10,
    'morans_i': 4,
    'clustering_ratio': 5,
    'detect_corridor': 10,
}

SMOOTHING = {
    'edf': 4,
    'min_edf': 2,
}

MORAN = {
    'permutations': 0,
    'knn_k': 6,
}

REGRESSION = {
    # Reciprocal condition number below which X'WX is treated as singular
    'rcond_limit': 1e-12,
}

CONFIDENCE_LEVEL = 0.95
