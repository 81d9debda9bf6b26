import numpy as np
import pytest

from areal_metrics import Dataset, GeoRecord


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)


@pytest.fixture
def county_dataset(rng):
    """60 synthetic counties in two states with centroids, population and attributes."""
    records = []
    for i in range(60):
        state = '06' if i < 30 else '41'
        lon = -124 + rng.uniform(0, 6)
        lat = 36 + rng.uniform(0, 8)
        single = rng.normal(30, 5)
        commute = rng.normal(12, 3) if i % 7 else None
        elderly = rng.normal(18, 4)
        density = 2.0 * (single - 30) / 5 + rng.normal(0, 1)
        records.append(GeoRecord(
            id=f"{state}{i:03d}",
            attributes={
                'pct_single_person': single,
                'pct_long_commute': commute,
                'pct_elderly': elderly,
                'log_pop_density': density,
            },
            centroid=(lon, lat),
            weight=float(rng.integers(1_000, 500_000))
        ))
    return Dataset(records)
