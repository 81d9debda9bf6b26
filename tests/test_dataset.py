import math
import pickle

import numpy as np
import pandas as pd
import pytest

from areal_metrics import Dataset, GeoRecord, InputValidationError, MissingAttributeError, geoid_prefix


def test_duplicate_ids_rejected():
    with pytest.raises(InputValidationError, match="Duplicate"):
        Dataset([GeoRecord('06001', {'a': 1.0}), GeoRecord('06001', {'a': 2.0})])


def test_negative_weight_rejected():
    with pytest.raises(InputValidationError, match="non-negative"):
        GeoRecord('06001', {'a': 1.0}, weight=-5)


@pytest.mark.parametrize("value", ['12', True, float('inf')])
def test_malformed_attribute_rejected(value):
    with pytest.raises(InputValidationError):
        GeoRecord('06001', {'a': value})


def test_bad_centroid_rejected():
    with pytest.raises(InputValidationError, match="centroid"):
        GeoRecord('06001', {}, centroid=(1.0,))


def test_nan_attribute_is_missing():
    record = GeoRecord('06001', {'a': float('nan'), 'b': np.float64(2.5)})
    assert record.get('a') is None
    assert record.get('b') == 2.5


def test_record_attributes_read_only():
    record = GeoRecord('06001', {'a': 1.0})
    with pytest.raises(TypeError):
        record.attributes['a'] = 2.0


def test_column_missing_attribute_raises():
    ds = Dataset([GeoRecord('06001', {'a': 1.0})])
    with pytest.raises(MissingAttributeError) as excinfo:
        ds.column('b')
    assert excinfo.value.attribute == 'b'
    assert excinfo.value.available == ['a']


def test_column_fills_undeclared_records_with_nan():
    ds = Dataset([GeoRecord('1', {'a': 1.0}), GeoRecord('2', {'b': 2.0})])
    col = ds.column('a')
    assert col[0] == 1.0
    assert math.isnan(col[1])


def test_column_returns_copy():
    ds = Dataset([GeoRecord('1', {'a': 1.0})])
    col = ds.column('a')
    col[0] = 99.0
    assert ds.column('a')[0] == 1.0


def test_weights_default_to_one():
    ds = Dataset([GeoRecord('1', {}, weight=3.0), GeoRecord('2', {})])
    assert ds.weights().tolist() == [3.0, 1.0]
    assert ds.has_weights


def test_centroids_required():
    ds = Dataset([GeoRecord('1', {}, centroid=(0, 0)), GeoRecord('2', {})])
    assert not ds.has_centroids
    with pytest.raises(MissingAttributeError, match="centroid"):
        ds.centroids()


def test_from_records_splits_reserved_fields():
    rows = [
        {'GEOID': '06001', 'x': 1.0, 'lon': -122.0, 'lat': 37.7, 'pop': 100},
        {'GEOID': '06003', 'x': None, 'lon': -120.0, 'lat': 38.6, 'pop': 200},
    ]
    ds = Dataset.from_records(rows, 'GEOID', lon_field='lon', lat_field='lat', weight_field='pop')
    assert ds.ids == ('06001', '06003')
    assert ds.attribute_names == frozenset({'x'})
    assert ds['06003'].weight == 200.0
    assert ds.centroids().tolist() == [[-122.0, 37.7], [-120.0, 38.6]]


def test_from_frame_round_trips_to_frame():
    df = pd.DataFrame({
        'GEOID': ['06001', '06003', '06005'],
        'x': [1.0, np.nan, 3.0],
        'population': [10, 20, 30],
    })
    ds = Dataset.from_frame(df, 'GEOID', weight_column='population')
    out = ds.to_frame()
    assert list(out['id']) == ['06001', '06003', '06005']
    assert out['x'].isna().tolist() == [False, True, False]
    assert out['weight'].tolist() == [10.0, 20.0, 30.0]


def test_from_frame_missing_column():
    df = pd.DataFrame({'GEOID': ['1'], 'x': [1.0]})
    with pytest.raises(MissingAttributeError):
        Dataset.from_frame(df, 'GEOID', attributes=['y'])


def test_partition_by_geoid_prefix_preserves_order(county_dataset):
    parts = county_dataset.partition_by(geoid_prefix(2))
    assert list(parts) == ['06', '41']
    assert len(parts['06']) == 30
    assert parts['41'].ids == tuple(i for i in county_dataset.ids if i.startswith('41'))


def test_subset_unknown_id(county_dataset):
    with pytest.raises(InputValidationError):
        county_dataset.subset(['99999'])


def test_dataset_pickles(county_dataset):
    clone = pickle.loads(pickle.dumps(county_dataset))
    assert clone.ids == county_dataset.ids
    assert np.allclose(
        clone.column('pct_elderly'), county_dataset.column('pct_elderly'), equal_nan=True
    )
