import pickle

import numpy as np
import pytest

from areal_metrics import (
    Dataset,
    GeoRecord,
    IndexSpec,
    InputValidationError,
    InsufficientDataError,
    MissingAttributeError,
    MissingPolicy,
    ZeroVarianceWarning,
    build_index,
    combine,
    standardize,
)


def test_standardize_weighted_mean_zero_sd_one(rng):
    values = rng.normal(40, 12, 200)
    weights = rng.uniform(1, 100, 200)
    result = standardize(values, weights)

    z = np.asarray(result.values)
    assert np.average(z, weights=weights) == pytest.approx(0.0, abs=1e-6)
    assert np.sqrt(np.average(z ** 2, weights=weights)) == pytest.approx(1.0, abs=1e-6)
    assert not result.zero_variance


def test_standardize_keeps_missing(rng):
    values = rng.normal(0, 1, 20)
    values[[3, 11]] = np.nan
    z = np.asarray(standardize(values).values)
    assert np.isnan(z[[3, 11]]).all()
    assert np.isfinite(np.delete(z, [3, 11])).all()


def test_standardize_zero_variance_warns_and_flags():
    with pytest.warns(ZeroVarianceWarning):
        result = standardize([5.0, 5.0, np.nan, 5.0], name='pct_elderly')
    assert result.zero_variance
    assert result.sd == 0.0
    z = np.asarray(result.values)
    assert z[[0, 1, 3]].tolist() == [0.0, 0.0, 0.0]
    assert np.isnan(z[2])


def test_standardize_all_missing():
    with pytest.raises(InsufficientDataError):
        standardize([np.nan, np.nan])


def test_standardize_output_is_read_only():
    result = standardize([1.0, 2.0, 3.0])
    with pytest.raises(ValueError):
        result.values[0] = 10.0


def test_combine_policies_differ_on_partial_missing():
    neutral = combine([[2.0], [np.nan]], MissingPolicy.NEUTRAL_SUBSTITUTION)
    renormalized = combine([[2.0], [np.nan]], MissingPolicy.EXCLUDE_AND_RENORMALIZE)
    assert neutral.tolist() == [1.0]
    assert renormalized.tolist() == [2.0]


def test_combine_all_missing_is_nan_under_both_policies():
    for policy in MissingPolicy:
        out = combine({'a': [np.nan, 1.0], 'b': [np.nan, 3.0]}, policy)
        assert np.isnan(out[0])
        assert out[1] == 2.0


def test_combine_accepts_policy_string():
    out = combine([[1.0], [np.nan], [2.0]], 'exclude_and_renormalize')
    assert out.tolist() == [1.5]


def test_combine_unknown_policy():
    with pytest.raises(InputValidationError, match="Unknown missing policy"):
        combine([[1.0]], 'drop')


def test_combine_length_mismatch():
    with pytest.raises(InputValidationError):
        combine([[1.0, 2.0], [1.0]], MissingPolicy.NEUTRAL_SUBSTITUTION)


@pytest.mark.parametrize("components", [[], [('a', 1), ('a', -1)], [('a', 2)]])
def test_index_spec_validation(components):
    with pytest.raises(InputValidationError):
        IndexSpec(components)


def _small_dataset():
    return Dataset([
        GeoRecord('01', {'a': 1.0, 'b': 10.0, 'c': 7.0}),
        GeoRecord('02', {'a': 2.0, 'b': None, 'c': 7.0}),
        GeoRecord('03', {'a': 3.0, 'b': 30.0, 'c': 7.0}),
        GeoRecord('04', {'a': None, 'b': None, 'c': None}),
    ])


def test_build_index_missing_attribute():
    with pytest.raises(MissingAttributeError) as excinfo:
        build_index(_small_dataset(), IndexSpec.of('a', 'income'), MissingPolicy.NEUTRAL_SUBSTITUTION)
    assert excinfo.value.attribute == 'income'


def test_build_index_sign_flips_component():
    ds = _small_dataset()
    up = build_index(ds, IndexSpec([('a', 1)]), MissingPolicy.NEUTRAL_SUBSTITUTION)
    down = build_index(ds, IndexSpec([('a', -1)]), MissingPolicy.NEUTRAL_SUBSTITUTION)
    np.testing.assert_allclose(np.asarray(up.values)[:3], -np.asarray(down.values)[:3])


def test_build_index_policies_and_fully_missing_record():
    ds = _small_dataset()
    spec = IndexSpec.of('a', 'b')
    neutral = build_index(ds, spec, MissingPolicy.NEUTRAL_SUBSTITUTION)
    renormalized = build_index(ds, spec, MissingPolicy.EXCLUDE_AND_RENORMALIZE)

    # Record '02' has only 'a' (z = 0 at the mean) so both policies give 0
    assert neutral['02'] == pytest.approx(0.0)
    assert renormalized['02'] == pytest.approx(0.0)
    # Record '01' has both components, identical under either policy
    assert neutral['01'] == pytest.approx(renormalized['01'])
    assert np.isnan(neutral['04'])
    assert np.isnan(renormalized['04'])


def test_build_index_reports_zero_variance_component():
    ds = _small_dataset()
    with pytest.warns(ZeroVarianceWarning):
        index = build_index(ds, IndexSpec.of('a', 'c'), MissingPolicy.NEUTRAL_SUBSTITUTION)
    assert index.zero_variance_components == ('c',)
    assert index.has_zero_variance


def test_build_index_frame_has_component_scores():
    index = build_index(_small_dataset(), IndexSpec.of('a', 'b'), MissingPolicy.EXCLUDE_AND_RENORMALIZE)
    df = index.to_frame()
    assert list(df.columns) == ['id', 'z_a', 'z_b', 'composite_index']
    assert len(df) == 4
    assert index.policy == 'exclude_and_renormalize'


def test_component_scores_are_read_only():
    index = build_index(_small_dataset(), IndexSpec.of('a', 'b'), MissingPolicy.EXCLUDE_AND_RENORMALIZE)
    with pytest.raises(TypeError):
        index.component_scores['a'] = np.zeros(4)
    with pytest.raises(TypeError):
        del index.component_scores['b']
    with pytest.raises(ValueError):
        index.component_scores['a'][0] = 99.0


def test_composite_index_pickles_and_converts():
    index = build_index(_small_dataset(), IndexSpec.of('a', 'b'), MissingPolicy.EXCLUDE_AND_RENORMALIZE)
    restored = pickle.loads(pickle.dumps(index))
    assert restored.ids == index.ids
    assert np.array_equal(restored.values, index.values, equal_nan=True)
    assert list(restored.component_scores) == ['a', 'b']
    with pytest.raises(TypeError):
        restored.component_scores['c'] = np.zeros(4)

    as_dict = index.to_dict()
    assert isinstance(as_dict['component_scores'], dict)
    assert len(as_dict['component_scores']['a']) == 4
