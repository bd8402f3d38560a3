import struct

import numpy as np
import pytest

from data_matrix import DataMatrix, IndexView
from summary import (
    SUMMARY_TYPES,
    BiGaussianSummary,
    CategoricalOutput,
    CategoricalSummary,
    GaussianOutput,
    GaussianSummary,
    NothingSummary,
    SummaryConfig,
    build_summary,
    decode_summary,
    list_summary_types,
    merge_many_summaries,
    merge_summaries,
)
from summary_errors import InvalidFeatureLayout, TruncatedData, UnknownSummaryType


def _params(summary):
    if isinstance(summary, CategoricalSummary):
        return ("C", summary.counts.tolist())
    if isinstance(summary, GaussianSummary):
        return ("G", summary.count, summary.mean, summary.variance)
    if isinstance(summary, BiGaussianSummary):
        return ("B", summary.count, summary.mean.tolist(), summary.covariance.tolist())
    return (summary.code,)


def test_registry_is_fixed_and_read_only():
    assert set(SUMMARY_TYPES) == {"N", "C", "G", "B"}
    assert [kind.code for kind in list_summary_types()] == ["N", "C", "G", "B"]
    for code, kind in SUMMARY_TYPES.items():
        assert kind.code == code
        assert kind.name and kind.description

    with pytest.raises(TypeError):
        SUMMARY_TYPES["Z"] = NothingSummary


def test_unknown_code_at_construction():
    matrix = DataMatrix(np.arange(4.0))
    with pytest.raises(UnknownSummaryType) as excinfo:
        build_summary("Z", matrix, IndexView.all(4), 0)
    assert excinfo.value.code == "Z"


def test_categorical_build_counts_categories():
    matrix = DataMatrix([[0], [2], [2], [1], [2]], discrete=[True], categories=[4])
    summary = CategoricalSummary.build(matrix, IndexView([0, 1, 2, 4]), 0)

    assert summary.counts.tolist() == [1, 0, 3, 0]
    assert summary.total == 4
    assert not summary.counts.flags.writeable


def test_categorical_empty_view_has_zero_histogram_and_zero_error():
    matrix = DataMatrix([[0], [1], [1]], discrete=[True])
    summary = CategoricalSummary.build(matrix, IndexView([]), 0)

    assert summary.counts.tolist() == [0, 0]
    assert summary.error(matrix, IndexView([]), 0) == 0.0

    # Empty histogram scored on real exemplars stays finite.
    err = summary.error(matrix, IndexView.all(3), 0)
    assert np.isfinite(err)
    assert err == pytest.approx(-3 * np.log(1e-6))


def test_categorical_error_is_negative_log_probability():
    matrix = DataMatrix([[0], [1], [5]], discrete=[True], categories=[2])
    summary = CategoricalSummary(counts=[3, 1])

    err = summary.error(matrix, IndexView([0, 1]), 0)
    assert err == pytest.approx(-np.log(0.75) - np.log(0.25))

    # Category outside the histogram is floored at epsilon.
    config = SummaryConfig(prob_epsilon=1e-3)
    assert summary.error(matrix, IndexView([2]), 0, config) == pytest.approx(-np.log(1e-3))


def test_categorical_merge_normalizes_summed_counts():
    merged = CategoricalSummary.merge([CategoricalSummary([3, 1]), CategoricalSummary([1, 3])])

    assert isinstance(merged, CategoricalOutput)
    assert np.allclose(merged.probabilities, [0.5, 0.5])


def test_categorical_merge_pads_and_handles_empty_histograms():
    merged = merge_summaries([CategoricalSummary([2]), CategoricalSummary([0, 0, 2])])
    assert np.allclose(merged.probabilities, [0.5, 0.0, 0.5])
    assert merged.prediction == 0

    empty = merge_summaries([CategoricalSummary([0, 0]), CategoricalSummary([0, 0])])
    assert np.allclose(empty.probabilities, [0.5, 0.5])


def test_gaussian_merge_matches_direct_fit():
    matrix = DataMatrix([1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
    low = GaussianSummary.build(matrix, IndexView([0, 1, 2]), 0)
    high = GaussianSummary.build(matrix, IndexView([3, 4, 5]), 0)
    direct = GaussianSummary.build(matrix, IndexView.all(6), 0)

    assert low.variance == pytest.approx(1.0)
    merged = GaussianSummary.merge([low, high])

    assert isinstance(merged, GaussianOutput)
    assert merged.mean == pytest.approx(3.5)
    assert merged.variance == pytest.approx(3.5)
    assert merged.variance == pytest.approx(direct.variance)
    # Population convention of the same fit.
    assert merged.variance * 5 / 6 == pytest.approx(35 / 12)


def test_gaussian_merge_ignores_empty_summaries():
    matrix = DataMatrix([1.0, 2.0, 3.0])
    fitted = GaussianSummary.build(matrix, IndexView.all(3), 0)
    empty = GaussianSummary.build(matrix, IndexView([]), 0)

    assert empty.count == 0
    merged = GaussianSummary.merge([empty, fitted, empty])
    assert merged.mean == pytest.approx(2.0)
    assert merged.variance == pytest.approx(1.0)

    config = SummaryConfig(variance_floor=0.5)
    nothing_seen = GaussianSummary.merge([empty, empty], config)
    assert nothing_seen.mean == 0.0
    assert nothing_seen.variance == 0.5


def test_gaussian_single_sample_uses_variance_floor():
    matrix = DataMatrix([4.0, 7.0])
    config = SummaryConfig(variance_floor=0.25)
    summary = GaussianSummary.build(matrix, IndexView([0]), 0, config)

    assert summary.count == 1
    assert summary.mean == 4.0
    assert summary.variance == 0.25

    # (7 - 4)^2 / (2 * 0.25)
    assert summary.error(matrix, IndexView([1]), 0, config) == pytest.approx(18.0)


def test_gaussian_error_on_constant_leaf_is_finite():
    matrix = DataMatrix([2.0, 2.0, 2.0, 3.0])
    summary = GaussianSummary.build(matrix, IndexView([0, 1, 2]), 0)

    assert summary.variance == 0.0
    err = summary.error(matrix, IndexView.all(4), 0)
    assert np.isfinite(err)
    assert err > 0.0


def test_gaussian_error_is_half_standardized_squared_error():
    matrix = DataMatrix([1.0, 2.0, 4.0])
    summary = GaussianSummary(count=3, mean=2.0, variance=1.0)
    assert summary.error(matrix, IndexView.all(3), 0) == pytest.approx(2.5)


def test_bigaussian_merge_matches_direct_fit():
    rng = np.random.default_rng(5)
    data = rng.normal(size=(80, 2)) @ np.array([[1.0, 0.4], [0.0, 0.7]]) + [2.0, -1.0]
    matrix = DataMatrix(data)

    parts = [
        BiGaussianSummary.build(matrix, IndexView(np.arange(lo, hi)), 0)
        for lo, hi in [(0, 30), (30, 50), (50, 80)]
    ]
    direct = BiGaussianSummary.build(matrix, IndexView.all(80), 0)
    merged = BiGaussianSummary.merge(parts)

    assert np.allclose(merged.mean, direct.mean)
    assert np.allclose(merged.covariance, direct.covariance)
    assert np.allclose(direct.covariance, np.cov(data, rowvar=False))


def test_bigaussian_needs_following_feature():
    matrix = DataMatrix(np.zeros((3, 2)))
    with pytest.raises(InvalidFeatureLayout):
        BiGaussianSummary.build(matrix, IndexView.all(3), 1)


def test_bigaussian_error_is_finite_and_non_negative():
    rng = np.random.default_rng(2)
    matrix = DataMatrix(rng.normal(size=(10, 2)))

    single = BiGaussianSummary.build(matrix, IndexView([0]), 0)
    assert single.count == 1
    assert np.allclose(single.covariance, 1e-6 * np.eye(2))

    err = single.error(matrix, IndexView.all(10), 0)
    assert np.isfinite(err)
    assert err >= 0.0
    assert single.error(matrix, IndexView([]), 0) == 0.0


def test_nothing_summary():
    matrix = DataMatrix(np.ones((3, 2)))
    summary = NothingSummary.build(matrix, IndexView.all(3), 1)

    assert summary.error(matrix, IndexView.all(3), 1) == 0.0
    assert NothingSummary.merge([summary, summary]) is None
    assert summary.size() == 1
    assert summary.encode() == b"N"


def test_merge_rejects_mixed_types_and_empty_input():
    with pytest.raises(InvalidFeatureLayout):
        merge_summaries([GaussianSummary(1, 0.0, 1.0), CategoricalSummary([1])])
    with pytest.raises(InvalidFeatureLayout):
        merge_summaries([])


def test_merge_through_projection():
    records = [
        {"leaf": 0, "summary": GaussianSummary(count=2, mean=1.0, variance=0.0)},
        {"leaf": 3, "summary": GaussianSummary(count=2, mean=3.0, variance=0.0)},
    ]
    merged = merge_summaries(records, project=lambda record: record["summary"])

    assert merged.mean == pytest.approx(2.0)
    # Samples {1, 1, 3, 3}.
    assert merged.variance == pytest.approx(4.0 / 3.0)


def test_merge_many_rows_match_single_merges():
    rng = np.random.default_rng(9)
    exemplars, trees = 3, 4
    grid = [
        GaussianSummary(
            count=int(rng.integers(0, 6)),
            mean=float(rng.normal()),
            variance=float(rng.uniform(0.1, 2.0)),
        )
        for _ in range(exemplars * trees)
    ]

    batched = merge_many_summaries(exemplars, trees, grid)
    assert batched.mean.shape == (exemplars,)

    for e in range(exemplars):
        row = merge_summaries(grid[e * trees : (e + 1) * trees])
        assert np.isclose(batched.row(e).mean, row.mean)
        assert np.isclose(batched.row(e).variance, row.variance)


def test_merge_many_checks_grid_size():
    with pytest.raises(InvalidFeatureLayout):
        GaussianSummary.merge_many(2, 2, [GaussianSummary(1, 0.0, 1.0)] * 3)


def test_encode_decode_round_trip():
    summaries = [
        NothingSummary(),
        CategoricalSummary(counts=[0, 5, 2]),
        CategoricalSummary(counts=[]),
        GaussianSummary(count=3, mean=1.5, variance=0.1),
        BiGaussianSummary(count=4, mean=[1.0, -2.0], covariance=[[2.0, 0.3], [0.3, 1.0 / 3.0]]),
    ]

    for summary in summaries:
        data = summary.encode()
        assert len(data) == summary.size()
        assert data[:1] == summary.code.encode("ascii")

        decoded, ate = decode_summary(b"xyz" + data, offset=3)
        assert ate == summary.size()
        assert type(decoded) is type(summary)
        assert _params(decoded) == _params(summary)


def test_gaussian_wire_layout():
    data = GaussianSummary(count=7, mean=0.5, variance=2.0).encode()
    assert data == b"G" + struct.pack("<idd", 7, 0.5, 2.0)


def test_decode_rejects_unknown_tag():
    with pytest.raises(UnknownSummaryType):
        decode_summary(b"Z" + struct.pack("<idd", 1, 0.0, 1.0))
    with pytest.raises(UnknownSummaryType):
        decode_summary(b"\xff")


def test_decode_rejects_truncated_buffers():
    data = GaussianSummary(count=2, mean=1.0, variance=1.0).encode()
    with pytest.raises(TruncatedData):
        decode_summary(data[:-1])
    with pytest.raises(TruncatedData):
        decode_summary(b"")

    histogram = CategoricalSummary(counts=[1, 2, 3]).encode()
    with pytest.raises(TruncatedData):
        decode_summary(histogram[:-4])
    with pytest.raises(TruncatedData):
        decode_summary(b"C" + struct.pack("<i", -1))


def test_config_validation():
    with pytest.raises(ValueError):
        SummaryConfig(prob_epsilon=0.0)
    with pytest.raises(ValueError):
        SummaryConfig(variance_floor=-1.0)


def test_bigaussian_error_on_collinear_pair_is_finite():
    x = np.array([0.0, 2e5, 4e5, 2e5])
    y = np.array([0.0, 2e5, 4e5, 2.1e5])
    matrix = DataMatrix(np.column_stack([x, y]))

    summary = BiGaussianSummary.build(matrix, IndexView([0, 1, 2]), 0)
    on_line = summary.error(matrix, IndexView([0, 1, 2]), 0)
    off_line = summary.error(matrix, IndexView([3]), 0)

    assert np.isfinite(on_line) and on_line >= 0.0
    assert np.isfinite(off_line)
    assert off_line > on_line


def test_merge_many_of_empty_batch_dispatches_on_code():
    gaussian = merge_many_summaries(0, 3, [], code="G")
    assert isinstance(gaussian, GaussianOutput)
    assert gaussian.mean.shape == (0,)

    categorical = merge_many_summaries(0, 3, [], code="C")
    assert categorical.probabilities.shape[0] == 0

    bigaussian = merge_many_summaries(0, 3, [], code="B")
    assert bigaussian.covariance.shape == (0, 2, 2)

    assert merge_many_summaries(0, 3, [], code="N") is None

    with pytest.raises(InvalidFeatureLayout):
        merge_many_summaries(0, 3, [])
    with pytest.raises(InvalidFeatureLayout):
        merge_many_summaries(1, 1, [GaussianSummary(1, 0.0, 1.0)], code="C")
