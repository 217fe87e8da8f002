"""Tests for aggregation strategies."""

import numpy as np
import pandas as pd
import pytest

from evidence_quant.aggregation import (
    CallableAggregator,
    MedianAggregator,
    MedianPolishAggregator,
    MedianPolishResult,
    SumAggregator,
    TopKMeanAggregator,
    apply_aggregator,
    get_aggregator,
    tukey_median_polish,
)
from evidence_quant.exceptions import ConfigurationError


def _entries(**columns):
    return pd.DataFrame(columns)


class TestBuiltinAggregators:
    """Tests for sum, median and top-K mean."""

    def test_sum_ignores_missing(self):
        """Test sum([2, 3, NA]) is 5."""
        entries = _entries(S1=[2.0, 3.0, np.nan])
        result = apply_aggregator(SumAggregator(), entries)
        assert result['S1'] == 5.0

    def test_median_ignores_missing(self):
        """Test median([1, 2, 3, NA]) is 2."""
        entries = _entries(S1=[1.0, 2.0, 3.0, np.nan])
        result = apply_aggregator(MedianAggregator(), entries)
        assert result['S1'] == 2.0

    def test_top2_mean(self):
        """Test top-2 mean of [5, 1, 3, NA] is mean(5, 3) = 4."""
        entries = _entries(S1=[5.0, 1.0, 3.0, np.nan])
        result = apply_aggregator(TopKMeanAggregator(k=2), entries)
        assert result['S1'] == 4.0

    def test_top_k_uses_available_values(self):
        """Test top-3 with only two observations averages those two."""
        entries = _entries(S1=[4.0, np.nan, 2.0])
        result = apply_aggregator(TopKMeanAggregator(k=3), entries)
        assert result['S1'] == 3.0

    @pytest.mark.parametrize('aggregator', [
        SumAggregator(),
        MedianAggregator(),
        TopKMeanAggregator(k=3),
        MedianPolishAggregator(),
        get_aggregator('mean'),
        get_aggregator('max'),
    ])
    def test_all_missing_column_is_na(self, aggregator):
        """Test a column without observations yields NA, never 0."""
        entries = _entries(S1=[1.0, 2.0], S2=[np.nan, np.nan])
        result = apply_aggregator(aggregator, entries)

        assert result.dtype == 'Float64'
        assert result['S2'] is pd.NA
        assert not pd.isna(result['S1'])

    def test_zero_is_an_observation(self):
        """Test that an observed zero sums to zero, not missing."""
        entries = _entries(S1=[0.0, np.nan])
        result = apply_aggregator(SumAggregator(), entries)
        assert result['S1'] == 0.0

    def test_output_follows_column_order(self):
        """Test that one value is returned per sample column, in order."""
        entries = _entries(B=[1.0], A=[2.0], C=[3.0])
        result = apply_aggregator(SumAggregator(), entries)
        assert list(result.index) == ['B', 'A', 'C']

    def test_top_k_ties_are_deterministic(self):
        """Test repeated runs on tied values give identical output."""
        entries = _entries(S1=[2.0, 2.0, 1.0, 2.0])
        first = apply_aggregator(TopKMeanAggregator(k=2), entries)
        second = apply_aggregator(TopKMeanAggregator(k=2), entries)
        assert first.equals(second)
        assert first['S1'] == 2.0


class TestGetAggregator:
    """Tests for selecting strategies by value."""

    def test_names(self):
        assert get_aggregator('sum').name == 'sum'
        assert get_aggregator('median').name == 'median'
        assert get_aggregator('median_polish').name == 'median_polish'

    def test_topk_uses_top_k_argument(self):
        """Test 'topk' picks up the separate K setting."""
        agg = get_aggregator('topk', top_k=5)
        assert isinstance(agg, TopKMeanAggregator)
        assert agg.k == 5

    def test_top_n_name(self):
        """Test 'top<K>' names embed K."""
        agg = get_aggregator('top2')
        assert agg.k == 2
        assert agg.name == 'top2'

    def test_instance_passthrough(self):
        agg = SumAggregator()
        assert get_aggregator(agg) is agg

    def test_callable_is_wrapped(self):
        """Test that plain functions become CallableAggregator."""
        def lowest(entries):
            return entries.min(axis=0)

        agg = get_aggregator(lowest)
        assert isinstance(agg, CallableAggregator)
        assert agg.name == 'lowest'

    def test_unknown_name_raises(self):
        with pytest.raises(ConfigurationError, match="Unknown aggregation method"):
            get_aggregator('geometric')

    def test_invalid_k_raises(self):
        with pytest.raises(ConfigurationError, match="k >= 1"):
            TopKMeanAggregator(k=0)


class TestApplyAggregatorContract:
    """Tests for the missing-data contract on user strategies."""

    def test_sentinel_zero_is_rejected(self):
        """Test a strategy that fills missing columns with 0 is a caller error."""
        def zero_filled_sum(entries):
            return entries.fillna(0).sum(axis=0)

        entries = _entries(S1=[1.0, 2.0], S2=[np.nan, np.nan])
        with pytest.raises(ConfigurationError, match="without observations"):
            apply_aggregator(CallableAggregator(zero_filled_sum), entries)

    def test_wrong_length_rejected(self):
        """Test array output of the wrong length raises."""
        entries = _entries(S1=[1.0], S2=[2.0])
        with pytest.raises(ConfigurationError, match="returned 1 values for 2 samples"):
            apply_aggregator(CallableAggregator(lambda e: [1.0]), entries)

    def test_unexpected_samples_rejected(self):
        entries = _entries(S1=[1.0], S2=[2.0])
        bad = CallableAggregator(lambda e: pd.Series([1.0, 2.0], index=['S1', 'S9']))
        with pytest.raises(ConfigurationError, match="unexpected samples"):
            apply_aggregator(bad, entries)

    def test_array_output_accepted(self):
        """Test ndarray output with NaN converts to NA."""
        entries = _entries(S1=[1.0, 3.0], S2=[np.nan, np.nan])
        agg = CallableAggregator(lambda e: np.array([3.0, np.nan]), name='fixed')
        result = apply_aggregator(agg, entries)
        assert result['S1'] == 3.0
        assert result['S2'] is pd.NA

    def test_reordered_series_realigned(self):
        """Test a Series with the right samples in another order is realigned."""
        entries = _entries(S1=[1.0], S2=[2.0])
        agg = CallableAggregator(lambda e: pd.Series([20.0, 10.0], index=['S2', 'S1']))
        result = apply_aggregator(agg, entries)
        assert list(result.index) == ['S1', 'S2']
        assert result['S1'] == 10.0


class TestTukeyMedianPolish:
    """Tests for Tukey median polish algorithm."""

    def test_simple_matrix(self):
        """Test median polish on a simple additive matrix."""
        data = pd.DataFrame({
            'Sample1': [10.0, 12.0, 11.0],
            'Sample2': [11.0, 13.0, 12.0],
            'Sample3': [9.0, 11.0, 10.0],
        }, index=['Pep1', 'Pep2', 'Pep3'])

        result = tukey_median_polish(data)

        assert isinstance(result, MedianPolishResult)
        assert len(result.col_effects) == 3
        assert len(result.row_effects) == 3
        assert result.converged

    def test_outlier_robustness(self):
        """Test that median polish is robust to outliers."""
        data = pd.DataFrame({
            'Sample1': [10.0, 10.0, 10.0, 100.0],
            'Sample2': [11.0, 11.0, 11.0, 11.0],
            'Sample3': [12.0, 12.0, 12.0, 12.0],
        }, index=['Pep1', 'Pep2', 'Pep3', 'PepOutlier'])

        result = tukey_median_polish(data)

        effects = result.col_effects
        assert abs(effects['Sample2'] - effects['Sample1'] - 1.0) < 0.5
        assert abs(effects['Sample3'] - effects['Sample2'] - 1.0) < 0.5

    def test_missing_values(self):
        """Test handling of missing values."""
        data = pd.DataFrame({
            'Sample1': [10.0, np.nan, 10.0],
            'Sample2': [11.0, 11.0, np.nan],
            'Sample3': [12.0, 12.0, 12.0],
        }, index=['Pep1', 'Pep2', 'Pep3'])

        result = tukey_median_polish(data)

        assert len(result.col_effects) == 3
        assert not result.col_effects.isna().any()

    def test_empty_column_has_missing_effect(self):
        """Test a sample with no observations keeps a missing effect."""
        data = pd.DataFrame({
            'Sample1': [10.0, 12.0],
            'Sample2': [np.nan, np.nan],
        }, index=['Pep1', 'Pep2'])

        result = tukey_median_polish(data)

        assert np.isnan(result.col_effects['Sample2'])
        assert not np.isnan(result.col_effects['Sample1'])

    def test_preserves_relative_quantification(self):
        """Test that relative differences between samples are preserved."""
        data = pd.DataFrame({
            'Sample1': [10.0, 12.0, 11.0, 13.0],
            'Sample2': [11.0, 13.0, 12.0, 14.0],
        }, index=['Pep1', 'Pep2', 'Pep3', 'Pep4'])

        result = tukey_median_polish(data)

        diff = result.col_effects['Sample2'] - result.col_effects['Sample1']
        assert abs(diff - 1.0) < 0.1

    def test_aggregator_returns_linear_scale(self):
        """Test the median polish aggregator keeps a 2x ratio on linear values."""
        entries = _entries(S1=[100.0, 1000.0, 10.0], S2=[200.0, 2000.0, 20.0])
        result = apply_aggregator(MedianPolishAggregator(), entries)
        assert result['S2'] / result['S1'] == pytest.approx(2.0)

    def test_aggregator_keeps_zero_only_sample_observed(self):
        """Test a sample observed only at zero summarises to 0, not missing."""
        entries = _entries(S1=[0.0, np.nan], S2=[5.0, 7.0], S3=[np.nan, np.nan])
        result = apply_aggregator(MedianPolishAggregator(), entries)

        assert result['S1'] == 0.0
        assert result['S2'] > 0
        assert result['S3'] is pd.NA
