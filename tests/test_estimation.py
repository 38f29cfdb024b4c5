"""
Tests for the two-stage Horvitz-Thompson / Sen-Yates-Grundy estimators
"""

import numpy as np
import pandas as pd
import pytest
from scipy import stats
from twostage import (
    DegenerateInclusionProbability,
    DegenerateJointProbability,
    EstimationFunctions,
    InclusionProbabilities,
    JointInclusionTable,
    NegativeVarianceWarning,
    PopulationFrame,
    ProbabilityTables,
    SampleUnit,
    TwoStageEstimator,
    estimate_population_total,
)


def create_hand_computed_design():
    """
    Three sampled units with dyadic probabilities

    pi: A=0.5, B=0.5, C=0.25
    pi_ik: AB=0.125, AC=0.0625, BC=0.09375
    totals: A=10, B=6, C=4  -> expanded 20, 12, 16
    variances: A=2, B=1, C=0.5

    HT total = 20 + 12 + 16 = 48
    SYG:
      AB: (0.25 - 0.125) / 0.125 * (20 - 12)^2      = 1 * 64    = 64
      AC: (0.125 - 0.0625) / 0.0625 * (20 - 16)^2   = 1 * 16    = 16
      BC: (0.125 - 0.09375) / 0.09375 * (12 - 16)^2 = 1/3 * 16  = 16/3
      total = 256 / 3
    Second stage: 2/0.5 + 1/0.5 + 0.5/0.25 = 8
    """
    sample = pd.DataFrame({
        'unit': ['A', 'B', 'C'],
        'total': [10.0, 6.0, 4.0],
        'variance': [2.0, 1.0, 0.5],
    })
    pi = pd.Series({'A': 0.5, 'B': 0.5, 'C': 0.25, 'D': 0.75})
    joint = JointInclusionTable.from_pairs(
        ['A', 'B', 'C', 'D'],
        {('A', 'B'): 0.125, ('A', 'C'): 0.0625, ('B', 'C'): 0.09375},
    )
    return sample, pi, joint


class TestEstimationFunctions:
    """Test estimation functions"""

    def test_horvitz_thompson_total(self):
        total = EstimationFunctions.horvitz_thompson_total([10, 6, 4], [0.5, 0.5, 0.25])
        assert total == 48.0

    def test_sen_yates_grundy_hand_computed(self):
        sample, pi, joint = create_hand_computed_design()
        ids = sample['unit'].tolist()
        variance = EstimationFunctions.sen_yates_grundy_variance(
            sample['total'].to_numpy(), pi[ids].to_numpy(), joint.submatrix(ids)
        )
        assert variance == pytest.approx(256 / 3, rel=1e-12)

    def test_each_pair_summed_once(self):
        rng = np.random.default_rng(0)
        n = 6
        totals = rng.uniform(10, 100, n)
        pi = rng.uniform(0.3, 0.6, n)
        joint = np.outer(pi, pi) * 0.8
        np.fill_diagonal(joint, np.nan)

        expected = 0.0
        for i in range(n):
            for k in range(i + 1, n):
                expected += ((pi[i] * pi[k] - joint[i, k]) / joint[i, k]
                             * (totals[i] / pi[i] - totals[k] / pi[k]) ** 2)

        result = EstimationFunctions.sen_yates_grundy_variance(totals, pi, joint)
        assert result == pytest.approx(expected, rel=1e-12)

    def test_single_unit_has_no_pairs(self):
        result = EstimationFunctions.sen_yates_grundy_variance(
            [5.0], [0.5], np.array([[np.nan]])
        )
        assert result == 0.0

    def test_zero_inclusion_probability_rejected_directly(self):
        joint = np.array([[np.nan, 0.1], [0.1, np.nan]])
        with pytest.raises(DegenerateInclusionProbability) as excinfo:
            EstimationFunctions.sen_yates_grundy_variance([1, 2], [0, 0.5], joint,
                                                          unit_ids=['A', 'B'])
        assert excinfo.value.unit_ids == ['A']

        with pytest.raises(DegenerateInclusionProbability):
            EstimationFunctions.horvitz_thompson_total([1, 2], [0, 0.5])

    def test_second_stage_variance(self):
        assert EstimationFunctions.second_stage_variance([2, 1, 0.5], [0.5, 0.5, 0.25]) == 8.0

    def test_confidence_interval_uses_sample_df(self):
        lower, upper = EstimationFunctions.confidence_interval(100.0, 4.0, n=10, alpha=0.05)
        half = stats.t.ppf(0.975, df=9) * 2.0
        assert lower == pytest.approx(100.0 - half)
        assert upper == pytest.approx(100.0 + half)

        # Small samples get wider intervals than the normal approximation
        lo3, hi3 = EstimationFunctions.confidence_interval(100.0, 4.0, n=3)
        assert (hi3 - lo3) / 2 == pytest.approx(stats.t.ppf(0.975, df=2) * 2.0)
        assert (hi3 - lo3) / 2 > 1.96 * 2.0

    def test_confidence_interval_rejects_negative_variance(self):
        with pytest.raises(ValueError, match="negative"):
            EstimationFunctions.confidence_interval(100.0, -1.0, n=5)

    def test_confidence_interval_needs_two_units(self):
        with pytest.raises(ValueError):
            EstimationFunctions.confidence_interval(100.0, 1.0, n=1)

    def test_with_replacement_probabilities(self):
        result = EstimationFunctions.with_replacement_probabilities([1, 1, 2, 4], 2)
        np.testing.assert_allclose(result, [0.25, 0.25, 0.5, 1.0])

        capped = EstimationFunctions.with_replacement_probabilities([1, 1, 10], 2)
        assert capped[2] == 1.0

    def test_within_unit_totals(self):
        data = pd.DataFrame({
            'stand': ['A', 'A', 'A', 'B', 'C', 'C'],
            'plot_volume': [2.0, 4.0, 6.0, 5.0, 3.0, 3.0],
            'n_plots': [10, 10, 10, 4, 2, 2],
        })
        result = EstimationFunctions.within_unit_totals(
            data, unit='stand', value='plot_volume', unit_sizes='n_plots'
        ).set_index('unit')

        # A: mean 4, s2 4, M 10, m 3 -> V = 100 * 0.7 * 4 / 3
        assert result.loc['A', 'total'] == pytest.approx(40.0)
        assert result.loc['A', 'variance'] == pytest.approx(100 * 0.7 * 4 / 3)
        # B: single plot, no variance information
        assert result.loc['B', 'total'] == pytest.approx(20.0)
        assert result.loc['B', 'variance'] == 0.0
        # C: fully enumerated, no sampling error
        assert result.loc['C', 'total'] == pytest.approx(6.0)
        assert result.loc['C', 'variance'] == pytest.approx(0.0)

    def test_within_unit_totals_mapping(self):
        data = pd.DataFrame({'stand': ['A', 'A'], 'y': [1.0, 3.0]})
        result = EstimationFunctions.within_unit_totals(data, 'stand', 'y', {'A': 8})
        assert result['total'].iloc[0] == pytest.approx(16.0)

        with pytest.raises(ValueError, match="missing"):
            EstimationFunctions.within_unit_totals(data, 'stand', 'y', {'B': 8})

    def test_within_unit_totals_too_many_plots(self):
        data = pd.DataFrame({'stand': ['A', 'A', 'A'], 'y': [1.0, 2.0, 3.0]})
        with pytest.raises(ValueError, match="More observations"):
            EstimationFunctions.within_unit_totals(data, 'stand', 'y', {'A': 2})


class TestEstimatePopulationTotal:
    """Test the two-stage estimator entry point"""

    def test_hand_computed_round_trip(self):
        sample, pi, joint = create_hand_computed_design()
        total, variance = estimate_population_total(sample, pi, joint)

        assert total == 48.0
        assert variance == pytest.approx(256 / 3 + 8, rel=1e-12)

    def test_sample_order_irrelevant(self):
        sample, pi, joint = create_hand_computed_design()
        shuffled = sample.iloc[[2, 0, 1]].reset_index(drop=True)
        assert estimate_population_total(shuffled, pi, joint) == pytest.approx(
            estimate_population_total(sample, pi, joint)
        )

    def test_accepts_records_and_dense_matrix(self):
        sample, pi, joint = create_hand_computed_design()
        records = [SampleUnit('A', 10.0, 2.0), SampleUnit('B', 6.0, 1.0), ('C', 4.0, 0.5)]
        total, variance = estimate_population_total(records, pi.to_dict(), joint.to_matrix())
        assert total == 48.0
        assert variance == pytest.approx(256 / 3 + 8, rel=1e-12)

    def test_accepts_pair_mapping(self):
        sample, pi, _ = create_hand_computed_design()
        pairs = {('B', 'A'): 0.125, ('C', 'A'): 0.0625, ('C', 'B'): 0.09375}
        _, variance = estimate_population_total(sample, pi, pairs)
        assert variance == pytest.approx(256 / 3 + 8, rel=1e-12)

    def test_zero_joint_probability_raises(self):
        sample, pi, _ = create_hand_computed_design()
        joint = JointInclusionTable.from_pairs(
            ['A', 'B', 'C'], {('A', 'B'): 0.125, ('B', 'C'): 0.09375}
        )
        with pytest.raises(DegenerateJointProbability) as excinfo:
            estimate_population_total(sample, pi, joint)
        assert excinfo.value.pairs == [('A', 'C')]

    def test_simulated_zero_co_occurrence_raises(self):
        # C is in almost every sample, so A and B never appear together
        sim = InclusionProbabilities(['A', 'B', 'C'], [1.0, 1.0, 1e12], num_simulations=2000)
        tables = sim.estimate(sample_size=2, seed=31)

        assert tables.pi['A'] > 0
        assert tables.pi['B'] > 0
        assert tables.joint.get('A', 'B') == 0.0

        sample = pd.DataFrame({'unit': ['A', 'B'], 'total': [3.0, 5.0]})
        with pytest.raises(DegenerateJointProbability):
            estimate_population_total(sample, tables.pi, tables.joint)

    def test_zero_inclusion_probability_raises(self):
        sample, pi, joint = create_hand_computed_design()
        pi['C'] = 0.0
        with pytest.raises(DegenerateInclusionProbability) as excinfo:
            estimate_population_total(sample, pi, joint)
        assert excinfo.value.unit_ids == ['C']

    def test_unknown_unit_raises(self):
        sample, pi, joint = create_hand_computed_design()
        with pytest.raises(KeyError):
            estimate_population_total(sample, pi.drop('B'), joint)

    def test_duplicate_units_rejected(self):
        _, pi, joint = create_hand_computed_design()
        sample = pd.DataFrame({'unit': ['A', 'A'], 'total': [1.0, 2.0]})
        with pytest.raises(ValueError, match="repeat"):
            estimate_population_total(sample, pi, joint)

    def test_negative_variance_reported_not_clamped(self):
        sample = pd.DataFrame({'unit': ['A', 'B'], 'total': [10.0, 2.0]})
        pi = pd.Series({'A': 0.5, 'B': 0.5})
        # pi_AB > pi_A * pi_B makes the SYG term negative
        joint = JointInclusionTable.from_pairs(['A', 'B'], {('A', 'B'): 0.4})
        with pytest.warns(NegativeVarianceWarning):
            total, variance = estimate_population_total(sample, pi, joint)

        assert total == 24.0
        assert variance == pytest.approx((0.25 - 0.4) / 0.4 * 16 ** 2)
        assert variance < 0


class TestTwoStageEstimator:
    """Test TwoStageEstimator"""

    def create_frame(self, n=20, seed=3):
        rng = np.random.default_rng(seed)
        area = rng.uniform(1, 5, n)
        data = pd.DataFrame({
            'stand': [f'S{i:02d}' for i in range(n)],
            'area': area,
            'volume': 10 * area + rng.normal(0, 3, n),
            'volume_var': rng.uniform(0.5, 2.0, n),
        })
        return PopulationFrame(data, id_col='stand', weight_col='area',
                               total_col='volume', variance_col='volume_var')

    def test_estimate_result_row(self):
        frame = self.create_frame()
        tables = frame.inclusion_probabilities(4, num_simulations=5000, seed=1)
        est = TwoStageEstimator(tables)

        result = est.estimate(frame.sample_units(frame.draw_sample(4, seed=2)))

        for key in ['n', 'total_b', 'total_se', 'between_var', 'within_var',
                    'variance', 'df', 'ci_lower', 'ci_upper']:
            assert key in result
        assert result['n'] == 4
        assert result['df'] == 3
        assert result['variance'] == pytest.approx(result['between_var'] + result['within_var'])
        assert result['total_se'] == pytest.approx(np.sqrt(result['variance']))
        assert result['ci_lower'] <= result['total_b'] <= result['ci_upper']

    def test_matches_function_contract(self):
        sample, pi, joint = create_hand_computed_design()
        tables = ProbabilityTables(
            unit_ids=joint.unit_ids,
            inclusion=pi[list(joint.unit_ids)].to_numpy(),
            joint=joint,
            sample_size=3,
            num_simulations=1,
        )
        result = TwoStageEstimator(tables).estimate(sample)
        assert result['total_b'] == 48.0
        assert result['between_var'] == pytest.approx(256 / 3)
        assert result['within_var'] == pytest.approx(8.0)

    def test_sample_size_mismatch_warns(self):
        frame = self.create_frame()
        tables = frame.inclusion_probabilities(4, num_simulations=3000, seed=1)
        est = TwoStageEstimator(tables)
        with pytest.warns(UserWarning, match="simulated for samples of 4") as record:
            est.estimate(frame.sample_units(frame.draw_sample(5, seed=2)))
        assert record[0].filename == __file__

    def test_negative_variance_gives_nan_interval(self):
        sample = pd.DataFrame({'unit': ['A', 'B'], 'total': [10.0, 2.0]})
        tables = ProbabilityTables(
            unit_ids=('A', 'B'),
            inclusion=[0.5, 0.5],
            joint=JointInclusionTable.from_pairs(['A', 'B'], {('A', 'B'): 0.4}),
            sample_size=2,
            num_simulations=1,
        )
        with pytest.warns(NegativeVarianceWarning) as record:
            result = TwoStageEstimator(tables).estimate(sample)

        assert record[0].filename == __file__
        assert result['variance'] < 0
        assert np.isnan(result['total_se'])
        assert np.isnan(result['ci_lower']) and np.isnan(result['ci_upper'])

    def test_alpha_override(self):
        frame = self.create_frame()
        tables = frame.inclusion_probabilities(4, num_simulations=3000, seed=1)
        sample = frame.sample_units(frame.draw_sample(4, seed=5))

        wide = TwoStageEstimator(tables, alpha=0.01).estimate(sample)
        narrow = TwoStageEstimator(tables, alpha=0.2).estimate(sample)
        assert (wide['ci_upper'] - wide['ci_lower']) > (narrow['ci_upper'] - narrow['ci_lower'])

    def test_horvitz_thompson_unbiased(self):
        frame = self.create_frame(n=20, seed=7)
        tables = frame.inclusion_probabilities(4, num_simulations=20000, seed=13)
        est = TwoStageEstimator(tables)

        draws = est.sampling_distribution(frame, n_draws=2000, seed=17)
        assert len(draws) == 2000
        assert draws['total_b'].notna().all()
        assert draws['total_b'].mean() == pytest.approx(frame.true_total(), rel=0.03)

    def test_display(self, capsys):
        frame = self.create_frame()
        tables = frame.inclusion_probabilities(4, num_simulations=3000, seed=1)
        TwoStageEstimator(tables).estimate(
            frame.sample_units(frame.draw_sample(4, seed=3)), display=True
        )
        out = capsys.readouterr().out
        assert 'TWO-STAGE HORVITZ-THOMPSON ESTIMATE' in out
        assert '95% CI (df=3)' in out


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
