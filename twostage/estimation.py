"""
Estimation Functions for twostage

Design-based estimators for two-stage unequal-probability samples:
- Horvitz-Thompson population totals
- Sen-Yates-Grundy variance (first stage)
- Second-stage (within-unit) variance contribution
- Within-unit totals from simple random subsamples
- t-based confidence intervals
"""

import numpy as np
import pandas as pd
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union
from dataclasses import dataclass
from scipy import stats
import warnings

from .core import (
    DegenerateInclusionProbability,
    DegenerateJointProbability,
    DegenerateProbabilityError,
    NegativeVarianceWarning,
    SimulationParameters,
    resolve_parameters,
)
from .tables import JointInclusionTable, ProbabilityTables


@dataclass(frozen=True)
class SampleUnit:
    """One sampled primary unit with its second-stage estimates"""
    unit_id: Any
    total: float  # Estimated unit total
    variance: float = 0.0  # Estimated variance of the unit total


def _as_sample_frame(sample_units: Union[pd.DataFrame, Iterable[SampleUnit]],
                     id_col: str = 'unit',
                     total_col: str = 'total',
                     variance_col: str = 'variance') -> pd.DataFrame:
    """Normalize sample input to a DataFrame with unit/total/variance columns"""
    if isinstance(sample_units, pd.DataFrame):
        missing = [c for c in (id_col, total_col) if c not in sample_units.columns]
        if missing:
            raise ValueError(f"Sample is missing column(s): {missing}")
        frame = pd.DataFrame({
            'unit': sample_units[id_col].to_numpy(),
            'total': sample_units[total_col].to_numpy(dtype=float),
            'variance': (sample_units[variance_col].to_numpy(dtype=float)
                         if variance_col in sample_units.columns
                         else np.zeros(len(sample_units))),
        })
    else:
        records = [u if isinstance(u, SampleUnit) else SampleUnit(*u) for u in sample_units]
        frame = pd.DataFrame({
            'unit': [u.unit_id for u in records],
            'total': np.array([u.total for u in records], dtype=float),
            'variance': np.array([u.variance for u in records], dtype=float),
        })

    if frame.empty:
        raise ValueError("Sample is empty")
    dups = frame['unit'][frame['unit'].duplicated()].unique().tolist()
    if dups:
        raise ValueError(f"Sample drawn without replacement cannot repeat units: {dups}")
    if frame[['total', 'variance']].isna().any().any():
        raise ValueError("Sample totals and variances must not be missing")
    return frame


def _lookup_pi(pi_table: Union[pd.Series, Mapping[Any, float]],
               unit_ids: Sequence[Any]) -> np.ndarray:
    """Marginal inclusion probabilities for the sampled units"""
    missing = [uid for uid in unit_ids if uid not in pi_table]
    if missing:
        raise KeyError(f"Sampled unit(s) not in inclusion probability table: {missing}")
    return np.array([pi_table[uid] for uid in unit_ids], dtype=float)


def _as_joint_table(joint_pi_table: Union[JointInclusionTable, pd.DataFrame,
                                          Mapping[Tuple[Any, Any], float]],
                    unit_ids: Sequence[Any]) -> JointInclusionTable:
    if isinstance(joint_pi_table, JointInclusionTable):
        return joint_pi_table
    if isinstance(joint_pi_table, pd.DataFrame):
        return JointInclusionTable.from_matrix(joint_pi_table)
    known = list(unit_ids)
    for pair in joint_pi_table:
        for uid in pair:
            if uid not in known:
                known.append(uid)
    return JointInclusionTable.from_pairs(known, joint_pi_table)


def _check_inclusion(pi: np.ndarray,
                     unit_ids: Optional[Sequence[Any]],
                     zero_tolerance: float):
    # NaN counts as degenerate
    degenerate = ~(pi > zero_tolerance)
    if degenerate.any():
        labels = list(unit_ids) if unit_ids is not None else list(range(len(pi)))
        raise DegenerateInclusionProbability(
            [label for label, bad in zip(labels, degenerate) if bad]
        )


class EstimationFunctions:
    """Collection of estimators for two-stage PPS samples"""

    @staticmethod
    def horvitz_thompson_total(totals: np.ndarray, pi: np.ndarray,
                               unit_ids: Optional[Sequence[Any]] = None,
                               zero_tolerance: float = 1e-12) -> float:
        """
        Horvitz-Thompson estimate of the population total

        t_HT = sum_i t_i / pi_i

        Raises DegenerateInclusionProbability if any pi_i <= zero_tolerance.
        """
        totals = np.asarray(totals, dtype=float)
        pi = np.asarray(pi, dtype=float)
        _check_inclusion(pi, unit_ids, zero_tolerance)
        return float(np.sum(totals / pi))

    @staticmethod
    def sen_yates_grundy_variance(totals: np.ndarray,
                                  pi: np.ndarray,
                                  joint_pi: np.ndarray,
                                  unit_ids: Optional[Sequence[Any]] = None,
                                  zero_tolerance: float = 1e-12) -> float:
        """
        Sen-Yates-Grundy variance of the Horvitz-Thompson total

        Sums, over every unordered pair (i, k) of sampled units exactly once:

            ((pi_i * pi_k - pi_ik) / pi_ik) * (t_i / pi_i - t_k / pi_k)^2

        Parameters
        ----------
        totals : np.ndarray
            Unit totals t_i, length n
        pi : np.ndarray
            Inclusion probabilities pi_i, length n
        joint_pi : np.ndarray
            n x n joint inclusion probabilities (diagonal ignored)
        unit_ids : sequence, optional
            Labels used when reporting degenerate units or pairs
        zero_tolerance : float, default 1e-12
            pi_i or pi_ik at or below this is treated as zero

        Returns
        -------
        float
            Variance estimate. Non-negative only when every
            pi_ik <= pi_i * pi_k, which the caller must ensure.

        Raises
        ------
        DegenerateInclusionProbability
            If any sampled unit has pi_i <= zero_tolerance
        DegenerateJointProbability
            If any sampled pair has pi_ik <= zero_tolerance
        """
        totals = np.asarray(totals, dtype=float)
        pi = np.asarray(pi, dtype=float)
        joint_pi = np.asarray(joint_pi, dtype=float)
        n = len(totals)
        if joint_pi.shape != (n, n):
            raise ValueError(f"joint_pi must be {n} x {n}, got {joint_pi.shape}")
        _check_inclusion(pi, unit_ids, zero_tolerance)

        i, k = np.triu_indices(n, k=1)
        pi_ik = joint_pi[i, k]

        # NaN counts as degenerate
        degenerate = ~(pi_ik > zero_tolerance)
        if degenerate.any():
            labels = list(unit_ids) if unit_ids is not None else list(range(n))
            raise DegenerateJointProbability(
                [(labels[a], labels[b]) for a, b in zip(i[degenerate], k[degenerate])]
            )

        expanded = totals / pi
        terms = ((pi[i] * pi[k] - pi_ik) / pi_ik) * (expanded[i] - expanded[k]) ** 2
        return float(np.sum(terms))

    @staticmethod
    def second_stage_variance(variances: np.ndarray, pi: np.ndarray) -> float:
        """Within-unit contribution: sum_i V(t_i) / pi_i"""
        variances = np.asarray(variances, dtype=float)
        pi = np.asarray(pi, dtype=float)
        return float(np.sum(variances / pi))

    @staticmethod
    def confidence_interval(estimate: float, variance: float, n: int,
                            alpha: float = 0.05) -> Tuple[float, float]:
        """
        t-based confidence interval for a total

        estimate +/- t_(1 - alpha/2, df = n - 1) * sqrt(variance)

        Degrees of freedom come from the number of sampled units, not the
        population size.
        """
        if n < 2:
            raise ValueError(f"Need at least 2 sampled units for a confidence interval, got {n}")
        if not 0 < alpha < 1:
            raise ValueError(f"alpha must lie in (0, 1), got {alpha}")
        if variance < 0:
            raise ValueError(
                f"Variance estimate is negative ({variance:.6g}); check that the joint "
                f"inclusion probabilities satisfy pi_ik <= pi_i * pi_k"
            )
        t_crit = stats.t.ppf(1 - alpha / 2, df=n - 1)
        half_width = t_crit * np.sqrt(variance)
        return float(estimate - half_width), float(estimate + half_width)

    @staticmethod
    def with_replacement_probabilities(weights: Sequence[float],
                                       sample_size: int) -> np.ndarray:
        """
        Closed-form approximation n * w_i / sum(w), capped at 1

        Exact only for draws with replacement; useful as a rough check on
        simulated without-replacement probabilities.
        """
        w = np.asarray(weights, dtype=float)
        return np.minimum(sample_size * w / w.sum(), 1.0)

    @staticmethod
    def within_unit_totals(data: pd.DataFrame, unit: str, value: str,
                           unit_sizes: Union[str, Mapping[Any, float]]) -> pd.DataFrame:
        """
        Estimate each primary unit's total from a simple random subsample

        For unit i with M_i secondary units of which m_i were observed:

            t_i = M_i * mean(y)
            V(t_i) = M_i^2 * (1 - m_i / M_i) * s_i^2 / m_i

        Parameters
        ----------
        data : pd.DataFrame
            One row per observed secondary unit
        unit : str
            Primary unit identifier column
        value : str
            Observed value column
        unit_sizes : str or mapping
            Column holding M_i, or a mapping from unit id to M_i

        Returns
        -------
        pd.DataFrame
            Columns unit, total, variance, m, M
        """
        for col in (unit, value):
            if col not in data.columns:
                raise ValueError(f"Column '{col}' not found in data")

        obs = data[data[value].notna()]
        grouped = obs.groupby(unit, sort=False)[value]
        summary = pd.DataFrame({
            'm': grouped.count(),
            'mean': grouped.mean(),
            # fillna(0): a single observation carries no variance information
            's2': grouped.var(ddof=1).fillna(0),
        })

        if isinstance(unit_sizes, str):
            if unit_sizes not in data.columns:
                raise ValueError(f"Column '{unit_sizes}' not found in data")
            sizes = obs.groupby(unit, sort=False)[unit_sizes].first()
        else:
            missing = [u for u in summary.index if u not in unit_sizes]
            if missing:
                raise ValueError(f"Unit sizes missing for unit(s): {missing}")
            sizes = pd.Series({u: unit_sizes[u] for u in summary.index})
        summary['M'] = sizes.reindex(summary.index).astype(float)

        too_small = summary.index[summary['M'] < summary['m']].tolist()
        if too_small:
            raise ValueError(f"More observations than secondary units for unit(s): {too_small}")

        fpc = 1 - summary['m'] / summary['M']
        result = pd.DataFrame({
            'unit': summary.index.to_numpy(),
            'total': (summary['M'] * summary['mean']).to_numpy(),
            'variance': (summary['M'] ** 2 * fpc * summary['s2'] / summary['m']).to_numpy(),
            'm': summary['m'].to_numpy(),
            'M': summary['M'].to_numpy(),
        })
        return result


def estimate_population_total(sample_units: Union[pd.DataFrame, Iterable[SampleUnit]],
                              pi_table: Union[pd.Series, Mapping[Any, float]],
                              joint_pi_table: Union[JointInclusionTable, pd.DataFrame,
                                                    Mapping[Tuple[Any, Any], float]],
                              zero_tolerance: float = 1e-12) -> Tuple[float, float]:
    """
    Horvitz-Thompson total and its two-stage variance

    Variance = Sen-Yates-Grundy (between units) + sum_i V(t_i) / pi_i
    (within units).

    Parameters
    ----------
    sample_units : pd.DataFrame or iterable of SampleUnit
        DataFrame with 'unit', 'total' and optional 'variance' columns,
        or SampleUnit records
    pi_table : pd.Series or mapping
        pi_i by unit id
    joint_pi_table : JointInclusionTable, pd.DataFrame or mapping
        pi_ik by unordered pair
    zero_tolerance : float, default 1e-12
        Probabilities at or below this are treated as zero

    Returns
    -------
    total_estimate : float
    variance_estimate : float
        Not clamped; a negative value triggers NegativeVarianceWarning
    """
    total, between, within = _two_stage_components(
        _as_sample_frame(sample_units), pi_table, joint_pi_table, zero_tolerance
    )
    variance = between + within
    if variance < 0:
        warnings.warn(
            f"Negative variance estimate ({variance:.6g}); joint inclusion probabilities "
            f"may violate pi_ik <= pi_i * pi_k",
            NegativeVarianceWarning,
            stacklevel=2,
        )
    return total, variance


def _two_stage_components(frame: pd.DataFrame,
                          pi_table, joint_pi_table,
                          zero_tolerance: float) -> Tuple[float, float, float]:
    """HT total, between-unit (SYG) and within-unit variance"""
    ids = frame['unit'].tolist()
    pi = _lookup_pi(pi_table, ids)
    _check_inclusion(pi, ids, zero_tolerance)

    joint = _as_joint_table(joint_pi_table, ids).submatrix(ids)
    totals = frame['total'].to_numpy()

    total = EstimationFunctions.horvitz_thompson_total(
        totals, pi, unit_ids=ids, zero_tolerance=zero_tolerance
    )
    between = EstimationFunctions.sen_yates_grundy_variance(
        totals, pi, joint, unit_ids=ids, zero_tolerance=zero_tolerance
    )
    within = EstimationFunctions.second_stage_variance(frame['variance'].to_numpy(), pi)
    return total, between, within


class TwoStageEstimator:
    """
    Two-stage Horvitz-Thompson estimator bound to one set of probability tables

    The tables are built once for a population, weighting and sample size;
    this class then evaluates any number of samples drawn under that design.

    Example workflow:
        tables = InclusionProbabilities(ids, weights).estimate(sample_size=10, seed=1)
        est = TwoStageEstimator(tables)
        result = est.estimate(sample_df)
        # {'n': 10, 'total_b': ..., 'total_se': ..., 'ci_lower': ..., ...}
    """

    def __init__(self,
                 tables: ProbabilityTables,
                 design: Union[str, SimulationParameters, None] = None,
                 **overrides):
        self.tables = tables
        self.params = resolve_parameters(design, **overrides)
        self.pi = tables.pi

    def estimate(self,
                 sample_units: Union[pd.DataFrame, Iterable[SampleUnit]],
                 id_col: str = 'unit',
                 total_col: str = 'total',
                 variance_col: str = 'variance',
                 display: bool = False) -> Dict[str, float]:
        """
        Estimate the population total for one realized sample

        Parameters
        ----------
        sample_units : pd.DataFrame or iterable of SampleUnit
            Sampled units with their estimated totals and variances
        id_col, total_col, variance_col : str
            Column names when ``sample_units`` is a DataFrame
        display : bool, default False
            Print the result

        Returns
        -------
        dict
            n, total_b, total_se, between_var, within_var, variance,
            df, ci_lower, ci_upper
        """
        frame = _as_sample_frame(sample_units, id_col, total_col, variance_col)
        n = len(frame)
        if n != self.tables.sample_size:
            warnings.warn(
                f"Sample has {n} units but the probability tables were simulated "
                f"for samples of {self.tables.sample_size}",
                stacklevel=2,
            )

        total, between, within = _two_stage_components(
            frame, self.pi, self.tables.joint, self.params.zero_tolerance
        )
        variance = between + within

        result = {
            'n': n,
            'total_b': total,
            'between_var': between,
            'within_var': within,
            'variance': variance,
            'df': n - 1,
        }

        if variance < 0:
            warnings.warn(
                f"Negative variance estimate ({variance:.6g}); joint inclusion probabilities "
                f"may violate pi_ik <= pi_i * pi_k",
                NegativeVarianceWarning,
                stacklevel=2,
            )
            result['total_se'] = np.nan
            result['ci_lower'] = result['ci_upper'] = np.nan
        else:
            result['total_se'] = float(np.sqrt(variance))
            if n >= 2:
                lower, upper = EstimationFunctions.confidence_interval(
                    total, variance, n, alpha=self.params.alpha
                )
            else:
                lower = upper = np.nan
            result['ci_lower'] = lower
            result['ci_upper'] = upper

        if display:
            self._display_results(result)

        return result

    def sampling_distribution(self, frame, n_draws: int,
                              seed: Union[int, np.random.Generator, None] = None) -> pd.DataFrame:
        """
        Repeat draw-and-estimate to study the estimator's behaviour

        Parameters
        ----------
        frame : PopulationFrame
            Population with true totals (and optional within-unit variances)
        n_draws : int
            Number of realized samples to draw
        seed : int or Generator, optional
            Seed for reproducibility

        Returns
        -------
        pd.DataFrame
            One row per draw (see ``estimate``); draws whose probabilities
            were degenerate are kept as NaN rows
        """
        rng = np.random.default_rng(seed)
        rows = []
        for _ in range(n_draws):
            ids = frame.draw_sample(self.tables.sample_size, seed=rng)
            try:
                rows.append(self.estimate(frame.sample_units(ids)))
            except DegenerateProbabilityError as e:
                warnings.warn(f"Estimation failed for a simulated sample: {str(e)}", stacklevel=2)
                rows.append({'n': len(ids), 'total_b': np.nan, 'variance': np.nan})
        return pd.DataFrame(rows)

    def _display_results(self, result: Dict[str, float]):
        """Display estimation results"""
        level = 100 * (1 - self.params.alpha)
        print("\n" + "="*80)
        print("TWO-STAGE HORVITZ-THOMPSON ESTIMATE")
        print("="*80)
        print(f"  Sampled units (n): {result['n']}")
        print(f"  Total estimate: {result['total_b']:,.4f}")
        print(f"  Between-unit variance (SYG): {result['between_var']:,.4f}")
        print(f"  Within-unit variance: {result['within_var']:,.4f}")
        print(f"  Standard error: {result['total_se']:,.4f}")
        print(f"  {level:g}% CI (df={result['df']}): "
              f"[{result['ci_lower']:,.4f}, {result['ci_upper']:,.4f}]")
        print("="*80 + "\n")
