"""
TWOSTAGE - Inclusion Probabilities for Two-Stage Unequal-Probability Sampling

Monte Carlo estimation of first- and second-order inclusion probabilities
for probability-proportional-to-size (PPS) sampling without replacement:
- Sequential weighted draws, renormalised over the remaining units
- Per-unit and per-pair tallies merged across independent chunks
- Optional worker processes for the chunks

The closed form n * w_i / sum(w) only holds for draws with replacement.
Exact without-replacement probabilities are combinatorially expensive, so
they are approximated by simulation.

Version: 1.0.0
"""

import numpy as np
import pandas as pd
from typing import Any, Union, List, Optional, Sequence, Tuple
import warnings
from dataclasses import dataclass, replace
from multiprocessing import get_context

from .tables import JointInclusionTable, ProbabilityTables


@dataclass
class SimulationParameters:
    """Design-specific parameters for inclusion-probability simulation"""
    name: str
    sample_size: Optional[int]  # Units per sample (None: supplied per call)
    num_simulations: int  # Number of simulated samples
    chunk_size: int = 1000  # Simulated samples per task
    n_jobs: int = 1  # Worker processes (1 runs in-process)
    zero_tolerance: float = 1e-12  # Probabilities at or below this count as zero
    alpha: float = 0.05  # Two-sided confidence interval level


# Design configurations
DESIGN_CONFIGS = {
    'DEFAULT': SimulationParameters(
        name='DEFAULT',
        sample_size=None,
        num_simulations=10000
    ),
    'QUICK': SimulationParameters(
        name='QUICK',
        sample_size=None,
        num_simulations=1000,
        chunk_size=250
    ),
    'PRECISE': SimulationParameters(
        name='PRECISE',
        sample_size=None,
        num_simulations=100000,
        chunk_size=5000
    ),
    'FORESTSTANDS': SimulationParameters(
        name='FORESTSTANDS',
        sample_size=10,
        num_simulations=10000
    ),
}


class InsufficientSimulationCoverage(UserWarning):
    """Some population units never appeared in any simulated sample"""

    def __init__(self, unit_ids: Sequence[Any]):
        self.unit_ids = list(unit_ids)
        super().__init__(
            f"{len(self.unit_ids)} unit(s) never drawn in any simulated sample: "
            f"{self.unit_ids}. Increase num_simulations or accept biased probabilities."
        )


class NegativeVarianceWarning(UserWarning):
    """A variance estimate came out negative"""


class DegenerateProbabilityError(ValueError):
    """An inclusion probability needed as a divisor is zero"""


class DegenerateInclusionProbability(DegenerateProbabilityError):
    """A sampled unit has a zero inclusion probability"""

    def __init__(self, unit_ids: Sequence[Any]):
        self.unit_ids = list(unit_ids)
        super().__init__(
            f"Inclusion probability is zero for sampled unit(s): {self.unit_ids}"
        )


class DegenerateJointProbability(DegenerateProbabilityError):
    """A pair of sampled units has a zero joint inclusion probability"""

    def __init__(self, pairs: Sequence[Tuple[Any, Any]]):
        self.pairs = list(pairs)
        super().__init__(
            f"Joint inclusion probability is zero for {len(self.pairs)} sampled pair(s): "
            f"{self.pairs}. The Sen-Yates-Grundy variance is undefined; "
            f"re-estimate the probabilities with more simulations."
        )


def resolve_parameters(design: Union[str, SimulationParameters, None] = None,
                       **overrides) -> SimulationParameters:
    """
    Look up a design configuration and apply overrides

    Parameters
    ----------
    design : str or SimulationParameters, optional
        Preset name (e.g., 'DEFAULT', 'QUICK') or custom parameters
    **overrides
        Field values replacing the preset's (None values are ignored)

    Returns
    -------
    SimulationParameters
    """
    if design is None:
        params = DESIGN_CONFIGS['DEFAULT']
    elif isinstance(design, str):
        if design.upper() not in DESIGN_CONFIGS:
            raise ValueError(f"Unknown design: {design}. Available: {list(DESIGN_CONFIGS.keys())}")
        params = DESIGN_CONFIGS[design.upper()]
    else:
        params = design

    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        params = replace(params, **overrides)

    if params.num_simulations < 1:
        raise ValueError(f"num_simulations must be at least 1, got {params.num_simulations}")
    if params.chunk_size < 1:
        raise ValueError(f"chunk_size must be at least 1, got {params.chunk_size}")
    if params.n_jobs < 1:
        raise ValueError(f"n_jobs must be at least 1, got {params.n_jobs}")
    if not 0 < params.alpha < 1:
        raise ValueError(f"alpha must lie in (0, 1), got {params.alpha}")
    return params


def validate_design(unit_ids: Sequence[Any],
                    weights: Sequence[float],
                    sample_size: Optional[int] = None) -> Tuple[List[Any], np.ndarray]:
    """
    Reject malformed populations before any simulation starts

    Returns
    -------
    ids : list
        Unit identifiers
    weights : np.ndarray
        Weights as a float array
    """
    ids = list(unit_ids)
    if len(ids) == 0:
        raise ValueError("Population is empty")

    index = pd.Index(ids)
    if index.has_duplicates:
        dups = index[index.duplicated()].unique().tolist()
        raise ValueError(f"Unit identifiers must be unique; duplicated: {dups}")

    w = np.asarray(weights, dtype=float)
    if w.ndim != 1 or len(w) != len(ids):
        raise ValueError(f"Expected {len(ids)} weights, got shape {w.shape}")

    bad = ~(np.isfinite(w) & (w > 0))
    if bad.any():
        offending = [ids[i] for i in np.where(bad)[0]]
        raise ValueError(f"Weights must be finite and strictly positive; offending units: {offending}")

    if sample_size is not None:
        if isinstance(sample_size, bool) or not isinstance(sample_size, (int, np.integer)):
            raise ValueError(f"sample_size must be an integer, got {sample_size!r}")
        if not 1 <= sample_size <= len(ids):
            raise ValueError(
                f"sample_size must be between 1 and the population size ({len(ids)}), got {sample_size}"
            )
    return ids, w


def weighted_draw(weights: np.ndarray, sample_size: int,
                  rng: np.random.Generator) -> np.ndarray:
    """
    Draw distinct positions with probability proportional to weight

    Each draw is proportional to the weights of the units not yet drawn;
    a drawn unit's remaining weight is set to zero.

    Returns
    -------
    np.ndarray
        Positions in draw order
    """
    remaining = np.array(weights, dtype=float)
    chosen = np.empty(sample_size, dtype=np.int64)
    for j in range(sample_size):
        cum = np.cumsum(remaining)
        u = rng.random() * cum[-1]
        # side='right' never lands on a removed unit: its cumsum equals its predecessor's
        idx = int(np.searchsorted(cum, u, side='right'))
        if idx >= len(remaining):
            # u rounded up to the total
            idx = int(np.flatnonzero(remaining)[-1])
        chosen[j] = idx
        remaining[idx] = 0.0
    return chosen


def _simulate_chunk(task: Tuple[np.random.SeedSequence, np.ndarray, int, int]
                    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Run one chunk of simulated samples

    Returns
    -------
    unit_counts : np.ndarray
        Samples containing each unit
    pair_codes : np.ndarray
        Encoded unordered pairs seen in the chunk
    pair_counts : np.ndarray
        Samples containing each pair
    """
    seed_seq, weights, sample_size, n_draws = task
    rng = np.random.default_rng(seed_seq)
    n_units = len(weights)

    unit_counts = np.zeros(n_units, dtype=np.int64)
    lo, hi = np.triu_indices(sample_size, k=1)
    n_pairs = len(lo)
    codes = np.empty(n_draws * n_pairs, dtype=np.int64)

    for d in range(n_draws):
        sample = np.sort(weighted_draw(weights, sample_size, rng))
        unit_counts[sample] += 1
        codes[d * n_pairs:(d + 1) * n_pairs] = sample[lo] * n_units + sample[hi]

    pair_codes, pair_counts = np.unique(codes, return_counts=True)
    return unit_counts, pair_codes, pair_counts.astype(np.int64)


def _seed_sequence(seed: Union[int, np.random.SeedSequence, None]) -> np.random.SeedSequence:
    """Unspawned SeedSequence for ``seed``; spawning never mutates the caller's object"""
    if isinstance(seed, np.random.SeedSequence):
        return np.random.SeedSequence(seed.entropy, spawn_key=seed.spawn_key,
                                      pool_size=seed.pool_size)
    return np.random.SeedSequence(seed)


def _merge_tallies(results: List[Tuple[np.ndarray, np.ndarray, np.ndarray]],
                   n_units: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Sum chunk tallies; order of ``results`` does not matter"""
    unit_counts = np.zeros(n_units, dtype=np.int64)
    for counts, _, _ in results:
        unit_counts += counts

    all_codes = np.concatenate([codes for _, codes, _ in results])
    all_counts = np.concatenate([counts for _, _, counts in results])
    if len(all_codes) == 0:
        return unit_counts, all_codes.astype(np.int64), all_counts.astype(np.int64)

    merged = pd.Series(all_counts).groupby(all_codes).sum()
    return unit_counts, merged.index.to_numpy(dtype=np.int64), merged.to_numpy(dtype=np.int64)


class InclusionProbabilities:
    """
    Simulation-based inclusion-probability estimator

    Estimates, for a PPS design without replacement:
    - pi_i: probability that unit i appears in a sample
    - pi_ik: probability that units i and k both appear

    How the Simulation Works
    ------------------------
    The requested number of samples is split into fixed-size chunks. Each
    chunk gets its own child of one ``numpy.random.SeedSequence``, so the
    result depends only on the seed and never on how many workers ran the
    chunks. Chunk tallies (counts per unit and per pair) are summed.

    Example workflow:
        sim = InclusionProbabilities(ids, weights, design='QUICK')
        tables = sim.estimate(sample_size=10, seed=42)
        pi, joint = tables
    """

    def __init__(self,
                 population: Sequence[Any],
                 weights: Sequence[float],
                 design: Union[str, SimulationParameters, None] = None,
                 **overrides):
        """
        Initialize the estimator

        Parameters
        ----------
        population : sequence
            Unique unit identifiers
        weights : sequence of float
            Strictly positive selection weights, aligned with ``population``
        design : str or SimulationParameters, optional
            Preset name or custom parameters (default: 'DEFAULT')
        **overrides
            Parameter overrides, e.g. ``num_simulations=5000, n_jobs=4``
        """
        self.params = resolve_parameters(design, **overrides)
        self.unit_ids, self.weights = validate_design(
            population, weights
        )

    @property
    def size(self) -> int:
        return len(self.unit_ids)

    def _resolve_sample_size(self, sample_size: Optional[int]) -> int:
        if sample_size is None:
            sample_size = self.params.sample_size
        if sample_size is None:
            raise ValueError(f"Design '{self.params.name}' has no sample_size; pass one explicitly")
        validate_design(self.unit_ids, self.weights, sample_size)
        return int(sample_size)

    def _build_tasks(self, sample_size: int,
                     seed_seq: np.random.SeedSequence) -> List[Tuple]:
        n_sims = self.params.num_simulations
        chunk = self.params.chunk_size
        sizes = [chunk] * (n_sims // chunk)
        if n_sims % chunk:
            sizes.append(n_sims % chunk)
        children = seed_seq.spawn(len(sizes))
        return [(child, self.weights, sample_size, n) for child, n in zip(children, sizes)]

    def estimate(self,
                 sample_size: Optional[int] = None,
                 seed: Union[int, np.random.SeedSequence, None] = None,
                 verbose: bool = False) -> ProbabilityTables:
        """
        Simulate samples and tabulate inclusion probabilities

        Parameters
        ----------
        sample_size : int, optional
            Units per sample (default: the design's sample_size)
        seed : int or SeedSequence, optional
            Seed for reproducibility. The SeedSequence actually used, fresh
            entropy included, is stored on the result's ``seed`` attribute.
        verbose : bool, default False
            Print a summary of the simulation

        Returns
        -------
        ProbabilityTables
            Marginal and joint inclusion probabilities
        """
        n = self._resolve_sample_size(sample_size)
        seed_seq = _seed_sequence(seed)
        tasks = self._build_tasks(n, _seed_sequence(seed_seq))

        if self.params.n_jobs > 1 and len(tasks) > 1:
            ctx = get_context("spawn")
            with ctx.Pool(processes=min(self.params.n_jobs, len(tasks))) as pool:
                results = list(pool.imap_unordered(_simulate_chunk, tasks))
        else:
            results = [_simulate_chunk(task) for task in tasks]

        unit_counts, pair_codes, pair_counts = _merge_tallies(results, self.size)
        n_sims = self.params.num_simulations

        uncovered = tuple(uid for uid, c in zip(self.unit_ids, unit_counts) if c == 0)
        if uncovered:
            warnings.warn(InsufficientSimulationCoverage(uncovered), stacklevel=2)

        tables = ProbabilityTables(
            unit_ids=tuple(self.unit_ids),
            inclusion=unit_counts / n_sims,
            joint=JointInclusionTable(self.unit_ids, pair_codes, pair_counts / n_sims),
            sample_size=n,
            num_simulations=n_sims,
            seed=seed_seq,
            uncovered=uncovered,
        )

        if verbose:
            self._display_results(tables)

        return tables

    def draw_sample(self, sample_size: Optional[int] = None,
                    seed: Union[int, np.random.Generator, None] = None) -> List[Any]:
        """Draw one realized sample under the same design"""
        n = self._resolve_sample_size(sample_size)
        rng = np.random.default_rng(seed)
        return [self.unit_ids[i] for i in weighted_draw(self.weights, n, rng)]

    def _display_results(self, tables: ProbabilityTables):
        """Display simulation summary"""
        checks = tables.check_invariants()
        print("\n" + "="*80)
        print("INCLUSION PROBABILITY SIMULATION")
        print("="*80)
        print(f"  Design: {self.params.name}")
        print(f"  Population size (N): {self.size:,}")
        print(f"  Sample size (n): {tables.sample_size:,}")
        print(f"  Simulated samples: {tables.num_simulations:,}")
        print(f"  Sum of pi_i: {checks['pi_sum']:.4f}")
        print(f"  Pairs observed together: {len(tables.joint):,}")
        print(f"  Units never drawn: {len(tables.uncovered):,}")
        print("="*80 + "\n")


def estimate_probabilities(population: Sequence[Any],
                           weights: Sequence[float],
                           sample_size: int,
                           num_simulations: int,
                           seed: Union[int, np.random.SeedSequence, None] = None,
                           n_jobs: int = 1) -> Tuple[pd.Series, JointInclusionTable]:
    """
    Estimate marginal and joint inclusion probabilities by simulation

    Parameters
    ----------
    population : sequence
        Unique unit identifiers
    weights : sequence of float
        Strictly positive selection weights
    sample_size : int
        Units per sample, 1 <= sample_size <= len(population)
    num_simulations : int
        Number of simulated samples (10,000 is a reasonable default)
    seed : int or SeedSequence, optional
        Seed for reproducibility
    n_jobs : int, default 1
        Worker processes

    Returns
    -------
    pi_table : pd.Series
        pi_i indexed by unit id
    joint_pi_table : JointInclusionTable
        pi_ik for unordered pairs
    """
    sim = InclusionProbabilities(
        population, weights,
        design=SimulationParameters(
            name='CUSTOM',
            sample_size=sample_size,
            num_simulations=num_simulations,
            n_jobs=n_jobs,
        ),
    )
    tables = sim.estimate(seed=seed)
    return tables.pi, tables.joint


if __name__ == '__main__':
    print("twostage - Inclusion probabilities for two-stage PPS sampling")
    print("="*80)
    print("\nAvailable design configurations:")
    for name, params in DESIGN_CONFIGS.items():
        n = params.sample_size if params.sample_size is not None else 'per call'
        print(f"  - {name}: n={n}, {params.num_simulations:,} simulations")
    print("\nUse InclusionProbabilities to simulate pi_i and pi_ik tables")
