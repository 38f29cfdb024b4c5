"""
Population Frames for twostage

Wraps a table of primary sampling units for use with the estimators:
- Validate identifiers and selection weights before any simulation
- Draw realized samples under the PPS-without-replacement design
- Assemble sampled units (totals and within-unit variances) for estimation
"""

import numpy as np
import pandas as pd
from typing import Any, List, Optional, Sequence, Union

from .core import (
    InclusionProbabilities,
    SimulationParameters,
    validate_design,
    weighted_draw,
)
from .tables import ProbabilityTables


class PopulationFrame:
    """
    Frame of primary sampling units

    Provides methods to:
    1. Validate the population (unique ids, strictly positive weights)
    2. Simulate inclusion probabilities for a sample size
    3. Draw realized samples
    4. Build the per-unit table the two-stage estimator consumes
    """

    def __init__(self,
                 data: pd.DataFrame,
                 id_col: str = 'unit',
                 weight_col: str = 'weight',
                 total_col: Optional[str] = None,
                 variance_col: Optional[str] = None):
        """
        Initialize PopulationFrame

        Parameters
        ----------
        data : pd.DataFrame
            One row per primary unit
        id_col : str, default 'unit'
            Unit identifier column
        weight_col : str, default 'weight'
            Selection weight column (size measure)
        total_col : str, optional
            True or estimated unit total column
        variance_col : str, optional
            Within-unit variance of the total (0 when omitted)
        """
        self.data = data
        self.id_col = self._find_column(id_col)
        self.weight_col = self._find_column(weight_col)
        self.total_col = self._find_column(total_col) if total_col else None
        self.variance_col = self._find_column(variance_col) if variance_col else None

        self.unit_ids, self.weights = validate_design(
            self.data[self.id_col].tolist(), self.data[self.weight_col].to_numpy()
        )

    def _find_column(self, name: str) -> str:
        """Resolve a column name, falling back to upper case"""
        if name in self.data.columns:
            return name
        if name.upper() in self.data.columns:
            return name.upper()
        raise ValueError(f"Column '{name}' not found in data")

    @property
    def size(self) -> int:
        return len(self.unit_ids)

    def validate_sample_size(self, sample_size: int) -> int:
        """Check 1 <= sample_size <= N"""
        validate_design(self.unit_ids, self.weights, sample_size)
        return int(sample_size)

    def inclusion_probabilities(self,
                                sample_size: int,
                                design: Union[str, SimulationParameters, None] = None,
                                seed: Optional[int] = None,
                                verbose: bool = False,
                                **overrides) -> ProbabilityTables:
        """Simulate pi_i and pi_ik for samples of ``sample_size``"""
        sim = InclusionProbabilities(self.unit_ids, self.weights, design=design, **overrides)
        return sim.estimate(sample_size=sample_size, seed=seed, verbose=verbose)

    def draw_sample(self, sample_size: int,
                    seed: Union[int, np.random.Generator, None] = None) -> List[Any]:
        """
        Draw one realized sample of unit ids

        Parameters
        ----------
        sample_size : int
            Units to draw
        seed : int or Generator, optional
            Seed, or a Generator to continue an existing stream

        Returns
        -------
        list
            Unit ids in draw order
        """
        n = self.validate_sample_size(sample_size)
        rng = np.random.default_rng(seed)
        return [self.unit_ids[i] for i in weighted_draw(self.weights, n, rng)]

    def sample_units(self, unit_ids: Sequence[Any]) -> pd.DataFrame:
        """
        Table of sampled units for the two-stage estimator

        Returns
        -------
        pd.DataFrame
            Columns unit, total, variance
        """
        if self.total_col is None:
            raise ValueError("PopulationFrame has no total column; pass total_col")

        indexed = self.data.set_index(self.id_col)
        missing = [uid for uid in unit_ids if uid not in indexed.index]
        if missing:
            raise KeyError(f"Unit(s) not in population: {missing}")

        rows = indexed.loc[list(unit_ids)]
        variance = (rows[self.variance_col].to_numpy(dtype=float)
                    if self.variance_col else np.zeros(len(rows)))
        return pd.DataFrame({
            'unit': list(unit_ids),
            'total': rows[self.total_col].to_numpy(dtype=float),
            'variance': variance,
        })

    def true_total(self) -> float:
        """Population total of ``total_col``"""
        if self.total_col is None:
            raise ValueError("PopulationFrame has no total column; pass total_col")
        return float(self.data[self.total_col].sum())

    def summarize(self, verbose: bool = True) -> pd.DataFrame:
        """
        Summarize the frame

        Returns
        -------
        pd.DataFrame
            One row per unit with weight and share of total weight
        """
        summary = pd.DataFrame({
            'unit': self.unit_ids,
            'weight': self.weights,
            'share': self.weights / self.weights.sum(),
        })
        if self.total_col is not None:
            summary['total'] = self.data[self.total_col].to_numpy()

        if verbose:
            print(f"\nPopulation Frame Summary:")
            print(f"  Units (N): {self.size:,}")
            print(f"  Total weight: {self.weights.sum():,.4f}")
            print(f"  Weight range: {self.weights.min():,.4f} - {self.weights.max():,.4f}")
            print(f"  Largest share: {summary['share'].max():.2%}")
            if self.total_col is not None:
                print(f"  Population total: {self.true_total():,.4f}")

        return summary
