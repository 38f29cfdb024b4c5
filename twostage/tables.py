"""
Probability Tables for twostage

Read-only containers for simulated inclusion probabilities:
- Marginal inclusion probabilities (pi_i), one per population unit
- Joint inclusion probabilities (pi_ik), one per unordered pair, stored sparsely
"""

import numpy as np
import pandas as pd
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple
from dataclasses import dataclass


class JointInclusionTable:
    """
    Sparse symmetric table of joint inclusion probabilities

    Each unordered pair is stored once, keyed by the population positions of
    its two units (smaller position first). Pairs that never occurred together
    read as 0.0. The diagonal is undefined: looking up (i, i) raises KeyError.
    """

    def __init__(self,
                 unit_ids: Sequence[Any],
                 pair_codes: np.ndarray,
                 probabilities: np.ndarray):
        """
        Parameters
        ----------
        unit_ids : sequence
            Population unit identifiers, in population order
        pair_codes : np.ndarray
            Encoded pairs ``lo * N + hi`` with ``lo < hi`` population positions
        probabilities : np.ndarray
            Joint inclusion probability for each encoded pair
        """
        self.unit_ids = tuple(unit_ids)
        self.n_units = len(self.unit_ids)
        self._position = {uid: pos for pos, uid in enumerate(self.unit_ids)}

        codes = np.asarray(pair_codes, dtype=np.int64)
        probs = np.asarray(probabilities, dtype=float)
        if codes.shape != probs.shape:
            raise ValueError("pair_codes and probabilities must have the same length")

        order = np.argsort(codes, kind='stable')
        codes = codes[order]
        probs = probs[order]
        if len(codes) and (np.any(np.diff(codes) == 0)):
            raise ValueError("Duplicate pair codes in joint inclusion table")
        lo, hi = np.divmod(codes, self.n_units) if self.n_units else (codes, codes)
        if np.any(lo >= hi) or np.any(hi >= self.n_units):
            raise ValueError("Pair codes must encode lo < hi positions within the population")

        codes.flags.writeable = False
        probs.flags.writeable = False
        self._codes = codes
        self._probs = probs

    @classmethod
    def from_pairs(cls, unit_ids: Sequence[Any],
                   pairs: Mapping[Tuple[Any, Any], float]) -> 'JointInclusionTable':
        """Build a table from a ``{(id_i, id_k): pi_ik}`` mapping (either order)"""
        position = {uid: pos for pos, uid in enumerate(unit_ids)}
        n = len(position)
        merged: Dict[int, float] = {}
        for (a, b), value in pairs.items():
            if a == b:
                raise ValueError(f"Diagonal entry ({a!r}, {a!r}) is undefined for joint probabilities")
            lo, hi = sorted((position[a], position[b]))
            code = lo * n + hi
            if code in merged and not np.isclose(merged[code], value):
                raise ValueError(f"Conflicting values for pair ({a!r}, {b!r})")
            merged[code] = float(value)
        codes = np.array(sorted(merged), dtype=np.int64)
        probs = np.array([merged[c] for c in codes], dtype=float)
        return cls(unit_ids, codes, probs)

    @classmethod
    def from_matrix(cls, matrix: pd.DataFrame) -> 'JointInclusionTable':
        """
        Build a table from a dense square DataFrame

        Row and column labels must be the same unit ids in the same order.
        The diagonal is ignored; the off-diagonal part must be symmetric.
        """
        if list(matrix.index) != list(matrix.columns):
            raise ValueError("Joint probability matrix must have matching row and column labels")
        values = matrix.to_numpy(dtype=float)
        n = len(values)
        off_diag = ~np.eye(n, dtype=bool)
        if not np.allclose(values[off_diag], values.T[off_diag], equal_nan=True):
            raise ValueError("Joint probability matrix is not symmetric")
        lo, hi = np.triu_indices(n, k=1)
        probs = values[lo, hi]
        keep = probs != 0
        return cls(list(matrix.index), lo[keep] * n + hi[keep], probs[keep])

    def _code(self, unit_i: Any, unit_k: Any) -> int:
        try:
            pos_i = self._position[unit_i]
            pos_k = self._position[unit_k]
        except KeyError as e:
            raise KeyError(f"Unit {e.args[0]!r} not in joint inclusion table") from None
        if pos_i == pos_k:
            raise KeyError(f"Joint probability of unit {unit_i!r} with itself is undefined")
        lo, hi = (pos_i, pos_k) if pos_i < pos_k else (pos_k, pos_i)
        return lo * self.n_units + hi

    def get(self, unit_i: Any, unit_k: Any) -> float:
        """Joint inclusion probability of two distinct units"""
        code = self._code(unit_i, unit_k)
        idx = np.searchsorted(self._codes, code)
        if idx < len(self._codes) and self._codes[idx] == code:
            return float(self._probs[idx])
        return 0.0

    def __getitem__(self, pair: Tuple[Any, Any]) -> float:
        return self.get(*pair)

    def __len__(self) -> int:
        return len(self._codes)

    def submatrix(self, unit_ids: Sequence[Any]) -> np.ndarray:
        """Dense joint probabilities among ``unit_ids``, NaN on the diagonal"""
        n = len(unit_ids)
        out = np.full((n, n), np.nan)
        for a in range(n):
            for b in range(a + 1, n):
                out[a, b] = out[b, a] = self.get(unit_ids[a], unit_ids[b])
        return out

    def positions(self) -> Tuple[np.ndarray, np.ndarray]:
        """Population positions (lo, hi) of the stored pairs"""
        return np.divmod(self._codes, self.n_units)

    def pairs(self) -> pd.DataFrame:
        """Stored (non-zero) pairs as a long DataFrame"""
        lo, hi = self.positions()
        ids = np.array(self.unit_ids, dtype=object)
        return pd.DataFrame({
            'unit_i': ids[lo],
            'unit_k': ids[hi],
            'pi_ik': self._probs.copy(),
        })

    def to_matrix(self) -> pd.DataFrame:
        """Dense symmetric DataFrame over all units, NaN on the diagonal"""
        n = self.n_units
        values = np.zeros((n, n))
        lo, hi = self.positions()
        values[lo, hi] = self._probs
        values[hi, lo] = self._probs
        np.fill_diagonal(values, np.nan)
        return pd.DataFrame(values, index=list(self.unit_ids), columns=list(self.unit_ids))

    def __repr__(self) -> str:
        return f"JointInclusionTable(n_units={self.n_units}, stored_pairs={len(self)})"


@dataclass(frozen=True, eq=False)
class ProbabilityTables:
    """
    Simulated inclusion probabilities for one design configuration

    Built once per population, weighting and sample size, then shared
    read-only by every variance calculation for samples drawn under it.
    """
    unit_ids: Tuple[Any, ...]
    inclusion: np.ndarray  # pi_i in population order (read-only)
    joint: JointInclusionTable
    sample_size: int
    num_simulations: int
    seed: Optional[np.random.SeedSequence] = None  # Reproduces the run when passed back as seed
    uncovered: Tuple[Any, ...] = ()  # Units never drawn in any simulated sample

    def __post_init__(self):
        inclusion = np.array(self.inclusion, dtype=float)
        if inclusion.shape != (len(self.unit_ids),):
            raise ValueError("inclusion must hold one probability per unit")
        inclusion.flags.writeable = False
        object.__setattr__(self, 'inclusion', inclusion)

    @property
    def pi(self) -> pd.Series:
        """Marginal inclusion probabilities indexed by unit id"""
        return pd.Series(self.inclusion.copy(), index=list(self.unit_ids), name='pi')

    def __iter__(self):
        # Unpacks as (pi_table, joint_pi_table)
        yield self.pi
        yield self.joint

    def to_frame(self) -> pd.DataFrame:
        """Per-unit table with inclusion probability and expansion factor"""
        with np.errstate(divide='ignore'):
            expansion = np.where(self.inclusion > 0, 1.0 / self.inclusion, np.nan)
        return pd.DataFrame({
            'unit': list(self.unit_ids),
            'pi': self.inclusion.copy(),
            'expansion': expansion,
        })

    def check_invariants(self) -> Dict[str, float]:
        """
        Summarize how well the tables satisfy the design invariants

        Returns
        -------
        dict
            pi_sum : sum of pi_i (should be close to sample_size)
            pi_sum_error : pi_sum - sample_size
            max_joint_excess : largest pi_ik - min(pi_i, pi_k) over stored
                pairs (should be <= 0)
            n_uncovered : number of units never drawn
        """
        pi_sum = float(self.inclusion.sum())
        lo, hi = self.joint.positions()
        if len(lo):
            bound = np.minimum(self.inclusion[lo], self.inclusion[hi])
            excess = float(np.max(self.joint.pairs()['pi_ik'].to_numpy() - bound))
        else:
            excess = 0.0
        return {
            'pi_sum': pi_sum,
            'pi_sum_error': pi_sum - self.sample_size,
            'max_joint_excess': excess,
            'n_uncovered': float(len(self.uncovered)),
        }

    def __repr__(self) -> str:
        return (f"ProbabilityTables(N={len(self.unit_ids)}, n={self.sample_size}, "
                f"simulations={self.num_simulations}, uncovered={len(self.uncovered)})")
