"""
Plug-in estimators for finite-alphabet (symbolic) series.

Mutual information is accumulated from joint and marginal frequency
counts over (possibly time-shifted) symbol pairs (x[t - time_diff], y[t]):

    I(X;Y) = Σ p(x,y) log( p(x,y) / (p(x) p(y)) )

Cells with zero probability contribute nothing to the sum.
"""

import logging
from typing import Optional

import numpy as np

from infodyn.core.significance import NullDistribution, chi_square_null
from infodyn.errors import ConfigurationError, InsufficientDataError

logger = logging.getLogger(__name__)


def check_symbols(symbols: np.ndarray, base: int, name: str = "series") -> np.ndarray:
    """Validate that ``symbols`` is an integer array with values in [0, base)."""
    arr = np.asarray(symbols)
    if arr.size and not np.issubdtype(arr.dtype, np.integer):
        if not np.all(np.equal(np.mod(arr, 1), 0)):
            raise ConfigurationError(f"{name} must contain integer symbols")
    arr = arr.astype(np.int64)
    if arr.size and (arr.min() < 0 or arr.max() >= base):
        raise ConfigurationError(
            f"{name} has symbols outside [0, {base}): min={arr.min()}, max={arr.max()}"
        )
    return arr


def infer_base(*arrays: np.ndarray) -> int:
    """Smallest alphabet size covering every symbol in the arrays (at least 2)."""
    top = max(int(np.max(a)) for a in arrays if np.size(a))
    return max(2, top + 1)


def discrete_entropy(symbols: np.ndarray, base: Optional[int] = None) -> float:
    """Plug-in Shannon entropy in nats."""
    symbols = np.asarray(symbols).ravel()
    if symbols.size == 0:
        raise InsufficientDataError("Entropy of an empty series is undefined")
    base = base or infer_base(symbols)
    counts = np.bincount(check_symbols(symbols, base), minlength=base)
    p = counts[counts > 0] / symbols.size
    return float(-np.sum(p * np.log(p)))


class DiscreteEntropyCalculator:
    """Plug-in entropy with local values, for the estimator facade."""

    def __init__(self, base: Optional[int] = None):
        self.base = base
        self.symbols: Optional[np.ndarray] = None
        self.counts: Optional[np.ndarray] = None

    @property
    def n_observations(self) -> int:
        return 0 if self.symbols is None else len(self.symbols)

    def set_observations(self, x: np.ndarray):
        x = np.asarray(x).ravel()
        if x.size == 0:
            raise InsufficientDataError("Entropy of an empty series is undefined")
        base = self.base or infer_base(x)
        self.symbols = check_symbols(x, base, "x")
        self.counts = np.bincount(self.symbols, minlength=base)

    def compute_local(self) -> np.ndarray:
        return -np.log(self.counts[self.symbols] / self.n_observations)

    def compute(self) -> float:
        return float(np.mean(self.compute_local()))


class DiscreteMutualInfoCalculator:
    """
    Plug-in MI between two symbol streams of alphabet sizes ``base1`` and ``base2``.

    Pairs are (var1[t - time_diff], var2[t]). Observations accumulate
    across ``add_observations`` calls until ``initialise`` resets them.
    """

    def __init__(self, base1: int, base2: Optional[int] = None, time_diff: int = 0):
        base2 = base1 if base2 is None else base2
        if base1 < 2 or base2 < 2:
            raise ConfigurationError(f"Alphabet sizes must be >= 2, got ({base1}, {base2})")
        if time_diff < 0:
            raise ConfigurationError(f"time_diff must be >= 0, got {time_diff}")
        self.base1 = base1
        self.base2 = base2
        self.time_diff = time_diff
        self.initialise()

    def initialise(self):
        self.joint_count = np.zeros((self.base1, self.base2), dtype=np.int64)
        self.i_count = np.zeros(self.base1, dtype=np.int64)
        self.j_count = np.zeros(self.base2, dtype=np.int64)
        self.observations = 0
        self._i_values: list[np.ndarray] = []
        self._j_values: list[np.ndarray] = []
        self.average: Optional[float] = None

    @property
    def n_observations(self) -> int:
        return self.observations

    def _pairs(self, var1: np.ndarray, var2: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        var1 = check_symbols(np.asarray(var1).ravel(), self.base1, "var1")
        var2 = check_symbols(np.asarray(var2).ravel(), self.base2, "var2")
        if len(var1) != len(var2):
            raise ConfigurationError(
                f"var1 and var2 must have the same number of observations ({len(var1)} != {len(var2)})"
            )
        td = self.time_diff
        return var1[: len(var1) - td], var2[td:]

    def _joint_counts(self, i_vals: np.ndarray, j_vals: np.ndarray) -> np.ndarray:
        flat = np.bincount(i_vals * self.base2 + j_vals, minlength=self.base1 * self.base2)
        return flat.reshape(self.base1, self.base2)

    def add_observations(self, var1: np.ndarray, var2: np.ndarray):
        i_vals, j_vals = self._pairs(var1, var2)
        self.joint_count += self._joint_counts(i_vals, j_vals)
        self.i_count += np.bincount(i_vals, minlength=self.base1)
        self.j_count += np.bincount(j_vals, minlength=self.base2)
        self.observations += len(i_vals)
        self._i_values.append(i_vals)
        self._j_values.append(j_vals)

    def add_observations_from_states(self, states: np.ndarray, i_col: int, j_col: int):
        """Add pairs taken from two columns of a (time x variable) table of symbols."""
        states = np.asarray(states)
        self.add_observations(states[:, i_col], states[:, j_col])

    def set_observations(self, x: np.ndarray, y: np.ndarray):
        self.initialise()
        self.add_observations(x, y)

    def _mi_from_joint(self, joint: np.ndarray) -> float:
        if self.observations == 0:
            raise InsufficientDataError("No observations have been added")
        n = float(self.observations)
        p_joint = joint / n
        p_i = self.i_count / n
        p_j = self.j_count / n
        nz = joint > 0
        outer = np.outer(p_i, p_j)
        return float(np.sum(p_joint[nz] * np.log(p_joint[nz] / outer[nz])))

    def compute(self) -> float:
        """Average MI in nats over all accumulated observations."""
        self.average = self._mi_from_joint(self.joint_count)
        return self.average

    def compute_local_from_previous(self, var1: np.ndarray, var2: np.ndarray) -> np.ndarray:
        """
        Local MI of each (var1[t - time_diff], var2[t]) pair under the accumulated counts.

        Pairs never seen in the accumulated observations get -inf.
        """
        i_vals, j_vals = self._pairs(var1, var2)
        joint = self.joint_count[i_vals, j_vals].astype(float)
        denom = self.i_count[i_vals].astype(float) * self.j_count[j_vals]
        local = np.full(len(i_vals), -np.inf)
        seen = joint > 0
        local[seen] = np.log(joint[seen] * self.observations / denom[seen])
        return local

    def compute_local(self) -> np.ndarray:
        """Local MI of every accumulated observation, in accumulation order."""
        i_vals = np.concatenate(self._i_values)
        j_vals = np.concatenate(self._j_values)
        return np.log(
            self.joint_count[i_vals, j_vals] * float(self.observations)
            / (self.i_count[i_vals].astype(float) * self.j_count[j_vals])
        )

    def local_from_states(self, states: np.ndarray, i_col: int, j_col: int) -> np.ndarray:
        """
        Reset, accumulate the two columns of ``states`` and return local MI per row.

        Rows before ``time_diff`` have no pair and are reported as 0.
        """
        self.initialise()
        self.add_observations_from_states(states, i_col, j_col)
        states = np.asarray(states)
        local = np.zeros(states.shape[0])
        local[self.time_diff :] = self.compute_local_from_previous(states[:, i_col], states[:, j_col])
        self.average = float(np.mean(local[self.time_diff :]))
        return local

    def compute_with_source_ordering(self, order: np.ndarray) -> float:
        """MI after reordering var1's paired values; marginal counts are reused as-is."""
        i_vals = np.concatenate(self._i_values)
        j_vals = np.concatenate(self._j_values)
        return self._mi_from_joint(self._joint_counts(i_vals[np.asarray(order)], j_vals))

    @property
    def degrees_of_freedom(self) -> int:
        return (self.base1 - 1) * (self.base2 - 1)

    def analytic_null(self) -> NullDistribution:
        """Chi-square null for the current estimate (nats)."""
        actual = self.average if self.average is not None else self.compute()
        return chi_square_null(actual, self.observations, self.degrees_of_freedom)
