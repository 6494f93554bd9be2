"""
Null distributions and significance testing.

Two routes to a null distribution for a dependency measure:

- Permutation: recompute the measure with the source variable's rows
  shuffled (destination and conditioning held fixed), which destroys any
  source -> destination relationship while keeping every marginal.
- Analytic: for Gaussian and discrete estimators, 2 N I (in nats) is
  asymptotically chi-square distributed under independence.

The p-value is one-sided: the fraction of null draws at least as large
as the observed value.
"""

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, replace
from typing import Callable, Optional

import numpy as np
from scipy import stats

from infodyn.errors import ConfigurationError

logger = logging.getLogger(__name__)

P_VALUE_FRACTION = "fraction"
P_VALUE_PLUS_ONE = "plus_one"
P_VALUE_METHODS = (P_VALUE_FRACTION, P_VALUE_PLUS_ONE)

NATS_PER_BIT = float(np.log(2.0))


@dataclass
class NullDistribution:
    """Observed value, the null draws behind it, and the derived summary."""

    actual_value: float
    distribution: np.ndarray
    p_value: float
    mean: float
    variance: float
    method: str  # "permutation" or "analytic"
    units: str = "nats"
    degrees_of_freedom: Optional[int] = None
    n_observations: Optional[int] = None

    @property
    def n_draws(self) -> int:
        return len(self.distribution)

    @property
    def std(self) -> float:
        return float(np.sqrt(self.variance))

    @property
    def effect(self) -> float:
        """Mean of the null: the expected bias of the estimator when there is no relationship."""
        return self.mean

    def converted(self, units: str) -> "NullDistribution":
        """The same distribution expressed in other units (p-value is unit-free)."""
        if units == self.units:
            return self
        factor = unit_factor(self.units, units)
        return replace(
            self,
            actual_value=self.actual_value * factor,
            distribution=self.distribution * factor,
            mean=self.mean * factor,
            variance=self.variance * factor**2,
            units=units,
        )

    def to_dict(self) -> dict:
        return {
            "actual_value": self.actual_value,
            "p_value": self.p_value,
            "mean": self.mean,
            "std": self.std,
            "method": self.method,
            "units": self.units,
            "n_draws": self.n_draws,
            "degrees_of_freedom": self.degrees_of_freedom,
            "n_observations": self.n_observations,
        }


def unit_factor(from_units: str, to_units: str) -> float:
    """Multiplier converting a value between "nats" and "bits"."""
    for u in (from_units, to_units):
        if u not in ("nats", "bits"):
            raise ConfigurationError(f"Unknown units: {u}")
    if from_units == to_units:
        return 1.0
    return 1.0 / NATS_PER_BIT if to_units == "bits" else NATS_PER_BIT


def empirical_p_value(
    actual: float, null_values: np.ndarray, method: str = P_VALUE_FRACTION
) -> float:
    """
    One-sided p-value of ``actual`` against null draws.

    ``fraction`` gives count(null >= actual) / N and can reach 0 for small
    N; ``plus_one`` gives (count + 1) / (N + 1), which never does.
    """
    if method not in P_VALUE_METHODS:
        raise ConfigurationError(f"Unknown p-value method: {method}")
    null_values = np.asarray(null_values, dtype=float)
    n = len(null_values)
    if n == 0:
        raise ConfigurationError("Cannot compute a p-value from an empty null distribution")
    count = int(np.count_nonzero(null_values >= actual))
    if method == P_VALUE_PLUS_ONE:
        return (count + 1) / (n + 1)
    return count / n


def generate_orderings(n_observations: int, n_permutations: int, rng: np.random.Generator) -> np.ndarray:
    """Independent random reorderings of range(n), one per row (not guaranteed distinct)."""
    if n_permutations < 1:
        raise ConfigurationError(f"Permutation count must be >= 1, got {n_permutations}")
    return np.array([rng.permutation(n_observations) for _ in range(n_permutations)])


def permutation_test(
    surrogate: Callable[[np.ndarray], float],
    actual: float,
    n_observations: int,
    n_permutations: int = 100,
    rng: Optional[np.random.Generator] = None,
    p_value_method: str = P_VALUE_FRACTION,
    n_workers: int = 1,
) -> NullDistribution:
    """
    Build an empirical null by evaluating ``surrogate(ordering)`` for random orderings.

    Orderings are all drawn up front from ``rng``, so the result does not
    depend on ``n_workers``. With ``n_workers > 1`` the surrogate callable
    (and whatever it is bound to) must be picklable.
    """
    rng = rng if rng is not None else np.random.default_rng()
    orderings = generate_orderings(n_observations, n_permutations, rng)

    if n_workers > 1:
        with ProcessPoolExecutor(max_workers=n_workers) as executor:
            chunksize = max(1, n_permutations // (4 * n_workers))
            values = list(executor.map(surrogate, orderings, chunksize=chunksize))
    else:
        values = []
        for p, ordering in enumerate(orderings):
            values.append(surrogate(ordering))
            logger.debug("Surrogate %d/%d: %.6g", p + 1, n_permutations, values[-1])

    values = np.asarray(values, dtype=float)
    p_value = empirical_p_value(actual, values, p_value_method)
    logger.info(
        "Permutation test: actual=%.6g, null mean=%.6g, p=%.4g (%d permutations)",
        actual, values.mean(), p_value, n_permutations,
    )
    return NullDistribution(
        actual_value=float(actual),
        distribution=values,
        p_value=p_value,
        mean=float(values.mean()),
        variance=float(values.var()),
        method="permutation",
        n_observations=n_observations,
    )


def chi_square_null(actual: float, n_observations: int, degrees_of_freedom: int) -> NullDistribution:
    """
    Analytic null for a Gaussian or discrete MI estimate given in nats.

    2 N I ~ chi2(df), so the null of I itself has mean df / 2N and
    variance 2 df / (2N)^2.
    """
    if degrees_of_freedom < 1:
        raise ConfigurationError(f"Degrees of freedom must be >= 1, got {degrees_of_freedom}")
    if n_observations < 1:
        raise ConfigurationError(f"Observation count must be >= 1, got {n_observations}")
    scale = 2.0 * n_observations
    p_value = float(stats.chi2.sf(scale * actual, degrees_of_freedom))
    return NullDistribution(
        actual_value=float(actual),
        distribution=np.empty(0),
        p_value=p_value,
        mean=degrees_of_freedom / scale,
        variance=2.0 * degrees_of_freedom / scale**2,
        method="analytic",
        degrees_of_freedom=degrees_of_freedom,
        n_observations=n_observations,
    )
