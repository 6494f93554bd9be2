"""
Kraskov-Stögbauer-Grassberger (KSG) nearest-neighbour estimators.

For each sample the K nearest neighbours are found in the full joint
space (max norm), giving a radius ε_i. Neighbours are then counted within
ε_i in each marginal space and the digamma-corrected log counts are
averaged over samples:

    I(X;Y)   = ψ(K) + ψ(N) - <ψ(n_x + 1) + ψ(n_y + 1)>                (alg. 1)
    I(X;Y|Z) = ψ(K) - <ψ(n_xz + 1) + ψ(n_yz + 1) - ψ(n_z + 1)>        (alg. 1)

For the conditional estimator, n_xz and n_yz are counted only among
samples that already lie within ε_i of the query in Z: the Z-neighbour set
is turned into a boolean mask which gates the marginal X and Y counts.

All estimates are in nats. Every neighbour search applies the same
dynamic correlation exclusion window.

References: Kraskov, Stögbauer & Grassberger, PRE 69, 066138 (2004);
Frenzel & Pompe, PRL 99, 204101 (2007).
"""

import logging
from typing import Optional

import numpy as np
from scipy.special import digamma

from infodyn.core.embedding import as_columns
from infodyn.core.neighbors import JointNeighborSearch, NORM_MAX, check_exclusion_capacity
from infodyn.errors import ConfigurationError, NumericDegeneracyError

logger = logging.getLogger(__name__)


def prepare_observations(
    arrays: list[np.ndarray],
    normalise: bool = True,
    noise_level: float = 1e-8,
    noise_seed: Optional[int] = 0,
) -> list[np.ndarray]:
    """
    Normalise each column to zero mean / unit variance and add tiny noise.

    The noise breaks exact ties between samples (which would otherwise give
    zero neighbour radii). It comes from a generator seeded with
    ``noise_seed`` so repeated calls on the same data agree exactly.
    """
    rng = np.random.default_rng(noise_seed)
    prepared = []
    for arr in arrays:
        arr = as_columns(arr).astype(float)
        if normalise and arr.shape[1] > 0:
            std = arr.std(axis=0)
            std[std == 0] = 1.0
            arr = (arr - arr.mean(axis=0)) / std
        if noise_level > 0:
            arr = arr + noise_level * rng.standard_normal(arr.shape)
        prepared.append(arr)
    return prepared


def _marginal_radii(data: np.ndarray, neighbors: np.ndarray) -> np.ndarray:
    """Max-norm distance from each sample to the furthest of its neighbours, in one marginal."""
    return np.abs(data[neighbors] - data[:, None, :]).max(axis=(1, 2))


def _check_radii(radii: np.ndarray, what: str):
    zero = np.flatnonzero(radii <= 0)
    if zero.size:
        raise NumericDegeneracyError(
            f"{what}: the K-th neighbour of sample {zero[0]} (and {zero.size - 1} others) "
            "is at distance zero; duplicate samples leave no neighbours inside the radius. "
            "Add noise (noise_level > 0) to break ties."
        )


class KraskovCalculator:
    """
    Stateful KSG calculator for entropy, MI and conditional MI.

    ``set_observations(x)`` gives entropy, ``(x, y)`` mutual information and
    ``(x, y, z)`` conditional mutual information. The marginal searchers
    for y and z are built once and reused read-only across surrogate
    evaluations; anything involving the (reordered) x is rebuilt.
    """

    def __init__(
        self,
        k: int = 4,
        algorithm: int = 1,
        exclusion_window: int = 0,
        normalise: bool = True,
        noise_level: float = 1e-8,
        noise_seed: Optional[int] = 0,
    ):
        if k < 1:
            raise ConfigurationError(f"Neighbour count k must be >= 1, got {k}")
        if algorithm not in (1, 2):
            raise ConfigurationError(f"KSG algorithm must be 1 or 2, got {algorithm}")
        if exclusion_window < 0:
            raise ConfigurationError(f"Exclusion window must be >= 0, got {exclusion_window}")
        self.k = k
        self.algorithm = algorithm
        self.exclusion_window = exclusion_window
        self.normalise = normalise
        self.noise_level = noise_level
        self.noise_seed = noise_seed

        self.x: Optional[np.ndarray] = None
        self.y: Optional[np.ndarray] = None
        self.z: Optional[np.ndarray] = None
        self._y_search: Optional[JointNeighborSearch] = None
        self._z_search: Optional[JointNeighborSearch] = None

    @property
    def n_observations(self) -> int:
        return 0 if self.x is None else self.x.shape[0]

    def set_observations(
        self,
        x: np.ndarray,
        y: Optional[np.ndarray] = None,
        z: Optional[np.ndarray] = None,
    ):
        arrays = [as_columns(x, "x")]
        if y is not None:
            arrays.append(as_columns(y, "y"))
        if z is not None:
            if y is None:
                raise ConfigurationError("Conditioning variables given without a second variable")
            arrays.append(as_columns(z, "z"))

        lengths = {a.shape[0] for a in arrays}
        if len(lengths) != 1:
            raise ConfigurationError(f"Observation arrays differ in length: {[a.shape[0] for a in arrays]}")
        n = lengths.pop()
        if self.k >= n:
            raise ConfigurationError(f"Neighbour count k={self.k} must be less than the {n} observations")
        check_exclusion_capacity(n, self.k, self.exclusion_window)

        prepared = prepare_observations(arrays, self.normalise, self.noise_level, self.noise_seed)
        self.x = prepared[0]
        self.y = prepared[1] if y is not None else None
        self.z = prepared[2] if z is not None and prepared[2].shape[1] > 0 else None

        self._y_search = JointNeighborSearch(self.y) if self.y is not None else None
        self._z_search = JointNeighborSearch(self.z) if self.z is not None else None
        logger.debug(
            "KSG observations set: n=%d dims x=%d y=%s z=%s k=%d alg=%d window=%d",
            n, self.x.shape[1],
            None if self.y is None else self.y.shape[1],
            None if self.z is None else self.z.shape[1],
            self.k, self.algorithm, self.exclusion_window,
        )

    def _require(self):
        if self.x is None:
            raise ConfigurationError("No observations have been set")

    def compute(self) -> float:
        return float(np.mean(self.compute_local()))

    def compute_local(self) -> np.ndarray:
        """Local (per-sample) values whose mean is the estimate, in nats."""
        self._require()
        return self._locals(self.x)

    def compute_with_source_ordering(self, order: np.ndarray) -> float:
        """Estimate with the rows of x reordered; y and z stay fixed."""
        self._require()
        if self.y is None:
            raise ConfigurationError("Surrogates are undefined for a single-variable entropy")
        return float(np.mean(self._locals(self.x[np.asarray(order)])))

    def _locals(self, x: np.ndarray) -> np.ndarray:
        if self.y is None:
            return self._entropy_locals(x)
        if self.z is None:
            return self._mi_locals(x)
        return self._cmi_locals(x)

    def _entropy_locals(self, x: np.ndarray) -> np.ndarray:
        n, d = x.shape
        search = JointNeighborSearch(x, NORM_MAX)
        _, dist = search.k_nearest_neighbors_all(self.k, self.exclusion_window)
        eps = dist[:, -1]
        _check_radii(eps, "entropy")
        # Max-norm ball of radius eps has volume (2 eps)^d
        return digamma(n) - digamma(self.k) + d * np.log(2.0 * eps)

    def _mi_locals(self, x: np.ndarray) -> np.ndarray:
        n = x.shape[0]
        w = self.exclusion_window
        joint = JointNeighborSearch(np.hstack([x, self.y]))
        neighbors, dist = joint.k_nearest_neighbors_all(self.k, w)
        x_search = JointNeighborSearch(x)

        if self.algorithm == 1:
            eps = dist[:, -1]
            _check_radii(eps, "mutual information")
            n_x = x_search.count_all_within_radius(eps, inclusive=False, exclusion_window=w)
            n_y = self._y_search.count_all_within_radius(eps, inclusive=False, exclusion_window=w)
            return digamma(self.k) + digamma(n) - digamma(n_x + 1) - digamma(n_y + 1)

        eps_x = _marginal_radii(x, neighbors)
        eps_y = _marginal_radii(self.y, neighbors)
        n_x = x_search.count_all_within_radius(eps_x, inclusive=True, exclusion_window=w)
        n_y = self._y_search.count_all_within_radius(eps_y, inclusive=True, exclusion_window=w)
        return digamma(self.k) - 1.0 / self.k + digamma(n) - digamma(n_x) - digamma(n_y)

    def _cmi_locals(self, x: np.ndarray) -> np.ndarray:
        n = x.shape[0]
        w = self.exclusion_window
        y, z = self.y, self.z
        joint = JointNeighborSearch(np.hstack([x, y, z]))
        neighbors, dist = joint.k_nearest_neighbors_all(self.k, w)
        x_search = JointNeighborSearch(x)
        y_search = self._y_search
        z_search = self._z_search

        inclusive = self.algorithm == 2
        if self.algorithm == 1:
            eps = dist[:, -1]
            _check_radii(eps, "conditional mutual information")
            eps_x = eps_y = eps_z = eps
        else:
            eps_x = _marginal_radii(x, neighbors)
            eps_y = _marginal_radii(y, neighbors)
            eps_z = _marginal_radii(z, neighbors)

        n_z = np.empty(n, dtype=np.intp)
        n_xz = np.empty(n, dtype=np.intp)
        n_yz = np.empty(n, dtype=np.intp)
        in_z = np.zeros(n, dtype=bool)
        for i in range(n):
            z_neighbors = z_search.find_within_radius(i, eps_z[i], inclusive, w)
            n_z[i] = len(z_neighbors)
            in_z[z_neighbors] = True
            n_xz[i] = x_search.count_within_radius(i, eps_x[i], inclusive, w, mask=in_z)
            n_yz[i] = y_search.count_within_radius(i, eps_y[i], inclusive, w, mask=in_z)
            in_z[z_neighbors] = False

        if self.algorithm == 1:
            return digamma(self.k) - digamma(n_xz + 1) - digamma(n_yz + 1) + digamma(n_z + 1)
        return (
            digamma(self.k) - 2.0 / self.k
            + digamma(n_z)
            - digamma(n_xz) + 1.0 / n_xz
            - digamma(n_yz) + 1.0 / n_yz
        )


def kraskov_entropy(x: np.ndarray, k: int = 4, exclusion_window: int = 0, **kwargs) -> float:
    """Kozachenko-Leonenko differential entropy of x, in nats (max norm)."""
    calc = KraskovCalculator(k=k, exclusion_window=exclusion_window, **kwargs)
    calc.set_observations(x)
    return calc.compute()


def kraskov_mutual_information(
    x: np.ndarray,
    y: np.ndarray,
    k: int = 4,
    algorithm: int = 1,
    exclusion_window: int = 0,
    **kwargs,
) -> float:
    """KSG estimate of I(X;Y) in nats."""
    calc = KraskovCalculator(k=k, algorithm=algorithm, exclusion_window=exclusion_window, **kwargs)
    calc.set_observations(x, y)
    return calc.compute()


def kraskov_conditional_mutual_information(
    x: np.ndarray,
    y: np.ndarray,
    z: np.ndarray,
    k: int = 4,
    algorithm: int = 1,
    exclusion_window: int = 0,
    **kwargs,
) -> float:
    """
    KSG estimate of I(X;Y|Z) in nats.

    With an empty conditioning set (z of width zero) this is exactly the
    unconditional estimate.
    """
    calc = KraskovCalculator(k=k, algorithm=algorithm, exclusion_window=exclusion_window, **kwargs)
    calc.set_observations(x, y, z)
    return calc.compute()
