"""
Box-kernel estimators.

Probabilities are estimated by counting samples within a fixed kernel
width r (max norm by default) of each sample, in each joint/marginal space. Counts
include the sample itself so they never vanish. This is the fixed-width
alternative to the KSG estimators: cheaper to reason about, but biased
and sensitive to the choice of r.

    H(X)     = -< log( c_x / (N (2r)^d) ) >
    I(X;Y)   =  < log( c_xy N / (c_x c_y) ) >
    I(X;Y|Z) =  < log( c_xyz c_z / (c_xz c_yz) ) >
"""

import logging
from typing import Optional

import numpy as np
from scipy.special import gammaln

from infodyn.core.embedding import as_columns
from infodyn.core.kraskov import prepare_observations
from infodyn.core.neighbors import JointNeighborSearch, NORM_MAX, NORMS
from infodyn.errors import ConfigurationError, InsufficientDataError

logger = logging.getLogger(__name__)


class KernelCalculator:
    """Stateful box-kernel calculator for entropy, MI and conditional MI (nats)."""

    def __init__(
        self,
        kernel_width: float = 0.25,
        exclusion_window: int = 0,
        normalise: bool = True,
        noise_level: float = 0.0,
        noise_seed: Optional[int] = 0,
        norm: str = NORM_MAX,
    ):
        if not kernel_width > 0:
            raise ConfigurationError(f"Kernel width must be > 0, got {kernel_width}")
        if norm not in NORMS:
            raise ConfigurationError(f"Unknown norm: {norm}")
        if exclusion_window < 0:
            raise ConfigurationError(f"Exclusion window must be >= 0, got {exclusion_window}")
        self.kernel_width = float(kernel_width)
        self.exclusion_window = exclusion_window
        self.normalise = normalise
        self.noise_level = noise_level
        self.noise_seed = noise_seed
        self.norm = norm

        self.x: Optional[np.ndarray] = None
        self.y: Optional[np.ndarray] = None
        self.z: Optional[np.ndarray] = None
        self._fixed_counts: dict = {}

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
        if n <= 2 * self.exclusion_window + 1:
            raise InsufficientDataError(
                f"{n} observations leave no samples outside an exclusion window of {self.exclusion_window}"
            )

        prepared = prepare_observations(arrays, self.normalise, self.noise_level, self.noise_seed)
        self.x = prepared[0]
        self.y = prepared[1] if y is not None else None
        self.z = prepared[2] if z is not None and prepared[2].shape[1] > 0 else None

        # Counts that do not involve x survive any reordering of x
        self._fixed_counts = {}
        if self.y is not None and self.z is not None:
            self._fixed_counts["z"] = self._counts(self.z)
            self._fixed_counts["yz"] = self._counts(np.hstack([self.y, self.z]))
        elif self.y is not None:
            self._fixed_counts["y"] = self._counts(self.y)
        logger.debug("Kernel observations set: n=%d width=%.4g", n, self.kernel_width)

    def _counts(self, data: np.ndarray) -> np.ndarray:
        search = JointNeighborSearch(data, self.norm)
        # Squared-Euclidean searches take squared radii
        radius = self.kernel_width if self.norm == NORM_MAX else self.kernel_width**2
        others = search.count_all_within_radius(
            radius, inclusive=False, exclusion_window=self.exclusion_window
        )
        return others + 1

    def _ball_volume(self, d: int) -> float:
        r = self.kernel_width
        if self.norm == NORM_MAX:
            return (2.0 * r) ** d
        return float(np.exp(0.5 * d * np.log(np.pi) - gammaln(0.5 * d + 1.0) + d * np.log(r)))

    def compute(self) -> float:
        return float(np.mean(self.compute_local()))

    def compute_local(self) -> np.ndarray:
        if self.x is None:
            raise ConfigurationError("No observations have been set")
        return self._locals(self.x)

    def compute_with_source_ordering(self, order: np.ndarray) -> float:
        if self.x is None:
            raise ConfigurationError("No observations have been set")
        if self.y is None:
            raise ConfigurationError("Surrogates are undefined for a single-variable entropy")
        return float(np.mean(self._locals(self.x[np.asarray(order)])))

    def _locals(self, x: np.ndarray) -> np.ndarray:
        n, d = x.shape
        if self.y is None:
            c_x = self._counts(x)
            return -np.log(c_x / (n * self._ball_volume(d)))
        if self.z is None:
            c_x = self._counts(x)
            c_y = self._fixed_counts["y"]
            c_xy = self._counts(np.hstack([x, self.y]))
            return np.log(c_xy * n / (c_x * c_y))
        c_z = self._fixed_counts["z"]
        c_yz = self._fixed_counts["yz"]
        c_xz = self._counts(np.hstack([x, self.z]))
        c_xyz = self._counts(np.hstack([x, self.y, self.z]))
        return np.log(c_xyz * c_z / (c_xz * c_yz))
