"""
Closed-form estimators under a joint-Gaussian assumption.

For jointly Gaussian variables every measure reduces to log-determinants
of covariance sub-blocks:

    H(X)     = 0.5 * (d log(2πe) + log|Σ_X|)
    I(X;Y|Z) = 0.5 * (log|Σ_XZ| + log|Σ_YZ| - log|Σ_Z| - log|Σ_XYZ|)

(with log|Σ_Z| = 0 for an empty Z, giving plain mutual information).

Under the null of independence, 2 N I(X;Y|Z) is asymptotically
chi-square distributed with dim(X) * dim(Y) degrees of freedom, which
gives both an analytic significance test and an analytic bias estimate.
"""

import logging
from typing import Optional

import numpy as np
from scipy import linalg

from infodyn.core.embedding import as_columns
from infodyn.core.significance import NullDistribution, chi_square_null
from infodyn.errors import ConfigurationError, InsufficientDataError, InvalidCovarianceError

logger = logging.getLogger(__name__)


def validate_covariance(covariance: np.ndarray, expected_dim: int) -> np.ndarray:
    """
    Check a covariance matrix before any determinant is taken.

    Raises InvalidCovarianceError unless the matrix is finite, square with
    ``expected_dim`` rows, symmetric and positive-definite.
    """
    cov = np.atleast_2d(np.asarray(covariance, dtype=float))
    if cov.ndim != 2 or cov.shape != (expected_dim, expected_dim):
        raise InvalidCovarianceError(
            f"Covariance must be {expected_dim}x{expected_dim} for the configured variables, "
            f"got shape {cov.shape}"
        )
    if not np.all(np.isfinite(cov)):
        raise InvalidCovarianceError("Covariance contains non-finite entries")
    if not np.allclose(cov, cov.T, rtol=1e-10, atol=1e-12):
        raise InvalidCovarianceError("Covariance is not symmetric")
    try:
        linalg.cholesky(cov, lower=True)
    except linalg.LinAlgError as e:
        raise InvalidCovarianceError(
            "Covariance is not positive-definite (are some variables linearly dependent?)"
        ) from e
    return cov


def _logdet(cov: np.ndarray, idx: list[int]) -> float:
    if not idx:
        return 0.0
    sign, logdet = np.linalg.slogdet(cov[np.ix_(idx, idx)])
    if sign <= 0:
        raise InvalidCovarianceError("Covariance sub-block is not positive-definite")
    return float(logdet)


def gaussian_entropy(covariance: np.ndarray) -> float:
    """Differential entropy (nats) of a Gaussian with the given covariance."""
    cov = validate_covariance(covariance, np.atleast_2d(covariance).shape[0])
    d = cov.shape[0]
    return 0.5 * (d * np.log(2 * np.pi * np.e) + _logdet(cov, list(range(d))))


def gaussian_conditional_mutual_information(
    covariance: np.ndarray, dims: tuple[int, int, int]
) -> float:
    """I(X;Y|Z) in nats from a covariance over [X, Y, Z] with the given block sizes."""
    dx, dy, dz = dims
    cov = validate_covariance(covariance, dx + dy + dz)
    ix = list(range(dx))
    iy = list(range(dx, dx + dy))
    iz = list(range(dx + dy, dx + dy + dz))
    return 0.5 * (
        _logdet(cov, ix + iz)
        + _logdet(cov, iy + iz)
        - _logdet(cov, iz)
        - _logdet(cov, ix + iy + iz)
    )


class GaussianCalculator:
    """
    Stateful Gaussian calculator for entropy, MI and conditional MI.

    Observations are supplied either as raw samples (the covariance is
    estimated from them) or directly as a covariance matrix plus the
    number of observations it was estimated from. Only the former supports
    permutation surrogates.
    """

    def __init__(self, bias_correction: bool = False):
        self.bias_correction = bias_correction
        self.covariance: Optional[np.ndarray] = None
        self.n_observations = 0
        self.dims = (0, 0, 0)
        self._data: Optional[list[np.ndarray]] = None

    @property
    def is_entropy(self) -> bool:
        return self.dims[1] == 0

    @property
    def degrees_of_freedom(self) -> int:
        return self.dims[0] * self.dims[1]

    def set_observations(
        self,
        x: np.ndarray,
        y: Optional[np.ndarray] = None,
        z: Optional[np.ndarray] = None,
    ):
        arrays = [as_columns(x, "x").astype(float)]
        if y is not None:
            arrays.append(as_columns(y, "y").astype(float))
        if z is not None:
            if y is None:
                raise ConfigurationError("Conditioning variables given without a second variable")
            arrays.append(as_columns(z, "z").astype(float))
        lengths = {a.shape[0] for a in arrays}
        if len(lengths) != 1:
            raise ConfigurationError(f"Observation arrays differ in length: {[a.shape[0] for a in arrays]}")
        n = lengths.pop()
        dims = tuple(a.shape[1] for a in arrays) + (0,) * (3 - len(arrays))
        if n <= sum(dims):
            raise InsufficientDataError(
                f"{n} observations cannot give a full-rank covariance over {sum(dims)} dimensions"
            )

        covariance = np.atleast_2d(np.cov(np.hstack(arrays), rowvar=False))
        self.covariance = validate_covariance(covariance, sum(dims))
        self.n_observations = n
        self.dims = dims
        self._data = arrays
        logger.debug("Gaussian observations set: n=%d dims=%s", n, dims)

    def set_covariance(
        self,
        covariance: np.ndarray,
        n_observations: int,
        dims: tuple[int, ...],
    ):
        """Use a supplied covariance over [X, Y, Z] (block sizes ``dims``) instead of samples."""
        dims = tuple(int(d) for d in dims) + (0,) * (3 - len(dims))
        if len(dims) != 3 or dims[0] < 1 or min(dims) < 0:
            raise ConfigurationError(f"Block sizes must be (dx >= 1, dy >= 0, dz >= 0), got {dims}")
        if dims[1] == 0 and dims[2] > 0:
            raise ConfigurationError("Conditioning block given without a second variable")
        if n_observations < 2:
            raise InsufficientDataError(f"Observation count must be >= 2, got {n_observations}")
        self.covariance = validate_covariance(covariance, sum(dims))
        self.n_observations = int(n_observations)
        self.dims = dims
        self._data = None

    def _require(self):
        if self.covariance is None:
            raise ConfigurationError("No observations or covariance have been set")

    def analytic_bias(self) -> float:
        """Mean of the chi-square null distribution, in nats."""
        return self.degrees_of_freedom / (2.0 * self.n_observations)

    def _from_covariance(self, cov: np.ndarray) -> float:
        if self.is_entropy:
            return gaussian_entropy(cov)
        value = gaussian_conditional_mutual_information(cov, self.dims)
        if self.bias_correction:
            value -= self.analytic_bias()
        return value

    def compute(self) -> float:
        self._require()
        return self._from_covariance(self.covariance)

    def analytic_null(self) -> NullDistribution:
        """Chi-square null, evaluated on the estimate without bias correction."""
        self._require()
        if self.is_entropy:
            raise ConfigurationError("Significance is undefined for a single-variable entropy")
        actual = gaussian_conditional_mutual_information(self.covariance, self.dims)
        return chi_square_null(actual, self.n_observations, self.degrees_of_freedom)

    def compute_with_source_ordering(self, order: np.ndarray) -> float:
        self._require()
        if self._data is None:
            raise ConfigurationError(
                "Permutation surrogates need raw observations; only a covariance was supplied"
            )
        if self.is_entropy:
            raise ConfigurationError("Surrogates are undefined for a single-variable entropy")
        arrays = [self._data[0][np.asarray(order)]] + self._data[1:]
        cov = np.atleast_2d(np.cov(np.hstack(arrays), rowvar=False))
        return self._from_covariance(cov)
