"""
infodyn: information dynamics of time series.

Entropy, mutual information, conditional mutual information, active
information storage and transfer entropy between time-ordered variables,
with KSG nearest-neighbour, box-kernel, Gaussian and discrete estimators,
and permutation or analytic significance tests.
"""

__version__ = "0.1.0"

from infodyn.core.embedding import EmbeddingSpec
from infodyn.core.significance import NullDistribution
from infodyn.errors import (
    InfoDynError,
    ConfigurationError,
    InsufficientDataError,
    InvalidCovarianceError,
    NumericDegeneracyError,
)
from infodyn.estimator import Estimator, EstimatorConfig, EstimatorKind, Measure, configure
from infodyn.matrix import CausalMatrix, MatrixConfig, MatrixSweep, compute_causal_matrix

__all__ = [
    "EmbeddingSpec",
    "NullDistribution",
    "InfoDynError",
    "ConfigurationError",
    "InsufficientDataError",
    "InvalidCovarianceError",
    "NumericDegeneracyError",
    "Estimator",
    "EstimatorConfig",
    "EstimatorKind",
    "Measure",
    "configure",
    "CausalMatrix",
    "MatrixConfig",
    "MatrixSweep",
    "compute_causal_matrix",
]
