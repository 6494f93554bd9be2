"""Estimation engine: neighbour search, estimator cores and significance testing."""

from infodyn.core.neighbors import NeighborSearchIndex, JointNeighborSearch
from infodyn.core.embedding import EmbeddingSpec, embed, encode_symbols
from infodyn.core.kraskov import (
    KraskovCalculator,
    kraskov_entropy,
    kraskov_mutual_information,
    kraskov_conditional_mutual_information,
)
from infodyn.core.kernel import KernelCalculator
from infodyn.core.gaussian import (
    GaussianCalculator,
    gaussian_entropy,
    gaussian_conditional_mutual_information,
)
from infodyn.core.discrete import (
    DiscreteEntropyCalculator,
    DiscreteMutualInfoCalculator,
    discrete_entropy,
)
from infodyn.core.significance import NullDistribution, permutation_test, chi_square_null

__all__ = [
    "NeighborSearchIndex",
    "JointNeighborSearch",
    "EmbeddingSpec",
    "embed",
    "encode_symbols",
    "KraskovCalculator",
    "kraskov_entropy",
    "kraskov_mutual_information",
    "kraskov_conditional_mutual_information",
    "KernelCalculator",
    "GaussianCalculator",
    "gaussian_entropy",
    "gaussian_conditional_mutual_information",
    "DiscreteEntropyCalculator",
    "DiscreteMutualInfoCalculator",
    "discrete_entropy",
    "NullDistribution",
    "permutation_test",
    "chi_square_null",
]
