"""
Tests for the KSG nearest-neighbour and box-kernel estimators.

Gaussian data gives closed-form targets: I(X;Y) = -0.5 log(1 - ρ²) and
H(X) = 0.5 log(2πe σ²).
"""

import numpy as np
import pytest

from infodyn.core.kernel import KernelCalculator
from infodyn.core.kraskov import (
    KraskovCalculator,
    kraskov_conditional_mutual_information,
    kraskov_entropy,
    kraskov_mutual_information,
    prepare_observations,
)
from infodyn.errors import ConfigurationError, InsufficientDataError, NumericDegeneracyError


def correlated_pair(n, rho, seed=42):
    rng = np.random.default_rng(seed)
    x = rng.standard_normal(n)
    y = rho * x + np.sqrt(1 - rho**2) * rng.standard_normal(n)
    return x, y


def gaussian_mi(rho):
    return -0.5 * np.log(1 - rho**2)


# =====================================================================
# DATA PREPARATION
# =====================================================================

class TestPrepareObservations:
    def test_normalised_columns(self):
        """Columns come out with zero mean and unit variance."""
        rng = np.random.default_rng(42)
        data = rng.normal(5.0, 3.0, (500, 2))
        (prepared,) = prepare_observations([data], noise_level=0.0)
        assert np.allclose(prepared.mean(axis=0), 0.0, atol=1e-12)
        assert np.allclose(prepared.std(axis=0), 1.0)

    def test_noise_is_reproducible(self):
        """The same noise seed gives bit-identical results."""
        x = np.arange(50.0)
        a = prepare_observations([x], noise_seed=3)[0]
        b = prepare_observations([x], noise_seed=3)[0]
        c = prepare_observations([x], noise_seed=4)[0]
        assert np.array_equal(a, b)
        assert not np.array_equal(a, c)

    def test_constant_column_left_finite(self):
        """A constant column is centred, not divided by zero."""
        (prepared,) = prepare_observations([np.ones(20)], noise_level=0.0)
        assert np.all(prepared == 0.0)


# =====================================================================
# KSG ESTIMATORS
# =====================================================================

class TestKraskov:
    @pytest.mark.parametrize("algorithm", [1, 2])
    def test_mi_gaussian_closed_form(self, algorithm):
        """MI of correlated Gaussians is close to -0.5 log(1 - ρ²)."""
        x, y = correlated_pair(2000, 0.8)
        mi = kraskov_mutual_information(x, y, k=4, algorithm=algorithm)
        assert mi == pytest.approx(gaussian_mi(0.8), abs=0.06), f"KSG{algorithm} MI = {mi}"

    def test_mi_independent_near_zero(self):
        """Independent series have MI close to zero."""
        rng = np.random.default_rng(42)
        mi = kraskov_mutual_information(rng.standard_normal(2000), rng.standard_normal(2000))
        assert abs(mi) < 0.03, f"Independent MI should be near zero, got {mi}"

    def test_mi_symmetric(self):
        """Swapping the variables leaves algorithm 1 unchanged."""
        x, y = correlated_pair(500, 0.5)
        a = kraskov_mutual_information(x, y, noise_level=0.0)
        b = kraskov_mutual_information(y, x, noise_level=0.0)
        assert a == pytest.approx(b, rel=1e-9)

    def test_empty_conditioning_equals_mi(self):
        """CMI with a zero-width conditioning set is exactly MI."""
        x, y = correlated_pair(400, 0.6)
        mi = kraskov_mutual_information(x, y)
        cmi = kraskov_conditional_mutual_information(x, y, np.empty((400, 0)))
        assert cmi == mi

    def test_conditioning_removes_common_driver(self):
        """Two noisy copies of Z share information that vanishes given Z."""
        rng = np.random.default_rng(42)
        z = rng.standard_normal(1000)
        x = z + 0.5 * rng.standard_normal(1000)
        y = z + 0.5 * rng.standard_normal(1000)
        mi = kraskov_mutual_information(x, y)
        cmi = kraskov_conditional_mutual_information(x, y, z)
        assert mi > 0.3, f"Common driver should give clear MI, got {mi}"
        assert abs(cmi) < 0.08, f"Conditioning on the driver should remove it, got {cmi}"

    @pytest.mark.parametrize("algorithm", [1, 2])
    def test_irrelevant_conditioning_keeps_mi(self, algorithm):
        """Conditioning on an independent variable leaves MI roughly unchanged."""
        x, y = correlated_pair(1500, 0.7)
        z = np.random.default_rng(9).standard_normal(1500)
        cmi = kraskov_conditional_mutual_information(x, y, z, algorithm=algorithm)
        assert cmi == pytest.approx(gaussian_mi(0.7), abs=0.08), f"CMI = {cmi}"

    def test_entropy_gaussian(self):
        """Kozachenko-Leonenko entropy of a unit Gaussian is 0.5 log(2πe)."""
        rng = np.random.default_rng(42)
        h = kraskov_entropy(rng.standard_normal(3000))
        assert h == pytest.approx(0.5 * np.log(2 * np.pi * np.e), abs=0.06)

    def test_local_values_average_to_estimate(self):
        x, y = correlated_pair(300, 0.5)
        calc = KraskovCalculator(k=4)
        calc.set_observations(x, y)
        assert np.mean(calc.compute_local()) == pytest.approx(calc.compute(), rel=1e-12)

    def test_identity_ordering_reproduces_estimate(self):
        """Reordering the source by the identity gives the original estimate."""
        rng = np.random.default_rng(1)
        x, y, z = rng.standard_normal((3, 200))
        calc = KraskovCalculator(k=3)
        calc.set_observations(x, y + x, z)
        assert calc.compute_with_source_ordering(np.arange(200)) == pytest.approx(calc.compute(), rel=1e-12)

    def test_shuffled_source_destroys_dependence(self):
        x, y = correlated_pair(800, 0.8)
        calc = KraskovCalculator(k=4)
        calc.set_observations(x, y)
        shuffled = calc.compute_with_source_ordering(np.random.default_rng(0).permutation(800))
        assert shuffled < 0.05 < calc.compute()

    def test_exclusion_window_changes_neighbourhoods(self):
        """A serially dependent series gives a different estimate once temporal neighbours are excluded."""
        x = np.cumsum(np.random.default_rng(42).standard_normal(400))
        y = x + np.random.default_rng(7).standard_normal(400)
        assert kraskov_mutual_information(x, y, exclusion_window=10) != kraskov_mutual_information(x, y)

    def test_duplicates_without_noise_are_degenerate(self):
        """Zero neighbour radii are reported rather than producing infinities."""
        x = np.repeat(np.arange(10.0), 20)
        with pytest.raises(NumericDegeneracyError):
            kraskov_entropy(x, k=4, noise_level=0.0)

    def test_k_not_below_sample_count(self):
        with pytest.raises(ConfigurationError):
            kraskov_mutual_information(np.arange(5.0), np.arange(5.0), k=5)

    def test_window_capacity(self):
        with pytest.raises(InsufficientDataError):
            kraskov_mutual_information(np.arange(20.0), np.arange(20.0), k=4, exclusion_window=8)

    def test_length_mismatch(self):
        with pytest.raises(ConfigurationError):
            kraskov_mutual_information(np.arange(20.0), np.arange(21.0))

    def test_invalid_parameters(self):
        with pytest.raises(ConfigurationError):
            KraskovCalculator(k=0)
        with pytest.raises(ConfigurationError):
            KraskovCalculator(algorithm=3)
        with pytest.raises(ConfigurationError):
            KraskovCalculator(exclusion_window=-1)

    def test_compute_before_observations(self):
        with pytest.raises(ConfigurationError):
            KraskovCalculator().compute()


# =====================================================================
# BOX KERNEL
# =====================================================================

class TestKernel:
    def test_dependence_ranks_above_independence(self):
        x, y = correlated_pair(800, 0.8)
        noise = np.random.default_rng(5).standard_normal(800)
        dependent = KernelCalculator(kernel_width=0.3)
        dependent.set_observations(x, y)
        independent = KernelCalculator(kernel_width=0.3)
        independent.set_observations(x, noise)
        assert dependent.compute() > independent.compute() + 0.2

    def test_empty_conditioning_equals_mi(self):
        x, y = correlated_pair(300, 0.6)
        mi = KernelCalculator()
        mi.set_observations(x, y)
        cmi = KernelCalculator()
        cmi.set_observations(x, y, np.empty((300, 0)))
        assert cmi.compute() == mi.compute()

    def test_identity_ordering_reproduces_estimate(self):
        rng = np.random.default_rng(2)
        x, y, z = rng.standard_normal((3, 300))
        calc = KernelCalculator(kernel_width=0.5)
        calc.set_observations(x, x + y, z)
        assert calc.compute_with_source_ordering(np.arange(300)) == pytest.approx(calc.compute())

    @pytest.mark.parametrize("norm", ["max", "euclidean_squared"])
    def test_entropy_of_uniform(self, norm):
        """Box-kernel entropy of a unit-width uniform series is near zero."""
        x = np.random.default_rng(42).uniform(0, 1, 4000)
        calc = KernelCalculator(kernel_width=0.02, normalise=False, norm=norm)
        calc.set_observations(x)
        assert calc.compute() == pytest.approx(0.0, abs=0.05)

    def test_invalid_width(self):
        with pytest.raises(ConfigurationError):
            KernelCalculator(kernel_width=0.0)
