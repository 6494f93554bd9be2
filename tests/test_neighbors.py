"""
Tests for nearest-neighbour search.

Every query is checked against a brute-force scan over all samples,
including the dynamic exclusion window, masks and the tie rule.
"""

import numpy as np
import pytest

from infodyn.core.neighbors import (
    JointNeighborSearch,
    NeighborSearchIndex,
    NORM_EUCLIDEAN_SQUARED,
)
from infodyn.errors import InsufficientDataError


def brute_knn(data, i, k, window=0):
    data = data.reshape(len(data), -1)
    d = np.abs(data - data[i]).max(axis=1)
    idx = np.arange(len(data))
    ok = (idx != i) & (np.abs(idx - i) > window)
    idx, d = idx[ok], d[ok]
    order = np.lexsort((idx, d))[:k]
    return idx[order], d[order]


def brute_count(data, i, r, inclusive=False, window=0, mask=None):
    data = data.reshape(len(data), -1)
    d = np.abs(data - data[i]).max(axis=1)
    idx = np.arange(len(data))
    hit = (d <= r) if inclusive else (d < r)
    hit &= (idx != i) & (np.abs(idx - i) > window)
    if mask is not None:
        hit &= mask
    return int(hit.sum())


# =====================================================================
# UNIVARIATE INDEX
# =====================================================================

class TestNeighborSearchIndex:
    def test_sorted_order_and_inverse(self):
        """Ranks invert the sorted permutation and values come out ascending."""
        rng = np.random.default_rng(42)
        x = rng.standard_normal(100)
        index = NeighborSearchIndex(x)
        assert np.all(np.diff(index.sorted_values) >= 0)
        assert np.array_equal(index.sorted_indices[index.ranks], np.arange(100))

    def test_index_is_read_only(self):
        """The index cannot be mutated after construction."""
        index = NeighborSearchIndex(np.arange(10.0))
        with pytest.raises(ValueError):
            index.values[0] = 5.0

    @pytest.mark.parametrize("window", [0, 1, 5])
    @pytest.mark.parametrize("k", [1, 4, 10])
    def test_knn_matches_brute_force(self, k, window):
        """K nearest neighbours agree with a brute-force scan."""
        rng = np.random.default_rng(42)
        x = rng.standard_normal(200)
        index = NeighborSearchIndex(x)
        for i in [0, 17, 99, 150, 199, int(np.argmin(x)), int(np.argmax(x))]:
            idx, dist = index.k_nearest_neighbors(k, i, window)
            expected_idx, expected_dist = brute_knn(x, i, k, window)
            assert np.array_equal(idx, expected_idx), f"Sample {i}: {idx} != {expected_idx}"
            assert np.allclose(dist, expected_dist)

    def test_knn_returns_exactly_k_sorted_outside_window(self):
        """Exactly K results, ascending, never the query or its temporal neighbours."""
        rng = np.random.default_rng(7)
        x = np.cumsum(rng.standard_normal(300))
        index = NeighborSearchIndex(x)
        k, window = 5, 3
        for i in range(0, 300, 13):
            idx, dist = index.k_nearest_neighbors(k, i, window)
            assert len(idx) == k
            assert np.all(np.diff(dist) >= 0)
            assert i not in idx
            assert np.all(np.abs(idx - i) > window)

    def test_ties_prefer_lower_index(self):
        """At equal distance the candidate with the lower original index wins."""
        index = NeighborSearchIndex(np.array([5.0, 6.0, 4.0]))
        idx, dist = index.k_nearest_neighbors(1, 0)
        assert idx.tolist() == [1]
        assert dist.tolist() == [1.0]

    def test_duplicate_values_ordered_by_index(self):
        """Duplicated values are returned in original-index order from either side."""
        index = NeighborSearchIndex(np.array([0.0, 1.0, 1.0, 1.0, 2.0]))
        assert index.k_nearest_neighbors(2, 0)[0].tolist() == [1, 2]
        assert index.k_nearest_neighbors(2, 4)[0].tolist() == [1, 2]
        assert index.k_nearest_neighbors(2, 2)[0].tolist() == [1, 3]

    def test_nearest_neighbor(self):
        """The single nearest neighbour of a boundary sample."""
        index = NeighborSearchIndex(np.array([0.0, 10.0, 0.5, 3.0]))
        assert index.nearest_neighbor(1) == (3, 7.0)

    @pytest.mark.parametrize("inclusive", [False, True])
    @pytest.mark.parametrize("window", [0, 3])
    def test_counts_match_brute_force(self, inclusive, window):
        """Single and bulk radius counts agree with a brute-force scan."""
        rng = np.random.default_rng(42)
        x = rng.standard_normal(150)
        radii = rng.uniform(0.05, 0.8, 150)
        index = NeighborSearchIndex(x)
        bulk = index.count_all_within_radius(radii, inclusive, window)
        for i in range(150):
            expected = brute_count(x, i, radii[i], inclusive, window)
            assert index.count_within_radius(i, radii[i], inclusive, window) == expected
            assert bulk[i] == expected, f"Sample {i}: bulk count {bulk[i]} != {expected}"

    def test_inclusive_edge_counts_boundary_points(self):
        """A point exactly at the radius counts only when the edge is inclusive."""
        index = NeighborSearchIndex(np.array([0.0, 1.0, 3.0]))
        assert index.count_within_radius(0, 1.0, inclusive=False) == 0
        assert index.count_within_radius(0, 1.0, inclusive=True) == 1

    def test_mask_and_remap(self):
        """Masks restrict counts, optionally looked up through a remapping."""
        rng = np.random.default_rng(3)
        x = rng.standard_normal(80)
        mask = rng.random(80) < 0.5
        remap = rng.permutation(80)
        index = NeighborSearchIndex(x)
        for i in range(0, 80, 7):
            assert index.count_within_radius(i, 0.5, mask=mask) == brute_count(x, i, 0.5, mask=mask)
            assert index.count_within_radius(i, 0.5, mask=mask, remap=remap) == brute_count(
                x, i, 0.5, mask=mask[remap]
            )

    def test_find_within_radius_returns_indices(self):
        """find_within_radius returns the original indices of the in-radius samples."""
        index = NeighborSearchIndex(np.array([0.0, 0.2, 5.0, -0.3, 0.9]))
        assert sorted(index.find_within_radius(0, 0.5).tolist()) == [1, 3]

    def test_count_of_arbitrary_value(self):
        """Radius counts around a value that is not a sample."""
        index = NeighborSearchIndex(np.array([0.0, 1.0, 2.0, 3.0]))
        assert index.count_within_radius_of_value(1.5, 0.6) == 2
        assert index.count_within_radius_of_value(1.5, 0.5, inclusive=True) == 2
        assert index.count_within_radius_of_value(1.5, 0.5, inclusive=False) == 0

    def test_window_too_large(self):
        """Too few samples outside the exclusion window is an error."""
        index = NeighborSearchIndex(np.arange(10.0))
        with pytest.raises(InsufficientDataError):
            index.k_nearest_neighbors(4, 5, exclusion_window=3)

    def test_single_sample_rejected(self):
        with pytest.raises(InsufficientDataError):
            NeighborSearchIndex(np.array([1.0]))


# =====================================================================
# JOINT SEARCH
# =====================================================================

class TestJointNeighborSearch:
    @pytest.mark.parametrize("window", [0, 4])
    def test_bulk_knn_matches_brute_force(self, window):
        """KD-tree K-NN over all samples agrees with a brute-force max-norm scan."""
        rng = np.random.default_rng(42)
        data = rng.standard_normal((200, 3))
        search = JointNeighborSearch(data)
        idx, dist = search.k_nearest_neighbors_all(4, window)
        assert idx.shape == (200, 4)
        for i in range(200):
            expected_idx, expected_dist = brute_knn(data, i, 4, window)
            assert np.array_equal(idx[i], expected_idx), f"Sample {i}: {idx[i]} != {expected_idx}"
            assert np.allclose(dist[i], expected_dist)

    def test_single_query_matches_bulk(self):
        """One-sample and all-sample K-NN queries agree."""
        rng = np.random.default_rng(1)
        data = rng.standard_normal((100, 2))
        search = JointNeighborSearch(data)
        idx_all, _ = search.k_nearest_neighbors_all(3, 2)
        for i in (0, 50, 99):
            idx, _ = search.k_nearest_neighbors(3, i, 2)
            assert np.array_equal(idx, idx_all[i])

    def test_bulk_knn_ties_prefer_lower_index(self):
        """Equidistant joint neighbours are ordered by original index."""
        data = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [-1.0, 0.0], [5.0, 5.0]])
        idx, dist = JointNeighborSearch(data).k_nearest_neighbors_all(2)
        assert idx[0].tolist() == [1, 2]
        assert dist[0].tolist() == [1.0, 1.0]

    @pytest.mark.parametrize("inclusive", [False, True])
    def test_joint_counts_match_brute_force(self, inclusive):
        """Joint max-norm counts agree with a brute-force scan."""
        rng = np.random.default_rng(42)
        data = rng.standard_normal((120, 2))
        radii = rng.uniform(0.1, 1.0, 120)
        search = JointNeighborSearch(data)
        counts = search.count_all_within_radius(radii, inclusive, exclusion_window=2)
        for i in range(120):
            assert counts[i] == brute_count(data, i, radii[i], inclusive, window=2)

    def test_one_dimension_delegates(self):
        """A one-column joint space behaves exactly like the univariate index."""
        rng = np.random.default_rng(5)
        x = rng.standard_normal(60)
        joint = JointNeighborSearch(x)
        single = NeighborSearchIndex(x)
        assert np.array_equal(joint.k_nearest_neighbors(3, 10)[0], single.k_nearest_neighbors(3, 10)[0])
        assert joint.count_within_radius(10, 0.3) == single.count_within_radius(10, 0.3)

    def test_squared_euclidean_counts(self):
        """Squared-Euclidean searches take squared radii."""
        rng = np.random.default_rng(9)
        data = rng.standard_normal((80, 2))
        search = JointNeighborSearch(data, NORM_EUCLIDEAN_SQUARED)
        for i in range(0, 80, 9):
            d2 = ((data - data[i]) ** 2).sum(axis=1)
            expected = int(np.count_nonzero(d2 < 0.49)) - 1
            assert search.count_within_radius(i, 0.49) == expected

    def test_insufficient_candidates(self):
        with pytest.raises(InsufficientDataError):
            JointNeighborSearch(np.zeros((6, 2))).k_nearest_neighbors_all(3, exclusion_window=2)
