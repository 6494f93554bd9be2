"""
Nearest-neighbour search over time-ordered samples.

The univariate index keeps the samples in ascending value order together
with the permutation back to time order. Because distances from a query
grow monotonically as you move away from its rank in either direction,
every radius query reduces to a contiguous band of the sorted order, and
K-nearest-neighbour queries reduce to two cursors walking outward from
the query's rank.

Every query can additionally exclude samples whose *time index* lies
within a dynamic correlation exclusion window of the query, so that
serial dependence does not masquerade as statistical dependence.

Multivariate spaces compose one univariate index per dimension
(max-norm or squared-Euclidean combination). Bulk K-NN over the joint
space of all samples uses a KD-tree, over-queried by the exclusion window.
"""

import logging
from typing import Optional

import numpy as np
from scipy.spatial import KDTree

from infodyn.errors import ConfigurationError, InsufficientDataError

logger = logging.getLogger(__name__)

NORM_MAX = "max"
NORM_EUCLIDEAN_SQUARED = "euclidean_squared"
NORMS = (NORM_MAX, NORM_EUCLIDEAN_SQUARED)


def _norm(a, b, norm: str):
    diff = a - b
    if norm == NORM_MAX:
        return np.abs(diff)
    return diff * diff


def _within(distances, r, inclusive: bool):
    return distances <= r if inclusive else distances < r


def _first_true(lo: np.ndarray, hi: np.ndarray, predicate) -> np.ndarray:
    """
    Vectorised bisection: for each row, the first position in [lo, hi)
    where ``predicate(positions, rows)`` is True, or ``hi`` if none is.

    The predicate must be monotone (False...False, True...True) along
    each row's range.
    """
    lo = lo.copy()
    hi = hi.copy()
    while True:
        active = np.flatnonzero(lo < hi)
        if active.size == 0:
            return lo
        mid = (lo[active] + hi[active]) // 2
        hit = predicate(mid, active)
        hi[active[hit]] = mid[hit]
        lo[active[~hit]] = mid[~hit] + 1


def check_exclusion_capacity(n: int, k: int, exclusion_window: int):
    """Raise if a K-NN search with this exclusion window cannot succeed."""
    if n <= k + 2 * exclusion_window:
        raise InsufficientDataError(
            f"{n} observations are not enough for a {k}-nearest-neighbour search"
            f" with a dynamic exclusion window of {exclusion_window} points either side"
        )


class NeighborSearchIndex:
    """
    Sorted-order index over one scalar series.

    Holds the original values, the permutation from ascending rank to
    original (time) index, and its inverse. Immutable after construction.

    Distances are ``|x_i - x_j|`` for the max norm and ``(x_i - x_j)**2``
    for the squared-Euclidean norm; callers using the latter pass radii
    already squared.

    Ties in value are ordered by original index, so the sort (and every
    query built on it) is deterministic.
    """

    def __init__(self, data: np.ndarray, norm: str = NORM_MAX):
        data = np.asarray(data, dtype=float)
        if data.ndim == 2 and data.shape[1] == 1:
            data = data[:, 0]
        if data.ndim != 1:
            raise ConfigurationError(
                f"NeighborSearchIndex needs a single scalar series, got shape {data.shape}"
            )
        if norm not in NORMS:
            raise ConfigurationError(f"Unknown norm: {norm}")
        if len(data) <= 1:
            raise InsufficientDataError("Nearest neighbour search is poorly defined for <= 1 sample")

        self.values = data.copy()
        self.values.setflags(write=False)
        self.norm = norm
        self.n = len(data)

        # Stable sort keeps equal values in original-index order
        self.sorted_indices = np.argsort(self.values, kind="stable")
        self.ranks = np.empty(self.n, dtype=np.intp)
        self.ranks[self.sorted_indices] = np.arange(self.n)
        self.sorted_values = self.values[self.sorted_indices]
        for arr in (self.sorted_indices, self.ranks, self.sorted_values):
            arr.setflags(write=False)

    def __len__(self) -> int:
        return self.n

    def _value_radius(self, r: float) -> float:
        return r if self.norm == NORM_MAX else float(np.sqrt(max(r, 0.0)))

    def _band(self, value: float, r: float) -> tuple[int, int]:
        """Rank range [lo, hi) containing every sample within r of value (plus slack)."""
        half = self._value_radius(r)
        slack = 4 * np.spacing(max(abs(value), half, 1.0))
        lo = int(np.searchsorted(self.sorted_values, value - half - slack, side="left"))
        hi = int(np.searchsorted(self.sorted_values, value + half + slack, side="right"))
        return lo, hi

    def band_width(self, i: int, r: float) -> int:
        """Upper bound on the number of samples within r of sample i."""
        lo, hi = self._band(self.values[i], r)
        return hi - lo

    def _select(
        self,
        i: int,
        candidates: np.ndarray,
        exclusion_window: int,
        mask: Optional[np.ndarray],
        remap: Optional[np.ndarray],
    ) -> np.ndarray:
        keep = candidates != i
        if exclusion_window > 0:
            keep &= np.abs(candidates - i) > exclusion_window
        if mask is not None:
            mapped = candidates if remap is None else remap[candidates]
            keep &= mask[mapped]
        return candidates[keep]

    def find_within_radius(
        self,
        i: int,
        r: float,
        inclusive: bool = False,
        exclusion_window: int = 0,
        mask: Optional[np.ndarray] = None,
        remap: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Original indices of samples within r of sample i, in ascending-value order.

        The query sample itself is never returned. ``mask`` ("additional
        criteria") restricts results to samples where it is True; if
        ``remap`` is given the mask is looked up at ``remap[j]`` rather
        than ``j``.
        """
        value = self.values[i]
        lo, hi = self._band(value, r)
        candidates = self.sorted_indices[lo:hi]
        distances = _norm(self.values[candidates], value, self.norm)
        candidates = candidates[_within(distances, r, inclusive)]
        return self._select(i, candidates, exclusion_window, mask, remap)

    def count_within_radius(
        self,
        i: int,
        r: float,
        inclusive: bool = False,
        exclusion_window: int = 0,
        mask: Optional[np.ndarray] = None,
        remap: Optional[np.ndarray] = None,
    ) -> int:
        """Number of samples (other than i) within r of sample i."""
        return int(len(self.find_within_radius(i, r, inclusive, exclusion_window, mask, remap)))

    def count_within_radius_of_value(
        self,
        value: float,
        r: float,
        inclusive: bool = False,
        mask: Optional[np.ndarray] = None,
    ) -> int:
        """Number of samples within r of an arbitrary value (not necessarily a sample)."""
        lo, hi = self._band(value, r)
        candidates = self.sorted_indices[lo:hi]
        keep = _within(_norm(self.values[candidates], value, self.norm), r, inclusive)
        if mask is not None:
            keep &= mask[candidates]
        return int(np.count_nonzero(keep))

    def k_nearest_neighbors(
        self, k: int, i: int, exclusion_window: int = 0
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        The K nearest samples to sample i.

        Returns (indices, distances), ascending by distance. Equal
        distances are ordered by original index, lower first. Samples
        within ``exclusion_window`` time steps of i are skipped.
        """
        if k < 1:
            raise ConfigurationError(f"k must be >= 1, got {k}")
        check_exclusion_capacity(self.n, k, exclusion_window)

        value = self.values[i]
        rank = self.ranks[i]

        def excluded(pos):
            return abs(int(self.sorted_indices[pos]) - i) <= exclusion_window

        lower = rank - 1
        while lower >= 0 and excluded(lower):
            lower -= 1
        upper = rank + 1
        while upper < self.n and excluded(upper):
            upper += 1

        kth_distance = 0.0
        for _ in range(k):
            d_up = (
                _norm(self.sorted_values[upper], value, self.norm)
                if upper < self.n else np.inf
            )
            d_low = (
                _norm(self.sorted_values[lower], value, self.norm)
                if lower >= 0 else np.inf
            )
            up_key = (d_up, self.sorted_indices[upper] if upper < self.n else self.n)
            low_key = (d_low, self.sorted_indices[lower] if lower >= 0 else self.n)
            if up_key < low_key:
                kth_distance = d_up
                upper += 1
                while upper < self.n and excluded(upper):
                    upper += 1
            else:
                kth_distance = d_low
                lower -= 1
                while lower >= 0 and excluded(lower):
                    lower -= 1

        # The lower cursor meets equal values in descending index order, so
        # resolve ties at the K-th distance over every candidate at that radius.
        candidates = self.find_within_radius(
            i, kth_distance, inclusive=True, exclusion_window=exclusion_window
        )
        distances = _norm(self.values[candidates], value, self.norm)
        order = np.lexsort((candidates, distances))[:k]
        return candidates[order], distances[order]

    def nearest_neighbor(self, i: int) -> tuple[int, float]:
        indices, distances = self.k_nearest_neighbors(1, i)
        return int(indices[0]), float(distances[0])

    def count_all_within_radius(
        self,
        radii: np.ndarray,
        inclusive: bool = False,
        exclusion_window: int = 0,
    ) -> np.ndarray:
        """
        For every sample i, the number of other samples within radii[i].

        Equivalent to calling ``count_within_radius`` for each sample, but
        the band edges are located with a bisection vectorised over all
        samples at once.
        """
        radii = np.broadcast_to(np.asarray(radii, dtype=float), (self.n,))
        rows = np.arange(self.n)
        ranks = self.ranks
        values = self.values
        sv = self.sorted_values

        def inside(pos, active):
            return _within(_norm(sv[pos], values[active], self.norm), radii[active], inclusive)

        # Above: first rank >= own rank that falls outside the radius
        hi = _first_true(ranks, np.full(self.n, self.n), lambda p, a: ~inside(p, a))
        # Below: first rank <= own rank that falls inside the radius
        lo = _first_true(np.zeros(self.n, dtype=np.intp), ranks + 1, inside)

        counts = np.maximum(hi - ranks - 1, 0) + np.maximum(ranks - lo, 0)

        for offset in range(1, exclusion_window + 1):
            for shifted in (rows + offset, rows - offset):
                ok = (shifted >= 0) & (shifted < self.n)
                src = rows[ok]
                dst = shifted[ok]
                hit = _within(_norm(values[dst], values[src], self.norm), radii[src], inclusive)
                counts[src[hit]] -= 1
        return counts


class JointNeighborSearch:
    """
    Neighbour search in a (possibly multivariate) joint space.

    Composes one NeighborSearchIndex per dimension. The joint distance is
    the maximum of the per-dimension distances (max norm) or their sum
    (squared-Euclidean). A single-dimension space delegates straight to
    its one index.
    """

    def __init__(self, data: np.ndarray, norm: str = NORM_MAX):
        data = np.asarray(data, dtype=float)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        if data.ndim != 2 or data.shape[1] == 0:
            raise ConfigurationError(f"Joint search needs shape (n_samples, n_dims), got {data.shape}")
        if norm not in NORMS:
            raise ConfigurationError(f"Unknown norm: {norm}")

        self.data = data.copy()
        self.data.setflags(write=False)
        self.norm = norm
        self.n, self.dims = data.shape
        self.indexes = [NeighborSearchIndex(data[:, c], norm) for c in range(self.dims)]
        self._tree: Optional[KDTree] = None

    def __len__(self) -> int:
        return self.n

    @property
    def tree(self) -> KDTree:
        if self._tree is None:
            self._tree = KDTree(self.data)
        return self._tree

    def distances_to(self, i: int, others) -> np.ndarray:
        diffs = _norm(self.data[others], self.data[i], self.norm)
        if diffs.ndim == 1:
            return diffs
        return diffs.max(axis=-1) if self.norm == NORM_MAX else diffs.sum(axis=-1)

    def find_within_radius(
        self,
        i: int,
        r: float,
        inclusive: bool = False,
        exclusion_window: int = 0,
        mask: Optional[np.ndarray] = None,
        remap: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        if self.dims == 1:
            return self.indexes[0].find_within_radius(i, r, inclusive, exclusion_window, mask, remap)

        # Start from the narrowest per-dimension band, then filter on the joint norm
        widths = [index.band_width(i, r) for index in self.indexes]
        best = self.indexes[int(np.argmin(widths))]
        candidates = best.find_within_radius(i, r, True, exclusion_window, mask, remap)
        return candidates[_within(self.distances_to(i, candidates), r, inclusive)]

    def count_within_radius(
        self,
        i: int,
        r: float,
        inclusive: bool = False,
        exclusion_window: int = 0,
        mask: Optional[np.ndarray] = None,
        remap: Optional[np.ndarray] = None,
    ) -> int:
        return int(len(self.find_within_radius(i, r, inclusive, exclusion_window, mask, remap)))

    def k_nearest_neighbors(
        self, k: int, i: int, exclusion_window: int = 0
    ) -> tuple[np.ndarray, np.ndarray]:
        if self.dims == 1:
            return self.indexes[0].k_nearest_neighbors(k, i, exclusion_window)
        indices, distances = self._query(k, exclusion_window, self.data[i : i + 1], np.array([i]))
        return indices[0], distances[0]

    def k_nearest_neighbors_all(
        self, k: int, exclusion_window: int = 0
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        K nearest neighbours of every sample in the joint space.

        Returns (indices, distances), both shape (n, k), each row ascending
        by distance with ties ordered by original index.
        """
        return self._query(k, exclusion_window, self.data, np.arange(self.n))

    def _query(self, k, exclusion_window, points, rows):
        if k < 1:
            raise ConfigurationError(f"k must be >= 1, got {k}")
        check_exclusion_capacity(self.n, k, exclusion_window)

        # At most 2w + 1 returned points (self included) can be excluded;
        # one more shows whether ties at the K-th distance were cut off
        m = min(k + 2 * exclusion_window + 2, self.n)
        p = np.inf if self.norm == NORM_MAX else 2
        _, idx = self.tree.query(points, k=m, p=p)
        idx = np.asarray(idx).reshape(len(rows), m)

        missing = idx >= self.n
        safe_idx = np.where(missing, 0, idx)
        diffs = _norm(self.data[safe_idx], points[:, None, :], self.norm)
        raw = diffs.max(axis=-1) if self.norm == NORM_MAX else diffs.sum(axis=-1)

        valid = ~missing & (np.abs(safe_idx - rows[:, None]) > exclusion_window)
        dist = np.where(valid, raw, np.inf)
        order = np.lexsort((safe_idx, dist), axis=-1)[:, :k]
        out_idx = np.take_along_axis(safe_idx, order, axis=1)
        out_dist = np.take_along_axis(dist, order, axis=1)
        if not np.all(np.isfinite(out_dist)):
            raise InsufficientDataError(
                f"Fewer than {k} candidates outside the exclusion window of {exclusion_window}"
            )

        if m < self.n:
            kth = out_dist[:, -1]
            furthest = np.where(missing, np.inf, raw).max(axis=1)
            for r in np.flatnonzero(furthest <= kth):
                i = int(rows[r])
                candidates = self.find_within_radius(i, kth[r], True, exclusion_window)
                distances = self.distances_to(i, candidates)
                tied = np.lexsort((candidates, distances))[:k]
                out_idx[r] = candidates[tied]
                out_dist[r] = distances[tied]
        return out_idx, out_dist

    def count_all_within_radius(
        self,
        radii: np.ndarray,
        inclusive: bool = False,
        exclusion_window: int = 0,
    ) -> np.ndarray:
        """For every sample, the number of other samples within its radius in the joint space."""
        if self.dims == 1:
            return self.indexes[0].count_all_within_radius(radii, inclusive, exclusion_window)

        radii = np.broadcast_to(np.asarray(radii, dtype=float), (self.n,))
        rows = np.arange(self.n)
        counts = np.fromiter(
            (
                len(self.find_within_radius(i, radii[i], inclusive, exclusion_window))
                for i in rows
            ),
            dtype=np.intp,
            count=self.n,
        )
        return counts
