# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging

from dataclasses import dataclass

import numpy as np

from scipy.spatial.distance import cdist
from sklearn import get_config

from .errors import ConfigurationError, ValidationError

logger = logging.getLogger("fastmnnpy")


class NeighborIndex:
    """
    Nearest neighbour index over the rows of `data` (Euclidean metric).

    Subclasses implement `query`, returning for each row of `X`
    the indices of its `k` nearest rows of `data` together with the distances,
    sorted by distance and, for equal distances, by index.
    Index -1 marks a slot the backend couldn't fill.
    """

    name: str = None

    def __init__(self, data: np.ndarray, random_seed: int = 0, n_jobs: int | None = None):
        self._data = np.ascontiguousarray(data, dtype=np.float64)
        self.random_seed = random_seed
        self.n_jobs = n_jobs

    @property
    def n_points(self) -> int:
        return self._data.shape[0]

    def query(self, X: np.ndarray, k: int) -> tuple[np.ndarray, np.ndarray]:
        raise NotImplementedError


class ExactNeighborIndex(NeighborIndex):
    """
    Brute force search over chunks of query rows.
    Exact distances are computed pairwise, so duplicated points get
    identical distances and ties are resolved by the lower index.

    Chunks hold as many query rows as fit in `working_memory` MiB
    (sklearn's `working_memory` setting by default), whatever the size of `data`.
    """

    name = "exact"

    # distances, argpartition output and the tie mask of one query row, per data point
    _bytes_per_pair = 8 + 8 + 1

    def __init__(
        self,
        data,
        random_seed=0,
        n_jobs=None,
        chunk_size: int | None = None,
        working_memory: float | None = None,
    ):
        super().__init__(data, random_seed=random_seed, n_jobs=n_jobs)
        if working_memory is None:
            working_memory = get_config()["working_memory"]
        self.working_memory = working_memory
        self.chunk_size = chunk_size

    @property
    def chunk_rows(self) -> int:
        if self.chunk_size is not None:
            return max(1, int(self.chunk_size))
        row_bytes = self._bytes_per_pair * max(1, self.n_points)
        return max(1, int(self.working_memory * 2**20) // row_bytes)

    @staticmethod
    def _smallest(D: np.ndarray, k: int) -> np.ndarray:
        """Positions of the k smallest values of every row, ordered by (value, position)."""
        if k < D.shape[1]:
            top = np.argpartition(D, k - 1, axis=1)[:, :k]
        else:
            top = np.broadcast_to(np.arange(D.shape[1]), D.shape).copy()

        top_d = np.take_along_axis(D, top, axis=1)
        kth = top_d.max(axis=1)

        # argpartition picks arbitrary ones among values equal to the k-th
        n_tied = (D == kth[:, np.newaxis]).sum(axis=1)
        n_tied_kept = (top_d == kth[:, np.newaxis]).sum(axis=1)
        for i in np.flatnonzero(n_tied > n_tied_kept):
            below = np.flatnonzero(D[i] < kth[i])
            tied = np.flatnonzero(D[i] == kth[i])[: k - below.size]
            top[i] = np.concatenate([below, tied])

        order = np.lexsort((top, np.take_along_axis(D, top, axis=1)), axis=-1)
        return np.take_along_axis(top, order, axis=1)

    def query(self, X, k):
        X = np.asarray(X, dtype=np.float64)
        n = X.shape[0]
        chunk = self.chunk_rows

        indices = np.empty((n, k), dtype=np.int64)
        distances = np.empty((n, k), dtype=np.float64)

        for start in range(0, n, chunk):
            stop = min(start + chunk, n)
            # [chunk, N_data]
            D = cdist(X[start:stop], self._data, metric="euclidean")
            order = self._smallest(D, k)
            indices[start:stop] = order
            distances[start:stop] = np.take_along_axis(D, order, axis=1)

        return indices, distances


class ApproximateNeighborIndex(NeighborIndex):
    """
    Approximate search with a `pynndescent` kNN graph.
    The graph construction is randomized, `random_seed` makes it reproducible.
    """

    name = "approximate"

    def __init__(
        self,
        data,
        random_seed=0,
        n_jobs=None,
        n_neighbors: int = 30,
        **nndescent_kwargs,
    ):
        super().__init__(data, random_seed=random_seed, n_jobs=n_jobs)

        from pynndescent import NNDescent

        n_neighbors = int(max(1, min(n_neighbors, self.n_points - 1)))

        self._index = NNDescent(
            self._data,
            metric="euclidean",
            n_neighbors=n_neighbors,
            random_state=random_seed,
            n_jobs=-1 if n_jobs is None else n_jobs,
            **nndescent_kwargs,
        )

    def query(self, X, k):
        X = np.ascontiguousarray(X, dtype=np.float64)
        indices, distances = self._index.query(X, k=k)

        indices = indices.astype(np.int64)
        distances = distances.astype(np.float64)
        distances[indices < 0] = np.inf

        # deterministic order for equal distances
        order = np.lexsort((indices, distances), axis=-1)
        indices = np.take_along_axis(indices, order, axis=1)
        distances = np.take_along_axis(distances, order, axis=1)

        return indices, distances


NEIGHBOR_BACKENDS = {
    ExactNeighborIndex.name: ExactNeighborIndex,
    ApproximateNeighborIndex.name: ApproximateNeighborIndex,
}


def _get_neighbor_backend(name: str) -> type[NeighborIndex]:
    try:
        return NEIGHBOR_BACKENDS[name]
    except KeyError as e:
        raise ConfigurationError(
            f"unknown neighbor backend {name!r}, "
            f"expected one of {sorted(NEIGHBOR_BACKENDS)}",
            stage="find_mutual_neighbors",
        ) from e


@dataclass(frozen=True)
class AnchorPairs:
    """
    Mutual nearest neighbour pairs between a reference set and a query set.
    `reference[i]` and `query[i]` are row indices of the i-th pair,
    pairs are sorted by query index, then by reference index.
    """

    reference: np.ndarray
    query: np.ndarray

    def __len__(self) -> int:
        return len(self.query)

    @property
    def n_reference_cells(self) -> int:
        return len(np.unique(self.reference))

    @property
    def n_query_cells(self) -> int:
        return len(np.unique(self.query))

    def as_set(self) -> set:
        return set(zip(self.reference.tolist(), self.query.tolist()))


def _check_k(k: int, n_reference: int, n_query: int, batch=None) -> None:
    if int(k) != k or k < 1:
        raise ConfigurationError(
            f"k must be a positive integer, got {k}",
            stage="find_mutual_neighbors",
            batch=batch,
        )
    if k > min(n_reference, n_query):
        raise ValidationError(
            f"k={k} exceeds the smaller set size "
            f"(reference: {n_reference}, query: {n_query})",
            stage="find_mutual_neighbors",
            batch=batch,
        )


def _pair_codes(neighbors: np.ndarray, n_reference: int, query_side: bool) -> np.ndarray:
    # encodes (r, q) as q * n_reference + r
    n, k = neighbors.shape
    own = np.repeat(np.arange(n, dtype=np.int64), k)
    other = neighbors.ravel()
    valid = other >= 0
    own, other = own[valid], other[valid]
    if query_side:
        return own * n_reference + other
    return other * n_reference + own


def _find_mutual_neighbors(
    reference: np.ndarray,
    query: np.ndarray,
    k: int,
    backend: str = "exact",
    random_seed: int = 0,
    n_jobs: int | None = None,
    batch=None,
    **backend_kwargs,
) -> AnchorPairs:
    n_reference, n_query = reference.shape[0], query.shape[0]
    _check_k(k, n_reference, n_query, batch=batch)

    index_cls = _get_neighbor_backend(backend)

    # [Nq, k] reference neighbours of every query cell
    ref_index = index_cls(reference, random_seed=random_seed, n_jobs=n_jobs, **backend_kwargs)
    query_nn, _ = ref_index.query(query, k)

    # [Nr, k] query neighbours of every reference cell
    query_index = index_cls(query, random_seed=random_seed, n_jobs=n_jobs, **backend_kwargs)
    ref_nn, _ = query_index.query(reference, k)

    mutual = np.intersect1d(
        _pair_codes(query_nn, n_reference, query_side=True),
        _pair_codes(ref_nn, n_reference, query_side=False),
    )

    pairs = AnchorPairs(reference=mutual % n_reference, query=mutual // n_reference)

    logger.info(
        "found %i mutual nearest neighbour pairs (%i reference cells, %i query cells)",
        len(pairs),
        pairs.n_reference_cells,
        pairs.n_query_cells,
    )

    return pairs
