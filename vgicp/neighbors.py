"""Nearest neighbor search strategies.

Every strategy offers the same capability::

    find_k_nearest(query_points, reference_points, k) -> (Q, k) int64 array

Rows are ordered by increasing distance; equal distances keep the lower
reference index first.
"""

from enum import Enum

import numpy as np
from joblib import Parallel, delayed

from .accelerator import brute_force_knn
from .kdtree import KDTree
from .utils import knn_search


class InsufficientPointsError(ValueError):
    """The reference cloud holds fewer points than neighbors were requested."""


class NearestNeighborMethod(Enum):
    CPU_PARALLEL_KDTREE = 'kdtree'
    GPU_BRUTEFORCE = 'bruteforce'

    @classmethod
    def coerce(cls, value):
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip()
            for member in cls:
                if key.lower() == member.value or key.upper() == member.name:
                    return member
        raise ValueError(f"Unknown nearest neighbor method: {value!r}")


def _validate(query_points, reference_points, k):
    query = np.asarray(query_points, dtype=np.float64)
    reference = np.asarray(reference_points, dtype=np.float64)
    for name, array in (("query_points", query), ("reference_points", reference)):
        if array.ndim != 2 or array.shape[1] != 3:
            raise ValueError(f"{name} must have shape (N, 3), got {array.shape}")
    k = int(k)
    if k < 1:
        raise ValueError(f"k must be positive, got {k}")
    if reference.shape[0] < k:
        raise InsufficientPointsError(
            f"{k} nearest neighbors requested but the reference cloud has "
            f"only {reference.shape[0]} points")
    return query, reference, k


def _search_chunk(queries, root, points_array, k):
    return np.array([knn_search(q, root, points_array, k)[0] for q in queries],
                    dtype=np.int64).reshape(-1, k)


class ParallelKDTreeSearch:
    """Exact search over a KD-tree, query chunks processed by joblib workers."""

    method = NearestNeighborMethod.CPU_PARALLEL_KDTREE

    def __init__(self, n_jobs=4, leaf_size=32, chunk_size=512):
        self.n_jobs = n_jobs
        self.leaf_size = leaf_size
        self.chunk_size = max(1, int(chunk_size))
        self._reference = None
        self._tree = None

    def _tree_for(self, reference):
        # The tree is reused while the same reference array is queried
        if self._tree is None or self._reference is not reference:
            tree = KDTree(leaf_size=self.leaf_size, dimension=3)
            tree.build(reference)
            self._tree = tree
            self._reference = reference
        return self._tree

    def find_k_nearest(self, query_points, reference_points, k):
        query, reference, k = _validate(query_points, reference_points, k)
        if query.shape[0] == 0:
            return np.empty((0, k), dtype=np.int64)

        tree = self._tree_for(reference)
        chunks = [query[i:i + self.chunk_size]
                  for i in range(0, query.shape[0], self.chunk_size)]
        results = Parallel(n_jobs=self.n_jobs, backend='loky')(
            delayed(_search_chunk)(chunk, tree.root, tree.points, k)
            for chunk in chunks
        )
        return np.vstack(results)

    def __repr__(self):
        return f"ParallelKDTreeSearch(n_jobs={self.n_jobs}, leaf_size={self.leaf_size})"


class BruteForceSearch:
    """Exhaustive search on the accelerator (torch device)."""

    method = NearestNeighborMethod.GPU_BRUTEFORCE

    def __init__(self, device=None, batch_size=2048):
        self.device = device
        self.batch_size = max(1, int(batch_size))

    def find_k_nearest(self, query_points, reference_points, k):
        query, reference, k = _validate(query_points, reference_points, k)
        if query.shape[0] == 0:
            return np.empty((0, k), dtype=np.int64)
        return brute_force_knn(query, reference, k, device=self.device,
                               batch_size=self.batch_size)

    def __repr__(self):
        return f"BruteForceSearch(device={self.device!r})"


def make_neighbor_search(method=NearestNeighborMethod.CPU_PARALLEL_KDTREE, n_jobs=4,
                         device=None):
    """Create the search strategy for a NearestNeighborMethod (or its name)."""
    method = NearestNeighborMethod.coerce(method)
    if method is NearestNeighborMethod.GPU_BRUTEFORCE:
        return BruteForceSearch(device=device)
    return ParallelKDTreeSearch(n_jobs=n_jobs)
