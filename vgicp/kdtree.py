"""KD-Tree implementation for exact k-nearest neighbor search over 3D points."""

import numpy as np

from .utils import time_function, knn_search


class Node:
    def __init__(self):
        self.point = None
        self.index = None
        self.left = None
        self.right = None
        self.axis = None
        self.indices = None
    def set_point(self, point, index):
        self.point = point
        self.index = int(index)
    def set_left(self, left):
        self.left = left
    def set_right(self, right):
        self.right = right
    def set_axis(self, axis):
        self.axis = axis
    def set_indices(self, indices):
        self.indices = indices


class KDTree:
    """Balanced KD-tree; leaves keep index buckets instead of single points."""

    def __init__(self, leaf_size=32, dimension=3):
        self.root = None
        self.points = None
        self.leaf_size = max(1, int(leaf_size))
        self.dimension = dimension

    def __len__(self):
        return 0 if self.points is None else len(self.points)

    def build(self, points):
        """Build the tree over ``points`` (N, dimension) and return the root."""
        points = np.asarray(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != self.dimension:
            raise ValueError(f"points must have shape (N, {self.dimension}), got {points.shape}")
        self.points = points
        self.root = self.build_optimized()
        return self.root

    @time_function
    def build_optimized(self, depth=0, indices=None):
        # Initialize indices only at the top-level call
        if indices is None:
            if self.points is None or self.points.shape[0] == 0:
                return None
            indices = np.arange(self.points.shape[0], dtype=np.int64)

        n_points = indices.shape[0]

        if n_points == 0:
            return None

        # Leaf: store the indices to avoid creating millions of nodes
        if n_points <= self.leaf_size:
            leaf = Node()
            leaf.set_axis(depth % self.dimension)
            leaf.set_indices(np.sort(indices))
            return leaf

        axis = depth % self.dimension

        # In-place partition of this segment of indices around the median
        median_index = n_points // 2
        order = np.argpartition(self.points[indices, axis], median_index)
        indices[:] = indices[order]

        median_point_index = indices[median_index]

        node = Node()
        node.set_axis(axis)
        node.set_point(self.points[median_point_index], median_point_index)

        # Subtrees share views into the same indices array
        node.set_left(self.build_optimized(depth=depth + 1, indices=indices[:median_index]))
        node.set_right(self.build_optimized(depth=depth + 1, indices=indices[median_index + 1:]))
        return node

    def query(self, query_point, k):
        """Return (indices, squared_distances) of the k points closest to ``query_point``."""
        if self.root is None:
            raise RuntimeError("KDTree.build must be called before query")
        return knn_search(np.asarray(query_point, dtype=np.float64), self.root, self.points, k)
