"""General utility functions."""

import heapq
import time
from functools import wraps

import numpy as np


def time_function(func):
    """
    Decorator to time function execution.
    For recursive functions, only times the top-level call.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not hasattr(wrapper, '_in_call'):
            wrapper._in_call = False

        if wrapper._in_call:
            return func(*args, **kwargs)

        wrapper._in_call = True
        start_time = time.perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            wrapper._in_call = False
            elapsed = time.perf_counter() - start_time
            print(f"{func.__name__} took {elapsed:.6f} seconds")

    return wrapper


def _offer(heap, k, sq_dist, index):
    # heap holds the k best as (-sq_dist, -index); the root is the current worst
    entry = (-sq_dist, -index)
    if len(heap) < k:
        heapq.heappush(heap, entry)
    elif entry > heap[0]:
        heapq.heapreplace(heap, entry)


def knn_search(query_point, root, points_array, k):
    """
    Iterative k-nearest neighbor search in KD-tree.

    Ties in distance are resolved in favour of the lower point index, so the
    result is deterministic for a given tree.

    Args:
        query_point: Point to find the neighbors for, shape (3,)
        root: Root node of the KD-tree
        points_array: Numpy array of the points the tree was built on
        k: Number of neighbors

    Returns:
        Tuple of (indices, squared_distances), both sorted by distance
    """
    heap = []
    stack = [(root, 0.0)]

    while stack:
        node, plane_sq_dist = stack.pop()
        if node is None:
            continue
        if len(heap) == k and plane_sq_dist > -heap[0][0]:
            continue

        # Leaf node: check all points in the leaf
        if node.indices is not None:
            diffs = points_array[node.indices] - query_point
            sq_dists = np.einsum('ij,ij->i', diffs, diffs)
            if len(heap) == k:
                mask = sq_dists <= -heap[0][0]
                candidates = zip(sq_dists[mask], node.indices[mask])
            else:
                candidates = zip(sq_dists, node.indices)
            for sq_dist, index in candidates:
                _offer(heap, k, float(sq_dist), int(index))
            continue

        # Internal node: check node point
        diff = node.point - query_point
        _offer(heap, k, float(diff @ diff), node.index)

        axis = node.axis
        offset = query_point[axis] - node.point[axis]
        if offset < 0:
            near_node, far_node = node.left, node.right
        else:
            near_node, far_node = node.right, node.left

        # far side first so the near side is popped next
        stack.append((far_node, offset * offset))
        stack.append((near_node, 0.0))

    best = sorted((-neg_dist, -neg_index) for neg_dist, neg_index in heap)
    indices = np.array([index for _, index in best], dtype=np.int64)
    sq_dists = np.array([dist for dist, _ in best])
    return indices, sq_dists
