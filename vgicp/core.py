"""Correspondence and error engine of voxelized GICP (numpy backend).

The engine keeps the source/target points, their neighbor sets and
covariances, and the target voxel map. An optimizer drives it once per
iteration with the same candidate transform ``T`` (4x4):

    update_correspondences(T)   # source -> target matches
    update_mahalanobis(T)       # W_i = (R Cs_i R^T + Ct_j)^-1
    compute_error(T)            # -> (error, H, b)

``H`` and ``b`` are taken with respect to a left increment
``T <- se3_exp(delta) @ T`` with ``delta = [rx, ry, rz, tx, ty, tz]``, so the
Gauss-Newton step solves ``H @ delta = -b``.
"""

import numpy as np

from .covariance import RegularizationMethod, compute_covariances, valid_covariance_mask
from .transforms import apply_transformation, as_transformation, skew
from .voxelmap import NeighborVoxels, VoxelMap


def _as_points(points, name):
    points = np.array(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"{name} must have shape (N, 3), got {points.shape}")
    if points.shape[0] == 0:
        raise ValueError(f"{name} is empty")
    # private frozen copy, caller edits cannot reach cached covariances or maps
    points.flags.writeable = False
    return points


def _as_neighbors(neighbors, points, name):
    if points is None:
        raise RuntimeError(f"set the {name} cloud before its neighbors")
    neighbors = np.asarray(neighbors, dtype=np.int64)
    if neighbors.ndim == 1 and neighbors.shape[0] % points.shape[0] == 0:
        # flat layout: k consecutive entries per point
        neighbors = neighbors.reshape(points.shape[0], -1)
    if neighbors.ndim != 2 or neighbors.shape[0] != points.shape[0]:
        raise ValueError(
            f"{name} neighbors do not match the cloud: expected ({points.shape[0]}, k), "
            f"got {neighbors.shape}")
    return neighbors


def select_best_candidates(query, target, distances, num_queries):
    """
    Keep, for every query, the candidate with the smallest distance.

    Ties go to the lower target index. Queries without any candidate get -1.

    Returns:
        Tuple of (correspondences (num_queries,), best_distances (num_queries,))
    """
    correspondences = np.full(num_queries, -1, dtype=np.int64)
    best_distances = np.full(num_queries, np.inf)
    if query.shape[0] == 0:
        return correspondences, best_distances

    order = np.lexsort((target, distances, query))
    sorted_query = query[order]
    first = np.ones(order.shape[0], dtype=bool)
    first[1:] = sorted_query[1:] != sorted_query[:-1]
    best = order[first]

    correspondences[query[best]] = target[best]
    best_distances[query[best]] = distances[best]
    return correspondences, best_distances


class VGICPCore:
    """Voxelized GICP engine running on the CPU with numpy."""

    backend = 'numpy'

    def __init__(self, resolution=1.0, neighbor_voxels=NeighborVoxels.DIRECT27,
                 max_correspondence_distance=np.inf):
        if not resolution > 0:
            raise ValueError(f"resolution must be positive, got {resolution}")
        self.resolution = float(resolution)
        self.neighbor_voxels = NeighborVoxels.coerce(neighbor_voxels)
        self.max_correspondence_distance = float(max_correspondence_distance)
        self.correspondence_search = None

        self.source_points = None
        self.target_points = None
        self.source_neighbors = None
        self.target_neighbors = None
        self.source_covariances = None
        self.target_covariances = None
        self.voxelmap = None
        self._source_voxelmap = None

        self._reset_correspondences()

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------
    def _reset_correspondences(self):
        self.correspondences = None
        self.correspondence_distances = None
        self._active = None
        self._weights = None
        self._weights_for = None

    def set_source_cloud(self, points):
        self.source_points = _as_points(points, "source cloud")
        self.source_neighbors = None
        self.source_covariances = None
        self._source_voxelmap = None
        self._reset_correspondences()

    def set_target_cloud(self, points):
        self.target_points = _as_points(points, "target cloud")
        self.target_neighbors = None
        self.target_covariances = None
        self.voxelmap = None
        self._reset_correspondences()

    def clear_source(self):
        self.source_points = None
        self.source_neighbors = None
        self.source_covariances = None
        self._source_voxelmap = None
        self._reset_correspondences()

    def clear_target(self):
        self.target_points = None
        self.target_neighbors = None
        self.target_covariances = None
        self.voxelmap = None
        self._reset_correspondences()

    def set_source_neighbors(self, neighbors):
        self.source_neighbors = _as_neighbors(neighbors, self.source_points, "source")

    def set_target_neighbors(self, neighbors):
        self.target_neighbors = _as_neighbors(neighbors, self.target_points, "target")

    def set_source_covariances(self, covariances):
        self.source_covariances = self._checked_covariances(covariances, self.source_points)
        self._reset_correspondences()

    def set_target_covariances(self, covariances):
        self.target_covariances = self._checked_covariances(covariances, self.target_points)
        self.voxelmap = None
        self._reset_correspondences()

    @staticmethod
    def _checked_covariances(covariances, points):
        covariances = np.array(covariances, dtype=np.float64)
        if points is None or covariances.shape != (points.shape[0], 3, 3):
            expected = None if points is None else (points.shape[0], 3, 3)
            raise ValueError(f"covariances must have shape {expected}, got {covariances.shape}")
        covariances.flags.writeable = False
        return covariances

    def calculate_source_covariances(self, method=RegularizationMethod.PLANE):
        if self.source_neighbors is None:
            raise RuntimeError("source neighbors must be set before computing covariances")
        self.source_covariances = self._covariances(self.source_points, self.source_neighbors,
                                                    method)
        self._source_voxelmap = None
        self._reset_correspondences()

    def calculate_target_covariances(self, method=RegularizationMethod.PLANE):
        if self.target_neighbors is None:
            raise RuntimeError("target neighbors must be set before computing covariances")
        self.target_covariances = self._covariances(self.target_points, self.target_neighbors,
                                                    method)
        self.voxelmap = None
        self._reset_correspondences()

    def create_target_voxelmap(self):
        if self.target_covariances is None:
            raise RuntimeError("target covariances must be computed before the voxel map")
        self.voxelmap = self._build_voxelmap(self.target_points, self.target_covariances)
        self._reset_correspondences()

    def set_resolution(self, resolution):
        if not resolution > 0:
            raise ValueError(f"resolution must be positive, got {resolution}")
        if float(resolution) == self.resolution:
            return
        self.resolution = float(resolution)
        self._source_voxelmap = None
        if self.voxelmap is not None:
            self.create_target_voxelmap()

    def set_neighbor_voxels(self, neighbor_voxels):
        self.neighbor_voxels = NeighborVoxels.coerce(neighbor_voxels)
        for voxelmap in (self.voxelmap, self._source_voxelmap):
            if voxelmap is not None:
                voxelmap.neighbor_voxels = self.neighbor_voxels

    def set_max_correspondence_distance(self, distance):
        if not distance > 0:
            raise ValueError(f"max correspondence distance must be positive, got {distance}")
        self.max_correspondence_distance = float(distance)

    def set_correspondence_search(self, search):
        """Use ``search`` (k = 1) for exact correspondences; None selects the voxel map."""
        self.correspondence_search = search

    def swap_source_and_target(self):
        self.source_points, self.target_points = self.target_points, self.source_points
        self.source_neighbors, self.target_neighbors = self.target_neighbors, self.source_neighbors
        self.source_covariances, self.target_covariances = (self.target_covariances,
                                                            self.source_covariances)
        self.voxelmap, self._source_voxelmap = self._source_voxelmap, self.voxelmap
        self._reset_correspondences()

        if self.target_covariances is None:
            return
        if self.voxelmap is None or self.voxelmap.resolution != self.resolution:
            self.create_target_voxelmap()
        else:
            self.voxelmap.neighbor_voxels = self.neighbor_voxels

    @property
    def num_correspondences(self):
        if self.correspondences is None:
            return 0
        return int(np.count_nonzero(self.correspondences >= 0))

    # ------------------------------------------------------------------
    # per-iteration contract
    # ------------------------------------------------------------------
    def _check_ready(self):
        if self.source_points is None or self.target_points is None:
            raise RuntimeError("both source and target clouds must be set")
        if self.source_covariances is None or self.target_covariances is None:
            raise RuntimeError("covariances must be computed for both clouds")
        if self.correspondence_search is None and self.voxelmap is None:
            raise RuntimeError("the target voxel map has not been created")

    def update_correspondences(self, trans):
        """Replace the correspondence set for the candidate transform ``trans``."""
        self._check_ready()
        T = as_transformation(trans)
        if self.correspondence_search is not None:
            correspondences, distances = self._exact_correspondences(T)
        else:
            correspondences, distances = self._voxel_correspondences(T)
        self._reset_correspondences()
        self.correspondences = correspondences
        self.correspondence_distances = distances

    def update_mahalanobis(self, trans):
        """Recompute the weighting matrix of every active correspondence for ``trans``."""
        if self.correspondences is None:
            raise RuntimeError("update_correspondences must be called before update_mahalanobis")
        T = as_transformation(trans)
        active = np.flatnonzero(self.correspondences >= 0)
        self._weights = self._inverse_combined(T[:3, :3], active, self.correspondences[active])
        self._active = active
        self._weights_for = self.correspondences

    def compute_error(self, trans):
        """
        Error and linearization for the candidate transform ``trans``.

        Returns:
            Tuple of (error, H (6, 6), b (6,)) accumulated over the active
            correspondences with the weights of the last update_mahalanobis.
        """
        if self._weights_for is None or self._weights_for is not self.correspondences:
            raise RuntimeError("update_mahalanobis must be called after update_correspondences")
        T = as_transformation(trans)
        if self._active.shape[0] == 0:
            return 0.0, np.zeros((6, 6)), np.zeros(6)
        return self._linearize(T, self._active, self.correspondences[self._active], self._weights)

    # ------------------------------------------------------------------
    # backend hooks
    # ------------------------------------------------------------------
    def _covariances(self, points, neighbors, method):
        return compute_covariances(points, neighbors, method)

    def _build_voxelmap(self, points, covariances):
        return VoxelMap(self.resolution, self.neighbor_voxels).insert(points, covariances)

    def _pair_distances(self, T, transformed, query, target):
        # squared Mahalanobis distance of each (query, target) pair under T's rotation
        R = T[:3, :3]
        residuals = transformed[query] - self.target_points[target]
        combined = R @ self.source_covariances[query] @ R.T + self.target_covariances[target]
        solved = np.linalg.solve(combined, residuals[:, :, np.newaxis])[:, :, 0]
        return np.einsum('ni,ni->n', residuals, solved)

    def _within_range(self, transformed, query, target):
        if not np.isfinite(self.max_correspondence_distance):
            return np.ones(query.shape[0], dtype=bool)
        diffs = transformed[query] - self.target_points[target]
        return np.einsum('ni,ni->n', diffs, diffs) <= self.max_correspondence_distance**2

    def _voxel_correspondences(self, T):
        transformed = apply_transformation(self.source_points, T)
        query, target = self.voxelmap.lookup_candidates(transformed)

        keep = valid_covariance_mask(self.source_covariances)[query]
        keep &= self._within_range(transformed, query, target)
        query, target = query[keep], target[keep]

        distances = self._pair_distances(T, transformed, query, target)
        return select_best_candidates(query, target, distances, transformed.shape[0])

    def _exact_correspondences(self, T):
        transformed = apply_transformation(self.source_points, T)
        n = transformed.shape[0]
        correspondences = np.full(n, -1, dtype=np.int64)
        distances = np.full(n, np.inf)

        query = np.flatnonzero(valid_covariance_mask(self.source_covariances))
        if query.shape[0] == 0:
            return correspondences, distances
        target = self.correspondence_search.find_k_nearest(
            transformed[query], self.target_points, 1)[:, 0]

        keep = valid_covariance_mask(self.target_covariances)[target]
        keep &= self._within_range(transformed, query, target)
        query, target = query[keep], target[keep]

        correspondences[query] = target
        distances[query] = self._pair_distances(T, transformed, query, target)
        return correspondences, distances

    def _inverse_combined(self, R, query, target):
        combined = R @ self.source_covariances[query] @ R.T + self.target_covariances[target]
        return np.linalg.inv(combined)

    def _linearize(self, T, query, target, weights):
        transformed = apply_transformation(self.source_points[query], T)
        residuals = transformed - self.target_points[target]

        J = np.zeros((query.shape[0], 3, 6))
        J[:, :, :3] = -skew(transformed)
        J[:, :, 3:] = np.eye(3)

        Wr = np.einsum('nij,nj->ni', weights, residuals)
        error = float(np.einsum('ni,ni->', residuals, Wr))
        JtW = np.einsum('nji,njk->nik', J, weights)
        H = np.einsum('nij,njk->ik', JtW, J)
        b = np.einsum('nji,nj->i', J, Wr)
        return error, H, b
