"""Accelerator backend: the voxelized GICP engine on a torch device.

Every operation (brute-force k-NN, covariance estimation, voxel map build,
correspondence search, Mahalanobis weights and the error reduction) runs as
torch tensor ops on ``device``. Calls are synchronous: results are copied
back to numpy before returning. Failures inside torch are raised as
AcceleratorError; nothing falls back to the CPU backend.
"""

from functools import wraps

import numpy as np
import torch

from .core import VGICPCore
from .covariance import EIGENVALUE_FLOOR, RegularizationMethod
from .voxelmap import KEY_BITS, KEY_OFFSET, NeighborVoxels, neighbor_offsets
from .utils import time_function


class AcceleratorError(RuntimeError):
    """An operation failed on the accelerator device."""


def default_device():
    return torch.device('cuda' if torch.cuda.is_available() else 'cpu')


def resolve_device(device=None):
    return default_device() if device is None else torch.device(device)


def _upload(array, dtype=torch.float64, device=None):
    # writable host copy, torch cannot share read-only numpy buffers
    return torch.as_tensor(np.array(array), dtype=dtype, device=device)


def on_device(func):
    """Re-raise torch runtime failures as AcceleratorError."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except AcceleratorError:
            raise
        except RuntimeError as err:
            raise AcceleratorError(f"{func.__name__} failed on the accelerator: {err}") from err
    return wrapper


@on_device
def brute_force_knn(query_points, reference_points, k, device=None, batch_size=2048):
    """
    Exhaustive k-nearest neighbor search.

    Args:
        query_points: (Q, 3) array
        reference_points: (M, 3) array with M >= k
        k: Number of neighbors
        device: torch device (default: CUDA if available, else CPU)
        batch_size: Queries processed per distance matrix

    Returns:
        (Q, k) int64 array ordered by distance, ties by lower index
    """
    device = resolve_device(device)
    reference = _upload(reference_points, dtype=torch.float64, device=device)
    results = []
    for start in range(0, len(query_points), batch_size):
        query = _upload(query_points[start:start + batch_size],
                                dtype=torch.float64, device=device)
        dists = torch.cdist(query, reference, compute_mode='donot_use_mm_for_euclid_dist')
        order = torch.sort(dists, dim=1, stable=True).indices[:, :k]
        results.append(order.cpu())
    return torch.cat(results).numpy().astype(np.int64)


def regularize_covariances_torch(covs, method):
    method = RegularizationMethod.coerce(method)
    if covs.shape[0] == 0:
        return covs.clone()

    eye = torch.eye(3, dtype=covs.dtype, device=covs.device)
    if method is RegularizationMethod.FROBENIUS:
        C_inv = torch.linalg.inv(covs + EIGENVALUE_FLOOR * eye)
        norms = torch.linalg.matrix_norm(C_inv, ord='fro', keepdim=True)
        regularized = torch.linalg.inv(C_inv / norms)
    else:
        values, vectors = torch.linalg.eigh(covs)
        if method is RegularizationMethod.PLANE:
            plane = torch.tensor([EIGENVALUE_FLOOR, 1.0, 1.0], dtype=covs.dtype, device=covs.device)
            values = plane.expand_as(values)
        elif method is RegularizationMethod.MIN_EIG:
            values = values.clamp_min(EIGENVALUE_FLOOR)
        else:
            largest = values[:, -1:]
            normalized = torch.where(largest > 0, values / largest.clamp_min(1e-300),
                                     torch.zeros_like(values))
            values = normalized.clamp_min(EIGENVALUE_FLOOR)
        regularized = vectors @ torch.diag_embed(values) @ vectors.transpose(1, 2)

    return 0.5 * (regularized + regularized.transpose(1, 2))


def _skew_torch(v):
    S = torch.zeros(v.shape[:-1] + (3, 3), dtype=v.dtype, device=v.device)
    S[..., 0, 1] = -v[..., 2]
    S[..., 0, 2] = v[..., 1]
    S[..., 1, 0] = v[..., 2]
    S[..., 1, 2] = -v[..., 0]
    S[..., 2, 0] = -v[..., 1]
    S[..., 2, 1] = v[..., 0]
    return S


def _voxel_keys_torch(points, resolution):
    scaled = torch.floor(points / resolution)
    valid = (torch.isfinite(scaled) & (scaled.abs() < KEY_OFFSET - 1)).all(dim=-1)
    keys = torch.where(valid.unsqueeze(-1), scaled, torch.zeros_like(scaled)).to(torch.int64)
    return keys, valid


def _pack_keys_torch(keys):
    shifted = keys + KEY_OFFSET
    return (shifted[..., 0] << (2 * KEY_BITS)) | (shifted[..., 1] << KEY_BITS) | shifted[..., 2]


class TorchVoxelMap:
    """Device-resident counterpart of VoxelMap (same keys, same candidate order)."""

    def __init__(self, resolution=1.0, neighbor_voxels=NeighborVoxels.DIRECT27, device=None):
        if not resolution > 0:
            raise ValueError(f"resolution must be positive, got {resolution}")
        self.resolution = float(resolution)
        self.neighbor_voxels = NeighborVoxels.coerce(neighbor_voxels)
        self.device = resolve_device(device)
        empty = torch.empty(0, dtype=torch.int64, device=self.device)
        self._codes = self._starts = self._counts = self._indices = empty

    @time_function
    @on_device
    def insert(self, points, covariances=None):
        """(Re)build from device tensors ``points`` (N, 3) and ``covariances`` (N, 3, 3)."""
        usable = torch.isfinite(points).all(dim=1)
        if covariances is not None:
            usable &= torch.isfinite(covariances).flatten(1).all(dim=1)

        keys, in_range = _voxel_keys_torch(points, self.resolution)
        if bool((usable & ~in_range).any()):
            raise ValueError(
                f"points exceed the voxel key range at resolution {self.resolution}")

        indices = torch.nonzero(usable, as_tuple=False).squeeze(1)
        codes = _pack_keys_torch(keys[indices])
        sorted_codes, order = torch.sort(codes, stable=True)
        self._indices = indices[order]
        self._codes, self._counts = torch.unique_consecutive(sorted_codes, return_counts=True)
        self._starts = torch.cumsum(self._counts, dim=0) - self._counts
        return self

    @property
    def num_voxels(self):
        return int(self._codes.shape[0])

    def __len__(self):
        return int(self._indices.shape[0])

    @on_device
    def lookup_candidates(self, points):
        """(query_index, target_index) device tensors for query points (Q, 3)."""
        empty = torch.empty(0, dtype=torch.int64, device=self.device)
        if self.num_voxels == 0 or points.shape[0] == 0:
            return empty, empty

        offsets = _upload(neighbor_offsets(self.neighbor_voxels), dtype=torch.int64,
                          device=self.device)
        keys, valid = _voxel_keys_torch(points, self.resolution)
        codes = _pack_keys_torch(keys.unsqueeze(1) + offsets.unsqueeze(0))  # (Q, M)

        pos = torch.searchsorted(self._codes, codes.contiguous())
        pos_clipped = pos.clamp_max(self.num_voxels - 1)
        hit = valid.unsqueeze(1) & (self._codes[pos_clipped] == codes)

        counts = torch.where(hit, self._counts[pos_clipped], torch.zeros_like(pos)).reshape(-1)
        starts = self._starts[pos_clipped].reshape(-1)
        owners = torch.arange(points.shape[0], device=self.device).repeat_interleave(offsets.shape[0])

        total = int(counts.sum())
        query_index = owners.repeat_interleave(counts)
        run_offsets = (torch.arange(total, device=self.device)
                       - (torch.cumsum(counts, dim=0) - counts).repeat_interleave(counts))
        target_pos = starts.repeat_interleave(counts) + run_offsets
        return query_index, self._indices[target_pos]


class TorchVGICPCore(VGICPCore):
    """VGICPCore whose heavy operations run on a torch device."""

    backend = 'torch'

    def __init__(self, resolution=1.0, neighbor_voxels=NeighborVoxels.DIRECT27,
                 max_correspondence_distance=np.inf, device=None):
        super().__init__(resolution, neighbor_voxels, max_correspondence_distance)
        self.device = resolve_device(device)
        self._uploaded = {}

    def _tensor(self, name):
        # host arrays are uploaded once and re-sent only when replaced
        array = getattr(self, name)
        cached = self._uploaded.get(name)
        if cached is None or cached[0] is not array:
            tensor = _upload(array, dtype=torch.float64, device=self.device)
            cached = (array, tensor)
            self._uploaded[name] = cached
        return cached[1]

    def _matrix(self, T):
        return _upload(T, dtype=torch.float64, device=self.device)

    @time_function
    @on_device
    def _covariances(self, points, neighbors, method):
        points = _upload(points, dtype=torch.float64, device=self.device)
        neighbors = _upload(neighbors, dtype=torch.int64, device=self.device)
        n, k = neighbors.shape
        if k < 2:
            raise ValueError(f"at least 2 neighbors per point are required, got k={k}")

        valid = ((neighbors >= 0) & (neighbors < n)).all(dim=1)
        safe = torch.where(valid.unsqueeze(1), neighbors, torch.zeros_like(neighbors))
        neighborhoods = points[safe]  # (N, k, 3)
        valid &= torch.isfinite(neighborhoods).flatten(1).all(dim=1)

        covs = torch.full((n, 3, 3), float('nan'), dtype=torch.float64, device=self.device)
        if bool(valid.any()):
            selected = neighborhoods[valid]
            centered = selected - selected.mean(dim=1, keepdim=True)
            sample_cov = centered.transpose(1, 2) @ centered / (k - 1)
            covs[valid] = regularize_covariances_torch(sample_cov, method)
        return covs.cpu().numpy()

    def _build_voxelmap(self, points, covariances):
        voxelmap = TorchVoxelMap(self.resolution, self.neighbor_voxels, device=self.device)
        return voxelmap.insert(self._tensor('target_points'), self._tensor('target_covariances'))

    def _pair_distances_torch(self, R, transformed, query, target):
        source_covs = self._tensor('source_covariances')
        target_covs = self._tensor('target_covariances')
        residuals = transformed[query] - self._tensor('target_points')[target]
        combined = R @ source_covs[query] @ R.T + target_covs[target]
        solved = torch.linalg.solve(combined, residuals.unsqueeze(-1)).squeeze(-1)
        return (residuals * solved).sum(dim=1)

    @on_device
    def _voxel_correspondences(self, T):
        T_t = self._matrix(T)
        R, t = T_t[:3, :3], T_t[:3, 3]
        transformed = self._tensor('source_points') @ R.T + t
        query, target = self.voxelmap.lookup_candidates(transformed)

        source_covs = self._tensor('source_covariances')
        keep = torch.isfinite(source_covs).flatten(1).all(dim=1)[query]
        if np.isfinite(self.max_correspondence_distance):
            diffs = transformed[query] - self._tensor('target_points')[target]
            keep &= (diffs * diffs).sum(dim=1) <= self.max_correspondence_distance**2
        query, target = query[keep], target[keep]

        n = transformed.shape[0]
        correspondences = np.full(n, -1, dtype=np.int64)
        best_distances = np.full(n, np.inf)
        if query.shape[0] == 0:
            return correspondences, best_distances

        distances = self._pair_distances_torch(R, transformed, query, target)

        # lexicographic order (query, distance, target) from stable sorts, last key first
        order = torch.sort(target, stable=True).indices
        order = order[torch.sort(distances[order], stable=True).indices]
        order = order[torch.sort(query[order], stable=True).indices]
        sorted_query = query[order]
        first = torch.ones_like(sorted_query, dtype=torch.bool)
        first[1:] = sorted_query[1:] != sorted_query[:-1]
        best = order[first]

        best_query = query[best].cpu().numpy()
        correspondences[best_query] = target[best].cpu().numpy()
        best_distances[best_query] = distances[best].cpu().numpy()
        return correspondences, best_distances

    @on_device
    def _pair_distances(self, T, transformed, query, target):
        T_t = self._matrix(T)
        transformed_t = _upload(transformed, dtype=torch.float64, device=self.device)
        query_t = _upload(query, dtype=torch.int64, device=self.device)
        target_t = _upload(target, dtype=torch.int64, device=self.device)
        return self._pair_distances_torch(T_t[:3, :3], transformed_t, query_t, target_t).cpu().numpy()

    @on_device
    def _inverse_combined(self, R, query, target):
        R_t = self._matrix(R)
        query_t = _upload(query, dtype=torch.int64, device=self.device)
        target_t = _upload(target, dtype=torch.int64, device=self.device)
        combined = (R_t @ self._tensor('source_covariances')[query_t] @ R_t.T
                    + self._tensor('target_covariances')[target_t])
        return torch.linalg.inv(combined)

    @on_device
    def _linearize(self, T, query, target, weights):
        T_t = self._matrix(T)
        query_t = _upload(query, dtype=torch.int64, device=self.device)
        target_t = _upload(target, dtype=torch.int64, device=self.device)

        transformed = self._tensor('source_points')[query_t] @ T_t[:3, :3].T + T_t[:3, 3]
        residuals = transformed - self._tensor('target_points')[target_t]

        J = torch.zeros((query_t.shape[0], 3, 6), dtype=torch.float64, device=self.device)
        J[:, :, :3] = -_skew_torch(transformed)
        J[:, :, 3:] = torch.eye(3, dtype=torch.float64, device=self.device)

        Wr = torch.einsum('nij,nj->ni', weights, residuals)
        error = torch.einsum('ni,ni->', residuals, Wr)
        JtW = torch.einsum('nji,njk->nik', J, weights)
        H = torch.einsum('nij,njk->ik', JtW, J)
        b = torch.einsum('nji,nj->i', J, Wr)
        return float(error.cpu()), H.cpu().numpy(), b.cpu().numpy()

