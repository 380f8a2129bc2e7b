"""Voxel map of target points for approximate correspondence lookup.

Target points are binned into cubic voxels of edge ``resolution``. Each voxel
key ``floor(p / resolution)`` is packed into a single int64 code (21 bits per
axis) so that a whole batch of lookups is a ``searchsorted`` over the sorted
codes of the occupied voxels.
"""

from enum import Enum
import itertools

import numpy as np

from .covariance import valid_covariance_mask
from .utils import time_function


KEY_BITS = 21
KEY_OFFSET = 1 << (KEY_BITS - 1)


class NeighborVoxels(Enum):
    DIRECT1 = 'direct1'
    DIRECT7 = 'direct7'
    DIRECT27 = 'direct27'

    @classmethod
    def coerce(cls, value):
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip()
            for member in cls:
                if key.lower() == member.value or key.upper() == member.name:
                    return member
        raise ValueError(f"Unknown neighbor voxel mode: {value!r}")


def neighbor_offsets(mode=NeighborVoxels.DIRECT27):
    """Voxel key offsets searched around a query voxel, own voxel first."""
    mode = NeighborVoxels.coerce(mode)
    if mode is NeighborVoxels.DIRECT1:
        offsets = [(0, 0, 0)]
    elif mode is NeighborVoxels.DIRECT7:
        offsets = [(0, 0, 0),
                   (1, 0, 0), (-1, 0, 0),
                   (0, 1, 0), (0, -1, 0),
                   (0, 0, 1), (0, 0, -1)]
    else:
        offsets = [(0, 0, 0)] + [o for o in itertools.product((-1, 0, 1), repeat=3)
                                 if o != (0, 0, 0)]
    return np.array(offsets, dtype=np.int64)


def voxel_keys(points, resolution):
    """
    Integer voxel coordinates of the points.

    Returns:
        Tuple of (keys (..., 3) int64, valid (...) bool). Non-finite points
        and keys outside the packable range are marked invalid.
    """
    scaled = np.floor(np.asarray(points, dtype=np.float64) / resolution)
    valid = np.all(np.isfinite(scaled) & (np.abs(scaled) < KEY_OFFSET - 1), axis=-1)
    keys = np.where(valid[..., np.newaxis], scaled, 0).astype(np.int64)
    return keys, valid


def pack_keys(keys):
    """Pack (..., 3) voxel keys with |key| < KEY_OFFSET into int64 codes."""
    shifted = keys + KEY_OFFSET
    return (shifted[..., 0] << (2 * KEY_BITS)) | (shifted[..., 1] << KEY_BITS) | shifted[..., 2]


def unpack_code(code):
    mask = (1 << KEY_BITS) - 1
    code = int(code)
    return ((code >> (2 * KEY_BITS)) - KEY_OFFSET,
            ((code >> KEY_BITS) & mask) - KEY_OFFSET,
            (code & mask) - KEY_OFFSET)


class VoxelMap:
    """Maps voxel keys to the indices of the target points inside them."""

    def __init__(self, resolution=1.0, neighbor_voxels=NeighborVoxels.DIRECT27):
        if not resolution > 0:
            raise ValueError(f"resolution must be positive, got {resolution}")
        self.resolution = float(resolution)
        self.neighbor_voxels = NeighborVoxels.coerce(neighbor_voxels)
        self._codes = np.empty(0, dtype=np.int64)
        self._starts = np.empty(0, dtype=np.int64)
        self._counts = np.empty(0, dtype=np.int64)
        self._indices = np.empty(0, dtype=np.int64)

    @time_function
    def insert(self, points, covariances=None):
        """
        (Re)build the map from target points.

        Args:
            points: Target points (N, 3)
            covariances: Optional (N, 3, 3); points whose covariance is not
                         finite are left out of the map
        """
        points = np.asarray(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"points must have shape (N, 3), got {points.shape}")

        usable = np.all(np.isfinite(points), axis=1)
        if covariances is not None:
            if len(covariances) != len(points):
                raise ValueError(
                    f"{len(covariances)} covariances given for {len(points)} points")
            usable &= valid_covariance_mask(covariances)

        keys, in_range = voxel_keys(points, self.resolution)
        if np.any(usable & ~in_range):
            raise ValueError(
                f"points exceed the voxel key range at resolution {self.resolution}")

        indices = np.flatnonzero(usable)
        codes = pack_keys(keys[indices])
        order = np.argsort(codes, kind='stable')
        self._indices = indices[order]
        self._codes, self._starts, self._counts = np.unique(
            codes[order], return_index=True, return_counts=True)
        return self

    @property
    def num_voxels(self):
        return len(self._codes)

    def __len__(self):
        return len(self._indices)

    def voxel_key(self, point):
        keys, valid = voxel_keys(point, self.resolution)
        if not valid:
            raise ValueError(f"point {point} is outside the voxel key range")
        return tuple(int(v) for v in keys)

    def voxels(self):
        """Iterate over ``(key, target_indices)`` of the occupied voxels."""
        for code, start, count in zip(self._codes, self._starts, self._counts):
            yield unpack_code(code), self._indices[start:start + count]

    def lookup_candidates(self, points):
        """
        Candidate target points for a batch of query points.

        Args:
            points: Query points (Q, 3), already transformed into the target frame

        Returns:
            Tuple of (query_index, target_index) flat int64 arrays listing every
            (query, candidate) pair from the query voxel and its neighbors.
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if self.num_voxels == 0 or points.shape[0] == 0:
            empty = np.empty(0, dtype=np.int64)
            return empty, empty

        offsets = neighbor_offsets(self.neighbor_voxels)
        keys, valid = voxel_keys(points, self.resolution)
        neighbor_keys = keys[:, np.newaxis, :] + offsets[np.newaxis, :, :]  # (Q, M, 3)
        codes = pack_keys(neighbor_keys)

        pos = np.searchsorted(self._codes, codes)
        pos_clipped = np.minimum(pos, self.num_voxels - 1)
        hit = valid[:, np.newaxis] & (self._codes[pos_clipped] == codes)

        counts = np.where(hit, self._counts[pos_clipped], 0).reshape(-1)
        starts = self._starts[pos_clipped].reshape(-1)
        owners = np.repeat(np.arange(points.shape[0]), offsets.shape[0])

        total = int(counts.sum())
        query_index = np.repeat(owners, counts)
        run_offsets = np.arange(total) - np.repeat(np.cumsum(counts) - counts, counts)
        target_pos = np.repeat(starts, counts) + run_offsets
        return query_index, self._indices[target_pos]

    def lookup_near(self, point):
        """Sorted indices of the target points near a single query point."""
        _, targets = self.lookup_candidates(np.asarray(point, dtype=np.float64)[np.newaxis])
        return np.sort(targets)
