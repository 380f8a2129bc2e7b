"""Shared fixtures: synthetic clouds and reference neighbor search."""

import numpy as np
import pytest

from vgicp import RegularizationMethod, VGICPCore


def make_corner(spacing=0.35, seed=0):
    """Floor and two walls of a room corner, jittered inside each plane."""
    rng = np.random.default_rng(seed)
    grid = np.arange(0.0, 5.0, spacing)
    u, v = np.meshgrid(grid, grid[: len(grid) // 2 + 1])
    u, v = u.ravel(), v.ravel()

    floor_u, floor_v = np.meshgrid(grid, grid)
    floor = np.column_stack([floor_u.ravel(), floor_v.ravel(), np.zeros(floor_u.size)])
    wall_x = np.column_stack([np.zeros(u.size), u, v])
    wall_y = np.column_stack([u, np.zeros(u.size), v])

    points = np.vstack([floor, wall_x[v > 0], wall_y[(u > 0) & (v > 0)]])
    jitter = rng.uniform(-0.2, 0.2, size=points.shape) * spacing
    return points + jitter * (points != 0)


def exhaustive_knn(query, reference, k):
    diffs = query[:, np.newaxis, :] - reference[np.newaxis, :, :]
    sq_dists = np.einsum('qmi,qmi->qm', diffs, diffs)
    return np.argsort(sq_dists, axis=1, kind='stable')[:, :k]


@pytest.fixture
def corner_points():
    return make_corner()


@pytest.fixture
def random_points():
    rng = np.random.default_rng(42)
    return rng.uniform(-2.0, 2.0, size=(200, 3))


@pytest.fixture
def knn():
    return exhaustive_knn


@pytest.fixture
def build_core():
    """Factory preparing a core with exhaustive neighbors, covariances and voxel map."""
    def build(source, target, core=None, k=10, method=RegularizationMethod.PLANE):
        if core is None:
            core = VGICPCore(resolution=1.0)
        core.set_source_cloud(source)
        core.set_source_neighbors(exhaustive_knn(source, source, k))
        core.calculate_source_covariances(method)
        core.set_target_cloud(target)
        core.set_target_neighbors(exhaustive_knn(target, target, k))
        core.calculate_target_covariances(method)
        core.create_target_voxelmap()
        return core
    return build
