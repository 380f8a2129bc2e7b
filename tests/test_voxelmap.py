"""Unit tests for vgicp.voxelmap."""

import numpy as np
import pytest

from vgicp.voxelmap import NeighborVoxels, VoxelMap, neighbor_offsets, pack_keys, unpack_code


@pytest.fixture
def layout():
    """One point at the center of a few known voxels (resolution 1)."""
    return np.array([
        [0.5, 0.5, 0.5],   # (0, 0, 0)
        [1.5, 0.5, 0.5],   # (1, 0, 0)
        [2.5, 0.5, 0.5],   # (2, 0, 0)
        [1.5, 1.5, 1.5],   # (1, 1, 1)
        [1.5, 1.5, 0.5],   # (1, 1, 0)
    ])


class TestVoxelMap:
    """Test suite for VoxelMap."""

    def test_every_point_in_exactly_one_voxel(self, random_points):
        covs = np.tile(np.eye(3), (len(random_points), 1, 1))
        covs[7] = np.nan
        voxelmap = VoxelMap(resolution=0.5).insert(random_points, covs)

        seen = np.concatenate([indices for _, indices in voxelmap.voxels()])
        assert len(seen) == len(random_points) - 1
        assert len(np.unique(seen)) == len(seen)
        assert 7 not in seen
        for key, indices in voxelmap.voxels():
            for i in indices:
                assert voxelmap.voxel_key(random_points[i]) == key

    def test_voxel_key_floors(self):
        voxelmap = VoxelMap(resolution=1.0)
        assert voxelmap.voxel_key([0.5, -0.5, 1.5]) == (0, -1, 1)
        assert VoxelMap(resolution=0.25).voxel_key([0.5, -0.1, 0.0]) == (2, -1, 0)

    @pytest.mark.parametrize("mode,expected", [
        (NeighborVoxels.DIRECT1, [0]),
        (NeighborVoxels.DIRECT7, [0, 1]),
        (NeighborVoxels.DIRECT27, [0, 1, 3, 4]),
    ])
    def test_neighborhood_modes(self, layout, mode, expected):
        voxelmap = VoxelMap(resolution=1.0, neighbor_voxels=mode).insert(layout)
        np.testing.assert_array_equal(voxelmap.lookup_near([0.2, 0.7, 0.9]), expected)

    def test_empty_neighborhood(self, layout):
        voxelmap = VoxelMap(resolution=1.0).insert(layout)
        assert voxelmap.lookup_near([10.0, 10.0, 10.0]).shape == (0,)

    def test_lookup_is_deterministic(self, random_points):
        voxelmap = VoxelMap(resolution=0.7).insert(random_points)
        first = voxelmap.lookup_candidates(random_points)
        second = voxelmap.lookup_candidates(random_points)
        np.testing.assert_array_equal(first[0], second[0])
        np.testing.assert_array_equal(first[1], second[1])

    def test_candidates_match_key_distance(self, random_points):
        """DIRECT27 candidates are exactly the points within one voxel per axis."""
        resolution = 0.8
        voxelmap = VoxelMap(resolution=resolution).insert(random_points)
        rng = np.random.default_rng(5)
        queries = rng.uniform(-2.0, 2.0, size=(30, 3))

        query_index, target_index = voxelmap.lookup_candidates(queries)
        point_keys = np.floor(random_points / resolution)
        for q, query in enumerate(queries):
            key = np.floor(query / resolution)
            expected = np.flatnonzero(np.all(np.abs(point_keys - key) <= 1, axis=1))
            np.testing.assert_array_equal(np.sort(target_index[query_index == q]), expected)
            np.testing.assert_array_equal(voxelmap.lookup_near(query), expected)

    def test_modes_are_nested(self, random_points):
        query = np.array([0.3, -0.4, 0.1])
        found = [set(VoxelMap(0.6, mode).insert(random_points).lookup_near(query))
                 for mode in (NeighborVoxels.DIRECT1, NeighborVoxels.DIRECT7,
                              NeighborVoxels.DIRECT27)]
        assert found[0] <= found[1] <= found[2]

    def test_out_of_range_point(self):
        with pytest.raises(ValueError):
            VoxelMap(resolution=1.0).insert(np.array([[0.0, 0.0, 0.0], [1e7, 0.0, 0.0]]))

    def test_invalid_resolution(self):
        with pytest.raises(ValueError):
            VoxelMap(resolution=0.0)


class TestVoxelKeys:

    def test_offsets_start_with_own_voxel(self):
        for mode, count in ((NeighborVoxels.DIRECT1, 1), (NeighborVoxels.DIRECT7, 7),
                            (NeighborVoxels.DIRECT27, 27)):
            offsets = neighbor_offsets(mode)
            assert offsets.shape == (count, 3)
            assert tuple(offsets[0]) == (0, 0, 0)
            assert len({tuple(o) for o in offsets}) == count

    def test_pack_unpack(self):
        keys = np.array([[-3, 0, 12], [1000, -1000, 7]], dtype=np.int64)
        codes = pack_keys(keys)
        assert [unpack_code(c) for c in codes] == [(-3, 0, 12), (1000, -1000, 7)]
