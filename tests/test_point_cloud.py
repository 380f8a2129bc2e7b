"""Unit tests for vgicp.point_cloud."""

import numpy as np
import pytest

from vgicp import PointCloud
from vgicp.transforms import make_transformation


class TestPointCloud:

    def test_points_are_read_only(self, random_points):
        cloud = PointCloud(random_points)
        with pytest.raises(ValueError):
            cloud.points[0, 0] = 1.0
        # the caller's array is copied, not frozen
        random_points[0, 0] = 1.0

    def test_rejects_bad_shape(self):
        with pytest.raises(ValueError):
            PointCloud(np.zeros((4, 2)))

    def test_same_as(self, random_points):
        cloud = PointCloud(random_points)
        assert cloud.same_as(cloud)
        assert cloud.same_as(PointCloud(random_points.copy()))
        assert not cloud.same_as(PointCloud(random_points[:-1]))
        assert not cloud.same_as(random_points)

    def test_downsample_centroids(self):
        points = np.array([[0.1, 0.1, 0.1], [0.3, 0.3, 0.3], [1.5, 0.5, 0.5]])
        down = PointCloud(points).downsample(1.0)

        assert len(down) == 2
        np.testing.assert_allclose(down.points, [[0.2, 0.2, 0.2], [1.5, 0.5, 0.5]])

    def test_transformed(self, random_points):
        T = make_transformation(translation=[1.0, 2.0, 3.0])
        moved = PointCloud(random_points).transformed(T)
        np.testing.assert_allclose(moved.points, random_points + [1.0, 2.0, 3.0])

    def test_file_round_trip(self, random_points, tmp_path):
        path = tmp_path / "cloud.ply"
        PointCloud(random_points).save(path)
        loaded = PointCloud.from_file(path)
        np.testing.assert_allclose(loaded.points, random_points, rtol=1e-6)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError):
            PointCloud.from_file(tmp_path / "missing.ply")
