"""Point cloud data management and preprocessing."""

import numpy as np
import open3d as o3d

from .transforms import apply_transformation


class PointCloud:
    """Read-only container of 3D coordinates.

    The coordinate array is frozen on construction; operations that change
    the geometry return a new PointCloud.
    """

    def __init__(self, points):
        """
        Initialize a point cloud from an array of coordinates.

        Args:
            points: Array-like of shape (N, 3)
        """
        points = np.array(points, dtype=np.float64)
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"points must have shape (N, 3), got {points.shape}")
        points.flags.writeable = False
        self.points = points

    @classmethod
    def from_o3d(cls, o3d_pcd):
        """Create from an Open3D PointCloud object."""
        return cls(np.asarray(o3d_pcd.points))

    @classmethod
    def from_file(cls, filepath):
        """Load point cloud from file."""
        pcd = o3d.io.read_point_cloud(str(filepath))
        if not pcd.has_points():
            raise ValueError(f"No points could be read from {filepath}")
        return cls.from_o3d(pcd)

    def to_o3d(self, points=None, color=None):
        """
        Convert to Open3D PointCloud object.

        Args:
            points: Optional custom points array (default: self.points)
            color: Optional uniform color [r, g, b]

        Returns:
            Open3D PointCloud object
        """
        pcd = o3d.geometry.PointCloud()
        pts = points if points is not None else self.points
        pcd.points = o3d.utility.Vector3dVector(np.asarray(pts, dtype=np.float64))
        if color is not None:
            pcd.paint_uniform_color(color)
        return pcd

    def save(self, filepath):
        o3d.io.write_point_cloud(str(filepath), self.to_o3d())

    def downsample(self, voxel_size):
        """
        Downsample with a voxel grid: one centroid per occupied voxel.

        Args:
            voxel_size: Edge length of the voxels

        Returns:
            New PointCloud
        """
        if voxel_size <= 0:
            raise ValueError(f"voxel_size must be positive, got {voxel_size}")
        if len(self) == 0:
            return PointCloud(self.points)

        voxel_indices = np.floor(self.points / voxel_size).astype(np.int64)
        _, inverse, counts = np.unique(voxel_indices, axis=0,
                                       return_inverse=True, return_counts=True)
        inverse = inverse.reshape(-1)
        sums = np.zeros((counts.shape[0], 3))
        np.add.at(sums, inverse, self.points)
        return PointCloud(sums / counts[:, np.newaxis])

    def apply_transform(self, transformation):
        """
        Apply transformation to the points.

        Args:
            transformation: 4x4 transformation matrix

        Returns:
            Transformed points as a new array
        """
        return apply_transformation(self.points, np.asarray(transformation, dtype=np.float64))

    def transformed(self, transformation):
        return PointCloud(self.apply_transform(transformation))

    def same_as(self, other):
        """True if ``other`` is this cloud or holds exactly the same coordinates."""
        if other is self:
            return True
        if not isinstance(other, PointCloud) or len(other) != len(self):
            return False
        return bool(np.array_equal(self.points, other.points))

    def __len__(self):
        return len(self.points)

    def __repr__(self):
        return f"PointCloud({len(self)} points)"
