"""Rigid transformation utilities for point cloud registration.

Transformations are 4x4 homogeneous matrices. Increments on SE(3) are
6-vectors ordered ``[rx, ry, rz, tx, ty, tz]`` (rotation first).
"""

import numpy as np


def apply_transformation(points, transformation):
    """Apply a 4x4 transformation to (N, 3) points."""
    R = transformation[:3, :3]
    t = transformation[:3, 3]
    return points @ R.T + t


def skew(v):
    """
    Skew-symmetric cross-product matrix.

    Args:
        v: Vector(s) of shape (3,) or (N, 3)

    Returns:
        Array of shape (3, 3) or (N, 3, 3) with ``skew(v) @ u == cross(v, u)``
    """
    v = np.asarray(v, dtype=np.float64)
    S = np.zeros(v.shape[:-1] + (3, 3))
    S[..., 0, 1] = -v[..., 2]
    S[..., 0, 2] = v[..., 1]
    S[..., 1, 0] = v[..., 2]
    S[..., 1, 2] = -v[..., 0]
    S[..., 2, 0] = -v[..., 1]
    S[..., 2, 1] = v[..., 0]
    return S


def so3_exp(omega):
    """Rotation matrix for the axis-angle vector ``omega`` (Rodrigues' formula)."""
    omega = np.asarray(omega, dtype=np.float64)
    theta = np.linalg.norm(omega)
    Omega = skew(omega)
    if theta < 1e-10:
        # First order expansion for tiny angles
        return np.eye(3) + Omega
    return (np.eye(3)
            + np.sin(theta) / theta * Omega
            + (1.0 - np.cos(theta)) / theta**2 * Omega @ Omega)


def se3_exp(delta):
    """
    Exponential map from a 6-vector ``[omega, v]`` to a 4x4 rigid transformation.
    """
    delta = np.asarray(delta, dtype=np.float64)
    omega, v = delta[:3], delta[3:]
    theta = np.linalg.norm(omega)
    Omega = skew(omega)

    R = so3_exp(omega)
    if theta < 1e-10:
        V = R
    else:
        V = (np.eye(3)
             + (1.0 - np.cos(theta)) / theta**2 * Omega
             + (theta - np.sin(theta)) / theta**3 * Omega @ Omega)

    transformation = np.eye(4)
    transformation[:3, :3] = R
    transformation[:3, 3] = V @ v
    return transformation


def make_transformation(rotation=None, translation=None):
    """Build a homogeneous matrix from an optional rotation and translation."""
    transformation = np.eye(4)
    if rotation is not None:
        transformation[:3, :3] = rotation
    if translation is not None:
        transformation[:3, 3] = translation
    return transformation


def as_transformation(matrix):
    """Validate a candidate transform and return a float64 copy."""
    if matrix is None:
        return np.eye(4)
    matrix = np.array(matrix, dtype=np.float64)
    if matrix.shape != (4, 4):
        raise ValueError(f"transformation must be a 4x4 matrix, got shape {matrix.shape}")
    if not np.all(np.isfinite(matrix)):
        raise ValueError("transformation contains non-finite values")
    return matrix
