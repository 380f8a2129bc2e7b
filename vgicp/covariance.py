"""Per-point covariance estimation and regularization."""

from enum import Enum

import numpy as np

from .utils import time_function


EIGENVALUE_FLOOR = 1e-3


class RegularizationMethod(Enum):
    MIN_EIG = 'min_eig'
    NORMALIZED_MIN_EIG = 'normalized_min_eig'
    PLANE = 'plane'
    FROBENIUS = 'frobenius'

    @classmethod
    def coerce(cls, value):
        """Accept a member, its value ('plane') or its name ('PLANE')."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip()
            for member in cls:
                if key.lower() == member.value or key.upper() == member.name:
                    return member
        raise ValueError(f"Unknown regularization method: {value!r}")


def _plane_eigenvalues(values):
    # Eigenvalues come sorted ascending: the smallest one is the surface normal
    plane = np.array([EIGENVALUE_FLOOR, 1.0, 1.0])
    return np.broadcast_to(plane, values.shape).copy()


def _min_eig_eigenvalues(values):
    return np.maximum(values, EIGENVALUE_FLOOR)


def _normalized_min_eig_eigenvalues(values):
    largest = values[:, -1:]
    normalized = np.divide(values, largest, out=np.zeros_like(values), where=largest > 0)
    return np.maximum(normalized, EIGENVALUE_FLOOR)


_EIGENVALUE_RULES = {
    RegularizationMethod.PLANE: _plane_eigenvalues,
    RegularizationMethod.MIN_EIG: _min_eig_eigenvalues,
    RegularizationMethod.NORMALIZED_MIN_EIG: _normalized_min_eig_eigenvalues,
}


def regularize_covariances(covariances, method=RegularizationMethod.PLANE):
    """
    Regularize a batch of covariance matrices.

    Args:
        covariances: Array of shape (N, 3, 3), symmetric positive semi-definite
        method: RegularizationMethod (or its name)

    Returns:
        Array of shape (N, 3, 3). Every result is symmetric with all
        eigenvalues >= EIGENVALUE_FLOOR.
    """
    method = RegularizationMethod.coerce(method)
    covariances = np.asarray(covariances, dtype=np.float64)

    if covariances.shape[0] == 0:
        return covariances.copy()

    if method is RegularizationMethod.FROBENIUS:
        C = covariances + EIGENVALUE_FLOOR * np.eye(3)
        C_inv = np.linalg.inv(C)
        norms = np.linalg.norm(C_inv, axis=(1, 2), keepdims=True)
        regularized = np.linalg.inv(C_inv / norms)
    else:
        values, vectors = np.linalg.eigh(covariances)
        values = _EIGENVALUE_RULES[method](values)
        regularized = np.einsum('nij,nj,nkj->nik', vectors, values, vectors)

    return 0.5 * (regularized + regularized.transpose(0, 2, 1))


@time_function
def compute_covariances(points, neighbors, method=RegularizationMethod.PLANE):
    """
    Compute a regularized covariance for every point from its neighbors.

    Args:
        points: Array of shape (N, 3)
        neighbors: Integer array of shape (N, k); each row lists the neighbors
                   of that point (the point itself included). Negative entries
                   mark missing neighbors.
        method: RegularizationMethod applied after estimation

    Returns:
        Array of shape (N, 3, 3). Points with missing neighbors or non-finite
        coordinates get a NaN matrix and are ignored downstream.
    """
    points = np.asarray(points, dtype=np.float64)
    neighbors = np.asarray(neighbors)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"points must have shape (N, 3), got {points.shape}")
    if neighbors.ndim != 2 or neighbors.shape[0] != points.shape[0]:
        raise ValueError(
            f"neighbors must have shape ({points.shape[0]}, k), got {neighbors.shape}")
    k = neighbors.shape[1]
    if k < 2:
        raise ValueError(f"at least 2 neighbors per point are required, got k={k}")

    valid = np.all((neighbors >= 0) & (neighbors < points.shape[0]), axis=1)
    safe_neighbors = np.where(valid[:, np.newaxis], neighbors, 0)
    neighborhoods = points[safe_neighbors]  # (N, k, 3)
    valid &= np.all(np.isfinite(neighborhoods), axis=(1, 2))

    covariances = np.full((points.shape[0], 3, 3), np.nan)
    if not np.any(valid):
        return covariances

    centered = neighborhoods[valid] - neighborhoods[valid].mean(axis=1, keepdims=True)
    sample_cov = np.einsum('nki,nkj->nij', centered, centered) / (k - 1)
    covariances[valid] = regularize_covariances(sample_cov, method)
    return covariances


def valid_covariance_mask(covariances):
    """Boolean mask of the covariances that are usable (finite)."""
    covariances = np.asarray(covariances)
    return np.all(np.isfinite(covariances), axis=(1, 2))
