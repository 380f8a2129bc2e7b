"""Unit tests for vgicp.covariance."""

import numpy as np
import pytest

from vgicp import VGICPRegistration
from vgicp.covariance import (EIGENVALUE_FLOOR, RegularizationMethod, compute_covariances,
                              regularize_covariances, valid_covariance_mask)


REGULARIZED = [RegularizationMethod.PLANE, RegularizationMethod.MIN_EIG,
               RegularizationMethod.NORMALIZED_MIN_EIG, RegularizationMethod.FROBENIUS]


class TestComputeCovariances:
    """Test suite for per-point covariance estimation."""

    @pytest.mark.parametrize("method", REGULARIZED)
    def test_eigenvalue_floor(self, random_points, knn, method):
        """Regularized covariances are symmetric with eigenvalues above the floor."""
        covs = compute_covariances(random_points, knn(random_points, random_points, 10), method)

        np.testing.assert_allclose(covs, covs.transpose(0, 2, 1), atol=1e-12)
        eigenvalues = np.linalg.eigvalsh(covs)
        assert np.all(eigenvalues >= EIGENVALUE_FLOOR * (1 - 1e-9))

    @pytest.mark.parametrize("method", REGULARIZED)
    def test_degenerate_neighborhoods_stay_invertible(self, method):
        """Collinear and coincident neighborhoods still give invertible matrices."""
        line = np.column_stack([np.linspace(0, 1, 6), np.zeros(6), np.zeros(6)])
        same = np.tile([2.0, 2.0, 2.0], (6, 1))
        points = np.vstack([line, same])
        neighbors = np.vstack([np.tile(np.arange(6), (6, 1)), np.tile(np.arange(6, 12), (6, 1))])

        covs = compute_covariances(points, neighbors, method)

        assert np.all(np.isfinite(covs))
        assert np.all(np.linalg.eigvalsh(covs) >= EIGENVALUE_FLOOR * (1 - 1e-9))
        assert np.all(np.isfinite(np.linalg.inv(covs)))

    def test_plane_on_flat_patch(self):
        """PLANE gives unit variance in the plane and the floor along the normal."""
        rng = np.random.default_rng(3)
        points = np.column_stack([rng.uniform(size=(20, 2)), np.zeros(20)])
        neighbors = np.tile(np.arange(20), (20, 1))

        covs = compute_covariances(points, neighbors, RegularizationMethod.PLANE)

        np.testing.assert_allclose(covs[0], np.diag([1.0, 1.0, EIGENVALUE_FLOOR]), atol=1e-9)

    def test_sample_covariance_denominator(self):
        """Well-spread neighborhoods keep the k - 1 sample covariance under MIN_EIG."""
        points = np.array([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0], [0.0, 3.0, 0.0],
                           [0.0, 0.0, 1.0], [1.0, 1.0, 1.0]])
        neighbors = np.tile(np.arange(5), (5, 1))
        covs = compute_covariances(points, neighbors, RegularizationMethod.MIN_EIG)
        np.testing.assert_allclose(covs[0], np.cov(points.T), rtol=1e-10)

    def test_unregularized_method_is_rejected(self, random_points, knn):
        """Only methods that keep every covariance invertible are selectable."""
        neighbors = knn(random_points, random_points, 8)
        with pytest.raises(ValueError):
            compute_covariances(random_points, neighbors, 'none')
        with pytest.raises(ValueError):
            VGICPRegistration(regularization_method='none')

    def test_flat_cloud_registers(self):
        """A purely planar cloud yields invertible covariances for every method."""
        grid = np.arange(0.0, 3.0, 0.3)
        u, v = np.meshgrid(grid, grid)
        plane = np.column_stack([u.ravel(), v.ravel(), np.zeros(u.size)])
        for method in REGULARIZED:
            registration = VGICPRegistration(k_correspondences=8, regularization_method=method,
                                             n_jobs=1, max_iterations=5)
            registration.set_target(plane)
            registration.set_source(plane + [0.0, 0.0, 0.05])
            registration.compute_transformation()
            assert np.all(np.isfinite(registration.final_transformation))

    def test_invalid_neighbors_give_nan(self, random_points, knn):
        neighbors = knn(random_points, random_points, 6)
        neighbors[3, 2] = -1
        covs = compute_covariances(random_points, neighbors)

        mask = valid_covariance_mask(covs)
        assert not mask[3]
        assert mask.sum() == len(random_points) - 1
        assert np.all(np.isnan(covs[3]))

    def test_rejects_mismatched_neighbors(self, random_points):
        with pytest.raises(ValueError):
            compute_covariances(random_points, np.zeros((10, 5), dtype=int))
        with pytest.raises(ValueError):
            compute_covariances(random_points, np.zeros((len(random_points), 1), dtype=int))


class TestRegularizeCovariances:

    def test_method_names(self):
        assert RegularizationMethod.coerce('plane') is RegularizationMethod.PLANE
        assert RegularizationMethod.coerce('MIN_EIG') is RegularizationMethod.MIN_EIG
        with pytest.raises(ValueError):
            RegularizationMethod.coerce('spherical')

    def test_normalized_min_eig_scale(self):
        cov = np.diag([4.0, 2.0, 0.0])[np.newaxis]
        out = regularize_covariances(cov, RegularizationMethod.NORMALIZED_MIN_EIG)
        np.testing.assert_allclose(out[0], np.diag([1.0, 0.5, EIGENVALUE_FLOOR]), atol=1e-12)

    def test_frobenius_unit_norm_information(self):
        cov = np.diag([2.0, 1.0, 0.5])[np.newaxis]
        out = regularize_covariances(cov, RegularizationMethod.FROBENIUS)
        assert np.linalg.norm(np.linalg.inv(out[0])) == pytest.approx(1.0)

    def test_empty_batch(self):
        out = regularize_covariances(np.empty((0, 3, 3)), RegularizationMethod.PLANE)
        assert out.shape == (0, 3, 3)
