"""Unit tests for vgicp.transforms."""

import numpy as np
import pytest

from vgicp.transforms import (apply_transformation, as_transformation, make_transformation,
                              se3_exp, skew, so3_exp)


class TestSE3:

    def test_zero_increment_is_identity(self):
        np.testing.assert_array_equal(se3_exp(np.zeros(6)), np.eye(4))

    def test_pure_translation(self):
        T = se3_exp([0.0, 0.0, 0.0, 1.0, 2.0, 3.0])
        np.testing.assert_allclose(T[:3, :3], np.eye(3))
        np.testing.assert_allclose(T[:3, 3], [1.0, 2.0, 3.0])

    def test_rotation_is_orthonormal(self):
        T = se3_exp([0.3, -0.2, 0.5, 0.1, 0.0, -0.4])
        R = T[:3, :3]
        np.testing.assert_allclose(R @ R.T, np.eye(3), atol=1e-12)
        assert np.linalg.det(R) == pytest.approx(1.0)

    def test_quarter_turn_about_z(self):
        R = so3_exp([0.0, 0.0, np.pi / 2])
        np.testing.assert_allclose(R @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], atol=1e-12)


class TestHelpers:

    def test_skew_is_cross_product(self):
        v = np.array([0.3, -1.2, 2.0])
        u = np.array([1.5, 0.4, -0.7])
        np.testing.assert_allclose(skew(v) @ u, np.cross(v, u))

    def test_skew_batch(self):
        vs = np.random.default_rng(0).normal(size=(4, 3))
        S = skew(vs)
        assert S.shape == (4, 3, 3)
        np.testing.assert_allclose(S, -S.transpose(0, 2, 1))

    def test_apply_transformation(self):
        T = make_transformation(so3_exp([0.0, 0.0, np.pi]), [1.0, 0.0, 0.0])
        points = np.array([[1.0, 0.0, 0.0], [0.0, 2.0, 0.0]])
        np.testing.assert_allclose(apply_transformation(points, T),
                                   [[0.0, 0.0, 0.0], [1.0, -2.0, 0.0]], atol=1e-12)

    def test_as_transformation_validates(self):
        np.testing.assert_array_equal(as_transformation(None), np.eye(4))
        with pytest.raises(ValueError):
            as_transformation(np.eye(3))
        bad = np.eye(4)
        bad[0, 3] = np.nan
        with pytest.raises(ValueError):
            as_transformation(bad)
