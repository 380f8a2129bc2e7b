"""Unit tests for the nearest neighbor search strategies."""

import numpy as np
import pytest

from vgicp.neighbors import (BruteForceSearch, InsufficientPointsError, NearestNeighborMethod,
                             ParallelKDTreeSearch, make_neighbor_search)


class TestNeighborSearch:
    """Both strategies agree with an exhaustive sort."""

    def test_kdtree_matches_exhaustive(self, random_points, knn):
        search = ParallelKDTreeSearch(n_jobs=1, leaf_size=8)
        neighbors = search.find_k_nearest(random_points, random_points, 6)

        assert neighbors.shape == (len(random_points), 6)
        assert neighbors.dtype == np.int64
        np.testing.assert_array_equal(neighbors, knn(random_points, random_points, 6))

    def test_parallel_chunks_match_serial(self, random_points):
        serial = ParallelKDTreeSearch(n_jobs=1).find_k_nearest(random_points, random_points, 5)
        parallel = ParallelKDTreeSearch(n_jobs=2, chunk_size=50).find_k_nearest(
            random_points, random_points, 5)
        np.testing.assert_array_equal(parallel, serial)

    def test_bruteforce_matches_kdtree(self, random_points):
        kdtree = ParallelKDTreeSearch(n_jobs=1).find_k_nearest(random_points, random_points, 8)
        brute = BruteForceSearch(device='cpu', batch_size=64).find_k_nearest(
            random_points, random_points, 8)
        np.testing.assert_array_equal(brute, kdtree)

    def test_self_is_first_neighbor(self, corner_points):
        neighbors = BruteForceSearch(device='cpu').find_k_nearest(corner_points, corner_points, 4)
        np.testing.assert_array_equal(neighbors[:, 0], np.arange(len(corner_points)))

    def test_tree_reused_for_same_reference(self, random_points):
        search = ParallelKDTreeSearch(n_jobs=1)
        search.find_k_nearest(random_points[:10], random_points, 3)
        tree = search._tree
        search.find_k_nearest(random_points[10:20], random_points, 3)
        assert search._tree is tree

    @pytest.mark.parametrize("search", [ParallelKDTreeSearch(n_jobs=1),
                                        BruteForceSearch(device='cpu')])
    def test_insufficient_points(self, search):
        reference = np.random.default_rng(0).normal(size=(5, 3))
        with pytest.raises(InsufficientPointsError):
            search.find_k_nearest(reference, reference, 10)

    def test_insufficient_points_is_value_error(self):
        assert issubclass(InsufficientPointsError, ValueError)

    def test_empty_query(self, random_points):
        out = ParallelKDTreeSearch(n_jobs=1).find_k_nearest(np.empty((0, 3)), random_points, 3)
        assert out.shape == (0, 3)


class TestMakeNeighborSearch:

    def test_by_name(self):
        assert isinstance(make_neighbor_search('kdtree', n_jobs=1), ParallelKDTreeSearch)
        search = make_neighbor_search('bruteforce', device='cpu')
        assert isinstance(search, BruteForceSearch)
        assert search.method is NearestNeighborMethod.GPU_BRUTEFORCE

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            make_neighbor_search('octree')
