"""Voxelized GICP registration."""

import os
import pickle
import time

import numpy as np
import open3d as o3d

from .accelerator import TorchVGICPCore
from .core import VGICPCore
from .covariance import RegularizationMethod
from .neighbors import NearestNeighborMethod, make_neighbor_search
from .optimizer import OPTIMIZER_TYPES, LSQOptimizer
from .point_cloud import PointCloud
from .transforms import as_transformation
from .voxelmap import NeighborVoxels


CORRESPONDENCE_MODES = ('voxel', 'exact')
BACKENDS = ('numpy', 'torch')


class RegistrationResult:
    """Result of VGICPRegistration.align."""

    def __init__(self, transformation, converged, iterations, errors, final_error,
                 num_correspondences, transformed_source, final_hessian):
        self.transformation = transformation
        self.converged = converged
        self.iterations = iterations
        self.errors = errors
        self.final_error = final_error
        self.num_correspondences = num_correspondences
        self.transformed_source = transformed_source
        self.final_hessian = final_hessian

    @property
    def fitness(self):
        """Mean Mahalanobis error per active correspondence."""
        if self.num_correspondences == 0:
            return np.inf
        return self.final_error / self.num_correspondences

    def as_dict(self):
        return {
            'transformation': self.transformation,
            'converged': self.converged,
            'iterations': self.iterations,
            'errors': self.errors,
            'final_error': self.final_error,
            'num_correspondences': self.num_correspondences,
            'fitness': self.fitness,
        }


def make_core(backend='numpy', device=None, **kwargs):
    """Create the engine for a backend name ('numpy' or 'torch')."""
    if backend == 'numpy':
        return VGICPCore(**kwargs)
    if backend == 'torch':
        return TorchVGICPCore(device=device, **kwargs)
    raise ValueError(f"Unknown backend: {backend!r}, expected one of {BACKENDS}")


class VGICPRegistration:
    """
    Voxelized GICP registration of a source cloud onto a target cloud.

    Lifecycle: set_source / set_target (neighbors, covariances and the target
    voxel map are computed here), then compute_transformation or align.
    """

    def __init__(self, k_correspondences=20, regularization_method=RegularizationMethod.PLANE,
                 resolution=1.0, neighbor_search_method=NearestNeighborMethod.CPU_PARALLEL_KDTREE,
                 neighbor_voxels=NeighborVoxels.DIRECT27, correspondence_mode='voxel',
                 max_iterations=64, rotation_epsilon=2e-3, transformation_epsilon=5e-4,
                 max_correspondence_distance=np.inf, optimizer='levenberg_marquardt',
                 backend='numpy', device=None, n_jobs=4, verbose=False):
        """
        Initialize the registration.

        Args:
            k_correspondences: Neighbors used to estimate each covariance
            regularization_method: RegularizationMethod or its name
            resolution: Voxel edge length of the target voxel map
            neighbor_search_method: NearestNeighborMethod or 'kdtree' / 'bruteforce'
            neighbor_voxels: NeighborVoxels searched around a query voxel
            correspondence_mode: 'voxel' (voxel map lookup) or 'exact' (nearest
                                 target point from the neighbor search)
            max_iterations: Optimizer iteration budget
            rotation_epsilon: Rotation convergence threshold
            transformation_epsilon: Translation convergence threshold
            max_correspondence_distance: Euclidean gate on correspondences
            optimizer: 'levenberg_marquardt' or 'gauss_newton'
            backend: 'numpy' (CPU) or 'torch' (accelerator)
            device: torch device for the accelerator parts
            n_jobs: joblib workers for the KD-tree search
            verbose: Print progress and timings
        """
        self.source = None
        self.target = None
        self.device = device
        self.n_jobs = n_jobs
        self.verbose = verbose

        self.k_correspondences = self._checked_k(k_correspondences)
        self.regularization_method = RegularizationMethod.coerce(regularization_method)
        self.neighbor_search_method = NearestNeighborMethod.coerce(neighbor_search_method)
        self.neighbor_search = make_neighbor_search(self.neighbor_search_method,
                                                    n_jobs=n_jobs, device=device)
        self.set_correspondence_mode(correspondence_mode)
        self.set_max_iterations(max_iterations)
        self.rotation_epsilon = rotation_epsilon
        self.transformation_epsilon = transformation_epsilon
        self.set_optimizer_type(optimizer)

        self.core = make_core(backend, device=device, resolution=resolution,
                              neighbor_voxels=neighbor_voxels,
                              max_correspondence_distance=max_correspondence_distance)
        self.backend = backend

        self._stale = set()
        self.final_transformation = np.eye(4)
        self.converged = False
        self.num_iterations = 0
        self.errors = []
        self.final_hessian = np.zeros((6, 6))

    # ------------------------------------------------------------------
    # configuration
    # ------------------------------------------------------------------
    @staticmethod
    def _checked_k(k):
        k = int(k)
        if k < 2:
            raise ValueError(f"k_correspondences must be at least 2, got {k}")
        return k

    def _mark_stale(self):
        if self.source is not None:
            self._stale.add('source')
        if self.target is not None:
            self._stale.add('target')

    def set_num_correspondences(self, k):
        k = self._checked_k(k)
        if k != self.k_correspondences:
            self.k_correspondences = k
            self._mark_stale()

    def set_regularization_method(self, method):
        method = RegularizationMethod.coerce(method)
        if method is not self.regularization_method:
            self.regularization_method = method
            self._mark_stale()

    def set_neighbor_search_method(self, method):
        method = NearestNeighborMethod.coerce(method)
        if method is not self.neighbor_search_method:
            self.neighbor_search_method = method
            self.neighbor_search = make_neighbor_search(method, n_jobs=self.n_jobs,
                                                        device=self.device)
            self._mark_stale()

    def set_resolution(self, resolution):
        self.core.set_resolution(resolution)

    def set_neighbor_voxels(self, neighbor_voxels):
        self.core.set_neighbor_voxels(neighbor_voxels)

    def set_correspondence_mode(self, mode):
        if mode not in CORRESPONDENCE_MODES:
            raise ValueError(f"Unknown correspondence mode: {mode!r}, "
                             f"expected one of {CORRESPONDENCE_MODES}")
        self.correspondence_mode = mode

    def set_max_correspondence_distance(self, distance):
        self.core.set_max_correspondence_distance(distance)

    def set_max_iterations(self, max_iterations):
        if int(max_iterations) < 1:
            raise ValueError(f"max_iterations must be positive, got {max_iterations}")
        self.max_iterations = int(max_iterations)

    def set_rotation_epsilon(self, epsilon):
        self.rotation_epsilon = epsilon

    def set_transformation_epsilon(self, epsilon):
        self.transformation_epsilon = epsilon

    def set_optimizer_type(self, optimizer):
        if optimizer not in OPTIMIZER_TYPES:
            raise ValueError(f"Unknown optimizer: {optimizer!r}, expected one of {OPTIMIZER_TYPES}")
        self.optimizer_type = optimizer

    # ------------------------------------------------------------------
    # clouds
    # ------------------------------------------------------------------
    @staticmethod
    def _as_point_cloud(cloud, role):
        if cloud is None:
            raise ValueError(f"{role} cloud is None")
        if isinstance(cloud, (str, os.PathLike)):
            cloud = PointCloud.from_file(cloud)
        elif isinstance(cloud, o3d.geometry.PointCloud):
            cloud = PointCloud.from_o3d(cloud)
        elif not isinstance(cloud, PointCloud):
            cloud = PointCloud(cloud)
        if len(cloud) == 0:
            raise ValueError(f"{role} cloud is empty")
        return cloud

    def _self_neighbors(self, cloud):
        return self.neighbor_search.find_k_nearest(cloud.points, cloud.points,
                                                   self.k_correspondences)

    def _prepare_source(self):
        neighbors = self._self_neighbors(self.source)
        self.core.set_source_cloud(self.source.points)
        self.core.set_source_neighbors(neighbors)
        self.core.calculate_source_covariances(self.regularization_method)
        self._stale.discard('source')

    def _prepare_target(self):
        neighbors = self._self_neighbors(self.target)
        self.core.set_target_cloud(self.target.points)
        self.core.set_target_neighbors(neighbors)
        self.core.calculate_target_covariances(self.regularization_method)
        self.core.create_target_voxelmap()
        self._stale.discard('target')

    def set_source(self, cloud):
        """
        Set the cloud to be aligned.

        Args:
            cloud: PointCloud, (N, 3) array, Open3D PointCloud or file path
        """
        cloud = self._as_point_cloud(cloud, "source")
        if self.source is not None and self.source.same_as(cloud):
            return
        previous = self.source
        self.source = cloud
        try:
            self._prepare_source()
        except Exception:
            self.source = previous
            if previous is not None:
                self._stale.add('source')
            raise

    def set_target(self, cloud):
        """
        Set the reference cloud.

        Args:
            cloud: PointCloud, (N, 3) array, Open3D PointCloud or file path
        """
        cloud = self._as_point_cloud(cloud, "target")
        if self.target is not None and self.target.same_as(cloud):
            return
        previous = self.target
        self.target = cloud
        try:
            self._prepare_target()
        except Exception:
            self.target = previous
            if previous is not None:
                self._stale.add('target')
            raise

    def clear_source(self):
        self.source = None
        self._stale.discard('source')
        self.core.clear_source()

    def clear_target(self):
        self.target = None
        self._stale.discard('target')
        self.core.clear_target()

    def swap_source_and_target(self):
        """Exchange the roles of source and target, reusing their computed state."""
        self.core.swap_source_and_target()
        self.source, self.target = self.target, self.source
        self._stale = {{'source': 'target', 'target': 'source'}[side] for side in self._stale}

    # ------------------------------------------------------------------
    # registration
    # ------------------------------------------------------------------
    def _refresh(self):
        if 'source' in self._stale:
            self._prepare_source()
        if 'target' in self._stale:
            self._prepare_target()

    def _configure_core(self):
        search = self.neighbor_search if self.correspondence_mode == 'exact' else None
        self.core.set_correspondence_search(search)

    def compute_transformation(self, initial_guess=None):
        """
        Estimate the transformation that maps the source onto the target.

        Args:
            initial_guess: Optional 4x4 initial transformation

        Returns:
            4x4 transformation matrix
        """
        if self.source is None or self.target is None:
            raise RuntimeError("set_source and set_target must be called before registration")
        guess = as_transformation(initial_guess)

        total_start = time.time()
        self._refresh()
        self._configure_core()

        if self.verbose:
            print(f"\n{'='*70}")
            print(f"VGICP REGISTRATION ({self.backend}, {self.correspondence_mode} correspondences)")
            print(f"{'='*70}")
            print(f"Source points: {len(self.source):,}")
            print(f"Target points: {len(self.target):,}")
            print(f"{'─'*70}")

        optimizer = LSQOptimizer(max_iterations=self.max_iterations,
                                 rotation_epsilon=self.rotation_epsilon,
                                 transformation_epsilon=self.transformation_epsilon,
                                 method=self.optimizer_type,
                                 verbose=self.verbose)
        result = optimizer.optimize(self.core, guess)

        self.final_transformation = result.transformation
        self.converged = result.converged
        self.num_iterations = result.iterations
        self.errors = result.errors
        self.final_hessian = result.final_hessian

        if self.verbose:
            total_time = time.time() - total_start
            print(f"\n{'='*70}")
            print(f"PERFORMANCE SUMMARY")
            print(f"{'='*70}")
            print(f"Total runtime:           {total_time:.3f}s")
            print(f"Iterations:              {result.iterations}")
            print(f"Converged:               {result.converged}")
            if result.errors:
                print(f"Initial error:           {result.errors[0]:.6f}")
                print(f"Final error:             {result.errors[-1]:.6f}")
            print(f"{'='*70}\n")

        return result.transformation

    def evaluate(self, transformation):
        """Run one correspondence/weight/error pass at ``transformation``: (error, H, b)."""
        if self.source is None or self.target is None:
            raise RuntimeError("set_source and set_target must be called before evaluation")
        T = as_transformation(transformation)
        self._refresh()
        self._configure_core()
        self.core.update_correspondences(T)
        self.core.update_mahalanobis(T)
        return self.core.compute_error(T)

    def align(self, initial_guess=None):
        """
        Register and report the outcome.

        Returns:
            RegistrationResult
        """
        transformation = self.compute_transformation(initial_guess)
        final_error, _, _ = self.evaluate(transformation)
        return RegistrationResult(
            transformation=transformation,
            converged=self.converged,
            iterations=self.num_iterations,
            errors=list(self.errors),
            final_error=final_error,
            num_correspondences=self.core.num_correspondences,
            transformed_source=self.source.apply_transform(transformation),
            final_hessian=self.final_hessian,
        )

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def save_result(self, filepath, result):
        """Save registration results to file."""
        data = result.as_dict()
        data['source_points'] = None if self.source is None else np.asarray(self.source.points)
        data['target_points'] = None if self.target is None else np.asarray(self.target.points)
        with open(filepath, 'wb') as f:
            pickle.dump(data, f)
        print(f"Results saved to {filepath}")

    @staticmethod
    def load_result(filepath):
        """Load previously saved registration results."""
        if not os.path.exists(filepath):
            print(f"File {filepath} not found")
            return None

        with open(filepath, 'rb') as f:
            return pickle.load(f)
