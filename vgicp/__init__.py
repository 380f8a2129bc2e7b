"""
vgicp - Voxelized Generalized ICP point cloud registration

A covariance-weighted registration library featuring:
- Per-point covariance estimation with selectable regularization
- Exact KD-tree neighbor search in parallel, or brute force on a torch device
- Voxel map correspondence lookup with Mahalanobis matching
- Gauss-Newton / Levenberg-Marquardt optimization over SE(3)
"""

from .accelerator import AcceleratorError, TorchVGICPCore, TorchVoxelMap
from .core import VGICPCore
from .covariance import RegularizationMethod, compute_covariances, regularize_covariances
from .kdtree import KDTree
from .neighbors import (BruteForceSearch, InsufficientPointsError, NearestNeighborMethod,
                        ParallelKDTreeSearch, make_neighbor_search)
from .optimizer import LSQOptimizer, OptimizationResult
from .point_cloud import PointCloud
from .registration import RegistrationResult, VGICPRegistration
from .transforms import apply_transformation, se3_exp
from .voxelmap import NeighborVoxels, VoxelMap

__version__ = "1.0.0"
__all__ = ["AcceleratorError", "BruteForceSearch", "InsufficientPointsError", "KDTree",
           "LSQOptimizer", "NearestNeighborMethod", "NeighborVoxels", "OptimizationResult",
           "ParallelKDTreeSearch", "PointCloud", "RegistrationResult", "RegularizationMethod",
           "TorchVGICPCore", "TorchVoxelMap", "VGICPCore", "VGICPRegistration", "VoxelMap",
           "apply_transformation", "compute_covariances", "make_neighbor_search",
           "regularize_covariances", "se3_exp"]
