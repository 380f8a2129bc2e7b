#!/usr/bin/env python3
"""
Main entry point for voxelized GICP point cloud registration.

This script provides a command-line interface for registering a source
point cloud file onto a target point cloud file.
"""

import argparse
import sys

import numpy as np

from vgicp import (InsufficientPointsError, NearestNeighborMethod, NeighborVoxels, PointCloud,
                   RegularizationMethod, VGICPRegistration)


def run_registration(source_path, target_path, args):
    """Load both clouds, register them and print the outcome."""
    print("\n" + "="*80)
    print("Voxelized GICP Registration")
    print("="*80)

    print(f"\nLoading point clouds...")
    print(f"  Source: {source_path}")
    print(f"  Target: {target_path}")
    source = PointCloud.from_file(source_path)
    target = PointCloud.from_file(target_path)

    if args.downsample:
        source = source.downsample(args.downsample)
        target = target.downsample(args.downsample)
        print(f"  Downsampled with voxel size {args.downsample}")

    print(f"  Source points: {len(source)}")
    print(f"  Target points: {len(target)}")

    registration = VGICPRegistration(
        k_correspondences=args.k,
        regularization_method=args.regularization,
        resolution=args.resolution,
        neighbor_search_method=args.neighbor_search,
        neighbor_voxels=args.neighbor_voxels,
        correspondence_mode=args.mode,
        max_iterations=args.max_iterations,
        rotation_epsilon=args.rotation_epsilon,
        transformation_epsilon=args.transformation_epsilon,
        optimizer=args.optimizer,
        backend=args.backend,
        device=args.device,
        n_jobs=args.jobs,
        verbose=args.verbose,
    )
    registration.set_target(target)
    registration.set_source(source)

    result = registration.align()

    print(f"\n{'='*80}")
    print("RESULTS")
    print("="*80)
    print(f"Converged: {result.converged}")
    print(f"Iterations: {result.iterations}")
    print(f"Final error: {result.final_error:.6f}")
    print(f"Correspondences: {result.num_correspondences}")
    print(f"Fitness: {result.fitness:.6f}")
    print(f"\nTransformation matrix:")
    with np.printoptions(precision=6, suppress=True):
        print(result.transformation)

    if args.save:
        registration.save_result(args.save, result)

    return result


def main():
    parser = argparse.ArgumentParser(
        description='Voxelized GICP point cloud registration',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Default registration (KD-tree neighbors, voxel correspondences)
  python main.py source.ply target.ply

  # Coarser voxels, 7 neighbor voxels, Gauss-Newton
  python main.py source.ply target.ply --resolution 2.0 --neighbor-voxels direct7 --optimizer gauss_newton

  # Brute-force neighbors and the torch backend on the GPU
  python main.py source.ply target.ply --neighbor-search bruteforce --backend torch --device cuda
        """
    )

    parser.add_argument('source', help='Source point cloud file (aligned onto the target)')
    parser.add_argument('target', help='Target point cloud file')

    parser.add_argument('--k', type=int, default=20,
                        help='Neighbors per covariance estimate (default: 20)')
    parser.add_argument('--resolution', type=float, default=1.0,
                        help='Voxel map resolution (default: 1.0)')
    parser.add_argument('--regularization', default='plane',
                        choices=[m.value for m in RegularizationMethod],
                        help='Covariance regularization method (default: plane)')
    parser.add_argument('--neighbor-search', default='kdtree',
                        choices=[m.value for m in NearestNeighborMethod],
                        help='Neighbor search strategy (default: kdtree)')
    parser.add_argument('--neighbor-voxels', default='direct27',
                        choices=[m.value for m in NeighborVoxels],
                        help='Voxels searched around each query (default: direct27)')
    parser.add_argument('--mode', default='voxel', choices=['voxel', 'exact'],
                        help='Correspondence search mode (default: voxel)')
    parser.add_argument('--max-iterations', type=int, default=64,
                        help='Maximum optimizer iterations (default: 64)')
    parser.add_argument('--rotation-epsilon', type=float, default=2e-3,
                        help='Rotation convergence threshold (default: 2e-3)')
    parser.add_argument('--transformation-epsilon', type=float, default=5e-4,
                        help='Translation convergence threshold (default: 5e-4)')
    parser.add_argument('--optimizer', default='levenberg_marquardt',
                        choices=['levenberg_marquardt', 'gauss_newton'],
                        help='Optimizer (default: levenberg_marquardt)')
    parser.add_argument('--backend', default='numpy', choices=['numpy', 'torch'],
                        help='Engine backend (default: numpy)')
    parser.add_argument('--device', default=None,
                        help='torch device for brute-force search and the torch backend')
    parser.add_argument('--jobs', type=int, default=4,
                        help='Parallel workers for the KD-tree search (default: 4)')
    parser.add_argument('--downsample', type=float, default=None,
                        help='Voxel size for downsampling both clouds before registration')
    parser.add_argument('--save', default=None,
                        help='Save the result to this pickle file')
    parser.add_argument('--verbose', action='store_true',
                        help='Print per-iteration progress')

    args = parser.parse_args()

    try:
        result = run_registration(args.source, args.target, args)
    except (InsufficientPointsError, ValueError) as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    return 0 if result.converged else 2


if __name__ == "__main__":
    sys.exit(main())
