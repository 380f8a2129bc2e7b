"""Gauss-Newton / Levenberg-Marquardt driver for correspondence engines.

The optimizer only needs an engine with three calls taking the candidate
transform (4x4)::

    engine.update_correspondences(T)
    engine.update_mahalanobis(T)
    error, H, b = engine.compute_error(T)

and applies the increment ``T <- se3_exp(delta) @ T`` solved from
``(H + lambda I) delta = -b``.
"""

import time

import numpy as np

from .transforms import as_transformation, se3_exp


OPTIMIZER_TYPES = ('gauss_newton', 'levenberg_marquardt')


class OptimizationResult:
    """Outcome of LSQOptimizer.optimize."""

    def __init__(self, transformation, converged, iterations, errors, final_hessian):
        self.transformation = transformation
        self.converged = converged
        self.iterations = iterations
        self.errors = errors
        self.final_hessian = final_hessian

    def __repr__(self):
        return (f"OptimizationResult(converged={self.converged}, iterations={self.iterations}, "
                f"final_error={self.errors[-1] if self.errors else None})")


class LSQOptimizer:
    """
    Iterative least-squares optimizer over SE(3).

    Args:
        max_iterations: Iteration budget
        rotation_epsilon: Convergence threshold on the rotation increment
        transformation_epsilon: Convergence threshold on the translation increment
        method: 'gauss_newton' or 'levenberg_marquardt'
        lm_max_iterations: Trial steps per LM iteration before giving up
        lm_init_lambda_factor: Initial damping relative to max(diag(H))
        verbose: Print per-iteration progress
    """

    def __init__(self, max_iterations=64, rotation_epsilon=2e-3, transformation_epsilon=5e-4,
                 method='levenberg_marquardt', lm_max_iterations=10,
                 lm_init_lambda_factor=1e-9, verbose=False):
        if method not in OPTIMIZER_TYPES:
            raise ValueError(f"Unknown optimizer: {method!r}, expected one of {OPTIMIZER_TYPES}")
        if int(max_iterations) < 1:
            raise ValueError(f"max_iterations must be positive, got {max_iterations}")
        self.max_iterations = int(max_iterations)
        self.rotation_epsilon = rotation_epsilon
        self.transformation_epsilon = transformation_epsilon
        self.method = method
        self.lm_max_iterations = lm_max_iterations
        self.lm_init_lambda_factor = lm_init_lambda_factor
        self.verbose = verbose
        self.lm_lambda = -1.0

    def is_converged(self, delta):
        """True when the increment is below both epsilons."""
        step = se3_exp(delta)
        r_delta = np.max(np.abs(step[:3, :3] - np.eye(3))) / self.rotation_epsilon
        t_delta = np.max(np.abs(step[:3, 3])) / self.transformation_epsilon
        return max(r_delta, t_delta) < 1.0

    @staticmethod
    def _solve(H, b):
        try:
            return np.linalg.solve(H, -b)
        except np.linalg.LinAlgError:
            print("Warning: singular system, using least-squares solution")
            return np.linalg.lstsq(H, -b, rcond=None)[0]

    @staticmethod
    def _linearize(engine, x):
        engine.update_correspondences(x)
        engine.update_mahalanobis(x)
        return engine.compute_error(x)

    def _step_gauss_newton(self, engine, x):
        error, H, b = self._linearize(engine, x)
        if not np.any(H):
            return x, error, H, None
        delta = self._solve(H, b)
        self.lm_lambda = -1.0
        return se3_exp(delta) @ x, error, H, self.is_converged(delta)

    def _step_levenberg_marquardt(self, engine, x):
        y0, H, b = self._linearize(engine, x)
        if not np.any(H):
            return x, y0, H, None

        if self.lm_lambda < 0:
            self.lm_lambda = self.lm_init_lambda_factor * np.max(np.diag(H))

        nu = 2.0
        for _ in range(self.lm_max_iterations):
            delta = self._solve(H + self.lm_lambda * np.eye(6), b)
            xi = se3_exp(delta) @ x
            yi, _, _ = engine.compute_error(xi)

            predicted = delta @ (self.lm_lambda * delta - b)
            if predicted > 0:
                rho = (y0 - yi) / predicted
            else:
                rho = 0.0 if yi <= y0 else -1.0

            if rho < 0:
                if self.is_converged(delta):
                    return x, y0, H, True
                self.lm_lambda *= nu
                nu *= 2.0
                continue

            self.lm_lambda *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
            return xi, y0, H, self.is_converged(delta)

        return x, y0, H, False

    def optimize(self, engine, initial_guess=None):
        """
        Run the optimization loop.

        Args:
            engine: Object with update_correspondences / update_mahalanobis / compute_error
            initial_guess: Optional 4x4 initial transformation

        Returns:
            OptimizationResult
        """
        x = as_transformation(initial_guess)
        step = (self._step_levenberg_marquardt if self.method == 'levenberg_marquardt'
                else self._step_gauss_newton)

        self.lm_lambda = -1.0
        errors = []
        converged = False
        final_hessian = np.zeros((6, 6))
        iterations = 0

        for i in range(self.max_iterations):
            iter_start = time.time()
            x, error, H, converged = step(engine, x)
            iterations = i + 1

            if converged is None:
                if self.verbose:
                    print(f"Iter {i:3d}: no correspondences, stopping")
                converged = False
                break

            errors.append(error)
            final_hessian = H

            if self.verbose:
                print(f"Iter {i:3d}: error={error:.6f} | "
                      f"corr={getattr(engine, 'num_correspondences', 'n/a')} | "
                      f"total={time.time() - iter_start:.3f}s")

            if converged:
                if self.verbose:
                    print(f"\n✓ Converged at iteration {i + 1}")
                break

        return OptimizationResult(x, bool(converged), iterations, errors, final_hessian)
