"""
Linear time-invariant plant with optional process noise and box constraints.

    x_{k+1} = A x_k + B u_k + w_k,    w_k ~ N(0, W)
"""

from __future__ import annotations
from typing import Sequence

import numpy as np


class LinearPlant:
    """
    Discrete-time LTI plant.

    Args:
        A: (n, n) system matrix
        B: (n, m) input matrix
        noise_cov: (n, n) process noise covariance, None for noise-free
        state_bounds: (lower, upper) admissible box, None for unconstrained
        rng: Random generator used for process noise
    """

    def __init__(
        self,
        A: np.ndarray,
        B: np.ndarray,
        noise_cov: np.ndarray | None = None,
        state_bounds: tuple[Sequence[float], Sequence[float]] | None = None,
        rng: np.random.Generator | None = None,
    ):
        self.A = np.atleast_2d(np.asarray(A, dtype=np.float64))
        self.B = np.asarray(B, dtype=np.float64).reshape(self.A.shape[0], -1)
        if self.A.shape[0] != self.A.shape[1]:
            raise ValueError("A must be square")

        self.noise_cov = None if noise_cov is None else np.atleast_2d(np.asarray(noise_cov, dtype=np.float64))
        if self.noise_cov is not None and self.noise_cov.shape != self.A.shape:
            raise ValueError("noise_cov must match the state dimension")

        if state_bounds is not None:
            lower, upper = state_bounds
            self.lower = np.broadcast_to(np.asarray(lower, dtype=np.float64), (self.dim_state,))
            self.upper = np.broadcast_to(np.asarray(upper, dtype=np.float64), (self.dim_state,))
        else:
            self.lower = self.upper = None

        self.rng = rng if rng is not None else np.random.default_rng()
        self._input = np.zeros(self.dim_input)

    @property
    def dim_state(self) -> int:
        return self.A.shape[0]

    @property
    def dim_input(self) -> int:
        return self.B.shape[1]

    def set_input(self, u: np.ndarray):
        u = np.atleast_1d(np.asarray(u, dtype=np.float64)).ravel()
        if u.size != self.dim_input:
            raise ValueError(f"input must have {self.dim_input} entries, got {u.size}")
        self._input = u

    def simulate(self, state: np.ndarray) -> np.ndarray:
        x = np.asarray(state, dtype=np.float64).ravel()
        next_state = self.A @ x + self.B @ self._input
        if self.noise_cov is not None:
            next_state = next_state + self.rng.multivariate_normal(
                np.zeros(self.dim_state), self.noise_cov
            )
        return next_state

    def is_valid_state(self, state: np.ndarray) -> bool:
        x = np.asarray(state, dtype=np.float64).ravel()
        if not np.all(np.isfinite(x)):
            return False
        if self.lower is None:
            return True
        return bool(np.all(x >= self.lower) and np.all(x <= self.upper))


def create_double_integrator(
    sampling_interval: float = 0.1,
    noise_std: float = 0.0,
    rng: np.random.Generator | None = None,
) -> LinearPlant:
    """
    Factory for a 1D double integrator (position, velocity), force input.

    Args:
        sampling_interval: Discretisation step in seconds
        noise_std: Standard deviation of the process noise per component
        rng: Random generator for the noise
    """
    dt = sampling_interval
    A = np.array([[1.0, dt], [0.0, 1.0]])
    B = np.array([[0.5 * dt ** 2], [dt]])
    noise_cov = None if noise_std <= 0 else np.eye(2) * noise_std ** 2
    return LinearPlant(A, B, noise_cov=noise_cov, rng=rng)
