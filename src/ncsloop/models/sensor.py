"""
Linear sensor y_k = C x_k + v_k with optional send-on-delta triggering.

An event-based sensor only transmits when the new measurement deviates
from the last transmitted one by more than `measurement_delta`
(Euclidean norm).
"""

from __future__ import annotations

import numpy as np


class LinearSensor:
    """
    Linear measurement model.

    Args:
        C: (p, n) measurement matrix
        noise_cov: (p, p) measurement noise covariance, None for exact
        is_event_based: Use send-on-delta triggering
        measurement_delta: Threshold for send-on-delta
        rng: Random generator used for measurement noise
    """

    def __init__(
        self,
        C: np.ndarray,
        noise_cov: np.ndarray | None = None,
        is_event_based: bool = False,
        measurement_delta: float = 0.0,
        rng: np.random.Generator | None = None,
    ):
        self.C = np.atleast_2d(np.asarray(C, dtype=np.float64))
        self.noise_cov = None if noise_cov is None else np.atleast_2d(np.asarray(noise_cov, dtype=np.float64))
        self.is_event_based = is_event_based
        if measurement_delta < 0:
            raise ValueError("measurement_delta must be nonnegative")
        self.measurement_delta = float(measurement_delta)
        self.rng = rng if rng is not None else np.random.default_rng()
        self._last_sent: np.ndarray | None = None

    @property
    def dim_measurement(self) -> int:
        return self.C.shape[0]

    def measure(self, state: np.ndarray) -> np.ndarray:
        """Noisy measurement of `state`, regardless of triggering."""
        y = self.C @ np.asarray(state, dtype=np.float64).ravel()
        if self.noise_cov is not None:
            y = y + self.rng.multivariate_normal(np.zeros(self.dim_measurement), self.noise_cov)
        return y

    def step(self, state: np.ndarray) -> np.ndarray | None:
        y = self.measure(state)
        if self.is_event_based and self._last_sent is not None:
            if np.linalg.norm(y - self._last_sent) <= self.measurement_delta:
                return None
        self._last_sent = y
        return y
