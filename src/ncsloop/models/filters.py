"""
Reference estimators for delayed measurements.

These are deliberately simple Kalman-type filters, good enough to close
the loop in demos and tests:

- DelayedMeasurementFilter: keeps a short history of predicted means and
  corrects the current estimate with measurements up to `max_delay` steps
  old. Older measurements are discarded and reported as such.
- DelayedModeFilter: additionally tracks a belief over the actuator mode
  θ, propagated with the mode Markov chain and reset by (delayed) mode
  observations. Its belief provides the previous-mode estimate.

The applied input is unknown to the controller, so the prediction uses the
expected input under the mode belief (uniform for the plain filter).
"""

from __future__ import annotations
from collections import deque
from typing import Sequence

import numpy as np


def mode_transition_matrix(delay_probs: Sequence[float], sequence_length: int) -> np.ndarray:
    """
    Transition matrix of the actuator mode for i.i.d. sequence delays.

    Mode j ≤ N becomes active when the sequence with delay j−1 arrives and
    no younger sequence does. Otherwise the active sequence ages by one,
    saturating at the sentinel mode N+1.

    Args:
        delay_probs: Probability of a sequence delay of 0, 1, 2, ... steps
        sequence_length: N

    Returns:
        (N+1, N+1) row-stochastic matrix, T[i−1, j−1] = P(θ_k = j | θ_{k−1} = i)
    """
    n = int(sequence_length)
    p = np.zeros(n)
    probs = np.asarray(delay_probs, dtype=np.float64).ravel()[:n]
    p[: probs.size] = probs

    # Probability that the youngest arriving sequence has delay j−1
    not_younger = np.concatenate([[1.0], np.cumprod(1.0 - p)[:-1]])
    arrive = p * not_younger

    T = np.zeros((n + 1, n + 1))
    for i in range(1, n + 2):
        reachable = min(i, n)
        T[i - 1, :reachable] = arrive[:reachable]
        stay = min(i + 1, n + 1)
        T[i - 1, stay - 1] += 1.0 - T[i - 1].sum()
    return T


class DelayedMeasurementFilter:
    """
    Kalman-type filter accepting out-of-sequence measurements.

    A measurement with delay d was taken of x_{k−d}. Its innovation is
    formed against the stored prediction of x_{k−d} and mapped forward
    with A^d onto the current estimate.

    Args:
        A, B, C: System and measurement matrices
        process_cov: Process noise covariance W
        meas_cov: Measurement noise covariance V
        initial_estimate: Initial mean
        initial_cov: Initial covariance
        max_delay: Measurements older than this are discarded
    """

    def __init__(
        self,
        A: np.ndarray,
        B: np.ndarray,
        C: np.ndarray,
        process_cov: np.ndarray,
        meas_cov: np.ndarray,
        initial_estimate: Sequence[float],
        initial_cov: np.ndarray,
        max_delay: int = 5,
    ):
        self.A = np.atleast_2d(np.asarray(A, dtype=np.float64))
        n = self.A.shape[0]
        self.B = np.asarray(B, dtype=np.float64).reshape(n, -1)
        self.C = np.atleast_2d(np.asarray(C, dtype=np.float64))
        self.W = np.atleast_2d(np.asarray(process_cov, dtype=np.float64))
        self.V = np.atleast_2d(np.asarray(meas_cov, dtype=np.float64))

        x0 = np.asarray(initial_estimate, dtype=np.float64).ravel()
        P0 = np.atleast_2d(np.asarray(initial_cov, dtype=np.float64))
        if self.C.shape[1] != n or self.W.shape != (n, n) or x0.size != n or P0.shape != (n, n):
            raise ValueError("filter model dimensions do not match the state dimension")
        if self.V.shape != (self.C.shape[0], self.C.shape[0]):
            raise ValueError("meas_cov does not match the measurement dimension")

        self.max_delay = int(max_delay)
        self.x = x0
        self.P = P0
        self._history = deque([x0.copy()], maxlen=self.max_delay + 1)
        self._mode_inputs: np.ndarray | None = None
        self._last_counts = (0, 0)

    @property
    def dim_input(self) -> int:
        return self.B.shape[1]

    def set_mode_inputs(self, inputs: np.ndarray):
        inputs = np.atleast_2d(np.asarray(inputs, dtype=np.float64))
        if inputs.shape[1] != self.dim_input:
            raise ValueError(
                f"mode inputs have dimension {inputs.shape[1]}, expected {self.dim_input}"
            )
        self._mode_inputs = inputs

    def predict(self):
        self._propagate_modes()
        self._predict_state()
        self._last_counts = (0, 0)

    def step(self, measurements: Sequence[np.ndarray], delays: Sequence[int]):
        self._propagate_modes()
        self._predict_state()
        self._correct(measurements, delays)

    def get_state(self) -> np.ndarray:
        return self.x.copy()

    def get_covariance(self) -> np.ndarray:
        return self.P.copy()

    def get_last_update_counts(self) -> tuple[int, int]:
        return self._last_counts

    def _mode_weights(self, n_modes: int) -> np.ndarray:
        return np.full(n_modes, 1.0 / n_modes)

    def _propagate_modes(self):
        pass

    def _expected_input(self) -> np.ndarray:
        if self._mode_inputs is None:
            return np.zeros(self.dim_input)
        return self._mode_weights(self._mode_inputs.shape[0]) @ self._mode_inputs

    def _predict_state(self):
        self.x = self.A @ self.x + self.B @ self._expected_input()
        self.P = self.A @ self.P @ self.A.T + self.W
        self._history.appendleft(self.x.copy())

    def _correct(self, measurements: Sequence[np.ndarray], delays: Sequence[int]):
        if len(measurements) != len(delays):
            raise ValueError("one delay per measurement required")

        used = discarded = 0
        # Oldest first, so fresher measurements get the final word
        for y, d in sorted(zip(measurements, delays), key=lambda pair: -pair[1]):
            y = np.atleast_1d(np.asarray(y, dtype=np.float64)).ravel()
            if y.size != self.C.shape[0]:
                raise ValueError(
                    f"measurement has dimension {y.size}, expected {self.C.shape[0]}"
                )
            if d < 0 or d >= len(self._history):
                discarded += 1
                continue

            prior = self._history[d]
            S = self.C @ self.P @ self.C.T + self.V
            K = self.P @ self.C.T @ np.linalg.inv(S)
            innovation = y - self.C @ prior
            self.x = self.x + np.linalg.matrix_power(self.A, d) @ K @ innovation
            self.P = (np.eye(self.P.shape[0]) - K @ self.C) @ self.P
            used += 1

        self._history[0] = self.x.copy()
        self._last_counts = (used, discarded)


class DelayedModeFilter(DelayedMeasurementFilter):
    """
    DelayedMeasurementFilter that also estimates the actuator mode.

    The belief refers to θ_{k−1}, the mode of the input applied during the
    last step. It starts at the sentinel mode (nothing applied yet).

    Args:
        delay_probs: Assumed controller→actuator delay distribution
        (all other arguments as DelayedMeasurementFilter)
    """

    def __init__(self, *args, delay_probs: Sequence[float] = (1.0,), **kwargs):
        super().__init__(*args, **kwargs)
        self.delay_probs = np.asarray(delay_probs, dtype=np.float64).ravel()
        self.belief: np.ndarray | None = None
        self.T: np.ndarray | None = None

    def set_mode_inputs(self, inputs: np.ndarray):
        super().set_mode_inputs(inputs)
        n_modes = self._mode_inputs.shape[0]
        if self.belief is None or self.belief.size != n_modes:
            self.T = mode_transition_matrix(self.delay_probs, n_modes - 1)
            self.belief = np.zeros(n_modes)
            self.belief[-1] = 1.0

    def step(
        self,
        measurements: Sequence[np.ndarray],
        delays: Sequence[int],
        mode_observations: Sequence[int] = (),
        mode_delays: Sequence[int] = (),
    ):
        if len(mode_observations) != len(mode_delays):
            raise ValueError("one delay per mode observation required")
        self._propagate_modes()
        self._observe_modes(mode_observations, mode_delays)
        self._predict_state()
        self._correct(measurements, delays)

    def get_previous_mode_estimate(self) -> int | None:
        if self.belief is None:
            return None
        return int(np.argmax(self.belief)) + 1

    def _mode_weights(self, n_modes: int) -> np.ndarray:
        if self.belief is None or self.belief.size != n_modes:
            return super()._mode_weights(n_modes)
        return self.belief

    def _propagate_modes(self):
        if self.belief is not None:
            self.belief = self.belief @ self.T

    def _observe_modes(self, observations: Sequence[int], delays: Sequence[int]):
        if self.belief is None or len(observations) == 0:
            return
        # Freshest observation wins
        index = int(np.argmin(delays))
        n_modes = self.belief.size
        mode = int(np.clip(observations[index], 1, n_modes))
        steps = max(int(delays[index]), 1) - 1

        belief = np.zeros(n_modes)
        belief[mode - 1] = 1.0
        self.belief = belief @ np.linalg.matrix_power(self.T, steps)
