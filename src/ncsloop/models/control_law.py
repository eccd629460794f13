"""
Infinite-horizon LQR turned into a sequence-based control law.

The gain K comes from the discrete algebraic Riccati equation. A sequence
is the open-loop rollout of the nominal closed loop from the estimate:

    u_{k+i} = −K x̂_{k+i},    x̂_{k+i+1} = A x̂_{k+i} + B u_{k+i}

With a positive deadband the law is event-triggered: it sends nothing if
the first new input differs from the currently planned one by no more
than the deadband.
"""

from __future__ import annotations
from typing import Sequence

import numpy as np
from scipy.linalg import solve_discrete_are


class LQRSequenceLaw:
    """
    Sequence-based LQR controller.

    Args:
        A, B: Plant model
        Q, R: State and input weights of the quadratic cost
        sequence_length: N, number of inputs per sequence
        reference: Setpoint the control error is measured against
        deadband: Event-trigger threshold; 0 sends every step
    """

    def __init__(
        self,
        A: np.ndarray,
        B: np.ndarray,
        Q: np.ndarray,
        R: np.ndarray,
        sequence_length: int,
        reference: Sequence[float] | None = None,
        deadband: float = 0.0,
    ):
        self.A = np.atleast_2d(np.asarray(A, dtype=np.float64))
        n = self.A.shape[0]
        self.B = np.asarray(B, dtype=np.float64).reshape(n, -1)
        self.Q = np.atleast_2d(np.asarray(Q, dtype=np.float64))
        self.R = np.atleast_2d(np.asarray(R, dtype=np.float64))
        if int(sequence_length) != sequence_length or sequence_length < 1:
            raise ValueError("sequence_length must be a positive integer")
        self.sequence_length = int(sequence_length)
        self.reference = np.zeros(n) if reference is None else np.asarray(reference, dtype=np.float64).ravel()
        self.deadband = float(deadband)

        P = solve_discrete_are(self.A, self.B, self.Q, self.R)
        self.P = P
        self.K = np.linalg.solve(self.R + self.B.T @ P @ self.B, self.B.T @ P @ self.A)

        self._last_sent: np.ndarray | None = None
        self._last_sent_step: int | None = None

    def compute_sequence(
        self,
        estimate: np.ndarray,
        previous_mode: int,
        time_step: int,
    ) -> np.ndarray | None:
        # The nominal LQR rollout does not depend on the previous mode
        x = np.asarray(estimate, dtype=np.float64).ravel() - self.reference
        inputs = np.empty((self.sequence_length, self.B.shape[1]))
        for i in range(self.sequence_length):
            inputs[i] = -self.K @ x
            x = self.A @ x + self.B @ inputs[i]

        if self.deadband > 0 and self._last_sent is not None:
            planned = self._planned_input(time_step)
            if planned is not None and np.linalg.norm(inputs[0] - planned) <= self.deadband:
                return None

        self._last_sent = inputs.copy()
        self._last_sent_step = time_step
        return inputs

    def _planned_input(self, time_step: int) -> np.ndarray | None:
        offset = time_step - self._last_sent_step
        if offset >= self.sequence_length:
            return None
        return self._last_sent[offset]

    def set_deadband(self, deadband: float):
        self.deadband = float(deadband)

    def set_sequence_length(self, sequence_length: int):
        self.sequence_length = int(sequence_length)
        self._last_sent = None
        self._last_sent_step = None

    def control_error(self, state: np.ndarray, time_step: int) -> float:
        return float(np.linalg.norm(np.asarray(state, dtype=np.float64).ravel() - self.reference))

    def quality_of_control(self, state: np.ndarray, time_step: int) -> float:
        # Norm of the deviation from the setpoint; small is good
        return self.control_error(state, time_step)

    def stage_costs(self, state: np.ndarray, u: np.ndarray, time_step: int) -> float:
        x = np.asarray(state, dtype=np.float64).ravel() - self.reference
        u = np.atleast_1d(np.asarray(u, dtype=np.float64)).ravel()
        return float(x @ self.Q @ x + u @ self.R @ u)

    def total_costs(self, states: np.ndarray, inputs: np.ndarray) -> float:
        """Sum of stage costs plus the terminal state cost."""
        states = np.atleast_2d(states)
        inputs = np.asarray(inputs, dtype=np.float64).reshape(-1, self.B.shape[1])
        costs = sum(
            self.stage_costs(x, u, k) for k, (x, u) in enumerate(zip(states[:-1], inputs))
        )
        terminal = states[-1] - self.reference
        return float(costs + terminal @ self.Q @ terminal)
