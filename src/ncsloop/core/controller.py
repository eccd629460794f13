"""
Control-sequence generator: wraps an external sequence-based control law.

Each cycle the law receives the current estimate and the previous plant
mode θ_{k−1} (true mode when the network feeds it back, otherwise the
filter's estimate) and returns a full sequence of N inputs, or nothing.

The generator also keeps the controller-side history of the last N
sequences. From it the filter learns which input the actuator applies in
each mode: in mode m the actuator uses element m of the sequence sent m
cycles ago.
"""

from __future__ import annotations
from typing import TYPE_CHECKING, Sequence
import logging

import numpy as np

from ncsloop.core.errors import MissingModeError

if TYPE_CHECKING:
    from ncsloop.core.collaborators import ControlLaw

logger = logging.getLogger(__name__)


def resolve_previous_mode(
    true_mode: int | None,
    estimated_mode: int | None,
    time_step: int,
) -> int:
    """
    Pick the mode a control law is conditioned on.

    The true mode wins if the network feeds it back; otherwise the
    estimate is used (certainty equivalence).

    Raises:
        MissingModeError: neither is available
    """
    if true_mode is not None:
        return int(true_mode)
    if estimated_mode is not None:
        return int(estimated_mode)
    raise MissingModeError(time_step)


class ControlSequenceGenerator:
    """
    Produces input sequences and tracks what was sent.

    History layout: `history[j]` is the (N, dim_u) sequence from j+1 cycles
    before the next generation, slot 0 being the most recent.
    """

    def __init__(
        self,
        control_law: "ControlLaw",
        sequence_length: int,
        default_input: Sequence[float] | np.ndarray,
    ):
        if int(sequence_length) != sequence_length or sequence_length < 1:
            raise ValueError("sequence_length must be a positive integer")
        self.control_law = control_law
        self.sequence_length = int(sequence_length)
        self.default_input = np.atleast_1d(np.asarray(default_input, dtype=np.float64)).ravel()
        self.history = self._default_history(self.sequence_length)
        self.last_time_step: int | None = None

    @property
    def dim_input(self) -> int:
        return self.default_input.size

    def mode_specific_inputs(self, time_step: int | None = None) -> np.ndarray:
        """
        Input the actuator applies in each mode.

        Args:
            time_step: Current step; steps skipped since the last generation
                push the history further into the past. None assumes no gap.

        Returns:
            (N+1, dim_u) array: row m−1 is element m of the sequence from m
            steps ago, the last row is the default input (mode N+1)
        """
        n = self.sequence_length
        gap = self._elapsed(time_step)
        rows = []
        for m in range(1, n + 1):
            j = m - gap
            rows.append(self.history[j, m - 1] if 0 <= j < n else self.default_input)
        rows.append(self.default_input)
        return np.vstack(rows)

    def generate(
        self,
        estimate: np.ndarray,
        previous_mode: int,
        time_step: int,
    ) -> np.ndarray | None:
        """
        Compute the sequence for this cycle and record it in the history.

        Returns:
            (N, dim_u) sequence, or None if the law has nothing to send. In
            that case the default input becomes the nominal plan.
        """
        # Skipped steps sent nothing, so their plan is the default input
        shift = min(self._elapsed(time_step), self.sequence_length)
        self.history = np.roll(self.history, shift, axis=0)
        self.history[:shift] = np.tile(self.default_input, (self.sequence_length, 1))
        self.last_time_step = time_step

        raw = self.control_law.compute_sequence(estimate, previous_mode, time_step)
        if raw is None:
            logger.debug("Control law has nothing to send at step %d", time_step)
            self.history[0] = np.tile(self.default_input, (self.sequence_length, 1))
            return None

        sequence = np.asarray(raw, dtype=np.float64).reshape(-1, self.dim_input)
        if sequence.shape[0] != self.sequence_length:
            raise ValueError(
                f"control law returned {sequence.shape[0]} inputs, "
                f"expected {self.sequence_length}"
            )
        self.history[0] = sequence
        return sequence.copy()

    def resize(self, sequence_length: int):
        """Change N, keeping as much of the history as fits."""
        if int(sequence_length) != sequence_length or sequence_length < 1:
            raise ValueError("sequence_length must be a positive integer")
        n_old, n_new = self.sequence_length, int(sequence_length)
        history = self._default_history(n_new)
        keep = min(n_old, n_new)
        history[:keep, :keep] = self.history[:keep, :keep]
        self.history = history
        self.sequence_length = n_new

    def _elapsed(self, time_step: int | None) -> int:
        if time_step is None or self.last_time_step is None:
            return 1
        elapsed = time_step - self.last_time_step
        if elapsed < 1:
            raise ValueError(
                f"time step {time_step} does not follow {self.last_time_step}"
            )
        return int(elapsed)

    def _default_history(self, n: int) -> np.ndarray:
        return np.tile(self.default_input, (n, n, 1))
