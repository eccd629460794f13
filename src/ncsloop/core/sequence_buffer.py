"""
Actuator-side buffer of control-input sequences.

The controller transmits whole sequences U = (u_1, ..., u_N) so the
actuator has something to apply when later sequences are delayed or lost.
The buffer keeps the accepted sequences indexed by *age*:

- a newly accepted sequence enters at age 1
- every time step all slots age by +1, skipped steps included
- a slot that reaches age N+1 is evicted

The input applied at step k is element `age` (1-based) of the youngest
slot. Its age is the plant mode θ_k of the induced jump-linear system.
With no slot left the default input is applied and θ_k = N+1.

Per cycle the order is age → accept → resolve, so the mode reported for
step k is the age of the sequence at the moment it is applied.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Sequence
import logging

import numpy as np

from ncsloop.core.messages import Message, Role

logger = logging.getLogger(__name__)


@dataclass
class SequenceSlot:
    """One buffered control sequence and its age."""

    inputs: np.ndarray  # Shape (N, dim_u)
    origin_time_step: int  # Time step the controller created it at
    age: int = 1


@dataclass
class ActuatorOutcome:
    """Result of one actuator cycle."""

    applied_input: np.ndarray
    mode: int
    ack: Message | None
    num_discarded: int


class SequenceBuffer:
    """
    Holds the most recently accepted control sequences indexed by age.

    Invariant: at most one slot per age in [1, N]. Only one sequence can be
    inserted per cycle (at age 1) and all slots age together, so ages stay
    distinct.
    """

    def __init__(self, sequence_length: int, default_input: Sequence[float] | np.ndarray):
        if int(sequence_length) != sequence_length or sequence_length < 1:
            raise ValueError("sequence_length must be a positive integer")
        self.sequence_length = int(sequence_length)
        self.default_input = np.atleast_1d(np.asarray(default_input, dtype=np.float64)).ravel()
        self._slots: list[SequenceSlot] = []  # Youngest first
        self.last_time_step: int | None = None

    @property
    def dim_input(self) -> int:
        return self.default_input.size

    @property
    def sentinel_mode(self) -> int:
        """Mode reported when no buffered sequence is available."""
        return self.sequence_length + 1

    @property
    def slots(self) -> list[SequenceSlot]:
        """Buffered slots, youngest first."""
        return list(self._slots)

    @property
    def is_empty(self) -> bool:
        return not self._slots

    def newest_origin(self) -> int | None:
        """Latest origin time step among the buffered slots."""
        if not self._slots:
            return None
        return max(slot.origin_time_step for slot in self._slots)

    def age(self, steps: int = 1):
        """Age every slot by `steps` cycles and evict those past N."""
        for slot in self._slots:
            slot.age += steps
        evicted = [s for s in self._slots if s.age > self.sequence_length]
        if evicted:
            self._slots = [s for s in self._slots if s.age <= self.sequence_length]
            logger.debug(
                "Evicted %d sequence(s) with origin %s",
                len(evicted),
                [s.origin_time_step for s in evicted],
            )

    def accept(
        self,
        candidates: Sequence[Message],
        time_step: int,
    ) -> tuple[Message | None, int]:
        """
        Select the newest candidate sequence and buffer it at age 1.

        Args:
            candidates: Control-sequence messages delivered this cycle
            time_step: Current time step, used to stamp the acknowledgement

        Returns:
            (ack, discarded_count). ack is None if nothing was accepted.
        """
        if not candidates:
            return None, 0

        # max() keeps the first of equal keys, so ties go to arrival order
        newest = max(candidates, key=lambda m: m.origin_time_step)
        latest_buffered = self.newest_origin()

        if latest_buffered is not None and newest.origin_time_step <= latest_buffered:
            logger.debug(
                "Discarding %d outdated sequence(s) at step %d (buffered origin %d)",
                len(candidates), time_step, latest_buffered,
            )
            return None, len(candidates)

        self._slots.insert(
            0,
            SequenceSlot(
                inputs=self._shape_sequence(newest.payload),
                origin_time_step=int(newest.origin_time_step),
                age=1,
            ),
        )
        ack = Message(
            source=Role.ACTUATOR,
            destination=Role.CONTROLLER,
            origin_time_step=time_step,
            payload=int(newest.origin_time_step),
            is_ack=True,
        )
        return ack, len(candidates) - 1

    def current_input(self) -> tuple[np.ndarray, int]:
        """
        Resolve the input to apply this cycle.

        Returns:
            (applied_input, mode) where mode is the age of the youngest slot,
            or the sentinel N+1 with the default input if the buffer is empty
        """
        if not self._slots:
            return self.default_input.copy(), self.sentinel_mode

        active = min(self._slots, key=lambda s: s.age)
        index = min(active.age, self.sequence_length)
        return active.inputs[index - 1].copy(), active.age

    def step(self, candidates: Sequence[Message], time_step: int) -> ActuatorOutcome:
        """
        Run one actuator cycle: age, accept, then resolve the input.

        Slots age by the number of time steps since the previous cycle, so
        skipped steps count like silent ones.
        """
        elapsed = 1 if self.last_time_step is None else time_step - self.last_time_step
        if elapsed < 1:
            raise ValueError(
                f"time step {time_step} does not follow {self.last_time_step}"
            )
        self.age(elapsed)
        self.last_time_step = time_step
        ack, num_discarded = self.accept(candidates, time_step)
        applied_input, mode = self.current_input()
        return ActuatorOutcome(
            applied_input=applied_input,
            mode=mode,
            ack=ack,
            num_discarded=num_discarded,
        )

    def resize(self, sequence_length: int):
        """
        Change the sequence length N at runtime.

        Slots older than the new length are evicted; the remaining ones are
        truncated or padded with the default input.
        """
        if int(sequence_length) != sequence_length or sequence_length < 1:
            raise ValueError("sequence_length must be a positive integer")
        self.sequence_length = int(sequence_length)
        self._slots = [s for s in self._slots if s.age <= self.sequence_length]
        for slot in self._slots:
            slot.inputs = _fit_length(slot.inputs, self.sequence_length, self.default_input)

    def _shape_sequence(self, payload) -> np.ndarray:
        inputs = np.asarray(payload, dtype=np.float64).reshape(-1, self.dim_input)
        return _fit_length(inputs, self.sequence_length, self.default_input)


def _fit_length(inputs: np.ndarray, length: int, default_input: np.ndarray) -> np.ndarray:
    """Truncate or pad a (n, dim_u) sequence to exactly `length` rows."""
    if inputs.shape[0] >= length:
        return inputs[:length].copy()
    padding = np.tile(default_input, (length - inputs.shape[0], 1))
    return np.vstack([inputs, padding])
