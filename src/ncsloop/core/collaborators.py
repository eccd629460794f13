"""
Interfaces of the external collaborators driven by the control loop.

The core never integrates dynamics, filters measurements or optimises
inputs itself. It only calls these protocols:

- Plant: applies the resolved input and advances the true state
- Sensor: samples the (pre-transition) true state, may withhold it
- Filter: estimates the state from delayed measurements
- ControlLaw: turns an estimate and a mode into an input sequence

Reference implementations live in `ncsloop.models`.

Optional hooks are looked up with `getattr`; a collaborator without them
simply does not take part in the corresponding feature.
"""

from __future__ import annotations
from typing import Protocol, Sequence, runtime_checkable

import numpy as np


@runtime_checkable
class Plant(Protocol):
    """Protocol for the controlled plant."""

    @property
    def dim_state(self) -> int:
        ...

    def set_input(self, u: np.ndarray) -> None:
        """Set the input applied during the next `simulate` call."""
        ...

    def simulate(self, state: np.ndarray) -> np.ndarray:
        """Advance one sampling interval from `state` and return x_{k+1}."""
        ...

    def is_valid_state(self, state: np.ndarray) -> bool:
        """Whether `state` satisfies the plant's constraints."""
        ...


@runtime_checkable
class Sensor(Protocol):
    """Protocol for the sensor."""

    is_event_based: bool
    measurement_delta: float

    def step(self, state: np.ndarray) -> np.ndarray | None:
        """
        Take a measurement of `state`.

        Returns None when an event-triggered sensor decides not to send.
        """
        ...


@runtime_checkable
class Filter(Protocol):
    """
    Protocol for an estimator that processes delayed measurements.

    Optional hooks:
        set_mode_inputs(inputs): (N+1, dim_u) input applied in each mode
        get_previous_mode_estimate() -> int | None: marks a mode-aware filter,
            whose `step` also accepts mode observations and their delays
    """

    def predict(self) -> None:
        """Advance the estimate one step without a correction."""
        ...

    def step(
        self,
        measurements: Sequence[np.ndarray],
        delays: Sequence[int],
        *args,
    ) -> None:
        """Predict one step and correct with (possibly delayed) measurements."""
        ...

    def get_state(self) -> np.ndarray:
        """Current point estimate of the plant state."""
        ...

    def get_last_update_counts(self) -> tuple[int, int]:
        """(num_used, num_discarded) measurements of the last update."""
        ...


@runtime_checkable
class ControlLaw(Protocol):
    """
    Protocol for a sequence-based control law.

    Optional hooks, used by parameter overrides when present:
        set_deadband(threshold)
        set_sequence_length(length)
        set_delay_distribution(probabilities)
    """

    sequence_length: int

    def compute_sequence(
        self,
        estimate: np.ndarray,
        previous_mode: int,
        time_step: int,
    ) -> np.ndarray | None:
        """
        Compute u_k, ..., u_{k+N-1}.

        Returns an (N, dim_u) array, or None if nothing is to be sent.
        """
        ...

    def quality_of_control(self, state: np.ndarray, time_step: int) -> float:
        ...

    def control_error(self, state: np.ndarray, time_step: int) -> float:
        ...

    def stage_costs(self, state: np.ndarray, u: np.ndarray, time_step: int) -> float:
        ...

    def total_costs(self, states: np.ndarray, inputs: np.ndarray) -> float:
        ...
