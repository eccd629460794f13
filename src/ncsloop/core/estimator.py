"""
Estimator adapter: drives an external filter once per cycle.

The controller never sees the true state. It works on the estimate of a
filter that has to cope with zero, one or several delayed measurements
per cycle:

- measurements arrived → one batched filter update with their delays
- nothing arrived      → prediction only

Mode-aware filters additionally receive *mode observations* reconstructed
from acknowledgements. An ack sent at step t_ack for the sequence created
at step t_seq tells the controller that sequence became active with age

    θ = t_ack − t_seq + 1

where t_ack = current step − ack delay. The filter turns these delayed
observations into an estimate of the previous mode θ_{k−1}.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence
import logging

import numpy as np

from ncsloop.core.errors import EstimatorError

if TYPE_CHECKING:
    from ncsloop.core.collaborators import Filter
    from ncsloop.core.messages import Message

logger = logging.getLogger(__name__)


@dataclass
class EstimateUpdate:
    """Accounting of one estimator cycle."""

    num_used: int
    num_discarded: int
    previous_mode: int | None = None  # Only set by mode-aware filters


def compute_mode_observations(
    acks: Sequence["Message"],
    time_step: int,
) -> tuple[list[int], list[int]]:
    """
    Reconstruct observed modes from routed acknowledgements.

    Args:
        acks: Acknowledgements with delays already set by the router.
            Their payload is the origin step of the acknowledged sequence.
        time_step: Current time step

    Returns:
        (mode_observations, mode_delays)
    """
    observations = []
    delays = []
    for ack in acks:
        ack_time_step = time_step - ack.delay
        observations.append(int(ack_time_step - int(ack.payload) + 1))
        delays.append(int(ack.delay))
    return observations, delays


class EstimatorAdapter:
    """
    Wraps an external filter for use inside the control loop.

    Args:
        state_filter: The estimation filter
        mode_aware: Feed mode observations to the filter. Defaults to
            whether the filter offers `get_previous_mode_estimate`.
    """

    def __init__(self, state_filter: "Filter", mode_aware: bool | None = None):
        self.state_filter = state_filter
        if mode_aware is None:
            mode_aware = callable(getattr(state_filter, "get_previous_mode_estimate", None))
        self.mode_aware = mode_aware

    def update(
        self,
        measurements: Sequence["Message"],
        acks: Sequence["Message"],
        time_step: int,
        mode_inputs: np.ndarray | None = None,
    ) -> EstimateUpdate:
        """
        Advance the estimate to the current time step.

        Args:
            measurements: Routed sensor messages, delays set
            acks: Routed acknowledgements, delays set
            time_step: Current time step
            mode_inputs: (N+1, dim_u) input the actuator applies in each mode

        Raises:
            EstimatorError: the filter rejected its inputs or configuration
        """
        try:
            if mode_inputs is not None and hasattr(self.state_filter, "set_mode_inputs"):
                self.state_filter.set_mode_inputs(mode_inputs)

            if self.mode_aware:
                return self._update_mode_aware(measurements, acks, time_step)
            return self._update(measurements)
        except ValueError as exc:
            raise EstimatorError(f"filter rejected update at step {time_step}: {exc}") from exc

    def get_state(self) -> np.ndarray:
        return np.asarray(self.state_filter.get_state(), dtype=np.float64)

    def _update(self, measurements: Sequence["Message"]) -> EstimateUpdate:
        if not measurements:
            self.state_filter.predict()
            return EstimateUpdate(num_used=0, num_discarded=0)

        values, delays = _unpack(measurements)
        self.state_filter.step(values, delays)
        num_used, num_discarded = self._last_counts(len(values))
        return EstimateUpdate(num_used=num_used, num_discarded=num_discarded)

    def _update_mode_aware(
        self,
        measurements: Sequence["Message"],
        acks: Sequence["Message"],
        time_step: int,
    ) -> EstimateUpdate:
        if not measurements and not acks:
            self.state_filter.predict()
            return EstimateUpdate(
                num_used=0,
                num_discarded=0,
                previous_mode=self._previous_mode_estimate(),
            )

        values, delays = _unpack(measurements)
        observations, mode_delays = compute_mode_observations(acks, time_step)
        logger.debug("Mode observations at step %d: %s", time_step, observations)

        self.state_filter.step(values, delays, observations, mode_delays)
        num_used, num_discarded = self._last_counts(len(values))
        return EstimateUpdate(
            num_used=num_used,
            num_discarded=num_discarded,
            previous_mode=self._previous_mode_estimate(),
        )

    def _last_counts(self, received: int) -> tuple[int, int]:
        getter = getattr(self.state_filter, "get_last_update_counts", None)
        if getter is None:
            return received, 0
        num_used, num_discarded = getter()
        return int(num_used), int(num_discarded)

    def _previous_mode_estimate(self) -> int | None:
        mode = self.state_filter.get_previous_mode_estimate()
        return None if mode is None else int(mode)


def _unpack(measurements: Sequence["Message"]) -> tuple[list[np.ndarray], list[int]]:
    values = [np.asarray(m.payload, dtype=np.float64) for m in measurements]
    delays = [int(m.delay) for m in measurements]
    return values, delays
