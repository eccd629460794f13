"""
Post-run summaries of a control loop.

This is NOT used by the loop itself. It derives quantities from the
recorded statistics and the per-cycle reports:

- how often the actuator ran in each mode
- the empirical delay distribution per channel
- discard rates for measurements and control sequences
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Sequence

import numpy as np

if TYPE_CHECKING:
    from ncsloop.core.loop import ControlLoop, CycleStatistics


@dataclass
class LoopSummary:
    """Aggregated results of one simulation run."""

    num_steps: int
    total_costs: float
    mean_control_error: float
    mode_histogram: np.ndarray  # Relative frequency of modes 1..N+1
    sc_delay_distribution: np.ndarray
    ca_delay_distribution: np.ndarray
    ac_delay_distribution: np.ndarray
    sequence_discard_rate: float  # Discarded / received control sequences
    measurement_discard_rate: float  # Discarded / received measurements
    sc_send_rate: float
    ca_send_rate: float
    ac_send_rate: float


def mode_histogram(true_modes: np.ndarray, sequence_length: int) -> np.ndarray:
    """
    Relative frequency of each mode 1..N+1, ignoring unrecorded (NaN) steps.

    Returns:
        Array of length N+1; all zeros if nothing was recorded
    """
    modes = np.asarray(true_modes, dtype=np.float64)
    modes = modes[~np.isnan(modes)].astype(np.int64)
    counts = np.bincount(np.clip(modes, 1, sequence_length + 1) - 1, minlength=sequence_length + 1)
    total = counts.sum()
    if total == 0:
        return np.zeros(sequence_length + 1)
    return counts / total


def empirical_delay_distribution(
    delays: Iterable[int],
    max_delay: int | None = None,
) -> np.ndarray:
    """
    Relative frequency of delays 0..max_delay.

    Delays larger than max_delay are counted as lost, so the result sums to
    at most 1. That makes it usable as a `delay_distribution` override.
    """
    values = np.asarray(list(delays), dtype=np.int64)
    if max_delay is None:
        max_delay = int(values.max()) if values.size else 0
    if values.size == 0:
        return np.zeros(max_delay + 1)
    counts = np.bincount(values[values <= max_delay], minlength=max_delay + 1)
    return counts / values.size


def summarize_run(
    loop: "ControlLoop",
    cycle_statistics: Sequence["CycleStatistics"],
    max_delay: int | None = None,
) -> LoopSummary:
    """
    Summarize a finished run.

    Args:
        loop: Loop with statistics recording enabled
        cycle_statistics: The CycleStatistics returned by every step
        max_delay: Upper bound for the delay distributions

    Returns:
        LoopSummary
    """
    recorded = loop.get_statistics()
    n = len(cycle_statistics)

    received_sequences = sum(len(s.ca_delays) for s in cycle_statistics)
    discarded_sequences = sum(s.num_discarded_sequences for s in cycle_statistics)
    received_measurements = sum(len(s.sc_delays) for s in cycle_statistics)
    discarded_measurements = sum(s.num_discarded_measurements for s in cycle_statistics)

    def rate(numerator: float, denominator: float) -> float:
        return float(numerator / denominator) if denominator else 0.0

    errors = [s.actual_control_error for s in cycle_statistics]

    return LoopSummary(
        num_steps=n,
        total_costs=loop.total_control_costs(),
        mean_control_error=float(np.mean(errors)) if errors else float("nan"),
        mode_histogram=mode_histogram(recorded["true_modes"][1:], loop.sequence_length),
        sc_delay_distribution=empirical_delay_distribution(
            (d for s in cycle_statistics for d in s.sc_delays), max_delay
        ),
        ca_delay_distribution=empirical_delay_distribution(
            (d for s in cycle_statistics for d in s.ca_delays), max_delay
        ),
        ac_delay_distribution=empirical_delay_distribution(
            (d for s in cycle_statistics for d in s.ac_delays), max_delay
        ),
        sequence_discard_rate=rate(discarded_sequences, received_sequences),
        measurement_discard_rate=rate(discarded_measurements, received_measurements),
        sc_send_rate=rate(sum(s.sc_sent for s in cycle_statistics), n),
        ca_send_rate=rate(sum(s.ca_sent for s in cycle_statistics), n),
        ac_send_rate=rate(sum(s.ac_sent for s in cycle_statistics), n),
    )
