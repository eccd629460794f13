"""
Time-series plots of a recorded control loop.

All functions take the dict returned by `ControlLoop.get_statistics()`
(or the CycleStatistics list returned by the steps) and return matplotlib
figures, so demos can save them with `save_figure`.
"""

from __future__ import annotations
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
from matplotlib.axes import Axes

if TYPE_CHECKING:
    from ncsloop.core.loop import CycleStatistics


def plot_states(
    statistics: dict,
    labels: Sequence[str] | None = None,
    title: str = "True Plant State",
    ax: Axes | None = None,
    figsize: tuple[float, float] = (10, 4),
) -> tuple[Figure, Axes]:
    """
    Plot every state component over time.

    Args:
        statistics: Recorded statistics with "true_states"
        labels: Optional name per state component
        title: Plot title
        ax: Existing axes (creates new if None)

    Returns:
        (fig, ax) tuple
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure

    states = statistics["true_states"]
    steps = np.arange(states.shape[0])
    for i in range(states.shape[1]):
        label = labels[i] if labels is not None else f"x[{i}]"
        ax.plot(steps, states[:, i], label=label)

    ax.set_title(title)
    ax.set_xlabel("time step k")
    ax.set_ylabel("state")
    ax.legend(loc="upper right")
    return fig, ax


def plot_inputs(
    statistics: dict,
    title: str = "Applied Inputs",
    ax: Axes | None = None,
    figsize: tuple[float, float] = (10, 3),
) -> tuple[Figure, Axes]:
    """Plot the applied inputs u_k as steps."""
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure

    inputs = statistics["applied_inputs"]
    steps = np.arange(inputs.shape[0])
    for i in range(inputs.shape[1]):
        ax.step(steps, inputs[:, i], where="post", label=f"u[{i}]")

    ax.set_title(title)
    ax.set_xlabel("time step k")
    ax.set_ylabel("input")
    ax.legend(loc="upper right")
    return fig, ax


def plot_modes(
    statistics: dict,
    sequence_length: int,
    title: str = "Actuator Mode θ_k",
    ax: Axes | None = None,
    figsize: tuple[float, float] = (10, 3),
) -> tuple[Figure, Axes]:
    """
    Plot the mode (age of the applied sequence) over time.

    The sentinel mode N+1 (default input) is marked with a dashed line.
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure

    modes = statistics["true_modes"]
    ax.step(np.arange(modes.size), modes, where="post", color="black")
    ax.axhline(sequence_length + 1, color="red", linestyle="--", linewidth=1, label="default input")

    ax.set_title(title)
    ax.set_xlabel("time step k")
    ax.set_ylabel("mode")
    ax.set_yticks(range(1, sequence_length + 2))
    ax.legend(loc="upper right")
    return fig, ax


def plot_delays(
    cycle_statistics: Sequence["CycleStatistics"],
    title: str = "Packet Delays",
    ax: Axes | None = None,
    figsize: tuple[float, float] = (10, 3),
) -> tuple[Figure, Axes]:
    """Scatter the delay of every processed message per channel."""
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure

    channels = [
        ("sc_delays", "sensor→controller", "tab:blue"),
        ("ca_delays", "controller→actuator", "tab:orange"),
        ("ac_delays", "actuator→controller", "tab:green"),
    ]
    for attr, label, color in channels:
        steps = [k for k, s in enumerate(cycle_statistics, start=1) for _ in getattr(s, attr)]
        delays = [d for s in cycle_statistics for d in getattr(s, attr)]
        ax.scatter(steps, delays, s=10, label=label, color=color)

    ax.set_title(title)
    ax.set_xlabel("cycle")
    ax.set_ylabel("delay [steps]")
    ax.legend(loc="upper right")
    return fig, ax


def plot_loop_summary(
    statistics: dict,
    sequence_length: int,
    cycle_statistics: Sequence["CycleStatistics"] | None = None,
    figsize: tuple[float, float] = (10, 10),
) -> Figure:
    """
    Plot states, inputs, modes and (optionally) delays stacked vertically.

    Returns:
        Figure with 3-4 subplots
    """
    n_plots = 4 if cycle_statistics is not None else 3
    fig, axes = plt.subplots(n_plots, 1, figsize=figsize, sharex=False)

    plot_states(statistics, ax=axes[0])
    plot_inputs(statistics, ax=axes[1])
    plot_modes(statistics, sequence_length, ax=axes[2])
    if cycle_statistics is not None:
        plot_delays(cycle_statistics, ax=axes[3])

    fig.tight_layout()
    return fig


def save_figure(fig: Figure, path: str | Path, dpi: int = 150, **kwargs) -> None:
    """Save figure to file."""
    fig.savefig(path, dpi=dpi, bbox_inches="tight", **kwargs)
