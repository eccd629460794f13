"""
Visualization utilities.

- State and input trajectories
- Actuator mode over time
- Per-channel packet delays
"""

from ncsloop.viz.timeseries import (
    plot_states,
    plot_inputs,
    plot_modes,
    plot_delays,
    plot_loop_summary,
    save_figure,
)

__all__ = [
    "plot_states",
    "plot_inputs",
    "plot_modes",
    "plot_delays",
    "plot_loop_summary",
    "save_figure",
]
