"""
Reference collaborators for the control loop.

The core treats plants, sensors, filters and control laws as external.
These implementations are small and linear, meant for demos and tests:

- LinearPlant / create_double_integrator: LTI plant with process noise
- LinearSensor: linear measurements, optional send-on-delta triggering
- DelayedMeasurementFilter: Kalman-type filter for delayed measurements
- DelayedModeFilter: same, plus an estimate of the previous actuator mode
- LQRSequenceLaw: LQR rollout as input sequence, optional deadband
"""

from ncsloop.models.plant import LinearPlant, create_double_integrator
from ncsloop.models.sensor import LinearSensor
from ncsloop.models.filters import (
    DelayedMeasurementFilter,
    DelayedModeFilter,
    mode_transition_matrix,
)
from ncsloop.models.control_law import LQRSequenceLaw

__all__ = [
    "LinearPlant",
    "create_double_integrator",
    "LinearSensor",
    "DelayedMeasurementFilter",
    "DelayedModeFilter",
    "mode_transition_matrix",
    "LQRSequenceLaw",
]
