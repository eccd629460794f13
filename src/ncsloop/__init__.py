"""
ncsloop: one discrete-time cycle of a networked control loop

Sensor, controller and actuator exchange timestamped messages over a
lossy, delaying network. The loop keeps working when messages arrive late,
out of order, or not at all.

Core concepts:
- The controller sends whole input sequences, not single inputs
- The actuator buffers them and applies the age-correct input
- The age of the applied sequence is the mode of a jump-linear system
- The estimator runs with or without a fresh measurement
- Delays, discards and ACKs are accounted for congestion control

See SPEC_FULL.md and DESIGN.md for full details.
"""

__version__ = "0.1.0"
