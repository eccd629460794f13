"""
Core control-loop primitives.

This layer knows NOTHING about concrete plants, filters or control laws.
It only knows:
- Messages, their routes and delays
- The actuator's buffer of control sequences indexed by age (the mode)
- How to drive an estimator with or without fresh measurements
- How to ask a control law for the next sequence
- The order of the seven stages of one control cycle

Collaborators are specified as protocols in `collaborators`.
"""

from ncsloop.core.errors import (
    NcsError,
    RoutingError,
    ProtocolError,
    InvalidTimestampError,
    EstimatorError,
    MissingModeError,
    ConfigurationError,
)
from ncsloop.core.messages import (
    Role,
    Message,
    MessageInbox,
    RoutedMessages,
    route_messages,
    route_inbox,
)
from ncsloop.core.sequence_buffer import SequenceBuffer, SequenceSlot, ActuatorOutcome
from ncsloop.core.collaborators import Plant, Sensor, Filter, ControlLaw
from ncsloop.core.estimator import EstimatorAdapter, EstimateUpdate, compute_mode_observations
from ncsloop.core.controller import ControlSequenceGenerator, resolve_previous_mode
from ncsloop.core.loop import (
    NetworkType,
    LoopConfig,
    ParamOverrides,
    CycleStatistics,
    CycleResult,
    StatisticsRecorder,
    ControlLoop,
)

__all__ = [
    "NcsError",
    "RoutingError",
    "ProtocolError",
    "InvalidTimestampError",
    "EstimatorError",
    "MissingModeError",
    "ConfigurationError",
    "Role",
    "Message",
    "MessageInbox",
    "RoutedMessages",
    "route_messages",
    "route_inbox",
    "SequenceBuffer",
    "SequenceSlot",
    "ActuatorOutcome",
    "Plant",
    "Sensor",
    "Filter",
    "ControlLaw",
    "EstimatorAdapter",
    "EstimateUpdate",
    "compute_mode_observations",
    "ControlSequenceGenerator",
    "resolve_previous_mode",
    "NetworkType",
    "LoopConfig",
    "ParamOverrides",
    "CycleStatistics",
    "CycleResult",
    "StatisticsRecorder",
    "ControlLoop",
]
