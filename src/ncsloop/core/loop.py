"""
Loop orchestrator: one networked control cycle per call.

Per time step k the loop runs, in order:
1. Routing: classify inbound messages, compute delays
2. Estimating: advance the filter (with or without measurements)
3. SequenceResolution: age/accept the actuator buffer, resolve u_k and θ_k
4. PlantAdvance: x_{k+1} = plant(x_k, u_k)
5. Sensing: measure x_k (event-triggered sensors may stay silent)
6. SequenceGeneration: U_k from the estimate and θ_{k−1}
7. Reporting: outgoing messages and per-cycle statistics

A cycle either completes or raises. There is no rollback: after an error
the loop's state is undefined until it is re-initialised.

The loop is not thread-safe; callers serialise access per instance.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Sequence
import logging

import numpy as np

from ncsloop.core.controller import ControlSequenceGenerator, resolve_previous_mode
from ncsloop.core.errors import ConfigurationError, InvalidTimestampError
from ncsloop.core.estimator import EstimatorAdapter
from ncsloop.core.messages import Message, Role, RoutedMessages, route_messages
from ncsloop.core.sequence_buffer import SequenceBuffer

if TYPE_CHECKING:
    from ncsloop.core.collaborators import ControlLaw, Filter, Plant, Sensor

logger = logging.getLogger(__name__)


class NetworkType(Enum):
    """Capabilities of the network between the loop components."""

    TCP_LIKE = "tcp_like"  # Previous true mode is fed back, no ACKs sent
    UDP_LIKE = "udp_like"  # No feedback at all
    UDP_LIKE_WITH_ACKS = "udp_like_with_acks"  # Actuator returns ACKs


@dataclass
class LoopConfig:
    """Configuration for one control loop instance."""

    name: str = "NCS"
    sampling_interval: float = 0.1  # Seconds (10 Hz); all components share the clock
    ticks_per_second: int = 10**12  # Resolution of external timestamps (picoseconds)
    network_type: NetworkType = NetworkType.UDP_LIKE_WITH_ACKS
    sequence_length: int | None = None  # N; taken from the control law if None
    default_input: Sequence[float] = (0.0,)  # Applied when the actuator buffer is empty

    def __post_init__(self):
        if not self.sampling_interval > 0:
            raise ConfigurationError(
                "sampling_interval", "sampling_interval must be a positive scalar"
            )
        if isinstance(self.network_type, str):
            self.network_type = NetworkType(self.network_type)
        if self.sampling_interval_ticks < 1:
            raise ConfigurationError(
                "sampling_interval", "sampling_interval is shorter than one tick"
            )

    @property
    def sampling_interval_ticks(self) -> int:
        return int(round(self.sampling_interval * self.ticks_per_second))


# Recognized override keys; camelCase spellings are accepted as aliases
_OVERRIDE_ALIASES = {
    "event_threshold": "event_threshold",
    "eventThreshold": "event_threshold",
    "sequence_length": "sequence_length",
    "sequenceLength": "sequence_length",
    "delay_distribution": "delay_distribution",
    "delayDistribution": "delay_distribution",
}


@dataclass
class ParamOverrides:
    """
    Sparse per-cycle parameter changes.

    Every field is optional. Overrides the configured collaborators do not
    support are ignored.
    """

    event_threshold: float | None = None  # Sensor delta / controller deadband
    sequence_length: int | None = None  # New N, if the control law can change it
    delay_distribution: np.ndarray | None = None  # Controller→actuator delay probabilities

    def __post_init__(self):
        if self.event_threshold is not None:
            if not np.isscalar(self.event_threshold) or not self.event_threshold >= 0:
                raise ConfigurationError(
                    "event_threshold", "event_threshold must be a nonnegative scalar"
                )
            self.event_threshold = float(self.event_threshold)

        if self.sequence_length is not None:
            n = self.sequence_length
            if isinstance(n, bool) or int(n) != n or n < 1:
                raise ConfigurationError(
                    "sequence_length", "sequence_length must be a positive integer"
                )
            self.sequence_length = int(n)

        if self.delay_distribution is not None:
            probs = np.asarray(self.delay_distribution, dtype=np.float64).ravel()
            if probs.size == 0 or np.any(probs < 0) or probs.sum() > 1.0 + 1e-9:
                raise ConfigurationError(
                    "delay_distribution",
                    "delay_distribution must be a nonnegative vector summing to at most 1",
                )
            self.delay_distribution = probs

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any] | None) -> "ParamOverrides":
        """Build overrides from a loosely typed mapping, ignoring unknown keys."""
        if not params:
            return cls()
        known = {}
        for key, value in params.items():
            name = _OVERRIDE_ALIASES.get(key)
            if name is None:
                logger.debug("Ignoring unknown parameter override %r", key)
                continue
            known[name] = value
        return cls(**known)

    @property
    def is_empty(self) -> bool:
        return (
            self.event_threshold is None
            and self.sequence_length is None
            and self.delay_distribution is None
        )


@dataclass
class CycleStatistics:
    """Statistics reported at the end of one cycle."""

    actual_control_error: float
    estimated_control_error: float
    actual_stage_costs: float
    plant_state_admissible: bool
    sc_sent: bool  # Sensor sent a measurement
    ca_sent: bool  # Controller sent a sequence
    ac_sent: bool  # Actuator sent an ACK
    sc_delays: list[int] = field(default_factory=list)
    ca_delays: list[int] = field(default_factory=list)
    ac_delays: list[int] = field(default_factory=list)
    num_used_measurements: int = 0
    num_discarded_measurements: int = 0
    num_discarded_sequences: int = 0
    mode: int = 0  # θ_k

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class CycleResult:
    """Everything one cycle hands back to the caller."""

    outgoing: list[Message]
    quality_of_control: float
    statistics: CycleStatistics


class StatisticsRecorder:
    """
    Preallocated per-step recording for a known horizon.

    Arrays are indexed by time step k ∈ [0, max_steps]:
    - true_states[k]: x_k (one extra row holds the state after the last step)
    - true_modes[k]: θ_k, row 0 starts at the sentinel mode
    - applied_inputs[k]: u_k
    Unrecorded entries are NaN.
    """

    def __init__(self, max_steps: int, dim_state: int, dim_input: int):
        if isinstance(max_steps, bool) or int(max_steps) != max_steps or max_steps < 1:
            raise ConfigurationError("max_steps", "max_steps must be a positive integer")
        self.max_steps = int(max_steps)
        n = self.max_steps + 1

        self.true_states = np.full((n + 1, dim_state), np.nan)
        self.true_modes = np.full(n, np.nan)
        self.applied_inputs = np.full((n, dim_input), np.nan)
        self.num_used_measurements = np.full(n, np.nan)
        self.num_discarded_measurements = np.full(n, np.nan)
        self.num_discarded_sequences = np.full(n, np.nan)
        self.last_step: int | None = None

    def record_initial(self, state: np.ndarray, mode: int):
        self.true_states[0] = state
        self.true_modes[0] = mode

    def check_step(self, time_step: int):
        if time_step < 1:
            raise InvalidTimestampError(time_step, "step 0 holds the initial state")
        if time_step > self.max_steps:
            raise InvalidTimestampError(
                time_step, f"beyond recording horizon of {self.max_steps} steps"
            )

    def record_step(
        self,
        time_step: int,
        state: np.ndarray,
        next_state: np.ndarray,
        mode: int,
        applied_input: np.ndarray,
        num_used: int,
        num_discarded_measurements: int,
        num_discarded_sequences: int,
    ):
        k = time_step
        self.true_states[k] = state
        self.true_states[k + 1] = next_state
        self.true_modes[k] = mode
        self.applied_inputs[k] = applied_input
        self.num_used_measurements[k] = num_used
        self.num_discarded_measurements[k] = num_discarded_measurements
        self.num_discarded_sequences[k] = num_discarded_sequences
        self.last_step = k

    def recorded_trajectory(self) -> tuple[np.ndarray, np.ndarray]:
        """
        States and inputs of the steps recorded so far.

        Returns:
            (states, inputs) with shapes (K+1, dim_state) and (K, dim_input)
        """
        if self.last_step is None:
            return self.true_states[:1].copy(), self.applied_inputs[:0].copy()
        steps = np.flatnonzero(~np.isnan(self.applied_inputs[: self.last_step + 1]).any(axis=1))
        states = np.vstack([self.true_states[steps], self.true_states[self.last_step + 1]])
        return states, self.applied_inputs[steps].copy()

    def as_dict(self) -> dict:
        return {
            "true_states": self.true_states.copy(),
            "true_modes": self.true_modes.copy(),
            "applied_inputs": self.applied_inputs.copy(),
            "num_used_measurements": self.num_used_measurements.copy(),
            "num_discarded_measurements": self.num_discarded_measurements.copy(),
            "num_discarded_sequences": self.num_discarded_sequences.copy(),
        }


class ControlLoop:
    """
    One networked control system: plant, sensor, actuator and controller.

    Collaborators may be attached after construction, but all of them must
    be present before `init_plant`. The loop exclusively owns its state:
    plant state and mode, the actuator buffer, the controller history and
    the filter's belief.
    """

    def __init__(
        self,
        config: LoopConfig | None = None,
        plant: "Plant | None" = None,
        sensor: "Sensor | None" = None,
        state_filter: "Filter | None" = None,
        control_law: "ControlLaw | None" = None,
    ):
        self.config = config or LoopConfig()
        self.plant = plant
        self.sensor = sensor
        self.state_filter = state_filter
        self.control_law = control_law

        self.plant_state: np.ndarray | None = None
        self.plant_mode: int | None = None
        self.last_time_step: int | None = None
        self.statistics: StatisticsRecorder | None = None

        self.actuator_buffer: SequenceBuffer | None = None
        self.estimator: EstimatorAdapter | None = None
        self.generator: ControlSequenceGenerator | None = None
        self._last_estimate: np.ndarray | None = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def network_type(self) -> NetworkType:
        return self.config.network_type

    @property
    def sequence_length(self) -> int:
        self._check_controller()
        if self.generator is not None:
            return self.generator.sequence_length
        if self.config.sequence_length is not None:
            return int(self.config.sequence_length)
        return int(self.control_law.sequence_length)

    # ═══════════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════════

    def init_plant(self, state: Sequence[float] | np.ndarray):
        """
        Set the initial plant state and build the loop's internal components.

        The initial mode is the sentinel N+1: no sequence has been applied.
        """
        self._check_plant()
        self._check_controller()
        self._check_filter()

        x0 = np.asarray(state, dtype=np.float64)
        if x0.ndim == 2 and 1 in x0.shape:
            x0 = x0.ravel()  # Row or column vector
        if x0.ndim != 1 or x0.size != self.plant.dim_state or not np.all(np.isfinite(x0)):
            raise ConfigurationError(
                "plant state",
                "cannot init plant: state must be a real-valued "
                f"{self.plant.dim_state}-dimensional vector",
            )

        n = self.sequence_length
        default_input = self.config.default_input
        self.actuator_buffer = SequenceBuffer(n, default_input)
        self.generator = ControlSequenceGenerator(self.control_law, n, default_input)
        self.estimator = EstimatorAdapter(self.state_filter)

        self.plant_state = x0
        self.plant_mode = self.actuator_buffer.sentinel_mode
        self.last_time_step = None
        if self.statistics is not None:
            self.statistics.record_initial(self.plant_state, self.plant_mode)

        logger.info("Initialised plant of %s (N=%d, %s)", self.name, n, self.network_type.value)

    def init_statistics(self, max_steps: int):
        """Preallocate recording for `max_steps` cycles and record step 0."""
        self._check_plant()
        dim_input = np.atleast_1d(np.asarray(self.config.default_input)).size
        self.statistics = StatisticsRecorder(max_steps, self.plant.dim_state, dim_input)
        if self.plant_state is not None:
            self.statistics.record_initial(self.plant_state, self.plant_mode)

    def get_statistics(self) -> dict:
        if self.statistics is None:
            raise ConfigurationError("statistics", "statistics recording has not been initialised")
        return self.statistics.as_dict()

    # ═══════════════════════════════════════════════════════════════
    # Parameter overrides
    # ═══════════════════════════════════════════════════════════════

    def apply_overrides(self, overrides: ParamOverrides | Mapping[str, Any] | None):
        """Apply sparse parameter changes; unsupported ones are no-ops."""
        if not isinstance(overrides, ParamOverrides):
            overrides = ParamOverrides.from_mapping(overrides)
        if overrides.is_empty:
            return

        if overrides.event_threshold is not None:
            if self.sensor is not None and getattr(self.sensor, "is_event_based", False):
                self.sensor.measurement_delta = overrides.event_threshold
            set_deadband = getattr(self.control_law, "set_deadband", None)
            if set_deadband is not None:
                set_deadband(overrides.event_threshold)

        if overrides.delay_distribution is not None:
            set_probs = getattr(self.control_law, "set_delay_distribution", None)
            if set_probs is not None:
                set_probs(overrides.delay_distribution)

        if overrides.sequence_length is not None:
            set_length = getattr(self.control_law, "set_sequence_length", None)
            if set_length is not None and overrides.sequence_length != self.sequence_length:
                set_length(overrides.sequence_length)
                self._resize(overrides.sequence_length)

    def _resize(self, sequence_length: int):
        if self.actuator_buffer is not None:
            self.actuator_buffer.resize(sequence_length)
        if self.generator is not None:
            self.generator.resize(sequence_length)
        if self.plant_mode is not None:
            self.plant_mode = min(self.plant_mode, sequence_length + 1)
        logger.info("%s: control sequence length changed to %d", self.name, sequence_length)

    # ═══════════════════════════════════════════════════════════════
    # Control cycle
    # ═══════════════════════════════════════════════════════════════

    def step(
        self,
        time_step: int,
        inbound: RoutedMessages | Iterable[Message] = (),
    ) -> CycleResult:
        """
        Execute one time-triggered control cycle at time step k.

        Args:
            time_step: Cycle index k, strictly increasing between calls
            inbound: Already routed messages, or a raw batch to route

        Returns:
            CycleResult with outgoing messages (ACK, measurement, sequence),
            the controller's quality of control, and cycle statistics
        """
        self._check_plant()
        self._check_controller()
        self._check_sensor()
        if self.plant_state is None or self.actuator_buffer is None:
            raise ConfigurationError("plant state", "plant has not been initialised")
        self.check_time_step(time_step)

        # 1. Routing
        if isinstance(inbound, RoutedMessages):
            routed = inbound
        else:
            routed = route_messages(inbound, time_step)

        # 2. Estimating
        estimate_update = self.estimator.update(
            routed.measurements,
            routed.acks,
            time_step,
            mode_inputs=self.generator.mode_specific_inputs(time_step),
        )
        estimate = self.estimator.get_state()

        # 3. Sequence resolution: θ_{k−1} must be read before it is replaced
        previous_true_mode = self.plant_mode
        actuator = self.actuator_buffer.step(routed.sequences, time_step)

        # 4. Plant advance
        state = self.plant_state
        self.plant.set_input(actuator.applied_input)
        next_state = np.asarray(self.plant.simulate(state), dtype=np.float64).ravel()

        # 5. Sensing the pre-transition state
        measurement = self.sensor.step(state)

        # 6. Sequence generation
        true_mode = previous_true_mode if self.network_type == NetworkType.TCP_LIKE else None
        previous_mode = resolve_previous_mode(true_mode, estimate_update.previous_mode, time_step)
        sequence = self.generator.generate(estimate, previous_mode, time_step)

        self.plant_mode = actuator.mode
        self.plant_state = next_state
        self.last_time_step = time_step
        self._last_estimate = estimate

        # 7. Reporting
        ack = actuator.ack
        if self.network_type != NetworkType.UDP_LIKE_WITH_ACKS:
            ack = None
        outgoing = self._assemble_outgoing(time_step, ack, measurement, sequence)

        if self.statistics is not None:
            self.statistics.record_step(
                time_step,
                state,
                next_state,
                actuator.mode,
                actuator.applied_input,
                estimate_update.num_used,
                estimate_update.num_discarded,
                actuator.num_discarded,
            )

        admissible = self.is_plant_state_admissible()
        if not admissible:
            logger.warning("%s: plant state not admissible at step %d", self.name, time_step)

        actual_error, estimated_error = self.control_error(time_step)
        statistics = CycleStatistics(
            actual_control_error=actual_error,
            estimated_control_error=estimated_error,
            actual_stage_costs=self.stage_costs(state, actuator.applied_input, time_step),
            plant_state_admissible=admissible,
            sc_sent=measurement is not None,
            ca_sent=sequence is not None,
            ac_sent=ack is not None,
            sc_delays=routed.measurement_delays,
            ca_delays=routed.sequence_delays,
            ac_delays=routed.ack_delays,
            num_used_measurements=estimate_update.num_used,
            num_discarded_measurements=estimate_update.num_discarded,
            num_discarded_sequences=actuator.num_discarded,
            mode=actuator.mode,
        )
        logger.debug(
            "%s step %d: mode=%d used=%d discarded_seq=%d out=%d",
            self.name, time_step, actuator.mode, estimate_update.num_used,
            actuator.num_discarded, len(outgoing),
        )

        return CycleResult(
            outgoing=outgoing,
            quality_of_control=self.quality_of_control(time_step),
            statistics=statistics,
        )

    def _assemble_outgoing(
        self,
        time_step: int,
        ack: Message | None,
        measurement: np.ndarray | None,
        sequence: np.ndarray | None,
    ) -> list[Message]:
        outgoing = []
        if ack is not None:
            outgoing.append(ack)
        if measurement is not None:
            outgoing.append(
                Message(
                    source=Role.SENSOR,
                    destination=Role.CONTROLLER,
                    origin_time_step=time_step,
                    payload=np.asarray(measurement, dtype=np.float64),
                )
            )
        if sequence is not None:
            outgoing.append(
                Message(
                    source=Role.CONTROLLER,
                    destination=Role.ACTUATOR,
                    origin_time_step=time_step,
                    payload=sequence,
                )
            )
        return outgoing

    # ═══════════════════════════════════════════════════════════════
    # Quality of control
    # ═══════════════════════════════════════════════════════════════

    def quality_of_control(self, time_step: int) -> float:
        """QoC as perceived by the controller; small values are good."""
        self._check_plant_state()
        return float(self.control_law.quality_of_control(self.plant_state, time_step))

    def control_error(self, time_step: int) -> tuple[float, float]:
        """(actual, estimated) control error at the current state."""
        self._check_plant_state()
        actual = float(self.control_law.control_error(self.plant_state, time_step))
        if self._last_estimate is None:
            return actual, float("nan")
        estimated = float(self.control_law.control_error(self._last_estimate, time_step))
        return actual, estimated

    def stage_costs(self, state: np.ndarray, u: np.ndarray, time_step: int) -> float:
        return float(self.control_law.stage_costs(state, u, time_step))

    def is_plant_state_admissible(self) -> bool:
        self._check_plant_state()
        return bool(self.plant.is_valid_state(self.plant_state))

    def total_control_costs(self) -> float:
        """Accumulated costs of the recorded trajectory."""
        self._check_controller()
        if self.statistics is None:
            raise ConfigurationError("statistics", "statistics recording has not been initialised")
        states, inputs = self.statistics.recorded_trajectory()
        return float(self.control_law.total_costs(states, inputs))

    # ═══════════════════════════════════════════════════════════════
    # Checks
    # ═══════════════════════════════════════════════════════════════

    def check_time_step(self, time_step: int):
        """Raise InvalidTimestampError unless `time_step` can be the next cycle."""
        if isinstance(time_step, bool) or not isinstance(time_step, (int, np.integer)):
            raise InvalidTimestampError(time_step, "time step must be an integer")
        if time_step < 0:
            raise InvalidTimestampError(time_step, "time step must be nonnegative")
        if self.last_time_step is not None and time_step <= self.last_time_step:
            raise InvalidTimestampError(
                time_step, f"time step must increase (last was {self.last_time_step})"
            )
        if self.statistics is not None:
            self.statistics.check_step(time_step)

    def _check_plant(self):
        if self.plant is None:
            raise ConfigurationError("plant")

    def _check_sensor(self):
        if self.sensor is None:
            raise ConfigurationError("sensor")

    def _check_controller(self):
        if self.control_law is None:
            raise ConfigurationError("controller")

    def _check_filter(self):
        if self.state_filter is None:
            raise ConfigurationError("filter")

    def _check_plant_state(self):
        self._check_plant()
        self._check_controller()
        if self.plant_state is None:
            raise ConfigurationError("plant state", "plant has not been initialised")
