"""
Pytest configuration and shared fixtures.

The collaborator fakes record every call so tests can check what the loop
asked of them.
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest


class FakePlant:
    """x_{k+1} = x_k + u_k (input broadcast to every component)."""

    dim_state = 2

    def __init__(self, bound: float = 100.0):
        self.bound = bound
        self.inputs = []
        self._u = np.zeros(1)

    def set_input(self, u):
        self._u = np.asarray(u, dtype=np.float64)
        self.inputs.append(self._u.copy())

    def simulate(self, state):
        return np.asarray(state, dtype=np.float64) + self._u.sum()

    def is_valid_state(self, state):
        return bool(np.all(np.abs(state) < self.bound))


class FakeSensor:
    """Measures the state exactly; a silent sensor never sends."""

    def __init__(self, silent: bool = False, is_event_based: bool = False):
        self.silent = silent
        self.is_event_based = is_event_based
        self.measurement_delta = 0.0
        self.measured = []

    def step(self, state):
        self.measured.append(np.asarray(state).copy())
        if self.silent:
            return None
        return np.asarray(state, dtype=np.float64).copy()


class FakeFilter:
    """Records predict/step calls; reports all measurements as used."""

    def __init__(self, dim: int = 2, counts=None, reject: bool = False):
        self.state = np.zeros(dim)
        self.counts = counts
        self.reject = reject
        self.calls = []
        self.mode_inputs = None
        self._last = (0, 0)

    def set_mode_inputs(self, inputs):
        self.mode_inputs = np.asarray(inputs)

    def predict(self):
        self.calls.append(("predict",))
        self._last = (0, 0)

    def step(self, measurements, delays):
        if self.reject:
            raise ValueError("dimension mismatch")
        self.calls.append(("step", list(measurements), list(delays)))
        self._last = self.counts if self.counts is not None else (len(measurements), 0)

    def get_state(self):
        return self.state.copy()

    def get_last_update_counts(self):
        return self._last


class FakeModeFilter(FakeFilter):
    """Mode-aware fake returning a fixed previous-mode estimate."""

    def __init__(self, previous_mode=1, **kwargs):
        super().__init__(**kwargs)
        self.previous_mode = previous_mode

    def step(self, measurements, delays, mode_observations=(), mode_delays=()):
        if self.reject:
            raise ValueError("dimension mismatch")
        self.calls.append(
            ("step", list(measurements), list(delays), list(mode_observations), list(mode_delays))
        )
        self._last = self.counts if self.counts is not None else (len(measurements), 0)

    def get_previous_mode_estimate(self):
        return self.previous_mode


class FakeControlLaw:
    """
    Sends sequence k*10 + (1, 2, ..., N) at step k, or nothing when silent.

    Records the previous mode it was conditioned on.
    """

    def __init__(self, sequence_length: int = 3, silent: bool = False):
        self.sequence_length = sequence_length
        self.silent = silent
        self.modes = []
        self.deadband = None

    def compute_sequence(self, estimate, previous_mode, time_step):
        self.modes.append(previous_mode)
        if self.silent:
            return None
        return (time_step * 10.0 + np.arange(1, self.sequence_length + 1)).reshape(-1, 1)

    def set_deadband(self, threshold):
        self.deadband = threshold

    def set_sequence_length(self, length):
        self.sequence_length = length

    def quality_of_control(self, state, time_step):
        return float(np.linalg.norm(state))

    def control_error(self, state, time_step):
        return float(np.linalg.norm(state))

    def stage_costs(self, state, u, time_step):
        state = np.asarray(state)
        u = np.asarray(u)
        return float(state @ state + u @ u)

    def total_costs(self, states, inputs):
        return float(np.sum(states ** 2) + np.sum(inputs ** 2))


@pytest.fixture
def fakes():
    """Namespace of fake collaborator classes."""

    class Fakes:
        Plant = FakePlant
        Sensor = FakeSensor
        Filter = FakeFilter
        ModeFilter = FakeModeFilter
        ControlLaw = FakeControlLaw

    return Fakes


@pytest.fixture
def make_loop():
    """Factory for an initialised ControlLoop wired with fakes."""
    from ncsloop.core import ControlLoop, LoopConfig, NetworkType

    def _make(
        network_type=NetworkType.UDP_LIKE_WITH_ACKS,
        sequence_length=3,
        state_filter=None,
        sensor=None,
        control_law=None,
        max_steps=None,
        initial_state=(0.0, 0.0),
    ):
        config = LoopConfig(
            name="test-loop",
            sampling_interval=0.1,
            network_type=network_type,
            default_input=(0.0,),
        )
        loop = ControlLoop(
            config,
            plant=FakePlant(),
            sensor=sensor if sensor is not None else FakeSensor(),
            state_filter=state_filter if state_filter is not None else FakeModeFilter(previous_mode=1),
            control_law=control_law if control_law is not None else FakeControlLaw(sequence_length),
        )
        if max_steps is not None:
            loop.init_statistics(max_steps)
        loop.init_plant(initial_state)
        return loop

    return _make


@pytest.fixture
def rng():
    """Reproducible random number generator."""
    return np.random.default_rng(seed=42)
