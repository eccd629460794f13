"""Unit tests for the control loop orchestrator."""

import logging

import numpy as np
import pytest

from ncsloop.core.errors import (
    ConfigurationError,
    InvalidTimestampError,
    MissingModeError,
)
from ncsloop.core.loop import (
    ControlLoop,
    LoopConfig,
    NetworkType,
    ParamOverrides,
)
from ncsloop.core.messages import Role


def feed_back(result):
    """Deliver everything a cycle sent on the next cycle (delay 1)."""
    return list(result.outgoing)


class TestLoopConfig:
    """Configuration validation."""

    def test_defaults(self):
        config = LoopConfig()
        assert config.network_type == NetworkType.UDP_LIKE_WITH_ACKS
        assert config.sampling_interval_ticks == 10**11

    def test_network_type_from_string(self):
        config = LoopConfig(network_type="tcp_like")
        assert config.network_type == NetworkType.TCP_LIKE

    def test_unknown_network_type(self):
        with pytest.raises(ValueError):
            LoopConfig(network_type="carrier_pigeon")

    @pytest.mark.parametrize("interval", [0.0, -0.1, 1e-15])
    def test_invalid_sampling_interval(self, interval):
        with pytest.raises(ConfigurationError):
            LoopConfig(sampling_interval=interval)


class TestInitialisation:
    """init_plant and missing collaborators."""

    def test_missing_plant(self, fakes):
        loop = ControlLoop(
            sensor=fakes.Sensor(), state_filter=fakes.Filter(), control_law=fakes.ControlLaw()
        )
        with pytest.raises(ConfigurationError) as excinfo:
            loop.init_plant([0.0, 0.0])
        assert excinfo.value.missing == "plant"

    def test_missing_controller(self, fakes):
        loop = ControlLoop(plant=fakes.Plant(), sensor=fakes.Sensor(), state_filter=fakes.Filter())
        with pytest.raises(ConfigurationError) as excinfo:
            loop.init_plant([0.0, 0.0])
        assert excinfo.value.missing == "controller"

    def test_missing_filter(self, fakes):
        loop = ControlLoop(
            plant=fakes.Plant(), sensor=fakes.Sensor(), control_law=fakes.ControlLaw()
        )
        with pytest.raises(ConfigurationError) as excinfo:
            loop.init_plant([0.0, 0.0])
        assert excinfo.value.missing == "filter"

    def test_state_filter_wired_to_estimator(self, make_loop, fakes):
        state_filter = fakes.ModeFilter()
        loop = make_loop(state_filter=state_filter)
        assert loop.state_filter is state_filter
        assert loop.estimator.state_filter is state_filter

    def test_missing_sensor_detected_on_step(self, fakes):
        loop = ControlLoop(
            plant=fakes.Plant(), state_filter=fakes.ModeFilter(), control_law=fakes.ControlLaw()
        )
        loop.init_plant([0.0, 0.0])
        with pytest.raises(ConfigurationError) as excinfo:
            loop.step(1)
        assert excinfo.value.missing == "sensor"

    def test_step_before_init(self, fakes):
        loop = ControlLoop(
            plant=fakes.Plant(),
            sensor=fakes.Sensor(),
            state_filter=fakes.ModeFilter(),
            control_law=fakes.ControlLaw(),
        )
        with pytest.raises(ConfigurationError):
            loop.step(1)

    @pytest.mark.parametrize(
        "state",
        [[0.0], [0.0, 0.0, 0.0], [np.nan, 0.0], [[0.0, 1.0], [2.0, 3.0]]],
    )
    def test_invalid_initial_state(self, make_loop, state):
        with pytest.raises(ConfigurationError):
            make_loop(initial_state=state)

    def test_column_vector_accepted(self, make_loop):
        loop = make_loop(initial_state=[[1.0], [2.0]])
        assert np.array_equal(loop.plant_state, [1.0, 2.0])

    def test_initial_mode_is_sentinel(self, make_loop):
        loop = make_loop(sequence_length=3)
        assert loop.plant_mode == 4
        assert loop.sequence_length == 3


class TestTimeSteps:
    """Validation of the cycle index."""

    def test_must_increase(self, make_loop):
        loop = make_loop()
        loop.step(3)
        with pytest.raises(InvalidTimestampError):
            loop.step(3)
        with pytest.raises(InvalidTimestampError):
            loop.step(2)

    @pytest.mark.parametrize("time_step", [-1, 1.0, True, "1"])
    def test_invalid_values(self, make_loop, time_step):
        with pytest.raises(InvalidTimestampError):
            make_loop().step(time_step)

    def test_numpy_integer_accepted(self, make_loop):
        make_loop().step(np.int64(2))

    def test_gaps_allowed(self, make_loop):
        loop = make_loop()
        loop.step(1)
        loop.step(5)
        assert loop.last_time_step == 5

    def test_gap_ages_buffered_sequence(self, make_loop):
        loop = make_loop()
        first = loop.step(1)
        loop.step(2, feed_back(first))

        # Three steps on, the sequence from step 1 is in its last mode
        result = loop.step(4)
        assert result.statistics.mode == 3
        assert np.array_equal(loop.plant.inputs[-1], [13.0])

    def test_gap_past_horizon_applies_default(self, make_loop):
        loop = make_loop()
        sequence = loop.step(1).outgoing[-1]
        assert loop.step(2, [sequence]).statistics.mode == 1

        result = loop.step(6)
        assert result.statistics.mode == 4
        assert np.array_equal(loop.plant.inputs[-1], [0.0])

    def test_gap_shifts_mode_inputs_for_filter(self, make_loop, fakes):
        state_filter = fakes.ModeFilter(previous_mode=1)
        loop = make_loop(state_filter=state_filter)
        loop.step(1)
        loop.step(3)
        # Mode 2 at step 3 applies element 2 of the sequence from step 1
        assert np.array_equal(state_filter.mode_inputs.ravel(), [0.0, 12.0, 0.0, 0.0])


class TestCycle:
    """One and two full cycles with a mode-aware filter over UDP with ACKs."""

    def test_first_cycle(self, make_loop):
        loop = make_loop()
        result = loop.step(1)
        stats = result.statistics

        assert [m.source for m in result.outgoing] == [Role.SENSOR, Role.CONTROLLER]
        assert stats.mode == 4
        assert stats.sc_sent and stats.ca_sent
        assert not stats.ac_sent
        assert stats.num_used_measurements == 0

    def test_outgoing_messages_stamped(self, make_loop):
        result = make_loop().step(1)
        measurement, sequence = result.outgoing

        assert measurement.destination == Role.CONTROLLER
        assert measurement.origin_time_step == 1
        assert sequence.destination == Role.ACTUATOR
        assert sequence.origin_time_step == 1
        assert np.array_equal(sequence.payload.ravel(), [11.0, 12.0, 13.0])

    def test_second_cycle_applies_sequence(self, make_loop):
        loop = make_loop()
        first = loop.step(1)
        result = loop.step(2, feed_back(first))
        stats = result.statistics

        ack, measurement, sequence = result.outgoing
        assert ack.is_ack
        assert ack.payload == 1
        assert ack.origin_time_step == 2
        assert stats.mode == 1
        assert stats.ca_delays == [1]
        assert stats.sc_delays == [1]
        assert stats.ac_sent
        assert stats.num_used_measurements == 1
        # Input 11 was applied to the plant x + u
        assert np.array_equal(loop.plant_state, [11.0, 11.0])
        # The sensor measured the state before the transition
        assert np.array_equal(measurement.payload, [0.0, 0.0])

    def test_statistics_of_cycle(self, make_loop):
        loop = make_loop()
        first = loop.step(1)
        stats = loop.step(2, feed_back(first)).statistics

        assert stats.actual_stage_costs == pytest.approx(121.0)
        assert stats.actual_control_error == pytest.approx(np.sqrt(242.0))
        assert stats.estimated_control_error == pytest.approx(0.0)
        assert stats.plant_state_admissible
        assert stats.as_dict()["mode"] == 1

    def test_quality_of_control_uses_new_state(self, make_loop):
        loop = make_loop()
        first = loop.step(1)
        result = loop.step(2, feed_back(first))
        assert result.quality_of_control == pytest.approx(np.sqrt(242.0))

    def test_ack_iff_accepted(self, make_loop):
        loop = make_loop()
        first = loop.step(1)
        second = loop.step(3, feed_back(first))
        # Replay the old sequence: it is not newer than the buffered one
        stale = [m for m in first.outgoing if m.destination == Role.ACTUATOR]
        result = loop.step(4, stale)

        assert second.statistics.ac_sent
        assert not result.statistics.ac_sent
        assert result.statistics.num_discarded_sequences == 1
        assert not any(m.is_ack for m in result.outgoing)

    def test_silent_sensor_and_controller(self, make_loop, fakes):
        loop = make_loop(
            sensor=fakes.Sensor(silent=True),
            control_law=fakes.ControlLaw(3, silent=True),
        )
        result = loop.step(1)
        assert result.outgoing == []
        assert not result.statistics.sc_sent
        assert not result.statistics.ca_sent

    def test_law_conditioned_on_estimated_mode(self, make_loop, fakes):
        law = fakes.ControlLaw(3)
        loop = make_loop(state_filter=fakes.ModeFilter(previous_mode=2), control_law=law)
        loop.step(1)
        assert law.modes == [2]

    def test_inadmissible_state_logged(self, make_loop, caplog):
        loop = make_loop(initial_state=[500.0, 0.0])
        with caplog.at_level(logging.WARNING, logger="ncsloop.core.loop"):
            result = loop.step(1)
        assert not result.statistics.plant_state_admissible
        assert "not admissible" in caplog.text

    def test_control_error_before_first_step(self, make_loop):
        actual, estimated = make_loop(initial_state=[3.0, 4.0]).control_error(0)
        assert actual == pytest.approx(5.0)
        assert np.isnan(estimated)


class TestNetworkTypes:
    """Mode feedback and ACK suppression per network type."""

    def test_tcp_feeds_true_mode(self, make_loop, fakes):
        law = fakes.ControlLaw(3)
        loop = make_loop(
            network_type=NetworkType.TCP_LIKE, state_filter=fakes.Filter(), control_law=law
        )
        first = loop.step(1)
        second = loop.step(2, feed_back(first))
        loop.step(3)

        # Sentinel before anything was applied, then the mode of step 2
        assert law.modes == [4, 4, 1]
        assert not any(m.is_ack for m in second.outgoing)
        assert not second.statistics.ac_sent

    def test_tcp_ignores_mode_estimate(self, make_loop, fakes):
        law = fakes.ControlLaw(3)
        loop = make_loop(
            network_type=NetworkType.TCP_LIKE,
            state_filter=fakes.ModeFilter(previous_mode=2),
            control_law=law,
        )
        loop.step(1)
        assert law.modes == [4]

    def test_udp_without_estimate_fails(self, make_loop, fakes):
        loop = make_loop(network_type=NetworkType.UDP_LIKE, state_filter=fakes.Filter())
        with pytest.raises(MissingModeError):
            loop.step(1)

    def test_udp_suppresses_acks(self, make_loop):
        loop = make_loop(network_type=NetworkType.UDP_LIKE)
        first = loop.step(1)
        result = loop.step(2, feed_back(first))
        assert result.statistics.mode == 1
        assert not any(m.is_ack for m in result.outgoing)


class TestStatisticsRecording:
    """Preallocated recording over a fixed horizon."""

    def test_recorded_arrays(self, make_loop):
        loop = make_loop(max_steps=3, initial_state=[1.0, 2.0])
        first = loop.step(1)
        loop.step(2, feed_back(first))

        recorded = loop.get_statistics()
        assert recorded["true_states"].shape == (5, 2)
        assert np.array_equal(recorded["true_states"][0], [1.0, 2.0])
        assert np.array_equal(recorded["true_states"][3], [12.0, 13.0])
        assert recorded["true_modes"][0] == 4
        assert recorded["true_modes"][1] == 4
        assert recorded["true_modes"][2] == 1
        assert recorded["applied_inputs"][2, 0] == 11.0
        assert np.isnan(recorded["true_modes"][3])

    def test_beyond_horizon(self, make_loop):
        loop = make_loop(max_steps=2)
        loop.step(1)
        loop.step(2)
        with pytest.raises(InvalidTimestampError):
            loop.step(3)

    def test_step_zero_keeps_initial_record(self, make_loop):
        loop = make_loop(max_steps=3, initial_state=[1.0, 2.0])
        with pytest.raises(InvalidTimestampError):
            loop.step(0)

        recorded = loop.get_statistics()
        assert recorded["true_modes"][0] == 4
        assert np.array_equal(recorded["true_states"][0], [1.0, 2.0])
        assert loop.last_time_step is None

    def test_step_zero_allowed_without_recording(self, make_loop):
        assert make_loop().step(0).statistics.mode == 4

    def test_not_initialised(self, make_loop):
        with pytest.raises(ConfigurationError):
            make_loop().get_statistics()

    def test_invalid_horizon(self, make_loop):
        with pytest.raises(ConfigurationError):
            make_loop(max_steps=0)

    def test_total_control_costs(self, make_loop):
        loop = make_loop(max_steps=5)
        first = loop.step(1)
        loop.step(2, feed_back(first))
        # States (0,0), (0,0), (11,11); inputs 0 and 11
        assert loop.total_control_costs() == pytest.approx(242.0 + 121.0)


class TestParamOverrides:
    """Sparse runtime parameter changes."""

    def test_empty(self):
        assert ParamOverrides().is_empty
        assert ParamOverrides.from_mapping(None).is_empty
        assert ParamOverrides.from_mapping({"unknown": 1}).is_empty

    def test_camel_case_aliases(self):
        overrides = ParamOverrides.from_mapping(
            {"eventThreshold": 0.5, "sequenceLength": 2, "delayDistribution": [0.5, 0.5]}
        )
        assert overrides.event_threshold == 0.5
        assert overrides.sequence_length == 2
        assert np.array_equal(overrides.delay_distribution, [0.5, 0.5])

    @pytest.mark.parametrize(
        "params",
        [
            {"event_threshold": -1.0},
            {"event_threshold": [1.0, 2.0]},
            {"sequence_length": 0},
            {"sequence_length": 1.5},
            {"delay_distribution": [0.7, 0.7]},
            {"delay_distribution": [-0.1]},
        ],
    )
    def test_invalid_values(self, params):
        with pytest.raises(ConfigurationError):
            ParamOverrides.from_mapping(params)

    def test_event_threshold_to_event_based_sensor(self, make_loop, fakes):
        sensor = fakes.Sensor(is_event_based=True)
        loop = make_loop(sensor=sensor)
        loop.apply_overrides({"event_threshold": 0.25})
        assert sensor.measurement_delta == 0.25
        assert loop.control_law.deadband == 0.25

    def test_event_threshold_ignored_by_periodic_sensor(self, make_loop):
        loop = make_loop()
        loop.apply_overrides({"event_threshold": 0.25})
        assert loop.sensor.measurement_delta == 0.0

    def test_unsupported_override_is_noop(self, make_loop):
        loop = make_loop()
        loop.apply_overrides({"delay_distribution": [0.2, 0.8]})
        loop.step(1)

    def test_sequence_length_change(self, make_loop):
        loop = make_loop(sequence_length=3)
        first = loop.step(1)
        loop.apply_overrides(ParamOverrides(sequence_length=2))

        assert loop.sequence_length == 2
        assert loop.control_law.sequence_length == 2
        assert loop.actuator_buffer.sentinel_mode == 3
        assert loop.plant_mode == 3

        result = loop.step(2, feed_back(first))
        assert result.statistics.mode == 1
        sequence = [m for m in result.outgoing if m.destination == Role.ACTUATOR][0]
        assert sequence.payload.shape == (2, 1)
