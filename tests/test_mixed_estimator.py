"""
Unit tests for the mixed (ranging + RSSI) source estimator.

Tests cover:
- Accuracy on noise-free fused, mixed and ranging-only scenarios
- Readiness rules and observation validation
- Idle/Running lifecycle: listeners, LockedError, failure leaves state intact
- Configuration setters and reproducibility
"""

import numpy as np
import pytest

from rfsource_core.errors import (
    InvalidArgumentError,
    LockedError,
    NotReadyError,
    NumericalError,
)
from rfsource_core.localization import (
    EstimatorListener,
    EstimatorState,
    MixedEstimatorConfig,
    MixedSourceEstimator,
    check_sufficiency,
)
from rfsource_core.metrics import get_metrics
from rfsource_core.proto import RadioSource, fused_observation, ranging_observation
from tests.conftest import make_scenario


class RecordingListener(EstimatorListener):
    """Records events and tries to mutate the estimator from callbacks."""

    def __init__(self):
        self.events = []
        self.locked_errors = 0

    def on_start(self, estimator):
        self.events.append('start')
        assert estimator.is_locked()
        try:
            estimator.path_loss_estimation_enabled = True
        except LockedError:
            self.locked_errors += 1
        try:
            estimator.estimate()
        except LockedError:
            self.locked_errors += 1

    def on_end(self, estimator):
        self.events.append('end')
        try:
            estimator.observations = estimator.observations
        except LockedError:
            self.locked_errors += 1


# =============================================================================
# Accuracy
# =============================================================================


class TestAccuracy:
    """Noise-free scenarios are recovered exactly."""

    def test_fused_3d(self, fused_scenario_3d):
        """50 fused observations: position and power within 1e-6."""
        scenario = fused_scenario_3d
        estimator = MixedSourceEstimator(scenario.observations)

        assert estimator.is_ready()
        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, scenario.position, atol=1e-6)
        assert estimate.transmitted_power_dbm == pytest.approx(scenario.power_dbm, abs=1e-6)
        assert estimator.estimated_transmitted_power_mw == pytest.approx(
            10.0 ** (scenario.power_dbm / 10.0), rel=1e-5
        )
        assert estimator.estimated_covariance.shape == (4, 4)
        assert estimator.estimated_position_covariance.shape == (3, 3)
        assert estimator.estimated_transmitted_power_variance > 0
        assert estimator.estimated_path_loss_exponent_variance is None

    def test_fused_2d(self, fused_scenario_2d):
        scenario = fused_scenario_2d
        estimator = MixedSourceEstimator(scenario.observations)

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, scenario.position, atol=1e-6)
        assert estimate.transmitted_power_dbm == pytest.approx(scenario.power_dbm, abs=1e-6)

    def test_mixed_kinds_3d(self, rng):
        """Ranging-only, RSSI-only and fused observations together."""
        scenario = make_scenario(rng, num=30, dim=3, kind='mixed')
        estimator = MixedSourceEstimator(scenario.observations)

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, scenario.position, atol=1e-6)
        assert estimate.transmitted_power_dbm == pytest.approx(scenario.power_dbm, abs=1e-6)

    def test_path_loss_estimation(self, rng):
        scenario = make_scenario(rng, num=40, dim=3, kind='fused', path_loss_exponent=3.1)
        estimator = MixedSourceEstimator(
            scenario.observations,
            MixedEstimatorConfig(path_loss_estimation_enabled=True),
        )

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, scenario.position, atol=1e-5)
        assert estimate.path_loss_exponent == pytest.approx(3.1, abs=1e-5)
        assert estimator.estimated_path_loss_exponent_variance > 0

    def test_ranging_only_without_power(self, rng):
        scenario = make_scenario(rng, num=10, dim=3, kind='ranging')
        estimator = MixedSourceEstimator(
            scenario.observations,
            MixedEstimatorConfig(transmitted_power_estimation_enabled=False),
        )

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, scenario.position, atol=1e-6)
        assert estimate.transmitted_power_dbm is None
        assert estimator.estimated_transmitted_power_mw is None

    def test_inhomogeneous_bootstrap(self, fused_scenario_3d):
        estimator = MixedSourceEstimator(fused_scenario_3d.observations)
        estimator.homogeneous_linear_solver = False

        estimate = estimator.estimate()

        np.testing.assert_allclose(estimate.position, fused_scenario_3d.position, atol=1e-6)

    def test_initial_position_skips_bootstrap(self, fused_scenario_3d):
        estimator = MixedSourceEstimator(
            fused_scenario_3d.observations,
            initial_position=fused_scenario_3d.position + 1.0,
        )

        estimator.estimate()

        assert get_metrics().get_counter('linear_solves') == 0
        np.testing.assert_allclose(
            estimator.estimated_position, fused_scenario_3d.position, atol=1e-6
        )

    def test_repeat_is_bit_identical(self, fused_scenario_3d):
        """Estimation is deterministic on unchanged inputs."""
        estimator = MixedSourceEstimator(fused_scenario_3d.observations)

        first = estimator.estimate()
        second = estimator.estimate()

        assert np.array_equal(first.position, second.position)
        assert first.transmitted_power_dbm == second.transmitted_power_dbm
        assert np.array_equal(first.covariance, second.covariance)


# =============================================================================
# Readiness and validation
# =============================================================================


class TestReadiness:
    """Readiness rules and observation validation."""

    def test_not_ready_without_observations(self):
        estimator = MixedSourceEstimator()

        assert not estimator.is_ready()
        with pytest.raises(NotReadyError):
            estimator.estimate()
        assert get_metrics().get_failure_count('not_ready') == 1
        assert estimator.result is None

    def test_path_loss_without_power_needs_initial_power(self, fused_scenario_3d):
        estimator = MixedSourceEstimator(
            fused_scenario_3d.observations,
            MixedEstimatorConfig(
                transmitted_power_estimation_enabled=False,
                path_loss_estimation_enabled=True,
            ),
        )
        assert not estimator.is_ready()

        estimator.initial_transmitted_power_dbm = fused_scenario_3d.power_dbm
        assert estimator.is_ready()

        estimate = estimator.estimate()
        assert estimate.path_loss_exponent == pytest.approx(2.0, abs=1e-6)
        assert estimate.transmitted_power_dbm == fused_scenario_3d.power_dbm

    def test_min_observations(self):
        estimator = MixedSourceEstimator()
        assert estimator.min_observations == 5
        estimator.path_loss_estimation_enabled = True
        assert estimator.min_observations == 6
        estimator.initial_position = [0.0, 0.0]
        assert estimator.min_observations == 5

    def test_check_sufficiency(self, rng):
        config = MixedEstimatorConfig()
        ranging = make_scenario(rng, num=10, dim=3, kind='ranging').observations
        rssi = make_scenario(rng, num=10, dim=3, kind='rssi').observations

        assert check_sufficiency(ranging, config) is not None
        assert check_sufficiency(rssi, config) is not None
        assert check_sufficiency(ranging[:3] + rssi[:2], config) is not None
        assert check_sufficiency(ranging[:4] + rssi[:1], config) is None
        assert check_sufficiency([], config) == "no observations"

    def test_reject_empty(self):
        with pytest.raises(InvalidArgumentError):
            MixedSourceEstimator([])

    def test_reject_insufficient(self, rng):
        scenario = make_scenario(rng, num=4, dim=3, kind='fused')
        with pytest.raises(InvalidArgumentError):
            MixedSourceEstimator(scenario.observations)

    def test_reject_mixed_sources(self, fused_scenario_3d):
        other = RadioSource('other')
        observations = list(fused_scenario_3d.observations)
        observations.append(fused_observation(other, [0.0, 0.0, 0.0], 1.0, -60.0))
        with pytest.raises(InvalidArgumentError):
            MixedSourceEstimator(observations)

    def test_reject_mixed_dimensions(self, fused_scenario_3d):
        source = fused_scenario_3d.source
        observations = list(fused_scenario_3d.observations)
        observations.append(ranging_observation(source, [0.0, 0.0], 1.0))
        with pytest.raises(InvalidArgumentError):
            MixedSourceEstimator(observations)

    def test_reject_bad_initial_values(self):
        estimator = MixedSourceEstimator()
        with pytest.raises(InvalidArgumentError):
            estimator.initial_position = [0.0]
        with pytest.raises(InvalidArgumentError):
            estimator.initial_path_loss_exponent = 0.0

    def test_reject_bad_initial_values_in_constructor(self, fused_scenario_3d):
        with pytest.raises(InvalidArgumentError):
            MixedSourceEstimator(initial_path_loss_exponent=-1.0)
        with pytest.raises(InvalidArgumentError):
            MixedSourceEstimator(fused_scenario_3d.observations, initial_position=[0.0, 0.0])

    def test_initial_position_dimension_must_match(self, fused_scenario_3d, fused_scenario_2d):
        """Dimension mismatches are caught by the setters, not by estimate()."""
        estimator = MixedSourceEstimator(fused_scenario_3d.observations)
        with pytest.raises(InvalidArgumentError):
            estimator.initial_position = [1.0, 2.0]
        assert estimator.initial_position is None

        estimator.initial_position = [1.0, 2.0, 3.0]
        with pytest.raises(InvalidArgumentError):
            estimator.observations = fused_scenario_2d.observations
        assert estimator.observations is fused_scenario_3d.observations


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Idle/Running discipline and listener events."""

    def test_listener_events_and_locked(self, fused_scenario_3d):
        listener = RecordingListener()
        estimator = MixedSourceEstimator(fused_scenario_3d.observations, listener=listener)

        estimator.estimate()

        assert listener.events == ['start', 'end']
        assert listener.locked_errors == 3
        assert estimator.state == EstimatorState.IDLE
        assert not estimator.is_locked()
        assert not estimator.path_loss_estimation_enabled
        assert get_metrics().get_failure_count('locked') == 3

    def test_add_remove_listener(self, fused_scenario_3d):
        listener = RecordingListener()
        estimator = MixedSourceEstimator(fused_scenario_3d.observations)
        estimator.add_listener(listener)
        estimator.remove_listener(listener)

        estimator.estimate()

        assert listener.events == []

    def test_failure_keeps_previous_result(self, fused_scenario_3d):
        """A failed estimate returns to IDLE and keeps earlier results."""
        estimator = MixedSourceEstimator(fused_scenario_3d.observations)
        previous = estimator.estimate()

        source = fused_scenario_3d.source
        collinear = [
            fused_observation(source, [float(i), 0.0, 0.0], 5.0 + i, -60.0)
            for i in range(6)
        ]
        estimator.observations = collinear
        with pytest.raises(NumericalError):
            estimator.estimate()

        assert estimator.state == EstimatorState.IDLE
        assert estimator.result is previous
        assert get_metrics().get_failure_count('numerical') == 1

    def test_power_in_milliwatts(self):
        estimator = MixedSourceEstimator()
        estimator.set_initial_transmitted_power_mw(1e-5)
        assert estimator.initial_transmitted_power_dbm == pytest.approx(-50.0)
        estimator.set_initial_transmitted_power_mw(None)
        assert estimator.initial_transmitted_power_dbm is None


class TestConfiguration:
    """Setters and shared configuration objects."""

    def test_setters_do_not_mutate_shared_config(self):
        config = MixedEstimatorConfig()
        estimator = MixedSourceEstimator(config=config)

        estimator.path_loss_estimation_enabled = True
        estimator.use_position_covariances = False

        assert not config.path_loss_estimation_enabled
        assert config.use_position_covariances
        assert estimator.config.path_loss_estimation_enabled
        assert estimator.config.num_scalar_unknowns == 2

    def test_reject_none_config(self):
        estimator = MixedSourceEstimator()
        with pytest.raises(InvalidArgumentError):
            estimator.config = None

    def test_counts_attempts(self, fused_scenario_3d):
        MixedSourceEstimator(fused_scenario_3d.observations).estimate()
        metrics = get_metrics()
        assert metrics.get_counter('mixed_estimate_attempts') == 1
        assert metrics.get_counter('mixed_estimate_success') == 1
