"""
Unit tests for the linear lateration solver.

Tests cover:
- Exact recovery in 2D and 3D (homogeneous and inhomogeneous)
- Agreement between formulations on noise-free data
- RSSI-only observations ignored by the bootstrap
- Insufficient and degenerate inputs
"""

import numpy as np
import pytest

from rfsource_core.errors import InsufficientDataError, NumericalError
from rfsource_core.localization import LinearLaterationSolver, LinearSolverConfig
from rfsource_core.metrics import get_metrics
from rfsource_core.proto import ranging_observation, rssi_observation
from tests.conftest import make_scenario


def _ranging(source, observers, target):
    return [
        ranging_observation(source, p, float(np.linalg.norm(np.asarray(target) - p)))
        for p in observers
    ]


class TestExactRecovery:
    """Noise-free distances give the exact source position."""

    @pytest.mark.parametrize('homogeneous', [True, False])
    def test_square_2d(self, source, square_observers_2d, homogeneous):
        target = np.array([7.0, 12.0])
        solver = LinearLaterationSolver(LinearSolverConfig(homogeneous=homogeneous))

        position = solver.solve(_ranging(source, square_observers_2d, target))

        np.testing.assert_allclose(position, target, atol=1e-8)

    @pytest.mark.parametrize('homogeneous', [True, False])
    def test_random_3d(self, rng, homogeneous):
        scenario = make_scenario(rng, num=20, dim=3, kind='ranging')
        solver = LinearLaterationSolver(LinearSolverConfig(homogeneous=homogeneous))

        position = solver.solve(scenario.observations)

        np.testing.assert_allclose(position, scenario.position, atol=1e-6)

    def test_minimal_3d(self, rng):
        """dim + 1 observations are enough."""
        scenario = make_scenario(rng, num=4, dim=3, kind='ranging')
        position = LinearLaterationSolver().solve(scenario.observations)
        np.testing.assert_allclose(position, scenario.position, atol=1e-6)

    def test_formulations_agree(self, rng):
        """Homogeneous and inhomogeneous results match on exact data."""
        scenario = make_scenario(rng, num=10, dim=3, kind='fused')
        homogeneous = LinearLaterationSolver(LinearSolverConfig(homogeneous=True))
        inhomogeneous = LinearLaterationSolver(LinearSolverConfig(homogeneous=False))

        np.testing.assert_allclose(
            homogeneous.solve(scenario.observations),
            inhomogeneous.solve(scenario.observations),
            atol=1e-6,
        )

    def test_ignores_rssi_only(self, source, square_observers_2d):
        """RSSI-only observations do not enter the linear system."""
        target = np.array([3.0, 4.0])
        observations = _ranging(source, square_observers_2d, target)
        observations.append(rssi_observation(source, [100.0, 100.0], -70.0))

        position = LinearLaterationSolver().solve(observations)

        np.testing.assert_allclose(position, target, atol=1e-8)

    def test_position_covariance_weighting(self, source, square_observers_2d):
        """Noise-free data stays exact when rows are down-weighted."""
        target = np.array([5.0, 5.0])
        observations = [
            ranging_observation(source, p, float(np.linalg.norm(target - p)),
                                position_covariance=np.eye(2) * (i + 1))
            for i, p in enumerate(square_observers_2d)
        ]
        for homogeneous in (True, False):
            solver = LinearLaterationSolver(LinearSolverConfig(homogeneous=homogeneous))
            np.testing.assert_allclose(solver.solve(observations), target, atol=1e-8)

    @pytest.mark.parametrize('homogeneous', [True, False])
    def test_uncertain_observer_contributes_less(self, rng, homogeneous):
        """A corrupted row on an uncertain observer barely moves the solution."""
        scenario = make_scenario(rng, num=10, dim=3, kind='ranging')
        observations = list(scenario.observations)
        bad = observations[0]
        observations[0] = ranging_observation(
            scenario.source, bad.position, bad.distance_m + 3.0,
            position_covariance=np.eye(3) * 100.0,
        )

        errors = {}
        for weighted in (True, False):
            solver = LinearLaterationSolver(LinearSolverConfig(
                homogeneous=homogeneous, use_position_covariances=weighted,
            ))
            errors[weighted] = np.linalg.norm(solver.solve(observations) - scenario.position)

        assert errors[True] < errors[False]
        assert errors[True] < 0.1

    def test_counts_solves(self, source, square_observers_2d):
        LinearLaterationSolver().solve(_ranging(source, square_observers_2d, [1.0, 1.0]))
        assert get_metrics().get_counter('linear_solves') == 1


class TestFailures:
    """Insufficient and degenerate inputs."""

    def test_too_few_ranging(self, source):
        observations = _ranging(source, np.array([[0.0, 0.0], [10.0, 0.0]]), [3.0, 3.0])
        with pytest.raises(InsufficientDataError):
            LinearLaterationSolver().solve(observations)

    def test_only_rssi(self, source):
        observations = [rssi_observation(source, [float(i), 0.0], -60.0) for i in range(5)]
        with pytest.raises(InsufficientDataError):
            LinearLaterationSolver().solve(observations)

    def test_colocated_observers(self, source):
        observations = [ranging_observation(source, [1.0, 1.0], 5.0) for _ in range(4)]
        with pytest.raises(NumericalError):
            LinearLaterationSolver().solve(observations)

    @pytest.mark.parametrize('homogeneous', [True, False])
    def test_collinear_observers(self, source, homogeneous):
        """Collinear observers cannot resolve a 3D position."""
        observers = np.array([[float(i), 0.0, 0.0] for i in range(6)])
        observations = _ranging(source, observers, [2.0, 3.0, 4.0])
        solver = LinearLaterationSolver(LinearSolverConfig(homogeneous=homogeneous))
        with pytest.raises(NumericalError):
            solver.solve(observations)
