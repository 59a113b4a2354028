"""
Pytest configuration and shared fixtures for radio source localization tests.

This module provides reusable fixtures and scenario builders for testing the
linear solver, joint refiner, mixed estimator and robust estimators.
"""

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from rfsource_core.metrics import reset_metrics
from rfsource_core.proto import (
    Observation,
    RadioSource,
    expected_rssi,
    fused_observation,
    ranging_observation,
    rssi_observation,
)

FREQUENCY_HZ = 2.4e9
MIN_POS_M = -50.0
MAX_POS_M = 50.0
MIN_POWER_DBM = -100.0
MAX_POWER_DBM = -50.0


# =============================================================================
# Scenario Builders
# =============================================================================


@dataclass
class Scenario:
    """Simulated source and its observations."""

    source: RadioSource
    position: np.ndarray
    power_dbm: float
    path_loss_exponent: float
    observations: List[Observation]
    errors: np.ndarray

    def quality_scores(self) -> np.ndarray:
        """Quality score 1 / (1 + |error|) per observation."""
        return 1.0 / (1.0 + np.abs(self.errors))


def random_observer_positions(rng: np.random.Generator, num: int, dim: int) -> np.ndarray:
    return rng.uniform(MIN_POS_M, MAX_POS_M, size=(num, dim))


def make_scenario(
    rng: np.random.Generator,
    num: int = 50,
    dim: int = 3,
    kind: str = 'fused',
    path_loss_exponent: float = 2.0,
    outlier_fraction: float = 0.0,
    outlier_std: float = 10.0,
    source_position: Optional[np.ndarray] = None,
) -> Scenario:
    """
    Build noise-free observations of a random source, corrupting a fraction.

    Args:
        rng: Random generator (seeded by the caller)
        num: Number of observations
        dim: 2 or 3
        kind: 'fused', 'ranging', 'rssi' or 'mixed' (thirds of each kind)
        path_loss_exponent: True path-loss exponent
        outlier_fraction: Fraction of observations with Gaussian error
        outlier_std: Std of the outlier error (m and dB)
        source_position: Source position (random if None)

    Returns:
        Scenario with per-observation errors (0 for inliers)
    """
    source = RadioSource('source-1', FREQUENCY_HZ)
    k = source.path_loss_constant
    position = source_position if source_position is not None \
        else rng.uniform(MIN_POS_M, MAX_POS_M, size=dim)
    power_dbm = float(rng.uniform(MIN_POWER_DBM, MAX_POWER_DBM))

    observers = random_observer_positions(rng, num, dim)
    errors = np.zeros(num)
    num_outliers = int(round(outlier_fraction * num))
    if num_outliers:
        outlier_indices = rng.choice(num, size=num_outliers, replace=False)
        errors[outlier_indices] = rng.normal(0.0, outlier_std, size=num_outliers)

    observations = []
    for i, p in enumerate(observers):
        distance = float(np.linalg.norm(position - p))
        rssi = expected_rssi(power_dbm, path_loss_exponent, k, distance)
        noisy_distance = max(distance + errors[i], 0.0)
        noisy_rssi = rssi + errors[i]

        obs_kind = kind
        if kind == 'mixed':
            obs_kind = ('ranging', 'rssi', 'fused')[i % 3]

        if obs_kind == 'ranging':
            observations.append(ranging_observation(source, p, noisy_distance))
        elif obs_kind == 'rssi':
            observations.append(rssi_observation(source, p, noisy_rssi))
        else:
            observations.append(fused_observation(source, p, noisy_distance, noisy_rssi))

    return Scenario(source, position, power_dbm, path_loss_exponent, observations, errors)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Start every test with an empty global metrics collector."""
    reset_metrics()
    yield


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded random generator for reproducible scenarios."""
    return np.random.default_rng(42)


@pytest.fixture
def source() -> RadioSource:
    """2.4 GHz source used by unit tests."""
    return RadioSource('source-1', FREQUENCY_HZ)


@pytest.fixture
def fused_scenario_3d(rng) -> Scenario:
    """50 noise-free fused observations of a 3D source."""
    return make_scenario(rng, num=50, dim=3, kind='fused')


@pytest.fixture
def fused_scenario_2d(rng) -> Scenario:
    """30 noise-free fused observations of a 2D source."""
    return make_scenario(rng, num=30, dim=2, kind='fused')


@pytest.fixture
def square_observers_2d() -> np.ndarray:
    """Four observers on the corners of a 20 m square."""
    return np.array([
        [0.0, 0.0],
        [20.0, 0.0],
        [20.0, 20.0],
        [0.0, 20.0],
    ])
