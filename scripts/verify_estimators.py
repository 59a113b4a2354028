#!/usr/bin/env python3
"""
Estimator verification and diagnostic script.

Checks:
- Linear bootstrap accuracy on noise-free distances
- Mixed estimator accuracy on noise-free fused observations
- Robust estimator accuracy with corrupted observations

Simulated scenario settings come from SIMULATION_CONFIG.
"""

import argparse
import os
import platform
import sys

import numpy as np

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from rfsource_core.config import SIMULATION_CONFIG, configure_logging
from rfsource_core.errors import SourceEstimationError
from rfsource_core.localization import (
    LinearLaterationSolver,
    MixedSourceEstimator,
    RobustEstimatorConfig,
    create_robust_mixed_estimator,
)
from rfsource_core.metrics import get_metrics
from rfsource_core.proto import RadioSource, expected_rssi, fused_observation


def print_header(title: str):
    """Print formatted section header."""
    print("\n" + "=" * 70)
    print(f"  {title}")
    print("=" * 70)


def print_status(check: str, passed: bool, details: str = ""):
    """Print check status with formatting."""
    status = "PASS" if passed else "FAIL"
    color = "\033[92m" if passed else "\033[91m"
    reset = "\033[0m"

    print(f"{color}{status}{reset} {check}")
    if details:
        print(f"       {details}")


def simulate(rng: np.random.Generator, outlier_percentage: float = 0.0):
    """
    Simulate fused observations of a random 3D source.

    Returns:
        Tuple of (source position, power dBm, observations, quality scores)
    """
    cfg = SIMULATION_CONFIG
    source = RadioSource('simulated', cfg["frequency_hz"])
    k = source.path_loss_constant
    n = cfg["path_loss_exponent"]
    num = cfg["num_observations"]

    position = rng.uniform(cfg["min_pos_m"], cfg["max_pos_m"], size=3)
    power_dbm = float(rng.uniform(cfg["min_power_dbm"], cfg["max_power_dbm"]))
    observers = rng.uniform(cfg["min_pos_m"], cfg["max_pos_m"], size=(num, 3))

    errors = np.zeros(num)
    num_outliers = int(round(num * outlier_percentage / 100.0))
    if num_outliers:
        indices = rng.choice(num, size=num_outliers, replace=False)
        errors[indices] = rng.normal(0.0, cfg["outlier_std"], size=num_outliers)

    observations = []
    for p, e in zip(observers, errors):
        distance = float(np.linalg.norm(position - p))
        rssi = expected_rssi(power_dbm, n, k, distance)
        observations.append(fused_observation(source, p, max(distance + e, 0.0), rssi + e))

    return position, power_dbm, observations, 1.0 / (1.0 + np.abs(errors))


def verify_linear_bootstrap(rng: np.random.Generator) -> bool:
    """Verify linear bootstrap on noise-free distances."""
    print_header("Linear Bootstrap")

    position, _, observations, _ = simulate(rng)
    estimate = LinearLaterationSolver().solve(observations)
    error = float(np.linalg.norm(estimate - position))

    print(f"True position:      {np.round(position, 3)}")
    print(f"Bootstrap position: {np.round(estimate, 3)}")

    passed = error < 1e-6
    print_status("Linear bootstrap accuracy", passed, f"error {error:.2e}m")
    return passed


def verify_mixed_estimator(rng: np.random.Generator) -> bool:
    """Verify mixed estimator on noise-free fused observations."""
    print_header("Mixed Estimator")

    position, power_dbm, observations, _ = simulate(rng)
    estimator = MixedSourceEstimator(observations)

    try:
        estimate = estimator.estimate()
    except SourceEstimationError as e:
        print_status("Mixed estimator", False, str(e))
        return False

    position_error = float(np.linalg.norm(estimate.position - position))
    power_error = abs(estimate.transmitted_power_dbm - power_dbm)

    print(f"True position / power:      {np.round(position, 3)} / {power_dbm:.3f} dBm")
    print(f"Estimated position / power: {np.round(estimate.position, 3)} / "
          f"{estimate.transmitted_power_dbm:.3f} dBm")
    print(f"Refinement iterations: {estimator.iterations}")

    passed = position_error < 1e-6 and power_error < 1e-6
    print_status("Mixed estimator accuracy", passed,
                 f"position error {position_error:.2e}m, power error {power_error:.2e}dB")
    return passed


def verify_robust_estimator(rng: np.random.Generator) -> bool:
    """Verify robust estimator with outliers."""
    cfg = SIMULATION_CONFIG
    print_header(f"Robust Estimator ({cfg['outlier_percentage']}% outliers)")

    position, power_dbm, observations, scores = simulate(rng, cfg["outlier_percentage"])
    estimator = create_robust_mixed_estimator(
        observations,
        scores,
        RobustEstimatorConfig(
            threshold=cfg["robust_threshold"],
            keep_inliers=True,
            seed=cfg["seed"],
        ),
    )

    try:
        estimate = estimator.estimate()
    except SourceEstimationError as e:
        print_status("Robust estimator", False, str(e))
        return False

    position_error = float(np.linalg.norm(estimate.position - position))
    power_error = abs(estimate.transmitted_power_dbm - power_dbm)

    print(f"Inliers: {estimator.inliers_data.num_inliers}/{len(observations)}")
    print(f"Sampling iterations: {estimator.iterations}")
    print(f"Refined: {estimator.is_result_refined}")

    passed = position_error < 0.5 and power_error < 0.5
    print_status("Robust estimator accuracy", passed,
                 f"position error {position_error:.3f}m, power error {power_error:.3f}dB")
    return passed


def main():
    """Run all verification checks."""
    parser = argparse.ArgumentParser(description='Radio source estimator verification')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')
    parser.add_argument('--seed', '-s', type=int, default=None,
                        help='Scenario seed (default from SIMULATION_CONFIG)')
    parser.add_argument('--metrics', '-m', action='store_true',
                        help='Print metrics summary at the end')
    args = parser.parse_args()

    configure_logging('DEBUG' if args.debug else None)

    print("\n" + "=" * 70)
    print("  Radio Source Estimator Verification")
    print("=" * 70)
    print(f"\nPython version: {sys.version}")
    print(f"Platform: {platform.platform()}")

    seed = SIMULATION_CONFIG["seed"] if args.seed is None else args.seed
    rng = np.random.default_rng(seed)

    results = {
        'linear_bootstrap': verify_linear_bootstrap(rng),
        'mixed_estimator': verify_mixed_estimator(rng),
        'robust_estimator': verify_robust_estimator(rng),
    }

    # Summary
    print_header("Verification Summary")

    total = len(results)
    passed = sum(results.values())

    for check, result in results.items():
        print_status(check.replace('_', ' ').title(), result)

    print(f"\nResult: {passed}/{total} checks passed")

    if args.metrics:
        get_metrics().print_summary()

    return 0 if passed == total else 1


if __name__ == "__main__":
    sys.exit(main())
