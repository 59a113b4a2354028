"""
Metrics counters and histograms implementation.

Provides thread-safe counters for:
- Estimation attempts and successes (mixed, robust)
- Failure reasons (not_ready, numerical, subset_fit_failed, etc.)
- Size histograms (refiner iterations, inlier ratio)
"""

import logging
import threading
from typing import Dict, List, Optional
from dataclasses import dataclass
from collections import defaultdict
import statistics

logger = logging.getLogger(__name__)

# Estimators reporting <name>_estimate_attempts / <name>_estimate_success
ESTIMATORS = ('mixed', 'robust')


@dataclass
class CounterSnapshot:
    """Copy of counter state."""

    counters: Dict[str, int]
    failure_reasons: Dict[str, int]
    histograms: Dict[str, List[float]]

    def total_failures(self) -> int:
        """Total failures across all reasons."""
        return sum(self.failure_reasons.values())

    def success_rate(self, estimator: str) -> Optional[float]:
        """Percentage of estimate() calls that produced a result, None if never run."""
        attempts = self.counters.get(f'{estimator}_estimate_attempts', 0)
        if attempts == 0:
            return None
        return self.counters.get(f'{estimator}_estimate_success', 0) * 100.0 / attempts


class MetricsCollector:
    """
    Thread-safe metrics collection.

    Usage:
        collector = MetricsCollector()
        collector.increment('robust_iterations')
        collector.increment_failure('subset_fit_failed')
        collector.record_histogram('robust_inlier_ratio', 0.8)

        snapshot = collector.snapshot()
        print(f"Total failures: {snapshot.total_failures()}")
    """

    # Standard failure reason codes
    FAILURE_REASONS = {
        'not_ready': 'Not enough observations for enabled unknowns',
        'locked': 'Mutation or estimate attempted while running',
        'numerical': 'Singular system or failed convergence',
        'subset_fit_failed': 'Minimal subset could not be fitted',
        'refine_failed': 'Final inlier refinement failed',
        'no_candidate': 'No robust candidate was ever produced',
        'cancelled': 'Robust sampling stopped by cancel check',
    }

    def __init__(self):
        """Initialize metrics collector."""
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._failure_reasons: Dict[str, int] = defaultdict(int)
        self._histograms: Dict[str, List[float]] = defaultdict(list)

        # Initialize standard counters to 0 for consistent reporting
        self._init_standard_counters()

    def _init_standard_counters(self):
        """Zero the per-estimator, solver and failure-reason counters."""
        standard_counters = [
            f'{name}_estimate_{outcome}'
            for name in ESTIMATORS
            for outcome in ('attempts', 'success')
        ]
        standard_counters += ['robust_iterations', 'linear_solves', 'refiner_runs']

        with self._lock:
            for counter in standard_counters:
                self._counters.setdefault(counter, 0)
            for reason in self.FAILURE_REASONS:
                self._failure_reasons.setdefault(reason, 0)

    def increment(self, counter_name: str, value: int = 1):
        """
        Increment a counter by value.

        Args:
            counter_name: Name of counter to increment
            value: Amount to increment (default 1)
        """
        with self._lock:
            self._counters[counter_name] += value

    def increment_failure(self, reason: str, value: int = 1):
        """
        Increment failure counter for specific reason.

        Args:
            reason: Failure reason code (should be in FAILURE_REASONS)
            value: Amount to increment (default 1)
        """
        if reason not in self.FAILURE_REASONS:
            # Unknown reasons are still counted
            logger.warning(f"Unknown failure reason '{reason}'")

        with self._lock:
            self._failure_reasons[reason] += value
            self._counters['failures'] += value

    def get_counter(self, counter_name: str) -> int:
        """
        Get current value of a counter.

        Args:
            counter_name: Name of counter

        Returns:
            Current counter value
        """
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_failure_count(self, reason: str) -> int:
        """Get number of failures recorded for a reason."""
        with self._lock:
            return self._failure_reasons.get(reason, 0)

    def record_histogram(self, histogram_name: str, value: float, max_samples: int = 10000):
        """
        Record a value in a histogram.

        Args:
            histogram_name: Name of histogram
            value: Value to record
            max_samples: Maximum samples to keep (prevents unbounded growth)
        """
        with self._lock:
            samples = self._histograms[histogram_name]
            samples.append(value)

            # Keep only recent samples to bound memory
            if len(samples) > max_samples:
                self._histograms[histogram_name] = samples[-max_samples//2:]

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Get statistics for a histogram.

        Args:
            histogram_name: Name of histogram

        Returns:
            Dict with min, max, mean, median, p95, count
            None if histogram is empty
        """
        with self._lock:
            samples = self._histograms.get(histogram_name, [])

            if not samples:
                return None

            sorted_samples = sorted(samples)
            count = len(sorted_samples)

            return {
                'count': count,
                'min': sorted_samples[0],
                'max': sorted_samples[-1],
                'mean': statistics.mean(sorted_samples),
                'median': statistics.median(sorted_samples),
                'p95': sorted_samples[int(count * 0.95)] if count > 1 else sorted_samples[0],
            }

    def snapshot(self) -> CounterSnapshot:
        """
        Get a snapshot of current metrics state.

        Returns:
            CounterSnapshot with copies of all metrics
        """
        with self._lock:
            return CounterSnapshot(
                counters=dict(self._counters),
                failure_reasons=dict(self._failure_reasons),
                histograms={k: list(v) for k, v in self._histograms.items()},
            )

    def reset(self):
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._counters.clear()
            self._failure_reasons.clear()
            self._histograms.clear()
        self._init_standard_counters()

    def print_summary(self):
        """Print human-readable metrics summary."""
        snapshot = self.snapshot()

        print("\n" + "=" * 70)
        print("  METRICS SUMMARY")
        print("=" * 70)

        print("\nESTIMATORS:")
        for name in ESTIMATORS:
            rate = snapshot.success_rate(name)
            attempts = snapshot.counters.get(f'{name}_estimate_attempts', 0)
            if rate is None:
                print(f"  {name:30s}: not run")
            else:
                print(f"  {name:30s}: {attempts:8d} runs ({rate:5.1f}% succeeded)")

        print("\nCOUNTERS:")
        for name, value in sorted(snapshot.counters.items()):
            print(f"  {name:30s}: {value:8d}")

        total_failures = snapshot.total_failures()
        if total_failures > 0:
            print("\nFAILURE REASONS:")
            for reason, count in sorted(snapshot.failure_reasons.items()):
                if count > 0:
                    print(f"  {reason:30s}: {count:8d}  {self.FAILURE_REASONS.get(reason, '')}")

        if snapshot.histograms:
            print("\nHISTOGRAMS:")
            for name in sorted(snapshot.histograms.keys()):
                stats = self.get_histogram_stats(name)
                if stats:
                    print(f"  {name}: count={stats['count']}, median={stats['median']:.3f}, "
                          f"max={stats['max']:.3f}")

        print("=" * 70 + "\n")
