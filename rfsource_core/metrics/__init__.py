"""
Metrics Module: Diagnostics, counters, histograms.

Every failed estimation is counted under a reason code so that no failure
goes unnoticed, even when the robust estimator recovers from it.

Usage:
    from rfsource_core.metrics import get_metrics

    metrics = get_metrics()
    metrics.increment('mixed_estimate_attempts')
    metrics.increment_failure('numerical')
    metrics.record_histogram('refiner_iterations', 7)
"""

from .counters import MetricsCollector

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.

    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    global _global_metrics
    _global_metrics = MetricsCollector()


__all__ = ['MetricsCollector', 'get_metrics', 'reset_metrics']
