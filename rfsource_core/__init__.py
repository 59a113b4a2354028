"""
Radio Source Localization Core Package.

Locates a radio-emitting source (position, transmitted power and path-loss
exponent) from ranging and RSSI observations taken at known positions.

Package structure:
- proto: Observation and estimate containers
- localization: Linear solver, joint refiner, mixed and robust estimators
- metrics: Diagnostics, counters, histograms
"""

__version__ = "0.1.0"
__author__ = "RF Source Localization Team"

from .errors import (
    SourceEstimationError,
    InvalidArgumentError,
    NotReadyError,
    LockedError,
    NumericalError,
    InsufficientDataError,
    RobustEstimationFailedError,
)

__all__ = [
    'SourceEstimationError',
    'InvalidArgumentError',
    'NotReadyError',
    'LockedError',
    'NumericalError',
    'InsufficientDataError',
    'RobustEstimationFailedError',
]
