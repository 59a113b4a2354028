"""
Error taxonomy for source estimation.

All errors are raised synchronously. Only the robust estimator converts a
lower-layer failure (NumericalError, InsufficientDataError) into
"try another sample"; every other layer propagates.
"""


class SourceEstimationError(Exception):
    """Base class for every error raised by this package."""


class InvalidArgumentError(SourceEstimationError, ValueError):
    """Malformed configuration or observation set (raised by setters)."""


class NotReadyError(SourceEstimationError):
    """Not enough observations for the currently enabled unknowns."""


class LockedError(SourceEstimationError):
    """Mutation or re-entrant estimate attempted while running."""

    def __init__(self, message: str = "estimator is locked while running"):
        super().__init__(message)


class NumericalError(SourceEstimationError):
    """Singular/ill-conditioned system or failed convergence."""


class InsufficientDataError(SourceEstimationError):
    """Linear solver received fewer usable rows than it needs."""


class RobustEstimationFailedError(SourceEstimationError):
    """Robust iteration budget exhausted without any usable candidate."""
