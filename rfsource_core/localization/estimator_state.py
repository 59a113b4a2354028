"""
Estimator lifecycle: Idle/Running state, listeners and the locked guard.

Estimation runs synchronously on the caller's thread. The only contention
is re-entrant calls made from listener callbacks while an estimate is
running; every mutator and estimate() check the state first and raise
LockedError while running.
"""

from contextlib import contextmanager
from enum import Enum
from typing import List, Optional

from rfsource_core.errors import LockedError
from rfsource_core.metrics import get_metrics


class EstimatorState(Enum):
    """Two-state lifecycle of an estimator."""

    IDLE = 'idle'        # mutators allowed
    RUNNING = 'running'  # estimate in progress, mutators forbidden


class EstimatorListener:
    """
    Receives estimator lifecycle events.

    Subclass and override the events of interest. Callbacks fire while the
    estimator is still RUNNING, so any attempt to mutate it or start a new
    estimate from inside a callback raises LockedError.
    """

    def on_start(self, estimator):
        """Called right after the estimator enters RUNNING."""

    def on_end(self, estimator):
        """Called after a successful estimate, before returning to IDLE."""

    def on_next_iteration(self, estimator, iteration: int):
        """Robust estimators only: a new sampling iteration starts."""

    def on_progress_changed(self, estimator, progress: float):
        """Robust estimators only: progress in [0, 1] moved forward."""


class LockableEstimator:
    """
    Base for estimators sharing the Idle/Running discipline.

    Subclasses call _check_not_locked() at the top of every mutator and wrap
    the body of estimate() in `with self._running():`.
    """

    def __init__(self, listener: Optional[EstimatorListener] = None):
        self._state = EstimatorState.IDLE
        self.metrics = get_metrics()
        self._listeners: List[EstimatorListener] = []
        if listener is not None:
            self._listeners.append(listener)

    @property
    def state(self) -> EstimatorState:
        return self._state

    def is_locked(self) -> bool:
        """True while an estimate is running."""
        return self._state == EstimatorState.RUNNING

    def is_running(self) -> bool:
        return self.is_locked()

    def add_listener(self, listener: EstimatorListener):
        self._check_not_locked()
        self._listeners.append(listener)

    def remove_listener(self, listener: EstimatorListener):
        self._check_not_locked()
        self._listeners.remove(listener)

    @property
    def listeners(self) -> List[EstimatorListener]:
        return list(self._listeners)

    def _check_not_locked(self):
        if self.is_locked():
            self.metrics.increment_failure('locked')
            raise LockedError()

    @contextmanager
    def _running(self):
        """Hold RUNNING for the duration of a run, back to IDLE on exit."""
        self._check_not_locked()
        self._state = EstimatorState.RUNNING
        try:
            yield
        finally:
            self._state = EstimatorState.IDLE

    def _notify_start(self):
        for listener in self._listeners:
            listener.on_start(self)

    def _notify_end(self):
        for listener in self._listeners:
            listener.on_end(self)

    def _notify_next_iteration(self, iteration: int):
        for listener in self._listeners:
            listener.on_next_iteration(self, iteration)

    def _notify_progress_changed(self, progress: float):
        for listener in self._listeners:
            listener.on_progress_changed(self, progress)
