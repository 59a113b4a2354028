"""
Mixed Source Estimator (ranging + RSSI).

Estimates radio source position, and optionally its transmitted power and
path-loss exponent, from observations that may mix ranging-only, RSSI-only
and fused (ranging + RSSI) readings of the same source.

Pipeline:
1. Linear bootstrap of the position from observations carrying a distance
   (skipped when an initial position is supplied)
2. Joint nonlinear refinement over the full mixed set

Sufficiency rules (both must pass, fused readings count toward both):
- ranging: at least dim + 1 observations carry a distance
- RSSI: at least one observation carries an RSSI per enabled scalar unknown
- total: at least dim + 1 + number of enabled scalar unknowns

Reference: log-distance path-loss model (see proto.observation)
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence

import numpy as np

from rfsource_core.errors import InvalidArgumentError, NotReadyError, NumericalError
from rfsource_core.localization.estimator_state import EstimatorListener, LockableEstimator
from rfsource_core.localization.linear_solver import LinearLaterationSolver, LinearSolverConfig
from rfsource_core.localization.nonlinear_refiner import (
    DEFAULT_PATH_LOSS_EXPONENT,
    JointSourceRefiner,
    RefinementResult,
    RefinerConfig,
)
from rfsource_core.proto.observation import (
    Observation,
    count_by_kind,
    mw_to_dbm,
    validate_same_source,
)
from rfsource_core.proto.source_estimate import SourceEstimate

logger = logging.getLogger(__name__)


@dataclass
class MixedEstimatorConfig:
    """
    Configuration for the mixed source estimator.

    Attributes:
        transmitted_power_estimation_enabled: Estimate transmitted power
        path_loss_estimation_enabled: Estimate path-loss exponent
        use_position_covariances: Honor observer position covariances
        homogeneous_linear_solver: Homogeneous (True) or inhomogeneous bootstrap
        refiner: Joint refiner settings
    """

    transmitted_power_estimation_enabled: bool = True
    path_loss_estimation_enabled: bool = False
    use_position_covariances: bool = True
    homogeneous_linear_solver: bool = True
    refiner: RefinerConfig = field(default_factory=RefinerConfig)

    @property
    def num_scalar_unknowns(self) -> int:
        return int(self.transmitted_power_estimation_enabled) + \
            int(self.path_loss_estimation_enabled)


def min_observations(dim: int, config: MixedEstimatorConfig) -> int:
    """dim + 1 plus one per enabled scalar unknown."""
    return dim + 1 + config.num_scalar_unknowns


def check_sufficiency(
    observations: Sequence[Observation],
    config: MixedEstimatorConfig,
) -> Optional[str]:
    """
    Check ranging and RSSI sufficiency for the enabled unknowns.

    Returns:
        None when sufficient, else a short reason
    """
    if not observations:
        return "no observations"
    dim = observations[0].dim
    num_ranging, num_rssi = count_by_kind(observations)
    if num_ranging < dim + 1:
        return f"need {dim + 1} ranging observations, got {num_ranging}"
    if num_rssi < config.num_scalar_unknowns:
        return f"need {config.num_scalar_unknowns} RSSI observations, got {num_rssi}"
    if len(observations) < min_observations(dim, config):
        return f"need {min_observations(dim, config)} observations, got {len(observations)}"
    return None


def estimate_source(
    observations: Sequence[Observation],
    config: MixedEstimatorConfig,
    initial_position: Optional[np.ndarray] = None,
    initial_power_dbm: Optional[float] = None,
    initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> RefinementResult:
    """
    Linear bootstrap (if needed) followed by joint refinement.

    Shared by MixedSourceEstimator and the robust mixed minimal fit.

    Raises:
        InsufficientDataError: too few ranging observations for the bootstrap
        NotReadyError: too few observations for the active unknowns
        NumericalError: degenerate geometry, singular system, no convergence
    """
    if initial_position is None:
        solver = LinearLaterationSolver(LinearSolverConfig(
            homogeneous=config.homogeneous_linear_solver,
            use_position_covariances=config.use_position_covariances,
            default_distance_std_m=config.refiner.default_distance_std_m,
        ))
        initial_position = solver.solve(observations)

    refiner = JointSourceRefiner(config.refiner)
    return refiner.refine(
        observations,
        initial_position,
        initial_power_dbm=initial_power_dbm,
        initial_path_loss_exponent=initial_path_loss_exponent,
        estimate_power=config.transmitted_power_estimation_enabled,
        estimate_path_loss=config.path_loss_estimation_enabled,
        use_position_covariances=config.use_position_covariances,
    )


class MixedSourceEstimator(LockableEstimator):
    """
    Estimate a radio source from mixed ranging/RSSI observations.

    Usage:
        estimator = MixedSourceEstimator(observations)
        estimator.path_loss_estimation_enabled = True

        if estimator.is_ready():
            estimate = estimator.estimate()
            print(estimate.position, estimate.transmitted_power_dbm)

    Notes:
        - Every setter raises LockedError while an estimate is running
        - A failed estimate leaves previous results untouched
    """

    def __init__(
        self,
        observations: Optional[Sequence[Observation]] = None,
        config: Optional[MixedEstimatorConfig] = None,
        initial_position: Optional[Sequence[float]] = None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
        listener: Optional[EstimatorListener] = None,
    ):
        """
        Initialize mixed estimator.

        Args:
            observations: Observations of a single source (validated)
            config: Estimator configuration (uses defaults if None)
            initial_position: Start position; linear bootstrap if None
            initial_transmitted_power_dbm: Start (or fixed) power in dBm
            initial_path_loss_exponent: Start (or fixed) path-loss exponent
            listener: Receives start/end events
        """
        super().__init__(listener)
        self._config = config or MixedEstimatorConfig()
        self._observations: Optional[Sequence[Observation]] = None
        self._initial_position: Optional[np.ndarray] = None
        self._initial_power_dbm = initial_transmitted_power_dbm
        self._initial_path_loss_exponent = DEFAULT_PATH_LOSS_EXPONENT

        self._result: Optional[SourceEstimate] = None
        self._iterations: Optional[int] = None

        if observations is not None:
            self.observations = observations
        self.initial_position = initial_position
        self.initial_path_loss_exponent = initial_path_loss_exponent

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    @property
    def config(self) -> MixedEstimatorConfig:
        return self._config

    @config.setter
    def config(self, config: MixedEstimatorConfig):
        self._check_not_locked()
        if config is None:
            raise InvalidArgumentError("config cannot be None")
        self._config = config

    def _update_config(self, **changes):
        self._check_not_locked()
        self._config = replace(self._config, **changes)

    @property
    def transmitted_power_estimation_enabled(self) -> bool:
        return self._config.transmitted_power_estimation_enabled

    @transmitted_power_estimation_enabled.setter
    def transmitted_power_estimation_enabled(self, enabled: bool):
        self._update_config(transmitted_power_estimation_enabled=enabled)

    @property
    def path_loss_estimation_enabled(self) -> bool:
        return self._config.path_loss_estimation_enabled

    @path_loss_estimation_enabled.setter
    def path_loss_estimation_enabled(self, enabled: bool):
        self._update_config(path_loss_estimation_enabled=enabled)

    @property
    def use_position_covariances(self) -> bool:
        return self._config.use_position_covariances

    @use_position_covariances.setter
    def use_position_covariances(self, enabled: bool):
        self._update_config(use_position_covariances=enabled)

    @property
    def homogeneous_linear_solver(self) -> bool:
        return self._config.homogeneous_linear_solver

    @homogeneous_linear_solver.setter
    def homogeneous_linear_solver(self, enabled: bool):
        self._update_config(homogeneous_linear_solver=enabled)

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return self._initial_position

    @initial_position.setter
    def initial_position(self, position: Optional[Sequence[float]]):
        self._check_not_locked()
        position = _as_position(position)
        if position is not None and self._observations and \
                len(position) != self._observations[0].dim:
            raise InvalidArgumentError(
                f"Initial position is {len(position)}D, "
                f"observations are {self._observations[0].dim}D"
            )
        self._initial_position = position

    @property
    def initial_transmitted_power_dbm(self) -> Optional[float]:
        return self._initial_power_dbm

    @initial_transmitted_power_dbm.setter
    def initial_transmitted_power_dbm(self, power_dbm: Optional[float]):
        self._check_not_locked()
        self._initial_power_dbm = power_dbm

    def set_initial_transmitted_power_mw(self, power_mw: Optional[float]):
        """Set initial transmitted power expressed in milliwatts."""
        self._check_not_locked()
        self._initial_power_dbm = None if power_mw is None else mw_to_dbm(power_mw)

    @property
    def initial_path_loss_exponent(self) -> float:
        return self._initial_path_loss_exponent

    @initial_path_loss_exponent.setter
    def initial_path_loss_exponent(self, exponent: float):
        self._check_not_locked()
        if not exponent > 0:
            raise InvalidArgumentError(f"Path-loss exponent must be positive: {exponent}")
        self._initial_path_loss_exponent = exponent

    # -------------------------------------------------------------------------
    # Observations
    # -------------------------------------------------------------------------

    @property
    def observations(self) -> Optional[Sequence[Observation]]:
        return self._observations

    @observations.setter
    def observations(self, observations: Sequence[Observation]):
        self._check_not_locked()
        self._validate_observations(observations)
        self._observations = observations

    def _validate_observations(self, observations: Sequence[Observation]):
        if not observations:
            raise InvalidArgumentError("observations cannot be None or empty")
        validate_same_source(observations)
        dim = observations[0].dim
        if any(o.dim != dim for o in observations):
            raise InvalidArgumentError("observations mix 2D and 3D positions")
        if self._initial_position is not None and len(self._initial_position) != dim:
            raise InvalidArgumentError(
                f"observations are {dim}D, initial position is "
                f"{len(self._initial_position)}D"
            )
        reason = check_sufficiency(observations, self._config)
        if reason is not None:
            raise InvalidArgumentError(f"insufficient observations: {reason}")

    @property
    def dim(self) -> Optional[int]:
        if self._observations:
            return self._observations[0].dim
        if self._initial_position is not None:
            return len(self._initial_position)
        return None

    @property
    def min_observations(self) -> int:
        """Minimum observations for the enabled unknowns (3D if unknown dim)."""
        return min_observations(self.dim or 3, self._config)

    def is_ready(self) -> bool:
        """True when observations pass ranging and RSSI sufficiency checks."""
        if not self._observations:
            return False
        if self._config.path_loss_estimation_enabled and \
                not self._config.transmitted_power_estimation_enabled and \
                self._initial_power_dbm is None:
            return False
        return check_sufficiency(self._observations, self._config) is None

    # -------------------------------------------------------------------------
    # Estimation
    # -------------------------------------------------------------------------

    def estimate(self) -> SourceEstimate:
        """
        Estimate source position, power and path-loss exponent.

        Returns:
            SourceEstimate (also kept as self.result)

        Raises:
            LockedError: an estimate is already running
            NotReadyError: observations are missing or insufficient
            NumericalError: bootstrap or refinement failed
        """
        self._check_not_locked()
        self.metrics.increment('mixed_estimate_attempts')
        if not self.is_ready():
            self.metrics.increment_failure('not_ready')
            raise NotReadyError("observations are missing or insufficient")

        with self._running():
            self._notify_start()

            try:
                refinement = estimate_source(
                    self._observations,
                    self._config,
                    initial_position=self._initial_position,
                    initial_power_dbm=self._initial_power_dbm,
                    initial_path_loss_exponent=self._initial_path_loss_exponent,
                )
            except NumericalError:
                self.metrics.increment_failure('numerical')
                raise

            self._result = refinement.to_estimate()
            self._iterations = refinement.iterations
            self.metrics.increment('mixed_estimate_success')
            logger.debug(f"Mixed estimate from {len(self._observations)} observations: "
                         f"{self._result.position}")

            self._notify_end()

        return self._result

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    @property
    def result(self) -> Optional[SourceEstimate]:
        return self._result

    @property
    def iterations(self) -> Optional[int]:
        """Refinement iterations of the last successful estimate."""
        return self._iterations

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position

    @property
    def estimated_transmitted_power_dbm(self) -> Optional[float]:
        return None if self._result is None else self._result.transmitted_power_dbm

    @property
    def estimated_transmitted_power_mw(self) -> Optional[float]:
        return None if self._result is None else self._result.transmitted_power_mw

    @property
    def estimated_path_loss_exponent(self) -> Optional[float]:
        return None if self._result is None else self._result.path_loss_exponent

    @property
    def estimated_covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.covariance

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position_covariance

    @property
    def estimated_transmitted_power_variance(self) -> Optional[float]:
        return None if self._result is None else self._result.transmitted_power_variance

    @property
    def estimated_path_loss_exponent_variance(self) -> Optional[float]:
        return None if self._result is None else self._result.path_loss_exponent_variance


def _as_position(position: Optional[Sequence[float]]) -> Optional[np.ndarray]:
    if position is None:
        return None
    array = np.array(position, dtype=float)
    if array.ndim != 1 or array.shape[0] not in (2, 3):
        raise InvalidArgumentError(f"Position must be 2D or 3D, got shape {array.shape}")
    return array
