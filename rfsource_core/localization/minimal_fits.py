"""
Minimal-subset fit strategies for robust source estimation.

- RangingMinimalFit: position only, from distances (dim + 1 per subset)
- RssiMinimalFit: position plus enabled power/path-loss, from RSSI only
- MixedMinimalFit: position plus enabled power/path-loss, from mixed
  ranging/RSSI/fused observations

Each strategy is plugged into RobustSourceEstimator; the create_robust_*
helpers build a configured estimator in one call.
"""

from typing import Optional, Sequence


from rfsource_core.errors import InsufficientDataError, InvalidArgumentError, NotReadyError
from rfsource_core.localization.estimator_state import EstimatorListener
from rfsource_core.localization.linear_solver import LinearLaterationSolver, LinearSolverConfig
from rfsource_core.localization.mixed_estimator import (
    MixedEstimatorConfig,
    check_sufficiency,
    estimate_source,
    min_observations,
)
from rfsource_core.localization.nonlinear_refiner import (
    DEFAULT_PATH_LOSS_EXPONENT,
    JointSourceRefiner,
    RefinerConfig,
)
from rfsource_core.localization.robust_estimator import (
    MinimalFit,
    RobustEstimatorConfig,
    RobustSourceEstimator,
)
from rfsource_core.proto.observation import (
    Observation,
    ObservationKind,
    expected_rssi,
    ranging_observation,
    rssi_observation,
    rssi_to_distance,
)
from rfsource_core.proto.source_estimate import SourceEstimate



def ranging_residual(candidate: SourceEstimate, observation: Observation) -> float:
    """|measured distance - distance to candidate position|."""
    return abs(observation.distance_m - observation.distance_to(candidate.position))


def rssi_residual(candidate: SourceEstimate, observation: Observation) -> float:
    """|measured RSSI - RSSI predicted by the candidate|, inf if power unknown."""
    if candidate.transmitted_power_dbm is None:
        return float('inf')
    distance = observation.distance_to(candidate.position)
    if distance <= 0.0:
        return float('inf')
    predicted = expected_rssi(
        candidate.transmitted_power_dbm,
        candidate.path_loss_exponent,
        observation.source.path_loss_constant,
        distance,
    )
    return abs(observation.rssi_dbm - predicted)


class RangingMinimalFit(MinimalFit):
    """
    Position from distances only.

    Subsets are solved by the linear lateration solver; the final refit is a
    position-only joint refinement over the inlier distances.
    """

    def __init__(
        self,
        linear_config: Optional[LinearSolverConfig] = None,
        refiner_config: Optional[RefinerConfig] = None,
    ):
        self.linear_solver = LinearLaterationSolver(linear_config)
        self.refiner = JointSourceRefiner(refiner_config)

    def subset_size(self, dim: int) -> int:
        return dim + 1

    def check_observations(self, observations: Sequence[Observation]):
        if any(not o.has_distance for o in observations):
            raise InvalidArgumentError("ranging estimation needs a distance on every observation")

    def fit(self, subset: Sequence[Observation]) -> SourceEstimate:
        return SourceEstimate(position=self.linear_solver.solve(subset))

    def residual(self, candidate: SourceEstimate, observation: Observation) -> float:
        return ranging_residual(candidate, observation)

    def refine(
        self,
        inliers: Sequence[Observation],
        candidate: SourceEstimate,
        keep_covariance: bool,
    ) -> SourceEstimate:
        result = self.refiner.refine(
            inliers,
            candidate.position,
            estimate_power=False,
            estimate_path_loss=False,
            use_position_covariances=self.linear_solver.config.use_position_covariances,
        )
        return SourceEstimate(
            position=result.position,
            covariance=result.covariance if keep_covariance else None,
            layout=result.layout,
        )


class RssiMinimalFit(MinimalFit):
    """
    Position, power and path-loss exponent from RSSI only.

    Subsets are bootstrapped by converting RSSI to distance with the initial
    power and exponent, solved linearly, then refined jointly on the subset.
    """

    def __init__(
        self,
        config: Optional[MixedEstimatorConfig] = None,
        initial_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    ):
        self.config = config or MixedEstimatorConfig()
        if initial_power_dbm is None:
            if not self.config.transmitted_power_estimation_enabled:
                raise InvalidArgumentError(
                    "RSSI estimation with fixed power needs an initial power"
                )
            initial_power_dbm = self.config.refiner.default_transmitted_power_dbm
        self.initial_power_dbm = initial_power_dbm
        self.initial_path_loss_exponent = initial_path_loss_exponent
        self.linear_solver = LinearLaterationSolver(LinearSolverConfig(
            homogeneous=self.config.homogeneous_linear_solver,
            use_position_covariances=self.config.use_position_covariances,
        ))
        self.refiner = JointSourceRefiner(self.config.refiner)

    def subset_size(self, dim: int) -> int:
        return min_observations(dim, self.config)

    def check_observations(self, observations: Sequence[Observation]):
        if any(not o.has_rssi for o in observations):
            raise InvalidArgumentError("RSSI estimation needs an RSSI on every observation")

    def fit(self, subset: Sequence[Observation]) -> SourceEstimate:
        pseudo_ranges = []
        for o in subset:
            distance = rssi_to_distance(
                o.rssi_dbm,
                self.initial_power_dbm,
                self.initial_path_loss_exponent,
                o.source.path_loss_constant,
            )
            pseudo_ranges.append(ranging_observation(
                o.source, o.position, distance, position_covariance=o.position_covariance
            ))
        bootstrap = self.linear_solver.solve(pseudo_ranges)
        return self._refine(subset, bootstrap, self.initial_power_dbm,
                            self.initial_path_loss_exponent, keep_covariance=True)

    def residual(self, candidate: SourceEstimate, observation: Observation) -> float:
        return rssi_residual(candidate, observation)

    def refine(
        self,
        inliers: Sequence[Observation],
        candidate: SourceEstimate,
        keep_covariance: bool,
    ) -> SourceEstimate:
        return self._refine(inliers, candidate.position, candidate.transmitted_power_dbm,
                            candidate.path_loss_exponent, keep_covariance)

    def _refine(self, observations, position, power_dbm, path_loss_exponent, keep_covariance):
        rssi_only = [_as_rssi_only(o) for o in observations]
        try:
            result = self.refiner.refine(
                rssi_only,
                position,
                initial_power_dbm=power_dbm,
                initial_path_loss_exponent=path_loss_exponent,
                estimate_power=self.config.transmitted_power_estimation_enabled,
                estimate_path_loss=self.config.path_loss_estimation_enabled,
                use_position_covariances=self.config.use_position_covariances,
            )
        except NotReadyError as e:
            raise InsufficientDataError(str(e)) from e
        return result.to_estimate(keep_covariance)


class MixedMinimalFit(MinimalFit):
    """
    Position, power and path-loss exponent from mixed observations.

    Subsets go through the same linear bootstrap + joint refinement as
    MixedSourceEstimator.
    """

    def __init__(
        self,
        config: Optional[MixedEstimatorConfig] = None,
        initial_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    ):
        self.config = config or MixedEstimatorConfig()
        self.initial_power_dbm = initial_power_dbm
        self.initial_path_loss_exponent = initial_path_loss_exponent

    def subset_size(self, dim: int) -> int:
        return min_observations(dim, self.config)

    def check_observations(self, observations: Sequence[Observation]):
        reason = check_sufficiency(observations, self.config)
        if reason is not None:
            raise InvalidArgumentError(f"insufficient observations: {reason}")

    def fit(self, subset: Sequence[Observation]) -> SourceEstimate:
        reason = check_sufficiency(subset, self.config)
        if reason is not None:
            raise InsufficientDataError(reason)
        return self._estimate(subset, None, self.initial_power_dbm,
                              self.initial_path_loss_exponent, keep_covariance=True)

    def residual(self, candidate: SourceEstimate, observation: Observation) -> float:
        kind = observation.kind
        if kind == ObservationKind.RANGING:
            return ranging_residual(candidate, observation)
        if kind == ObservationKind.RSSI:
            return rssi_residual(candidate, observation)
        if candidate.transmitted_power_dbm is None:
            return ranging_residual(candidate, observation)
        return 0.5 * (ranging_residual(candidate, observation)
                      + rssi_residual(candidate, observation))

    def refine(
        self,
        inliers: Sequence[Observation],
        candidate: SourceEstimate,
        keep_covariance: bool,
    ) -> SourceEstimate:
        return self._estimate(inliers, candidate.position, candidate.transmitted_power_dbm,
                              candidate.path_loss_exponent, keep_covariance)

    def _estimate(self, observations, position, power_dbm, path_loss_exponent, keep_covariance):
        try:
            result = estimate_source(
                observations,
                self.config,
                initial_position=position,
                initial_power_dbm=power_dbm,
                initial_path_loss_exponent=path_loss_exponent,
            )
        except NotReadyError as e:
            raise InsufficientDataError(str(e)) from e
        return result.to_estimate(keep_covariance)


def _as_rssi_only(observation: Observation) -> Observation:
    if observation.kind == ObservationKind.RSSI:
        return observation
    return rssi_observation(
        observation.source,
        observation.position,
        observation.rssi_dbm,
        rssi_std_db=observation.rssi_std_db,
        position_covariance=observation.position_covariance,
    )


# =============================================================================
# Factory helpers
# =============================================================================


def create_robust_ranging_estimator(
    observations: Optional[Sequence[Observation]] = None,
    quality_scores: Optional[Sequence[float]] = None,
    config: Optional[RobustEstimatorConfig] = None,
    linear_config: Optional[LinearSolverConfig] = None,
    refiner_config: Optional[RefinerConfig] = None,
    listener: Optional[EstimatorListener] = None,
) -> RobustSourceEstimator:
    """
    Create robust estimator locating a source from distances.

    Args:
        observations: Observations carrying a distance
        quality_scores: One score per observation
        config: Robust configuration (uses defaults if None)
        linear_config: Linear solver configuration
        refiner_config: Refiner configuration for the final refit
        listener: Receives estimator events

    Returns:
        Configured RobustSourceEstimator
    """
    return RobustSourceEstimator(
        RangingMinimalFit(linear_config, refiner_config),
        observations,
        quality_scores,
        config,
        listener,
    )


def create_robust_rssi_estimator(
    observations: Optional[Sequence[Observation]] = None,
    quality_scores: Optional[Sequence[float]] = None,
    config: Optional[RobustEstimatorConfig] = None,
    estimator_config: Optional[MixedEstimatorConfig] = None,
    initial_power_dbm: Optional[float] = None,
    initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    listener: Optional[EstimatorListener] = None,
) -> RobustSourceEstimator:
    """Create robust estimator locating a source from RSSI only."""
    return RobustSourceEstimator(
        RssiMinimalFit(estimator_config, initial_power_dbm, initial_path_loss_exponent),
        observations,
        quality_scores,
        config,
        listener,
    )


def create_robust_mixed_estimator(
    observations: Optional[Sequence[Observation]] = None,
    quality_scores: Optional[Sequence[float]] = None,
    config: Optional[RobustEstimatorConfig] = None,
    estimator_config: Optional[MixedEstimatorConfig] = None,
    initial_power_dbm: Optional[float] = None,
    initial_path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT,
    listener: Optional[EstimatorListener] = None,
) -> RobustSourceEstimator:
    """Create robust estimator locating a source from mixed observations."""
    return RobustSourceEstimator(
        MixedMinimalFit(estimator_config, initial_power_dbm, initial_path_loss_exponent),
        observations,
        quality_scores,
        config,
        listener,
    )
