"""
Robust Source Estimator (quality-guided progressive sampling).

Wraps any minimal-subset fit (MinimalFit strategy) to reject outlier
observations:

1. Observations are ranked by quality score; minimal subsets are drawn
   progressively (PROSAC), so top-ranked observations are tried first and
   sampling widens toward uniform RANSAC as iterations grow
2. Each subset is fitted by the wrapped strategy; a failed fit just moves on
   to the next sample
3. Every observation is scored against the candidate: inlier iff
   |residual| <= threshold
4. The best candidate maximizes (inlier count, inlier quality sum) and breaks
   ties by the lowest inlier residual sum
5. On improvement, the iteration bound shrinks to
   N = log(1 - confidence) / log(1 - inlier_ratio^subset_size)
6. After sampling, the best candidate is refined over its inliers

Reference: Chum & Matas, "Matching with PROSAC - Progressive Sample
Consensus", CVPR 2005.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from rfsource_core.errors import (
    InsufficientDataError,
    InvalidArgumentError,
    NotReadyError,
    NumericalError,
    RobustEstimationFailedError,
)
from rfsource_core.localization.estimator_state import EstimatorListener, LockableEstimator
from rfsource_core.proto.observation import Observation, validate_same_source
from rfsource_core.proto.source_estimate import InliersData, SourceEstimate

logger = logging.getLogger(__name__)

# Clamp for the inlier ratio before taking logs in the adaptive bound
INLIER_RATIO_EPSILON = 1e-7

# Lower-layer failures that mean "try another sample"
CANDIDATE_FIT_ERRORS = (NumericalError, InsufficientDataError)


class MinimalFit(ABC):
    """
    Strategy plugged into RobustSourceEstimator.

    Supplies the minimal subset size, the candidate fit over a subset, the
    per-observation residual and the final refinement over inliers.
    """

    @abstractmethod
    def subset_size(self, dim: int) -> int:
        """Number of observations in a minimal subset."""

    def min_refine_observations(self, dim: int) -> int:
        """Inliers needed for the final refinement."""
        return self.subset_size(dim)

    def check_observations(self, observations: Sequence[Observation]):
        """Raise InvalidArgumentError if observations cannot be used."""

    @abstractmethod
    def fit(self, subset: Sequence[Observation]) -> SourceEstimate:
        """
        Fit a candidate from a minimal subset.

        Raises:
            NumericalError, InsufficientDataError: subset cannot be fitted
        """

    @abstractmethod
    def residual(self, candidate: SourceEstimate, observation: Observation) -> float:
        """Absolute residual of an observation against a candidate."""

    @abstractmethod
    def refine(
        self,
        inliers: Sequence[Observation],
        candidate: SourceEstimate,
        keep_covariance: bool,
    ) -> SourceEstimate:
        """Refit the candidate over its inliers."""


@dataclass
class RobustEstimatorConfig:
    """
    Configuration for robust estimation.

    Attributes:
        threshold: Residual magnitude at or below which an observation is an inlier
        confidence: Probability of drawing at least one outlier-free subset
        max_iterations: Hard cap on sampling iterations
        refine_result: Refit the best candidate over its inliers
        keep_covariance: Compute covariance in the final refinement
        keep_inliers: Keep the inlier mask of the best candidate
        keep_residuals: Keep residuals of the best candidate
        progress_delta: Minimum progress change between notifications
        seed: Random seed for reproducible sampling (None = fresh entropy)
    """

    threshold: float = 0.1
    confidence: float = 0.99
    max_iterations: int = 5000
    refine_result: bool = True
    keep_covariance: bool = True
    keep_inliers: bool = False
    keep_residuals: bool = False
    progress_delta: float = 0.05
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        if not self.threshold > 0:
            raise InvalidArgumentError(f"threshold must be positive: {self.threshold}")
        if not 0.0 < self.confidence < 1.0:
            raise InvalidArgumentError(f"confidence must be in (0, 1): {self.confidence}")
        if self.max_iterations < 1:
            raise InvalidArgumentError(
                f"max_iterations must be at least 1: {self.max_iterations}"
            )
        if not 0.0 <= self.progress_delta <= 1.0:
            raise InvalidArgumentError(
                f"progress_delta must be in [0, 1]: {self.progress_delta}"
            )


def adaptive_iterations(
    inlier_ratio: float,
    subset_size: int,
    confidence: float,
    max_iterations: int,
) -> int:
    """
    Iterations needed to draw one all-inlier subset with given confidence.

    The inlier ratio is clamped to [INLIER_RATIO_EPSILON, 1 - INLIER_RATIO_EPSILON]
    and the result to [1, max_iterations].
    """
    ratio = min(max(inlier_ratio, INLIER_RATIO_EPSILON), 1.0 - INLIER_RATIO_EPSILON)
    denominator = math.log(1.0 - ratio ** subset_size)
    if denominator == 0.0:
        return max_iterations
    needed = math.log(1.0 - confidence) / denominator
    return int(min(max(math.ceil(needed), 1), max_iterations))


class ProgressiveSampler:
    """
    PROSAC subset sampler over observations ranked by quality.

    The first subset is the top-ranked one; the sampling pool then grows one
    observation at a time following the PROSAC growth function, and becomes
    uniform over all observations once the pool covers the whole set.
    """

    def __init__(
        self,
        quality_scores: Sequence[float],
        subset_size: int,
        max_iterations: int,
        rng: np.random.Generator,
    ):
        num = len(quality_scores)
        if subset_size > num:
            raise InvalidArgumentError(
                f"subset size {subset_size} exceeds {num} observations"
            )
        # Stable sort keeps input order among equal scores
        self.order = np.argsort(-np.asarray(quality_scores, dtype=float), kind='stable')
        self.subset_size = subset_size
        self.rng = rng

        self._num = num
        self._pool = subset_size
        self._t = 0
        self._t_pool = float(max_iterations)
        for i in range(subset_size):
            self._t_pool *= (subset_size - i) / (num - i)
        self._t_pool_prime = 1

    @property
    def pool_size(self) -> int:
        return self._pool

    def next_sample(self) -> np.ndarray:
        """Indices (into the original observation list) of the next subset."""
        m = self.subset_size
        self._t += 1

        if self._t > self._t_pool_prime and self._pool < self._num:
            t_next = self._t_pool * (self._pool + 1) / (self._pool + 1 - m)
            self._t_pool_prime += int(math.ceil(t_next - self._t_pool))
            self._t_pool = t_next
            self._pool += 1

        if self._t_pool_prime < self._t:
            picks = self.rng.choice(self._pool, size=m, replace=False)
        else:
            picks = np.append(
                self.rng.choice(self._pool - 1, size=m - 1, replace=False),
                self._pool - 1,
            )
        return self.order[picks]


@dataclass
class _Candidate:
    estimate: SourceEstimate
    inlier_mask: np.ndarray
    residuals: np.ndarray
    score: Tuple[int, float, float]


class RobustSourceEstimator(LockableEstimator):
    """
    Outlier-robust estimation around a MinimalFit strategy.

    Usage:
        estimator = RobustSourceEstimator(
            MixedMinimalFit(),
            observations,
            quality_scores,
            RobustEstimatorConfig(threshold=0.1),
        )
        estimate = estimator.estimate()
        print(estimate.position, estimator.inliers_data.num_inliers)

    Notes:
        - Quality scores only bias sampling order, never residual weighting
        - All setters and estimate() raise LockedError while running
        - cancel_check, when given, is polled before every iteration
    """

    def __init__(
        self,
        fit: MinimalFit,
        observations: Optional[Sequence[Observation]] = None,
        quality_scores: Optional[Sequence[float]] = None,
        config: Optional[RobustEstimatorConfig] = None,
        listener: Optional[EstimatorListener] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ):
        """
        Initialize robust estimator.

        Args:
            fit: Minimal-subset fit strategy
            observations: Observations of a single source
            quality_scores: One score per observation (higher = more trusted)
            config: Robust configuration (uses defaults if None)
            listener: Receives start/end/iteration/progress events
            cancel_check: Callable returning True to stop sampling early
        """
        super().__init__(listener)
        if fit is None:
            raise InvalidArgumentError("fit strategy cannot be None")
        self._fit = fit
        self._config = config or RobustEstimatorConfig()
        self._observations: Optional[Sequence[Observation]] = None
        self._quality_scores: Optional[np.ndarray] = None
        self._cancel_check = cancel_check

        self._result: Optional[SourceEstimate] = None
        self._inliers_data: Optional[InliersData] = None
        self._iterations: Optional[int] = None
        self._refined = False

        if observations is not None:
            self.observations = observations
        if quality_scores is not None:
            self.quality_scores = quality_scores

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    @property
    def fit_strategy(self) -> MinimalFit:
        return self._fit

    @property
    def config(self) -> RobustEstimatorConfig:
        return self._config

    @config.setter
    def config(self, config: RobustEstimatorConfig):
        self._check_not_locked()
        if config is None:
            raise InvalidArgumentError("config cannot be None")
        self._config = config

    def _update_config(self, **changes):
        self._check_not_locked()
        self._config = replace(self._config, **changes)

    @property
    def threshold(self) -> float:
        return self._config.threshold

    @threshold.setter
    def threshold(self, threshold: float):
        self._update_config(threshold=threshold)

    @property
    def confidence(self) -> float:
        return self._config.confidence

    @confidence.setter
    def confidence(self, confidence: float):
        self._update_config(confidence=confidence)

    @property
    def max_iterations(self) -> int:
        return self._config.max_iterations

    @max_iterations.setter
    def max_iterations(self, max_iterations: int):
        self._update_config(max_iterations=max_iterations)

    @property
    def refine_result(self) -> bool:
        return self._config.refine_result

    @refine_result.setter
    def refine_result(self, enabled: bool):
        self._update_config(refine_result=enabled)

    @property
    def keep_covariance(self) -> bool:
        return self._config.keep_covariance

    @keep_covariance.setter
    def keep_covariance(self, enabled: bool):
        self._update_config(keep_covariance=enabled)

    @property
    def keep_inliers(self) -> bool:
        return self._config.keep_inliers

    @keep_inliers.setter
    def keep_inliers(self, enabled: bool):
        self._update_config(keep_inliers=enabled)

    @property
    def keep_residuals(self) -> bool:
        return self._config.keep_residuals

    @keep_residuals.setter
    def keep_residuals(self, enabled: bool):
        self._update_config(keep_residuals=enabled)

    @property
    def cancel_check(self) -> Optional[Callable[[], bool]]:
        return self._cancel_check

    @cancel_check.setter
    def cancel_check(self, cancel_check: Optional[Callable[[], bool]]):
        self._check_not_locked()
        self._cancel_check = cancel_check

    # -------------------------------------------------------------------------
    # Observations and quality scores
    # -------------------------------------------------------------------------

    @property
    def observations(self) -> Optional[Sequence[Observation]]:
        return self._observations

    @observations.setter
    def observations(self, observations: Sequence[Observation]):
        self._check_not_locked()
        if not observations:
            raise InvalidArgumentError("observations cannot be None or empty")
        validate_same_source(observations)
        dim = observations[0].dim
        if any(o.dim != dim for o in observations):
            raise InvalidArgumentError("observations mix 2D and 3D positions")
        if len(observations) < self._fit.subset_size(dim):
            raise InvalidArgumentError(
                f"need at least {self._fit.subset_size(dim)} observations, "
                f"got {len(observations)}"
            )
        self._fit.check_observations(observations)
        self._observations = observations

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        return self._quality_scores

    @quality_scores.setter
    def quality_scores(self, quality_scores: Sequence[float]):
        self._check_not_locked()
        if quality_scores is None or len(quality_scores) == 0:
            raise InvalidArgumentError("quality scores cannot be None or empty")
        if self._observations is not None and len(quality_scores) != len(self._observations):
            raise InvalidArgumentError(
                f"got {len(quality_scores)} quality scores for "
                f"{len(self._observations)} observations"
            )
        scores = np.array(quality_scores, dtype=float)
        if not np.all(np.isfinite(scores)):
            raise InvalidArgumentError("quality scores must be finite")
        self._quality_scores = scores

    @property
    def min_observations(self) -> Optional[int]:
        """Minimal subset size for the current observations."""
        if not self._observations:
            return None
        return self._fit.subset_size(self._observations[0].dim)

    def is_ready(self) -> bool:
        """True when observations and one quality score per observation are set."""
        if not self._observations or self._quality_scores is None:
            return False
        if len(self._quality_scores) != len(self._observations):
            return False
        return len(self._observations) >= self.min_observations

    # -------------------------------------------------------------------------
    # Estimation
    # -------------------------------------------------------------------------

    def estimate(self) -> SourceEstimate:
        """
        Run robust estimation.

        Returns:
            SourceEstimate of the best candidate (refined if enabled)

        Raises:
            LockedError: an estimate is already running
            NotReadyError: observations or quality scores missing/mismatched
            RobustEstimationFailedError: no subset could ever be fitted
        """
        self._check_not_locked()
        self.metrics.increment('robust_estimate_attempts')
        if not self.is_ready():
            self.metrics.increment_failure('not_ready')
            raise NotReadyError("observations or quality scores missing or mismatched")

        with self._running():
            self._notify_start()

            best, iterations = self._sample()
            estimate, refined = self._finalize(best)

            self._result = estimate
            self._refined = refined
            self._iterations = iterations
            if self._config.keep_inliers or self._config.keep_residuals:
                self._inliers_data = InliersData(
                    inlier_mask=best.inlier_mask if self._config.keep_inliers else None,
                    residuals=best.residuals if self._config.keep_residuals else None,
                )
            else:
                self._inliers_data = None

            self.metrics.increment('robust_estimate_success')
            self._notify_end()

        return self._result

    def _sample(self) -> Tuple[_Candidate, int]:
        """Progressive sampling loop; returns the best candidate and iterations used."""
        cfg = self._config
        observations = self._observations
        scores = self._quality_scores
        num = len(observations)
        subset_size = self._fit.subset_size(observations[0].dim)

        rng = np.random.default_rng(cfg.seed)
        sampler = ProgressiveSampler(scores, subset_size, cfg.max_iterations, rng)

        best: Optional[_Candidate] = None
        bound = cfg.max_iterations
        iteration = 0
        last_progress = 0.0

        while iteration < bound:
            if self._cancel_check is not None and self._cancel_check():
                self.metrics.increment_failure('cancelled')
                logger.info(f"Robust sampling cancelled after {iteration} iterations")
                break

            self._notify_next_iteration(iteration)
            subset_indices = sampler.next_sample()
            iteration += 1
            self.metrics.increment('robust_iterations')

            try:
                estimate = self._fit.fit([observations[i] for i in subset_indices])
            except CANDIDATE_FIT_ERRORS as e:
                self.metrics.increment_failure('subset_fit_failed')
                logger.debug(f"Iteration {iteration}: subset fit failed ({e})")
                estimate = None

            if estimate is not None:
                residuals = np.array([self._fit.residual(estimate, o) for o in observations])
                inlier_mask = np.isfinite(residuals) & (residuals <= cfg.threshold)
                score = _score(inlier_mask, residuals, scores)

                if best is None or score > best.score:
                    best = _Candidate(estimate, inlier_mask, residuals, score)
                    bound = min(bound, adaptive_iterations(
                        score[0] / num, subset_size, cfg.confidence, cfg.max_iterations
                    ))
                    logger.debug(f"Iteration {iteration}: best candidate with "
                                 f"{score[0]}/{num} inliers, bound={bound}")

            progress = min(1.0, iteration / bound)
            if progress - last_progress >= cfg.progress_delta or \
                    (progress >= 1.0 and last_progress < 1.0):
                last_progress = progress
                self._notify_progress_changed(progress)

        if best is None:
            self.metrics.increment_failure('no_candidate')
            raise RobustEstimationFailedError(
                f"no subset could be fitted in {iteration} iterations"
            )

        self.metrics.record_histogram('robust_iterations_used', iteration)
        self.metrics.record_histogram('robust_inlier_ratio', best.score[0] / num)
        logger.info(f"Robust estimation: {best.score[0]}/{num} inliers "
                    f"after {iteration} iterations")
        return best, iteration

    def _finalize(self, best: _Candidate) -> Tuple[SourceEstimate, bool]:
        """Refine the best candidate over its inliers when enabled."""
        cfg = self._config
        candidate = replace(best.estimate, covariance=None)
        if not cfg.refine_result:
            return candidate, False

        dim = self._observations[0].dim
        inliers = [o for o, keep in zip(self._observations, best.inlier_mask) if keep]
        if len(inliers) < self._fit.min_refine_observations(dim):
            logger.warning(f"Only {len(inliers)} inliers, keeping unrefined candidate")
            return candidate, False

        try:
            refined = self._fit.refine(inliers, best.estimate, cfg.keep_covariance)
        except CANDIDATE_FIT_ERRORS + (NotReadyError,) as e:
            self.metrics.increment_failure('refine_failed')
            logger.warning(f"Inlier refinement failed, keeping candidate: {e}")
            return candidate, False

        if not cfg.keep_covariance:
            refined = replace(refined, covariance=None)
        return refined, True

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    @property
    def result(self) -> Optional[SourceEstimate]:
        return self._result

    @property
    def inliers_data(self) -> Optional[InliersData]:
        return self._inliers_data

    @property
    def iterations(self) -> Optional[int]:
        """Sampling iterations used by the last estimate."""
        return self._iterations

    @property
    def is_result_refined(self) -> bool:
        return self._refined

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position

    @property
    def estimated_transmitted_power_dbm(self) -> Optional[float]:
        return None if self._result is None else self._result.transmitted_power_dbm

    @property
    def estimated_path_loss_exponent(self) -> Optional[float]:
        return None if self._result is None else self._result.path_loss_exponent

    @property
    def estimated_covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.covariance

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        return None if self._result is None else self._result.position_covariance


def _score(
    inlier_mask: np.ndarray,
    residuals: np.ndarray,
    quality_scores: np.ndarray,
) -> Tuple[int, float, float]:
    """Greater is better: (inlier count, inlier quality sum, -inlier residual sum)."""
    return (
        int(np.count_nonzero(inlier_mask)),
        float(np.sum(quality_scores[inlier_mask])),
        -float(np.sum(residuals[inlier_mask])),
    )
