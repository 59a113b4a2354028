"""
Linear Lateration Solver (closed-form bootstrap).

Each ranging observation i at observer position p_i with distance d_i gives

    ||x||^2 - 2 p_i . x + ||p_i||^2 - d_i^2 = 0

which is linear in (x, ||x||^2). Two formulations are supported:

- Homogeneous: unknown h = s * [x, ||x||^2, 1]; rows
  [-2 p_i, 1, ||p_i||^2 - d_i^2] . h = 0 are solved by SVD (null vector) and
  x is recovered by dividing by the last component.
- Inhomogeneous: ||x||^2 is eliminated by subtracting a reference row,
  leaving 2 (p_i - p_0) . x = (||p_i||^2 - d_i^2) - (||p_0||^2 - d_0^2),
  solved by weighted linear least squares.

Observer positions are centered and scaled before assembling the system.
Rows are weighted by the inverse of their standard deviation, which folds in
the largest eigenvalue of the observer position covariance when enabled.
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from rfsource_core.errors import InsufficientDataError, InvalidArgumentError, NumericalError
from rfsource_core.metrics import get_metrics
from rfsource_core.proto.observation import Observation

logger = logging.getLogger(__name__)


@dataclass
class LinearSolverConfig:
    """
    Configuration for the linear lateration solver.

    Attributes:
        homogeneous: Use the homogeneous (SVD) formulation, else inhomogeneous
        use_position_covariances: Down-weight rows with uncertain observers
        default_distance_std_m: Std used for observations without one (m)
        rank_tol: Relative singular value threshold for rank deficiency
    """

    homogeneous: bool = True
    use_position_covariances: bool = True
    default_distance_std_m: float = 1.0
    rank_tol: float = 1e-10

    def __post_init__(self):
        if not self.default_distance_std_m > 0:
            raise InvalidArgumentError("default_distance_std_m must be positive")
        if not self.rank_tol > 0:
            raise InvalidArgumentError("rank_tol must be positive")


class LinearLaterationSolver:
    """
    Closed-form source position from ranging observations.

    Usage:
        solver = LinearLaterationSolver(LinearSolverConfig(homogeneous=False))
        position = solver.solve(observations)  # uses observations with a distance
    """

    def __init__(self, config: LinearSolverConfig = None):
        """
        Initialize linear solver.

        Args:
            config: Solver configuration (uses defaults if None)
        """
        self.config = config or LinearSolverConfig()
        self.metrics = get_metrics()

    @staticmethod
    def min_observations(dim: int) -> int:
        """Minimum number of ranging observations for a dim-D solve."""
        return dim + 1

    def solve(self, observations: Sequence[Observation]) -> np.ndarray:
        """
        Estimate source position from the observations carrying a distance.

        Args:
            observations: Observations (RSSI-only ones are ignored)

        Returns:
            Estimated position (dim,)

        Raises:
            InsufficientDataError: fewer than dim + 1 ranging observations
            NumericalError: rank-deficient system (degenerate geometry)
        """
        usable = [o for o in observations if o.has_distance]
        if not usable:
            raise InsufficientDataError("no ranging observations")

        dim = usable[0].dim
        if any(o.dim != dim for o in usable):
            raise InvalidArgumentError("observations mix 2D and 3D positions")

        if len(usable) < self.min_observations(dim):
            raise InsufficientDataError(
                f"need at least {self.min_observations(dim)} ranging observations, "
                f"got {len(usable)}"
            )

        self.metrics.increment('linear_solves')

        positions = np.array([o.position for o in usable])
        distances = np.array([o.distance_m for o in usable])
        stds = np.array(self._row_stds(usable))

        # Normalize for conditioning; distances are translation invariant
        centroid = positions.mean(axis=0)
        centered = positions - centroid
        scale = float(np.sqrt(np.mean(np.sum(centered ** 2, axis=1))))
        if scale <= 0.0:
            raise NumericalError("all observers share the same position")

        points = centered / scale
        ranges = distances / scale

        if self.config.homogeneous:
            normalized = self._solve_homogeneous(points, ranges, stds)
        else:
            normalized = self._solve_inhomogeneous(points, ranges, stds)

        position = centroid + scale * normalized
        if not np.all(np.isfinite(position)):
            raise NumericalError("linear solve produced non-finite position")

        logger.debug(f"Linear solve ({'homogeneous' if self.config.homogeneous else 'inhomogeneous'}, "
                     f"{len(usable)} rows): {position}")
        return position

    def _row_stds(self, observations: List[Observation]) -> List[float]:
        """Per-row standard deviation including observer position uncertainty."""
        stds = []
        for o in observations:
            std = o.distance_std_m if o.distance_std_m is not None \
                else self.config.default_distance_std_m
            variance = std ** 2
            if self.config.use_position_covariances:
                variance += o.max_position_variance()
            stds.append(np.sqrt(variance))
        return stds

    def _solve_homogeneous(
        self,
        points: np.ndarray,
        ranges: np.ndarray,
        stds: np.ndarray,
    ) -> np.ndarray:
        n, dim = points.shape
        a = np.empty((n, dim + 2))
        a[:, :dim] = -2.0 * points
        a[:, dim] = 1.0
        a[:, dim + 1] = np.sum(points ** 2, axis=1) - ranges ** 2
        a /= stds[:, np.newaxis]

        try:
            _, singular_values, vt = np.linalg.svd(a)
        except np.linalg.LinAlgError as e:
            raise NumericalError(f"SVD failed: {e}") from e

        # Null space must be one-dimensional: dim + 1 independent rows
        if len(singular_values) < dim + 1 or \
                singular_values[dim] <= self.config.rank_tol * singular_values[0]:
            raise NumericalError("homogeneous lateration system is rank deficient")

        h = vt[-1]
        if abs(h[dim + 1]) <= self.config.rank_tol * np.linalg.norm(h):
            raise NumericalError("homogeneous solution lies at infinity")

        return h[:dim] / h[dim + 1]

    def _solve_inhomogeneous(
        self,
        points: np.ndarray,
        ranges: np.ndarray,
        stds: np.ndarray,
    ) -> np.ndarray:
        n, dim = points.shape
        ref = int(np.argmin(stds))
        others = [i for i in range(n) if i != ref]

        b_terms = np.sum(points ** 2, axis=1) - ranges ** 2
        a = 2.0 * (points[others] - points[ref])
        b = b_terms[others] - b_terms[ref]

        weights = 1.0 / np.sqrt(stds[others] ** 2 + stds[ref] ** 2)
        a = a * weights[:, np.newaxis]
        b = b * weights

        try:
            solution, _, rank, singular_values = np.linalg.lstsq(a, b, rcond=None)
        except np.linalg.LinAlgError as e:
            raise NumericalError(f"least squares failed: {e}") from e

        if rank < dim or singular_values[-1] <= self.config.rank_tol * singular_values[0]:
            raise NumericalError("inhomogeneous lateration system is rank deficient")

        return solution
