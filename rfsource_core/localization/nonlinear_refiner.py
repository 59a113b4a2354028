"""
Joint Nonlinear Refiner (ranging + RSSI).

Refines the parameter vector theta = [position, transmitted_power?,
path_loss_exponent?] by weighted Levenberg-Marquardt over the combined
residual model:

    ranging row:  r = d_meas - ||x - p||
    RSSI row:     r = rssi_meas - (Pt + 10 n log10(k) - 10 n log10(||x - p||))

Each row is weighted by 1 / sigma_eff where

    sigma_eff^2 = sigma^2 + g^T Sigma_p g

sigma is the observation (or default) standard deviation and the second
term propagates the observer position covariance Sigma_p through the row
gradient g with respect to the observer position (when enabled).

The parameter covariance is the inverse of the weighted normal-equations
matrix J^T W J at the solution.

Reference: log-distance path-loss model with free-space constant
k = c / (4 pi f).
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from rfsource_core.errors import InvalidArgumentError, NotReadyError, NumericalError
from rfsource_core.metrics import get_metrics
from rfsource_core.proto.observation import Observation
from rfsource_core.proto.source_estimate import (
    PATH_LOSS_EXPONENT,
    TRANSMITTED_POWER,
    ParameterBlock,
    SourceEstimate,
    build_parameter_layout,
    find_block,
)

logger = logging.getLogger(__name__)

DEFAULT_PATH_LOSS_EXPONENT = 2.0
DEFAULT_TRANSMITTED_POWER_DBM = -50.0

_TEN_OVER_LN10 = 10.0 / math.log(10.0)

_DISTANCE_ROW = 0
_RSSI_ROW = 1


@dataclass
class RefinerConfig:
    """
    Configuration for the joint nonlinear refiner.

    Attributes:
        max_iterations: Maximum Levenberg-Marquardt iterations
        step_tol: Relative step size at which iteration stops
        cost_tol: Relative cost decrease at which iteration stops
        initial_damping: Initial Levenberg-Marquardt damping factor
        max_damping: Damping at which no further improvement is possible
        default_distance_std_m: Std for ranging rows without one (m)
        default_rssi_std_db: Std for RSSI rows without one (dB)
        default_transmitted_power_dbm: Power start when no RSSI row helps
        min_distance_m: Floor on source-observer distance in the model
    """

    max_iterations: int = 200
    step_tol: float = 1e-10
    cost_tol: float = 1e-12
    initial_damping: float = 1e-3
    max_damping: float = 1e12
    default_distance_std_m: float = 1.0
    default_rssi_std_db: float = 1.0
    default_transmitted_power_dbm: float = DEFAULT_TRANSMITTED_POWER_DBM
    min_distance_m: float = 1e-9

    def __post_init__(self):
        if self.max_iterations < 1:
            raise InvalidArgumentError("max_iterations must be at least 1")
        if not self.default_distance_std_m > 0:
            raise InvalidArgumentError("default_distance_std_m must be positive")
        if not self.default_rssi_std_db > 0:
            raise InvalidArgumentError("default_rssi_std_db must be positive")
        if not self.initial_damping > 0 or not self.max_damping > self.initial_damping:
            raise InvalidArgumentError("damping bounds are invalid")


@dataclass
class _Row:
    """One residual row of the stacked problem."""

    kind: int
    obs_index: int
    measured: float
    std: float
    position: np.ndarray
    covariance: Optional[np.ndarray]
    path_loss_constant: float


@dataclass
class RefinementResult:
    """
    Result of a joint refinement.

    Attributes:
        position: Refined source position
        transmitted_power_dbm: Refined (or fixed) power, None if unknown
        path_loss_exponent: Refined (or fixed) path-loss exponent
        covariance: Parameter covariance ordered by layout
        layout: Active parameter blocks
        iterations: Levenberg-Marquardt iterations used
        cost: Final weighted sum of squared residuals
        residuals: Final unweighted residual per row
    """

    position: np.ndarray
    transmitted_power_dbm: Optional[float]
    path_loss_exponent: float
    covariance: np.ndarray
    layout: List[ParameterBlock]
    iterations: int
    cost: float
    residuals: np.ndarray = field(repr=False, default=None)

    def to_estimate(self, keep_covariance: bool = True) -> SourceEstimate:
        return SourceEstimate(
            position=self.position,
            transmitted_power_dbm=self.transmitted_power_dbm,
            path_loss_exponent=self.path_loss_exponent,
            covariance=self.covariance if keep_covariance else None,
            layout=self.layout,
        )


def min_observations(dim: int, estimate_power: bool, estimate_path_loss: bool) -> int:
    """Minimum observations for the active unknowns (dim + 1, +1 per scalar)."""
    return dim + 1 + int(estimate_power) + int(estimate_path_loss)


class JointSourceRefiner:
    """
    Refine source position, transmitted power and path-loss exponent.

    Usage:
        refiner = JointSourceRefiner()
        result = refiner.refine(
            observations,
            initial_position=bootstrap,
            estimate_power=True,
        )
        print(result.position, result.transmitted_power_dbm)
    """

    def __init__(self, config: Optional[RefinerConfig] = None):
        """
        Initialize refiner.

        Args:
            config: Refiner configuration (uses defaults if None)
        """
        self.config = config or RefinerConfig()
        self.metrics = get_metrics()

    def refine(
        self,
        observations: Sequence[Observation],
        initial_position: Sequence[float],
        initial_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: Optional[float] = None,
        estimate_power: bool = True,
        estimate_path_loss: bool = False,
        use_position_covariances: bool = True,
    ) -> RefinementResult:
        """
        Refine the source parameters over a mixed observation set.

        Args:
            observations: Ranging, RSSI and fused observations of one source
            initial_position: Starting position (required)
            initial_power_dbm: Starting/fixed transmitted power (dBm)
            initial_path_loss_exponent: Starting/fixed path-loss exponent
            estimate_power: Estimate transmitted power (else hold fixed)
            estimate_path_loss: Estimate path-loss exponent (else hold fixed)
            use_position_covariances: Propagate observer position covariance

        Returns:
            RefinementResult with refined parameters and covariance

        Raises:
            NotReadyError: fewer observations than the active unknowns need
            NumericalError: singular normal equations or no convergence

        Notes:
            - RSSI rows are only used when power is estimated or known
        """
        x0 = np.array(initial_position, dtype=float)
        dim = x0.shape[0]
        if dim not in (2, 3):
            raise InvalidArgumentError(f"Initial position must be 2D or 3D, got {x0.shape}")
        if any(o.dim != dim for o in observations):
            raise InvalidArgumentError("observation dimension does not match initial position")

        power_known = estimate_power or initial_power_dbm is not None
        if estimate_path_loss and not power_known:
            raise NotReadyError("path-loss estimation needs a known or estimated power")

        rows = self._build_rows(observations, power_known, use_position_covariances)
        used = len(set(row.obs_index for row in rows))
        required = min_observations(dim, estimate_power, estimate_path_loss)
        if used < required:
            raise NotReadyError(
                f"need at least {required} usable observations, got {used}"
            )

        layout = build_parameter_layout(dim, estimate_power, estimate_path_loss)
        power_block = find_block(layout, TRANSMITTED_POWER)
        path_loss_block = find_block(layout, PATH_LOSS_EXPONENT)

        n0 = DEFAULT_PATH_LOSS_EXPONENT if initial_path_loss_exponent is None \
            else float(initial_path_loss_exponent)
        if initial_power_dbm is not None:
            p0 = float(initial_power_dbm)
        elif estimate_power:
            p0 = self._initial_power(rows, x0, n0)
        else:
            p0 = None

        theta = np.empty(layout[-1].offset + layout[-1].size)
        theta[:dim] = x0
        if power_block is not None:
            theta[power_block.offset] = p0
        if path_loss_block is not None:
            theta[path_loss_block.offset] = n0

        problem = _Problem(rows, dim, power_block, path_loss_block, p0, n0,
                           self.config.min_distance_m)

        self.metrics.increment('refiner_runs')
        theta, iterations, cost = self._levenberg_marquardt(problem, theta)

        weights = problem.weights(theta)
        residuals, jacobian = problem.linearize(theta)
        weighted_jacobian = jacobian * weights[:, np.newaxis]
        covariance = self._covariance(weighted_jacobian)

        self.metrics.record_histogram('refiner_iterations', iterations)
        logger.debug(f"Refinement converged in {iterations} iterations, cost={cost:.3e}")

        return RefinementResult(
            position=theta[:dim].copy(),
            transmitted_power_dbm=problem.power(theta),
            path_loss_exponent=problem.path_loss(theta),
            covariance=covariance,
            layout=layout,
            iterations=iterations,
            cost=cost,
            residuals=residuals,
        )

    def _build_rows(
        self,
        observations: Sequence[Observation],
        power_known: bool,
        use_position_covariances: bool,
    ) -> List[_Row]:
        rows = []
        for i, o in enumerate(observations):
            covariance = o.position_covariance if use_position_covariances else None
            k = o.source.path_loss_constant
            if o.has_distance:
                std = o.distance_std_m if o.distance_std_m is not None \
                    else self.config.default_distance_std_m
                rows.append(_Row(_DISTANCE_ROW, i, o.distance_m, std, o.position, covariance, k))
            if o.has_rssi and power_known:
                std = o.rssi_std_db if o.rssi_std_db is not None \
                    else self.config.default_rssi_std_db
                rows.append(_Row(_RSSI_ROW, i, o.rssi_dbm, std, o.position, covariance, k))
        return rows

    def _initial_power(self, rows: List[_Row], x0: np.ndarray, n0: float) -> float:
        """Closed-form least-squares power given the start position and exponent."""
        values = []
        for row in rows:
            if row.kind != _RSSI_ROW:
                continue
            d = max(float(np.linalg.norm(x0 - row.position)), self.config.min_distance_m)
            values.append(row.measured - 10.0 * n0 * math.log10(row.path_loss_constant)
                          + 10.0 * n0 * math.log10(d))
        if not values:
            return self.config.default_transmitted_power_dbm
        return float(np.mean(values))

    def _levenberg_marquardt(self, problem: '_Problem', theta: np.ndarray):
        cfg = self.config
        damping = cfg.initial_damping

        weights = problem.weights(theta)
        r, j = problem.linearize(theta)
        r = r * weights
        j = j * weights[:, np.newaxis]
        cost = float(r @ r)
        if not np.isfinite(cost):
            raise NumericalError("non-finite residuals at initial guess")

        for iteration in range(1, cfg.max_iterations + 1):
            if cost == 0.0:
                return theta, iteration - 1, cost

            normal = j.T @ j
            gradient = j.T @ r
            scaling = np.diag(np.maximum(np.diag(normal), 1e-12))

            while True:
                try:
                    delta = np.linalg.solve(normal + damping * scaling, gradient)
                except np.linalg.LinAlgError:
                    delta = None

                if delta is not None:
                    trial = theta + delta
                    r_trial, _ = problem.linearize(trial, with_jacobian=False)
                    r_trial = r_trial * weights
                    trial_cost = float(r_trial @ r_trial)
                    if np.isfinite(trial_cost) and trial_cost <= cost:
                        damping = max(damping / 10.0, 1e-15)
                        break

                damping *= 10.0
                if damping > cfg.max_damping:
                    # No step improves the cost: local optimum reached
                    return theta, iteration, cost

            step_small = np.linalg.norm(delta) <= cfg.step_tol * (np.linalg.norm(theta) + cfg.step_tol)
            cost_small = (cost - trial_cost) <= cfg.cost_tol * cost

            theta = trial
            weights = problem.weights(theta)
            r, j = problem.linearize(theta)
            r = r * weights
            j = j * weights[:, np.newaxis]
            cost = float(r @ r)

            if step_small or cost_small:
                return theta, iteration, cost

        raise NumericalError(
            f"refinement did not converge in {cfg.max_iterations} iterations"
        )

    @staticmethod
    def _covariance(weighted_jacobian: np.ndarray) -> np.ndarray:
        normal = weighted_jacobian.T @ weighted_jacobian
        if not np.all(np.isfinite(normal)) or \
                np.linalg.matrix_rank(normal) < normal.shape[0]:
            raise NumericalError("normal equations matrix is singular")
        try:
            covariance = np.linalg.inv(normal)
        except np.linalg.LinAlgError as e:
            raise NumericalError(f"normal equations matrix is singular: {e}") from e
        return 0.5 * (covariance + covariance.T)


class _Problem:
    """Stacked residual model over the active parameter blocks."""

    def __init__(
        self,
        rows: List[_Row],
        dim: int,
        power_block: Optional[ParameterBlock],
        path_loss_block: Optional[ParameterBlock],
        fixed_power: Optional[float],
        fixed_path_loss: float,
        min_distance: float,
    ):
        self.rows = rows
        self.dim = dim
        self.power_block = power_block
        self.path_loss_block = path_loss_block
        self.fixed_power = fixed_power
        self.fixed_path_loss = fixed_path_loss
        self.min_distance = min_distance
        self.num_params = dim + int(power_block is not None) + int(path_loss_block is not None)

    def power(self, theta: np.ndarray) -> Optional[float]:
        if self.power_block is not None:
            return float(theta[self.power_block.offset])
        return self.fixed_power

    def path_loss(self, theta: np.ndarray) -> float:
        if self.path_loss_block is not None:
            return float(theta[self.path_loss_block.offset])
        return self.fixed_path_loss

    def _geometry(self, x: np.ndarray, row: _Row):
        diff = x - row.position
        distance = max(float(np.linalg.norm(diff)), self.min_distance)
        return diff, distance

    def linearize(self, theta: np.ndarray, with_jacobian: bool = True):
        """
        Residuals (measured - model) and model Jacobian at theta.

        Returns:
            Tuple of (residuals, jacobian); jacobian is None when not requested
        """
        x = theta[:self.dim]
        power = self.power(theta)
        n = self.path_loss(theta)

        residuals = np.empty(len(self.rows))
        jacobian = np.zeros((len(self.rows), self.num_params)) if with_jacobian else None

        for i, row in enumerate(self.rows):
            diff, distance = self._geometry(x, row)
            if row.kind == _DISTANCE_ROW:
                residuals[i] = row.measured - distance
                if with_jacobian:
                    jacobian[i, :self.dim] = diff / distance
            else:
                log_k = math.log10(row.path_loss_constant)
                log_d = math.log10(distance)
                residuals[i] = row.measured - (power + 10.0 * n * (log_k - log_d))
                if with_jacobian:
                    jacobian[i, :self.dim] = -_TEN_OVER_LN10 * n * diff / distance ** 2
                    if self.power_block is not None:
                        jacobian[i, self.power_block.offset] = 1.0
                    if self.path_loss_block is not None:
                        jacobian[i, self.path_loss_block.offset] = 10.0 * (log_k - log_d)

        return residuals, jacobian

    def weights(self, theta: np.ndarray) -> np.ndarray:
        """Per-row weight 1 / sigma_eff at theta."""
        x = theta[:self.dim]
        n = self.path_loss(theta)
        weights = np.empty(len(self.rows))
        for i, row in enumerate(self.rows):
            variance = row.std ** 2
            if row.covariance is not None:
                diff, distance = self._geometry(x, row)
                if row.kind == _DISTANCE_ROW:
                    gradient = diff / distance
                else:
                    gradient = -_TEN_OVER_LN10 * n * diff / distance ** 2
                variance += float(gradient @ row.covariance @ gradient)
            weights[i] = 1.0 / math.sqrt(variance)
        return weights
