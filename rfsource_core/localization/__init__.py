"""
Localization Module: Radio source position, power and path-loss estimation.

Key classes:
- LinearLaterationSolver: Closed-form position bootstrap from distances
- JointSourceRefiner: Weighted Levenberg-Marquardt over ranging + RSSI rows
- MixedSourceEstimator: Bootstrap + refinement with Idle/Running lifecycle
- RobustSourceEstimator: Quality-guided progressive sampling around a MinimalFit
"""

# Lifecycle
from .estimator_state import (
    EstimatorState,
    EstimatorListener,
    LockableEstimator,
)

# Core solvers
from .linear_solver import (
    LinearLaterationSolver,
    LinearSolverConfig,
)
from .nonlinear_refiner import (
    DEFAULT_PATH_LOSS_EXPONENT,
    DEFAULT_TRANSMITTED_POWER_DBM,
    JointSourceRefiner,
    RefinerConfig,
    RefinementResult,
)

# Estimators
from .mixed_estimator import (
    MixedEstimatorConfig,
    MixedSourceEstimator,
    check_sufficiency,
    estimate_source,
)
from .robust_estimator import (
    MinimalFit,
    ProgressiveSampler,
    RobustEstimatorConfig,
    RobustSourceEstimator,
    adaptive_iterations,
)
from .minimal_fits import (
    RangingMinimalFit,
    RssiMinimalFit,
    MixedMinimalFit,
    create_robust_ranging_estimator,
    create_robust_rssi_estimator,
    create_robust_mixed_estimator,
)

__all__ = [
    # Lifecycle
    'EstimatorState',
    'EstimatorListener',
    'LockableEstimator',
    # Core solvers
    'LinearLaterationSolver',
    'LinearSolverConfig',
    'DEFAULT_PATH_LOSS_EXPONENT',
    'DEFAULT_TRANSMITTED_POWER_DBM',
    'JointSourceRefiner',
    'RefinerConfig',
    'RefinementResult',
    # Mixed estimation
    'MixedEstimatorConfig',
    'MixedSourceEstimator',
    'check_sufficiency',
    'estimate_source',
    # Robust estimation
    'MinimalFit',
    'ProgressiveSampler',
    'RobustEstimatorConfig',
    'RobustSourceEstimator',
    'adaptive_iterations',
    'RangingMinimalFit',
    'RssiMinimalFit',
    'MixedMinimalFit',
    'create_robust_ranging_estimator',
    'create_robust_rssi_estimator',
    'create_robust_mixed_estimator',
]
