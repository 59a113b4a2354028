"""
Source Estimate Output Schema.

Defines the output of the mixed and robust estimators: position, optional
transmitted power and path-loss exponent, and a covariance matrix laid out
after the active parameter vector [position, transmitted_power?,
path_loss_exponent?].
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from rfsource_core.proto.observation import dbm_to_mw

POSITION = 'position'
TRANSMITTED_POWER = 'transmitted_power'
PATH_LOSS_EXPONENT = 'path_loss_exponent'


@dataclass(frozen=True)
class ParameterBlock:
    """
    One contiguous block of the refinement parameter vector.

    Attributes:
        name: Block name (position, transmitted_power, path_loss_exponent)
        size: Number of scalar parameters in the block
        offset: Index of the first parameter of the block
    """

    name: str
    size: int
    offset: int

    @property
    def slice(self) -> slice:
        return slice(self.offset, self.offset + self.size)


def build_parameter_layout(
    dim: int,
    estimate_power: bool,
    estimate_path_loss: bool,
) -> List[ParameterBlock]:
    """
    Build the ordered list of enabled parameter blocks.

    Position always comes first, followed by transmitted power and
    path-loss exponent when they are estimated.
    """
    layout = [ParameterBlock(POSITION, dim, 0)]
    offset = dim
    if estimate_power:
        layout.append(ParameterBlock(TRANSMITTED_POWER, 1, offset))
        offset += 1
    if estimate_path_loss:
        layout.append(ParameterBlock(PATH_LOSS_EXPONENT, 1, offset))
    return layout


def find_block(layout: List[ParameterBlock], name: str) -> Optional[ParameterBlock]:
    for block in layout:
        if block.name == name:
            return block
    return None


@dataclass
class SourceEstimate:
    """
    Estimated radio source parameters.

    Attributes:
        position: Estimated source position (2D or 3D) in meters
        transmitted_power_dbm: Estimated (or fixed) transmitted power (dBm)
        path_loss_exponent: Estimated (or fixed) path-loss exponent
        covariance: Covariance of the estimated parameters, ordered by layout
        layout: Parameter blocks of the estimated parameter vector

    Notes:
        - A fixed (not estimated) power or exponent is reported but has no
          covariance block
        - covariance is None when it was not computed
    """

    position: np.ndarray
    transmitted_power_dbm: Optional[float] = None
    path_loss_exponent: Optional[float] = None
    covariance: Optional[np.ndarray] = None
    layout: Optional[List[ParameterBlock]] = None

    @property
    def dim(self) -> int:
        return len(self.position)

    @property
    def transmitted_power_mw(self) -> Optional[float]:
        """Estimated transmitted power in milliwatts."""
        if self.transmitted_power_dbm is None:
            return None
        return dbm_to_mw(self.transmitted_power_dbm)

    def _block_covariance(self, name: str) -> Optional[np.ndarray]:
        if self.covariance is None or self.layout is None:
            return None
        block = find_block(self.layout, name)
        if block is None:
            return None
        return self.covariance[block.slice, block.slice]

    @property
    def position_covariance(self) -> Optional[np.ndarray]:
        return self._block_covariance(POSITION)

    @property
    def transmitted_power_variance(self) -> Optional[float]:
        block = self._block_covariance(TRANSMITTED_POWER)
        return None if block is None else float(block[0, 0])

    @property
    def path_loss_exponent_variance(self) -> Optional[float]:
        block = self._block_covariance(PATH_LOSS_EXPONENT)
        return None if block is None else float(block[0, 0])

    @property
    def position_std(self) -> Optional[np.ndarray]:
        """Per-axis position standard deviation (m)."""
        cov = self.position_covariance
        if cov is None:
            return None
        return np.sqrt(np.clip(np.diag(cov), 0.0, None))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'position': [float(v) for v in self.position],
            'transmitted_power_dbm': self.transmitted_power_dbm,
            'path_loss_exponent': self.path_loss_exponent,
            'covariance': None if self.covariance is None else self.covariance.tolist(),
            'parameters': None if self.layout is None else [b.name for b in self.layout],
        }


@dataclass
class InliersData:
    """
    Inlier bookkeeping of the best robust candidate.

    Attributes:
        inlier_mask: Boolean mask over observations (True = inlier), if kept
        residuals: Absolute residual per observation, if kept
    """

    inlier_mask: Optional[np.ndarray] = None
    residuals: Optional[np.ndarray] = None

    @property
    def num_inliers(self) -> Optional[int]:
        if self.inlier_mask is None:
            return None
        return int(np.count_nonzero(self.inlier_mask))

    @property
    def inlier_ratio(self) -> Optional[float]:
        if self.inlier_mask is None:
            return None
        if len(self.inlier_mask) == 0:
            return 0.0
        return self.num_inliers / len(self.inlier_mask)

    @property
    def inlier_indices(self) -> Optional[np.ndarray]:
        if self.inlier_mask is None:
            return None
        return np.flatnonzero(self.inlier_mask)
