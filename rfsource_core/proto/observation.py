"""
Observation Message Schema.

One observation is a single measurement of a radio source taken at a known
observer position: a distance (ranging), a received signal strength (RSSI),
or both (fused). A data set may mix the three kinds for the same source.

RSSI follows the log-distance path-loss model:

    rssi = Pt_dBm + 10 * n * log10(k) - 10 * n * log10(d)

where k = c / (4 * pi * f) is the free-space constant of the carrier
frequency f, n is the path-loss exponent and d the emitter distance.
"""

import math
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from rfsource_core.errors import InvalidArgumentError

SPEED_OF_LIGHT = 299792458.0  # m/s

DEFAULT_FREQUENCY_HZ = 2.4e9

# Relative tolerance used when checking covariance symmetry / PSD
_COVARIANCE_TOL = 1e-9


class ObservationKind(IntEnum):
    """Which measurements an observation carries."""

    RANGING = 0  # distance only
    RSSI = 1     # received signal strength only
    FUSED = 2    # distance and RSSI


@dataclass(frozen=True)
class RadioSource:
    """
    Radio source being located.

    Attributes:
        source_id: Identifier of the source (e.g. BSSID, beacon id)
        frequency_hz: Carrier frequency (Hz)
    """

    source_id: str
    frequency_hz: float = DEFAULT_FREQUENCY_HZ

    def __post_init__(self):
        if not self.frequency_hz > 0:
            raise InvalidArgumentError(f"Frequency must be positive: {self.frequency_hz}")

    @property
    def wavelength_m(self) -> float:
        return SPEED_OF_LIGHT / self.frequency_hz

    @property
    def path_loss_constant(self) -> float:
        """Free-space constant k = c / (4 * pi * f)."""
        return SPEED_OF_LIGHT / (4.0 * math.pi * self.frequency_hz)


@dataclass(frozen=True, eq=False)
class Observation:
    """
    Immutable measurement of a radio source.

    Attributes:
        source: Radio source being measured
        position: Observer position (2D or 3D) in meters
        distance_m: Measured distance to the source (m), if any
        distance_std_m: Distance standard deviation (m), if known
        rssi_dbm: Received signal strength (dBm), if any
        rssi_std_db: RSSI standard deviation (dB), if known
        position_covariance: Observer position covariance (dim x dim, m^2)

    Notes:
        - At least one of distance_m / rssi_dbm must be present
        - Arrays are stored read-only; estimators never copy or mutate them
    """

    source: RadioSource
    position: np.ndarray
    distance_m: Optional[float] = None
    distance_std_m: Optional[float] = None
    rssi_dbm: Optional[float] = None
    rssi_std_db: Optional[float] = None
    position_covariance: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self):
        """Validate observation after initialization."""
        position = np.array(self.position, dtype=float)
        if position.ndim != 1 or position.shape[0] not in (2, 3):
            raise InvalidArgumentError(
                f"Position must be 2D or 3D, got shape {position.shape}"
            )
        if not np.all(np.isfinite(position)):
            raise InvalidArgumentError("Position must be finite")
        position.setflags(write=False)
        object.__setattr__(self, 'position', position)

        if self.distance_m is None and self.rssi_dbm is None:
            raise InvalidArgumentError("Observation needs a distance, an RSSI or both")

        if self.distance_m is not None and self.distance_m < 0:
            raise InvalidArgumentError(f"Distance cannot be negative: {self.distance_m}")

        if self.distance_std_m is not None and not self.distance_std_m > 0:
            raise InvalidArgumentError(
                f"Distance std must be positive: {self.distance_std_m}"
            )

        if self.rssi_std_db is not None and not self.rssi_std_db > 0:
            raise InvalidArgumentError(f"RSSI std must be positive: {self.rssi_std_db}")

        if self.position_covariance is not None:
            covariance = np.array(self.position_covariance, dtype=float)
            _validate_covariance(covariance, position.shape[0])
            covariance.setflags(write=False)
            object.__setattr__(self, 'position_covariance', covariance)

    @property
    def dim(self) -> int:
        """Number of spatial dimensions (2 or 3)."""
        return self.position.shape[0]

    @property
    def source_id(self) -> str:
        return self.source.source_id

    @property
    def has_distance(self) -> bool:
        return self.distance_m is not None

    @property
    def has_rssi(self) -> bool:
        return self.rssi_dbm is not None

    @property
    def kind(self) -> ObservationKind:
        if self.has_distance and self.has_rssi:
            return ObservationKind.FUSED
        if self.has_distance:
            return ObservationKind.RANGING
        return ObservationKind.RSSI

    @property
    def is_fused(self) -> bool:
        return self.kind == ObservationKind.FUSED

    def distance_to(self, point: Sequence[float]) -> float:
        """Euclidean distance from the observer to a point."""
        return float(np.linalg.norm(np.asarray(point, dtype=float) - self.position))

    def max_position_variance(self) -> float:
        """
        Largest eigenvalue of the position covariance (m^2).

        Returns 0.0 when no covariance is attached.
        """
        if self.position_covariance is None:
            return 0.0
        return float(np.linalg.eigvalsh(self.position_covariance)[-1])


def _validate_covariance(covariance: np.ndarray, dim: int):
    """Raise InvalidArgumentError unless covariance is a dim x dim PSD matrix."""
    if covariance.shape != (dim, dim):
        raise InvalidArgumentError(
            f"Position covariance must be {dim}x{dim}, got {covariance.shape}"
        )
    scale = max(1.0, float(np.max(np.abs(covariance))))
    if not np.allclose(covariance, covariance.T, atol=_COVARIANCE_TOL * scale):
        raise InvalidArgumentError("Position covariance must be symmetric")
    if np.linalg.eigvalsh(covariance)[0] < -_COVARIANCE_TOL * scale:
        raise InvalidArgumentError("Position covariance must be positive semi-definite")


def ranging_observation(
    source: RadioSource,
    position: Sequence[float],
    distance_m: float,
    distance_std_m: Optional[float] = None,
    position_covariance: Optional[np.ndarray] = None,
) -> Observation:
    """Create a distance-only observation."""
    return Observation(
        source=source,
        position=position,
        distance_m=distance_m,
        distance_std_m=distance_std_m,
        position_covariance=position_covariance,
    )


def rssi_observation(
    source: RadioSource,
    position: Sequence[float],
    rssi_dbm: float,
    rssi_std_db: Optional[float] = None,
    position_covariance: Optional[np.ndarray] = None,
) -> Observation:
    """Create an RSSI-only observation."""
    return Observation(
        source=source,
        position=position,
        rssi_dbm=rssi_dbm,
        rssi_std_db=rssi_std_db,
        position_covariance=position_covariance,
    )


def fused_observation(
    source: RadioSource,
    position: Sequence[float],
    distance_m: float,
    rssi_dbm: float,
    distance_std_m: Optional[float] = None,
    rssi_std_db: Optional[float] = None,
    position_covariance: Optional[np.ndarray] = None,
) -> Observation:
    """Create an observation carrying both distance and RSSI."""
    return Observation(
        source=source,
        position=position,
        distance_m=distance_m,
        distance_std_m=distance_std_m,
        rssi_dbm=rssi_dbm,
        rssi_std_db=rssi_std_db,
        position_covariance=position_covariance,
    )


def validate_same_source(observations: Iterable[Observation]):
    """
    Check that all observations refer to the same radio source.

    Raises:
        InvalidArgumentError: if source ids differ
    """
    source_ids = set(o.source_id for o in observations)
    if len(source_ids) > 1:
        raise InvalidArgumentError(f"Observations refer to mixed sources: {sorted(source_ids)}")


def count_by_kind(observations: Iterable[Observation]) -> Tuple[int, int]:
    """
    Count observations usable for ranging and for RSSI.

    A fused observation counts toward both.

    Returns:
        Tuple of (num_ranging, num_rssi)
    """
    num_ranging = 0
    num_rssi = 0
    for o in observations:
        if o.has_distance:
            num_ranging += 1
        if o.has_rssi:
            num_rssi += 1
    return num_ranging, num_rssi


# =============================================================================
# Path-loss helpers
# =============================================================================


def expected_rssi(
    transmitted_power_dbm: float,
    path_loss_exponent: float,
    path_loss_constant: float,
    distance_m: float,
) -> float:
    """RSSI (dBm) predicted by the log-distance model at a given distance."""
    return (
        transmitted_power_dbm
        + 10.0 * path_loss_exponent * math.log10(path_loss_constant)
        - 10.0 * path_loss_exponent * math.log10(distance_m)
    )


def rssi_to_distance(
    rssi_dbm: float,
    transmitted_power_dbm: float,
    path_loss_exponent: float,
    path_loss_constant: float,
) -> float:
    """Invert the log-distance model: distance (m) that yields rssi_dbm."""
    exponent = (transmitted_power_dbm - rssi_dbm) / (10.0 * path_loss_exponent)
    return path_loss_constant * 10.0 ** exponent


def dbm_to_mw(power_dbm: float) -> float:
    """Convert power from dBm to milliwatts."""
    return 10.0 ** (power_dbm / 10.0)


def mw_to_dbm(power_mw: float) -> float:
    """Convert power from milliwatts to dBm."""
    if not power_mw > 0:
        raise InvalidArgumentError(f"Power must be positive: {power_mw}")
    return 10.0 * math.log10(power_mw)
