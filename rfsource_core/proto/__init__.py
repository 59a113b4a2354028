"""
Protocol Module: Observation and estimate containers.
"""

from .observation import (
    SPEED_OF_LIGHT,
    DEFAULT_FREQUENCY_HZ,
    ObservationKind,
    RadioSource,
    Observation,
    ranging_observation,
    rssi_observation,
    fused_observation,
    validate_same_source,
    count_by_kind,
    expected_rssi,
    rssi_to_distance,
    dbm_to_mw,
    mw_to_dbm,
)
from .source_estimate import (
    POSITION,
    TRANSMITTED_POWER,
    PATH_LOSS_EXPONENT,
    ParameterBlock,
    build_parameter_layout,
    SourceEstimate,
    InliersData,
)

__all__ = [
    'SPEED_OF_LIGHT',
    'DEFAULT_FREQUENCY_HZ',
    'ObservationKind',
    'RadioSource',
    'Observation',
    'ranging_observation',
    'rssi_observation',
    'fused_observation',
    'validate_same_source',
    'count_by_kind',
    'expected_rssi',
    'rssi_to_distance',
    'dbm_to_mw',
    'mw_to_dbm',
    'POSITION',
    'TRANSMITTED_POWER',
    'PATH_LOSS_EXPONENT',
    'ParameterBlock',
    'build_parameter_layout',
    'SourceEstimate',
    'InliersData',
]
