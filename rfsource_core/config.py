"""
Configuration for the radio source localization package.

Estimator settings live in the dataclass configs next to each estimator;
this module holds process-level settings (logging, simulation defaults).
"""

import logging
from typing import Optional

# Logging configuration
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}

# Simulated scenario used by scripts/verify_estimators.py
SIMULATION_CONFIG = {
    "frequency_hz": 2.4e9,
    "num_observations": 50,
    "min_pos_m": -50.0,
    "max_pos_m": 50.0,
    "min_power_dbm": -100.0,
    "max_power_dbm": -50.0,
    "path_loss_exponent": 2.0,
    "outlier_percentage": 20,
    "outlier_std": 10.0,
    "robust_threshold": 0.1,
    "seed": 42,
}


def configure_logging(level: Optional[str] = None):
    """
    Configure root logging from LOGGING_CONFIG.

    Args:
        level: Level name overriding LOGGING_CONFIG["level"] (e.g. "DEBUG")
    """
    level_name = (level or LOGGING_CONFIG["level"]).upper()
    logging.basicConfig(
        level=getattr(logging, level_name),
        format=LOGGING_CONFIG["format"],
    )
    logging.getLogger().setLevel(getattr(logging, level_name))
