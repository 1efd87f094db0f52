"""
Configuration package for the Energy Management System.
Provides file loading and validation of the site configuration.
"""

from .base import (
    BaseConfig,
    ConfigFormat,
    ValidationLevel,
    ConfigValidationResult
)

from .ems_config import (
    ESSConfig,
    PVConfig,
    POCConfig,
    ControllerConfig,
    MonitoringConfig,
    SimulationConfig,
    EMSConfig
)

__all__ = [
    # Base configuration classes
    "BaseConfig",
    "ConfigFormat",
    "ValidationLevel",
    "ConfigValidationResult",

    # Site sections
    "ESSConfig",
    "PVConfig",
    "POCConfig",

    # Runtime sections
    "ControllerConfig",
    "MonitoringConfig",
    "SimulationConfig",

    # Main configuration class
    "EMSConfig"
]
