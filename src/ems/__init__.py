"""Energy Management System (EMS) library initialization."""

from .core import EnergyManagementSystem, SiteThresholds
from .config import EMSConfig
from .exceptions import EMSError, GridCoverageError
from .grid import GridConnection
from .resources import (
    AdjustmentResult,
    AdjustmentStatus,
    EnergyStorage,
    PVInverter,
    PowerAsset
)

__version__ = "0.1.0"
__license__ = "MIT"

__all__ = [
    "EnergyManagementSystem",
    "SiteThresholds",
    "EMSConfig",
    "EMSError",
    "GridCoverageError",
    "GridConnection",
    "AdjustmentResult",
    "AdjustmentStatus",
    "EnergyStorage",
    "PVInverter",
    "PowerAsset"
]
