"""
Main EMS configuration class that integrates all configuration sections.

Key names are stable across YAML and JSON:

    pmaxsite: -1000
    ess: {p: 0, pmaxch: -40, pmaxdisch: 40, e: 100, capacity: 200}
    pv: {p: 0, pprod: 30, peak: 50}
    poc: {p: -500}
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple
import logging
import os

from ..exceptions import ConfigurationError
from .base import BaseConfig, ConfigValidationResult


@dataclass
class ESSConfig:
    """Initial state and limits of the battery."""
    p: float = 0.0
    pmaxch: float = 0.0      # kW, <= 0
    pmaxdisch: float = 0.0   # kW, >= 0
    e: float = 0.0           # kWh
    capacity: float = 0.0    # kWh

    def validate(self) -> ConfigValidationResult:
        result = ConfigValidationResult(is_valid=True)

        if self.capacity <= 0:
            result.add_error(f"capacity must be > 0, got {self.capacity}")
        if self.pmaxch > 0:
            result.add_error(f"pmaxch must be <= 0, got {self.pmaxch}")
        if self.pmaxdisch < 0:
            result.add_error(f"pmaxdisch must be >= 0, got {self.pmaxdisch}")
        if not self.pmaxch <= self.p <= self.pmaxdisch:
            result.add_error(f"p must be between pmaxch and pmaxdisch, got {self.p}")
        if self.e < 0 or self.e > max(self.capacity, 0):
            result.add_error(f"e must be between 0 and capacity, got {self.e}")
        if self.pmaxch == 0 and self.pmaxdisch == 0:
            result.add_warning("ESS has no power capability")

        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "p": self.p,
            "pmaxch": self.pmaxch,
            "pmaxdisch": self.pmaxdisch,
            "e": self.e,
            "capacity": self.capacity
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ESSConfig':
        return cls(
            p=float(data.get("p", 0.0)),
            pmaxch=float(data.get("pmaxch", 0.0)),
            pmaxdisch=float(data.get("pmaxdisch", 0.0)),
            e=float(data.get("e", 0.0)),
            capacity=float(data.get("capacity", 0.0))
        )


@dataclass
class PVConfig:
    """Initial state and rating of the PV plant."""
    p: float = 0.0
    pprod: float = 0.0
    peak: float = 0.0

    def validate(self) -> ConfigValidationResult:
        result = ConfigValidationResult(is_valid=True)

        if self.peak <= 0:
            result.add_error(f"peak must be > 0, got {self.peak}")
        if not 0 <= self.p <= self.pprod <= self.peak:
            result.add_error(
                f"powers must satisfy 0 <= p <= pprod <= peak, "
                f"got p={self.p}, pprod={self.pprod}, peak={self.peak}"
            )

        return result

    def to_dict(self) -> Dict[str, Any]:
        return {"p": self.p, "pprod": self.pprod, "peak": self.peak}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PVConfig':
        return cls(
            p=float(data.get("p", 0.0)),
            pprod=float(data.get("pprod", 0.0)),
            peak=float(data.get("peak", 0.0))
        )


@dataclass
class POCConfig:
    """Last known power at the point of connection."""
    p: float = 0.0

    def validate(self) -> ConfigValidationResult:
        result = ConfigValidationResult(is_valid=True)
        if self.p > 0:
            result.add_warning(f"site is injecting into the grid at startup (p={self.p})")
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {"p": self.p}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'POCConfig':
        return cls(p=float(data.get("p", 0.0)))


@dataclass
class ControllerConfig:
    """Decision loop settings."""
    period: float = 1.0   # seconds
    margin: float = 0.1   # safety margin on pmaxsite

    def validate(self) -> ConfigValidationResult:
        result = ConfigValidationResult(is_valid=True)

        if self.period <= 0:
            result.add_error(f"period must be > 0, got {self.period}")
        if not 0 <= self.margin < 1:
            result.add_error(f"margin must be in [0, 1), got {self.margin}")

        return result


@dataclass
class MonitoringConfig:
    """Configuration for logging."""
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def validate(self) -> ConfigValidationResult:
        result = ConfigValidationResult(is_valid=True)

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level not in valid_log_levels:
            result.add_error(f"Invalid log level: {self.log_level}")

        return result


@dataclass
class SimulationConfig:
    """Configuration for the simulated site used without hardware drivers."""
    seed: Optional[int] = None
    load_min_fraction: float = 0.1
    load_max_fraction: float = 0.2

    @property
    def load_fraction(self) -> Tuple[float, float]:
        return self.load_min_fraction, self.load_max_fraction

    def validate(self) -> ConfigValidationResult:
        result = ConfigValidationResult(is_valid=True)

        if not 0 <= self.load_min_fraction <= self.load_max_fraction:
            result.add_error(
                f"load fractions must satisfy 0 <= min <= max, got "
                f"{self.load_min_fraction} and {self.load_max_fraction}"
            )

        return result


@dataclass
class EMSConfig(BaseConfig):
    """Main EMS configuration class."""

    pmaxsite: Optional[float] = None  # kW, negative

    # Assets
    ess: ESSConfig = field(default_factory=ESSConfig)
    pv: PVConfig = field(default_factory=PVConfig)
    poc: POCConfig = field(default_factory=POCConfig)

    # Runtime
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)

    def __post_init__(self):
        """Initialize after dataclass creation."""
        super().__init__()

    def setup_logging(self) -> None:
        """Setup logging based on monitoring configuration."""
        logger = logging.getLogger("ems")
        logger.setLevel(getattr(logging, self.monitoring.log_level))

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        # Console handler
        if not logger.handlers:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)

        # File handler if specified
        if self.monitoring.log_file:
            log_path = os.path.abspath(self.monitoring.log_file)
            attached = any(
                isinstance(handler, logging.FileHandler) and handler.baseFilename == log_path
                for handler in logger.handlers
            )
            if not attached:
                try:
                    file_handler = logging.FileHandler(log_path)
                except OSError as e:
                    raise ConfigurationError(f"Cannot open log file {log_path}: {e}") from e
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)

    def validate(self) -> ConfigValidationResult:
        """Validate the entire EMS configuration."""
        result = ConfigValidationResult(is_valid=True)

        if self.pmaxsite is None:
            result.add_error("pmaxsite is required")
        elif self.pmaxsite >= 0:
            result.add_error(f"pmaxsite must be < 0, got {self.pmaxsite}")

        sections = [
            ("ess", self.ess),
            ("pv", self.pv),
            ("poc", self.poc),
            ("controller", self.controller),
            ("monitoring", self.monitoring),
            ("simulation", self.simulation)
        ]

        # Prefix errors and warnings with section name
        for section_name, section in sections:
            result.extend(section.validate(), prefix=f"{section_name}: ")

        return result

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "pmaxsite": self.pmaxsite,
            "ess": self.ess.to_dict(),
            "pv": self.pv.to_dict(),
            "poc": self.poc.to_dict(),
            "controller": {
                "period": self.controller.period,
                "margin": self.controller.margin
            },
            "monitoring": {
                "log_level": self.monitoring.log_level,
                "log_file": self.monitoring.log_file
            },
            "simulation": {
                "seed": self.simulation.seed,
                "load_min_fraction": self.simulation.load_min_fraction,
                "load_max_fraction": self.simulation.load_max_fraction
            }
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EMSConfig':
        """Create configuration from dictionary."""
        pmaxsite = data.get("pmaxsite")

        controller_data = data.get("controller") or {}
        controller = ControllerConfig(
            period=float(controller_data.get("period", 1.0)),
            margin=float(controller_data.get("margin", 0.1))
        )

        monitoring_data = data.get("monitoring") or {}
        monitoring = MonitoringConfig(
            log_level=str(monitoring_data.get("log_level", "INFO")).upper(),
            log_file=monitoring_data.get("log_file")
        )

        simulation_data = data.get("simulation") or {}
        seed = simulation_data.get("seed")
        simulation = SimulationConfig(
            seed=int(seed) if seed is not None else None,
            load_min_fraction=float(simulation_data.get("load_min_fraction", 0.1)),
            load_max_fraction=float(simulation_data.get("load_max_fraction", 0.2))
        )

        return cls(
            pmaxsite=float(pmaxsite) if pmaxsite is not None else None,
            ess=ESSConfig.from_dict(data.get("ess") or {}),
            pv=PVConfig.from_dict(data.get("pv") or {}),
            poc=POCConfig.from_dict(data.get("poc") or {}),
            controller=controller,
            monitoring=monitoring,
            simulation=simulation
        )
