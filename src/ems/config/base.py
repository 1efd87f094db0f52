"""
Base configuration machinery for the Energy Management System.
Provides file loading, serialization and validation results.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Union, List
from pathlib import Path
import yaml
import json
from enum import Enum
import logging

from ..exceptions import ConfigurationError


class ConfigFormat(Enum):
    """File formats a site configuration can be stored in."""
    YAML = "yaml"
    JSON = "json"

    @classmethod
    def from_path(cls, file_path: Path) -> 'ConfigFormat':
        suffix = file_path.suffix.lower()
        if suffix in ('.yaml', '.yml'):
            return cls.YAML
        if suffix == '.json':
            return cls.JSON
        raise ConfigurationError(f"Unsupported file format: {suffix or file_path.name}")


class ValidationLevel(Enum):
    """How ``check()`` reacts to validation errors."""
    STRICT = "strict"          # raise, the EMS must not start
    WARN = "warn"              # log and carry on
    PERMISSIVE = "permissive"  # return the result silently


@dataclass
class ConfigValidationResult:
    """Errors and warnings collected while validating a configuration."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def extend(self, other: 'ConfigValidationResult', prefix: str = "") -> None:
        """Merge another result, prefixing its messages."""
        for error in other.errors:
            self.add_error(f"{prefix}{error}")
        for warning in other.warnings:
            self.add_warning(f"{prefix}{warning}")


class BaseConfig(ABC):
    """Configuration that can be validated and stored as YAML or JSON."""

    def __init__(self, validation_level: ValidationLevel = ValidationLevel.STRICT):
        self.validation_level = validation_level
        self._logger = logging.getLogger(f"ems.config.{self.__class__.__name__}")

    @abstractmethod
    def validate(self) -> ConfigValidationResult:
        pass

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        pass

    @classmethod
    @abstractmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseConfig':
        pass

    def save_to_file(self, file_path: Union[str, Path], format: Optional[ConfigFormat] = None) -> None:
        """Write the configuration, in the format given by the suffix unless ``format`` is set."""
        file_path = Path(file_path)
        format = format or ConfigFormat.from_path(file_path)

        with open(file_path, 'w') as f:
            if format == ConfigFormat.JSON:
                json.dump(self.to_dict(), f, indent=2)
            else:
                yaml.safe_dump(self.to_dict(), f, default_flow_style=False, indent=2)

    @classmethod
    def load_from_file(cls, file_path: Union[str, Path]) -> 'BaseConfig':
        """Load configuration from file.

        Any read, parse or type problem is reported as a ConfigurationError.
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise ConfigurationError(f"Configuration file not found: {file_path}")

        format = ConfigFormat.from_path(file_path)
        try:
            with open(file_path, 'r') as f:
                data = json.load(f) if format == ConfigFormat.JSON else yaml.safe_load(f)
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to read configuration {file_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration {file_path} must contain a mapping")

        try:
            return cls.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"Invalid configuration {file_path}: {e}") from e

    def check(self) -> ConfigValidationResult:
        """Validate and act on the result according to the validation level."""
        result = self.validate()

        if self.validation_level == ValidationLevel.PERMISSIVE:
            return result

        for warning in result.warnings:
            self._logger.warning(f"Validation warning: {warning}")

        if not result.is_valid:
            for error in result.errors:
                self._logger.error(f"Validation error: {error}")
            if self.validation_level == ValidationLevel.STRICT:
                raise ConfigurationError(
                    "Configuration validation failed: " + "; ".join(result.errors)
                )

        return result
