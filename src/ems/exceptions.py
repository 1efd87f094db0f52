"""Custom exceptions for the Energy Management System."""

class EMSError(Exception):
    """Base exception for EMS errors."""
    pass

class ResourceError(EMSError):
    """Exception raised for asset-related errors."""
    pass

class GridCoverageError(EMSError):
    """Exception raised when PV and ESS together cannot cover a site adjustment."""

    def __init__(self, required: float, adjustments: tuple = ()):
        self.required = required
        self.adjustments = tuple(adjustments)
        super().__init__(f"Grid missing coverage, required {required:.3f} kW")

class ValidationError(EMSError):
    """Base exception for validation errors."""
    pass

class ValidationRangeError(ValidationError):
    """Exception raised for range validation errors."""
    pass

class ConfigurationError(EMSError):
    """Exception raised for configuration errors."""
    pass
