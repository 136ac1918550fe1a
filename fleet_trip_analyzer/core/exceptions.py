"""
Error taxonomy for trip derivation and threshold monitoring.

Errors local to one unit (vehicle, driver, document) are collected by the
batch runners and never abort a run; only ConfigurationError is fatal.
"""
from typing import Any, Dict, Optional


class FleetTripError(Exception):
    """Base exception for the analyzer."""

    def __init__(self, message: str, error_code: str,
                 details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'error_code': self.error_code,
            'message': self.message,
            'details': self.details
        }


class InvalidInput(FleetTripError):
    """Raised for malformed ranges, vehicles without a tracker or out-of-bounds samples."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, error_code="ERR_INVALID_INPUT", details=details)


class UnitTimeout(FleetTripError):
    """Raised when a single vehicle/driver unit exceeds its wall-clock budget."""

    def __init__(self, unit_id: Any, budget_seconds: float):
        super().__init__(
            message=f"Unit {unit_id} exceeded its {budget_seconds:.1f}s budget",
            error_code="ERR_TIMEOUT",
            details={'unit_id': unit_id, 'budget_seconds': budget_seconds}
        )


class DependencyUnavailable(FleetTripError):
    """Raised when the location store, trip store or notification dispatch cannot be reached."""

    def __init__(self, dependency: str, reason: str = ""):
        message = f"{dependency} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            error_code="ERR_DEPENDENCY",
            details={'dependency': dependency, 'reason': reason}
        )


class ConfigurationError(FleetTripError):
    """Raised for missing or invalid configuration. Fatal to the whole run."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, error_code="ERR_CONFIG", details=details)
