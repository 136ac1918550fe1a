"""
Fleet Trip Analyzer - Core Module

Errors, configuration loading, caches, locks, the fleet store and
notification dispatch.
"""

from .exceptions import (FleetTripError, InvalidInput, UnitTimeout,
                         DependencyUnavailable, ConfigurationError)

__all__ = ['FleetTripError', 'InvalidInput', 'UnitTimeout',
           'DependencyUnavailable', 'ConfigurationError']
