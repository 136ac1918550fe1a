"""
Fleet Trip Analyzer - Monitoring Module

Alert deduplication and the periodic threshold monitors.
"""

from .alert_manager import AlertManager
from .threshold_monitors import ThresholdMonitor, NoSignalMonitor, DocumentExpiryMonitor
from .working_hours import DailyWorkingHoursMonitor, ContinuousDrivingMonitor
from .geofence_monitor import GeofenceMonitor

__all__ = ['AlertManager', 'ThresholdMonitor', 'NoSignalMonitor', 'DocumentExpiryMonitor',
           'DailyWorkingHoursMonitor', 'ContinuousDrivingMonitor', 'GeofenceMonitor']
