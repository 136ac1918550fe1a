"""
Fleet Trip Analyzer

Derives trips from raw GPS location samples, computes trip metrics and runs
threshold monitors (no-signal, document expiry, working hours, geofences)
with deduplicated alerting.
"""

__version__ = '0.1.0'
