"""
Fleet Trip Analyzer - Analyzers Module

Trip segmentation, trip metrics, trip cost and the fleet-wide orchestrator.
"""

from .trip_extractor import TripExtractor
from .trip_metrics import TripMetricsCalculator
from .trip_cost import TripCostCalculator
from .fleet_analyzer import FleetAnalyzer

__all__ = ['TripExtractor', 'TripMetricsCalculator', 'TripCostCalculator', 'FleetAnalyzer']
