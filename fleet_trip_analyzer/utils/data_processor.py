"""
Data processing utilities for location samples.
"""
import logging
from datetime import datetime
from typing import List, Dict, Any, Tuple, Optional

import numpy as np
from geopy.distance import great_circle

from fleet_trip_analyzer.models import LocationSample

logger = logging.getLogger(__name__)


class DataProcessor:
    """Common data processing utilities."""

    @staticmethod
    def calculate_distance_between_points(point1: Tuple[float, float],
                                          point2: Tuple[float, float]) -> float:
        """
        Calculate the great-circle distance between two GPS points in meters.

        Args:
            point1: (latitude, longitude)
            point2: (latitude, longitude)

        Returns:
            Distance in meters
        """
        return great_circle(point1, point2).meters

    @staticmethod
    def seconds_between(earlier: datetime, later: datetime) -> float:
        return (later - earlier).total_seconds()

    @staticmethod
    def implied_speed_kmh(distance_m: float, elapsed_seconds: float) -> Optional[float]:
        """Speed implied by a displacement over an interval; None when no time elapsed."""
        if elapsed_seconds <= 0:
            return None
        return (distance_m / 1000.0) / (elapsed_seconds / 3600.0)

    @staticmethod
    def sort_samples(samples: List[LocationSample]) -> List[LocationSample]:
        """Order by recorded_at; ties fall back to ingestion time, then sample id."""
        return sorted(samples, key=lambda s: s.ordering_key)

    @staticmethod
    def calculate_time_statistics(timestamps: List[datetime]) -> Dict[str, Any]:
        """
        Calculate statistics about sampling intervals.

        Args:
            timestamps: List of datetime objects in ascending order

        Returns:
            Dictionary with interval statistics in seconds
        """
        if len(timestamps) < 2:
            return {}

        intervals = np.diff([ts.timestamp() for ts in timestamps])

        return {
            'total_duration_seconds': float(timestamps[-1].timestamp() - timestamps[0].timestamp()),
            'num_intervals': int(len(intervals)),
            'avg_interval_seconds': float(np.mean(intervals)),
            'min_interval_seconds': float(np.min(intervals)),
            'max_interval_seconds': float(np.max(intervals)),
            'std_interval_seconds': float(np.std(intervals))
        }
