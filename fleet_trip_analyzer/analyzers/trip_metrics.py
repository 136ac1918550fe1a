"""
Trip metrics: distance with anomaly exclusion, duration, speeds and driver score.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

import pytz

from fleet_trip_analyzer.config import MetricsConfig
from fleet_trip_analyzer.models import DataAnomaly, LocationSample, Trip, TripMetrics
from fleet_trip_analyzer.utils.data_processor import DataProcessor

logger = logging.getLogger(__name__)


class TripMetricsCalculator:
    """Computes TripMetrics for a trip from its ordered samples."""

    def __init__(self, config: MetricsConfig):
        self.config = config
        self.data_processor = DataProcessor()

    def compute_metrics(self, trip: Trip, samples: List[LocationSample],
                        now: Optional[datetime] = None) -> TripMetrics:
        """
        Compute metrics for one trip.

        Args:
            trip: Trip whose started_at/ended_at bound the samples
            samples: The trip's samples, from start to end boundary sample
            now: Reference time for open trips (defaults to the current UTC time)

        Returns:
            TripMetrics
        """
        ordered = self.data_processor.sort_samples(samples)

        distance_m, implied_max, anomalies = self._distance(trip.vehicle_id, ordered)

        if trip.ended_at is not None:
            duration_seconds = self.data_processor.seconds_between(trip.started_at, trip.ended_at)
            is_provisional = False
        else:
            reference = now or datetime.now(pytz.UTC)
            duration_seconds = max(0.0, self.data_processor.seconds_between(trip.started_at, reference))
            is_provisional = True

        distance_km = distance_m / 1000.0
        average_speed = distance_km / (duration_seconds / 3600.0) if duration_seconds > 0 else 0.0

        reported = [s for s in ordered if s.speed_kmh is not None]
        max_speed = max(s.speed_kmh for s in reported) if reported else implied_max

        braking, acceleration = self._harsh_events(reported)
        speeding_count, speeding_seconds = self._speeding(reported)

        if reported:
            penalty = (
                self.config.hard_braking_penalty * braking
                + self.config.speeding_penalty * speeding_count
                + self.config.harsh_acceleration_penalty * acceleration
            )
            driver_score = int(round(max(0.0, 100.0 - penalty)))
        else:
            driver_score = None

        return TripMetrics(
            distance_km=distance_km,
            duration_seconds=duration_seconds,
            average_speed=average_speed,
            max_speed=max_speed,
            driver_score=driver_score,
            is_provisional=is_provisional,
            harsh_braking_count=braking,
            harsh_acceleration_count=acceleration,
            speeding_count=speeding_count,
            speeding_seconds=speeding_seconds,
            anomalies=anomalies
        )

    def _distance(self, vehicle_id: int,
                  ordered: List[LocationSample]) -> Tuple[float, float, List[DataAnomaly]]:
        """Sum segment distances, excluding segments faster than the anomaly ceiling."""
        total = 0.0
        implied_max = 0.0
        anomalies = []

        for previous, current in zip(ordered, ordered[1:]):
            segment_m = self.data_processor.calculate_distance_between_points(
                previous.coordinates, current.coordinates
            )
            elapsed = self.data_processor.seconds_between(previous.recorded_at, current.recorded_at)
            if segment_m == 0:
                continue

            implied = self.data_processor.implied_speed_kmh(segment_m, elapsed)
            if implied is None or implied > self.config.anomaly_speed_kmh:
                anomaly = DataAnomaly(
                    vehicle_id=vehicle_id,
                    from_sample_id=previous.id,
                    to_sample_id=current.id,
                    distance_m=segment_m,
                    elapsed_seconds=elapsed,
                    implied_speed_kmh=implied
                )
                anomalies.append(anomaly)
                speed_text = f"{implied:.0f} km/h" if implied is not None else "no elapsed time"
                logger.warning(
                    f"Vehicle {vehicle_id}: excluding segment {previous.id}->{current.id} "
                    f"({segment_m:.0f} m, {speed_text})"
                )
                continue

            total += segment_m
            implied_max = max(implied_max, implied)

        return total, implied_max, anomalies

    def _harsh_events(self, reported: List[LocationSample]) -> Tuple[int, int]:
        """Count speed drops and rises of at least the delta within the event window."""
        braking = 0
        acceleration = 0
        for previous, current in zip(reported, reported[1:]):
            elapsed = self.data_processor.seconds_between(previous.recorded_at, current.recorded_at)
            if elapsed > self.config.harsh_event_window_seconds:
                continue
            change = current.speed_kmh - previous.speed_kmh
            if -change >= self.config.hard_braking_delta_kmh:
                braking += 1
            elif change >= self.config.hard_braking_delta_kmh:
                acceleration += 1
        return braking, acceleration

    def _speeding(self, reported: List[LocationSample]) -> Tuple[int, float]:
        """Count entries into runs above the speeding limit and the time spent there."""
        events = 0
        seconds = 0.0
        above = False
        for i, sample in enumerate(reported):
            now_above = sample.speed_kmh > self.config.speeding_limit_kmh
            if now_above and not above:
                events += 1
            if now_above and i + 1 < len(reported):
                seconds += self.data_processor.seconds_between(
                    sample.recorded_at, reported[i + 1].recorded_at
                )
            above = now_above
        return events, seconds
