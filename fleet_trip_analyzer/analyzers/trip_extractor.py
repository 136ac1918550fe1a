"""
Trip extraction from ordered location samples (stop -> drive -> stop).
"""
import logging
from typing import List, Optional

from fleet_trip_analyzer.config import SegmentationConfig
from fleet_trip_analyzer.models import LocationSample, TripBoundary, TripStop
from fleet_trip_analyzer.core.utils import Deadline
from fleet_trip_analyzer.utils.data_processor import DataProcessor

logger = logging.getLogger(__name__)

STOPPED = 'stopped'
MOVING = 'moving'


class TripExtractor:
    """Runs the STOPPED/MOVING state machine over one vehicle's samples."""

    def __init__(self, config: SegmentationConfig, anomaly_speed_kmh: Optional[float] = None):
        self.config = config
        self.anomaly_speed_kmh = anomaly_speed_kmh
        self.data_processor = DataProcessor()

    def effective_speeds(self, samples: List[LocationSample]) -> List[float]:
        """
        Speed used for the moving/stationary decision of each sample.

        Reported speed wins. Otherwise the speed implied by displacement from
        the previous sample is used; displacements within the noise floor, the
        first sample after a signal gap and implied speeds above the anomaly
        ceiling (GPS jumps) count as stationary.
        """
        speeds = []
        previous = None
        for sample in samples:
            if sample.speed_kmh is not None:
                speeds.append(sample.speed_kmh)
            elif previous is None:
                speeds.append(0.0)
            else:
                elapsed = self.data_processor.seconds_between(previous.recorded_at, sample.recorded_at)
                distance = self.data_processor.calculate_distance_between_points(
                    previous.coordinates, sample.coordinates
                )
                if elapsed > self.config.max_sample_gap_seconds or distance <= self.config.noise_floor_m:
                    speeds.append(0.0)
                else:
                    implied = self.data_processor.implied_speed_kmh(distance, elapsed) or 0.0
                    if self.anomaly_speed_kmh is not None and implied > self.anomaly_speed_kmh:
                        logger.debug(f"Implausible implied speed {implied:.0f} km/h at sample {sample.id}")
                        implied = 0.0
                    speeds.append(implied)
            previous = sample
        return speeds

    def extract_trips(self, samples: List[LocationSample],
                      deadline: Optional[Deadline] = None) -> List[TripBoundary]:
        """
        Detect trip boundaries.

        Args:
            samples: The vehicle's samples for the range, in any order
            deadline: Optional per-unit budget checked while scanning

        Returns:
            List of TripBoundary in chronological order
        """
        for sample in samples:
            sample.validate()

        if len(samples) < 2:
            return []

        ordered = self.data_processor.sort_samples(samples)
        speeds = self.effective_speeds(ordered)
        dwell = self.config.stop_dwell_seconds

        trips: List[TripBoundary] = []
        state = STOPPED
        moving_run: List[int] = []
        trip_start: Optional[int] = None
        halt_start: Optional[int] = None
        stops: List[TripStop] = []

        def close_trip(end_index: int) -> None:
            # A closed trip must end strictly after it starts
            if ordered[end_index].recorded_at <= ordered[trip_start].recorded_at:
                logger.debug(f"Dropping zero-length trip at {ordered[trip_start].recorded_at}")
                return
            trips.append(TripBoundary(
                samples=ordered[trip_start:end_index + 1],
                is_open=False,
                stops=list(stops)
            ))
            logger.debug(
                f"Trip closed: {ordered[trip_start].recorded_at} -> {ordered[end_index].recorded_at}"
            )

        for i, sample in enumerate(ordered):
            if deadline is not None:
                deadline.check()

            if i > 0:
                gap = self.data_processor.seconds_between(ordered[i - 1].recorded_at, sample.recorded_at)
                if gap > self.config.max_sample_gap_seconds:
                    logger.debug(f"Signal gap of {gap:.0f}s before sample {sample.id}")
                    if state == MOVING:
                        close_trip(halt_start if halt_start is not None else i - 1)
                    state = STOPPED
                    moving_run = []
                    halt_start = None

            is_moving = speeds[i] > self.config.moving_speed_kmh

            if state == MOVING:
                if halt_start is None:
                    if not is_moving:
                        halt_start = i
                    continue

                halted_for = self.data_processor.seconds_between(
                    ordered[halt_start].recorded_at, sample.recorded_at
                )
                if halted_for < dwell:
                    if is_moving:
                        stops.append(TripStop(
                            latitude=ordered[halt_start].latitude,
                            longitude=ordered[halt_start].longitude,
                            started_at=ordered[halt_start].recorded_at,
                            duration_seconds=halted_for
                        ))
                        halt_start = None
                    continue

                close_trip(halt_start)
                state = STOPPED
                halt_start = None
                moving_run = []
                if not is_moving:
                    continue
                # The sample that ended a long halt may begin the next run

            if is_moving:
                moving_run.append(i)
                if len(moving_run) >= self.config.min_moving_samples:
                    state = MOVING
                    trip_start = moving_run[0]
                    stops = []
                    moving_run = []
                    logger.debug(f"Trip started at {ordered[trip_start].recorded_at}")
            else:
                moving_run = []

        if state == MOVING:
            if halt_start is not None:
                close_trip(halt_start)
            else:
                trips.append(TripBoundary(
                    samples=ordered[trip_start:],
                    is_open=True,
                    stops=list(stops)
                ))
                logger.debug(f"Trip still open at {ordered[-1].recorded_at}")

        return trips
