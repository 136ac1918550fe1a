"""
Fleet analyzer: orchestrates per-vehicle trip recomputation and monitor runs.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Any, Optional

import pandas as pd
import pytz
from tqdm import tqdm

from fleet_trip_analyzer.config import EngineConfig
from fleet_trip_analyzer.models import (
    BatchSummary, DataAnomaly, MonitorRunResult, RecomputeResult, Trip, TripBoundary,
    UnitFailure, Vehicle, as_utc
)
from fleet_trip_analyzer.analyzers.trip_extractor import TripExtractor
from fleet_trip_analyzer.analyzers.trip_metrics import TripMetricsCalculator
from fleet_trip_analyzer.analyzers.trip_cost import TripCostCalculator
from fleet_trip_analyzer.core.cache import InMemoryDedupCache
from fleet_trip_analyzer.core.exceptions import ConfigurationError, FleetTripError, InvalidInput
from fleet_trip_analyzer.core.locks import VehicleLockRegistry
from fleet_trip_analyzer.core.notifier import LoggingNotifier, NotificationDispatcher
from fleet_trip_analyzer.core.utils import Deadline, save_json_data
from fleet_trip_analyzer.monitoring.alert_manager import AlertManager
from fleet_trip_analyzer.monitoring.geofence_monitor import GeofenceMonitor
from fleet_trip_analyzer.monitoring.threshold_monitors import DocumentExpiryMonitor, NoSignalMonitor
from fleet_trip_analyzer.monitoring.working_hours import ContinuousDrivingMonitor, DailyWorkingHoursMonitor
from fleet_trip_analyzer.utils.data_processor import DataProcessor

logger = logging.getLogger(__name__)

THRESHOLD_MONITORS = {
    NoSignalMonitor.name: NoSignalMonitor,
    DocumentExpiryMonitor.name: DocumentExpiryMonitor,
    DailyWorkingHoursMonitor.name: DailyWorkingHoursMonitor,
    ContinuousDrivingMonitor.name: ContinuousDrivingMonitor,
}
GEOFENCE_MONITOR = 'geofence'
MONITOR_NAMES = list(THRESHOLD_MONITORS) + [GEOFENCE_MONITOR]


def make_trip_id(vehicle_id: int, started_at: datetime) -> str:
    """Deterministic trip id from vehicle and start time."""
    return f"TRIP_{vehicle_id}_{started_at.strftime('%Y%m%d_%H%M%S')}"


class FleetAnalyzer:
    """Main entry point for trip recomputation and threshold monitoring."""

    def __init__(self, store, config: Optional[EngineConfig] = None, cache=None,
                 dispatcher: Optional[NotificationDispatcher] = None,
                 lock_registry: Optional[VehicleLockRegistry] = None):
        self.store = store
        self.config = config or EngineConfig()
        self.config.validate()

        # Initialize components
        self.trip_extractor = TripExtractor(self.config.segmentation, self.config.metrics.anomaly_speed_kmh)
        self.metrics_calculator = TripMetricsCalculator(self.config.metrics)
        self.cost_calculator = TripCostCalculator(self.config.metrics)
        self.locks = lock_registry or VehicleLockRegistry()
        self.alert_manager = AlertManager(
            cache if cache is not None else InMemoryDedupCache(),
            dispatcher or LoggingNotifier(),
            store.recipients_for
        )
        self.data_processor = DataProcessor()

    # -- segmentation ------------------------------------------------------

    def segment(self, vehicle_id: int, start: datetime, end: datetime,
                now: Optional[datetime] = None,
                deadline: Optional[Deadline] = None) -> RecomputeResult:
        """
        Recompute trips for one vehicle over [start, end], replacing any trips
        overlapping the range.

        Args:
            vehicle_id: Vehicle to recompute
            start: Range start (naive values are taken as UTC)
            end: Range end
            now: Reference time for open trips
            deadline: Optional per-unit budget; when it expires nothing is persisted

        Returns:
            RecomputeResult with the new trips and any excluded anomalies
        """
        start, end = as_utc(start), as_utc(end)
        if start is None or end is None or start >= end:
            raise InvalidInput(
                f"Invalid range for vehicle {vehicle_id}: {start} to {end}",
                details={'vehicle_id': vehicle_id}
            )

        vehicle = self.store.get_vehicle(vehicle_id)
        if vehicle is None:
            raise InvalidInput(f"Unknown vehicle {vehicle_id}", details={'vehicle_id': vehicle_id})
        if vehicle.tracker_id is None:
            raise InvalidInput(
                f"Vehicle {vehicle_id} has no tracker assigned",
                details={'vehicle_id': vehicle_id}
            )

        with self.locks.hold(vehicle_id):
            samples = self.store.get_locations(vehicle_id, start, end)
            boundaries = self.trip_extractor.extract_trips(samples, deadline)

            trips = []
            anomalies: List[DataAnomaly] = []
            for boundary in boundaries:
                trip, trip_anomalies = self._build_trip(vehicle, boundary, now)
                trips.append(trip)
                anomalies.extend(trip_anomalies)
                if deadline is not None:
                    deadline.check()

            if deadline is not None:
                deadline.check()

            kept = [t for t in self.store.get_trips(vehicle_id) if not t.overlaps(start, end)]
            self.cost_calculator.apply(kept + trips, self.store.get_fuel_logs(vehicle_id))
            self.store.replace_trips(vehicle_id, start, end, trips)

        logger.info(
            f"Vehicle {vehicle_id}: {len(trips)} trips from {len(samples)} samples "
            f"({len(anomalies)} anomalies)"
        )
        return RecomputeResult(
            vehicle_id=vehicle_id,
            range_start=start,
            range_end=end,
            trips=trips,
            samples_processed=len(samples),
            anomalies=anomalies,
            sampling=self.data_processor.calculate_time_statistics(
                sorted(sample.recorded_at for sample in samples)
            )
        )

    def _build_trip(self, vehicle: Vehicle, boundary: TripBoundary,
                    now: Optional[datetime]):
        first = boundary.start_sample
        last = boundary.end_sample
        trip = Trip(
            trip_id=make_trip_id(vehicle.id, first.recorded_at),
            vehicle_id=vehicle.id,
            tracker_id=first.tracker_id,
            organization_id=vehicle.organization_id,
            driver_id=self.store.driver_at(vehicle.id, first.recorded_at),
            started_at=first.recorded_at,
            ended_at=None if boundary.is_open else last.recorded_at,
            start_location_id=first.id,
            end_location_id=last.id,
            start_latitude=first.latitude,
            start_longitude=first.longitude,
            end_latitude=last.latitude,
            end_longitude=last.longitude,
            idle_seconds=boundary.idle_seconds,
            stops_count=len(boundary.stops),
            stops=list(boundary.stops),
            route_coordinates=[[s.longitude, s.latitude] for s in boundary.samples]
        )
        metrics = self.metrics_calculator.compute_metrics(trip, boundary.samples, now)
        trip.apply_metrics(metrics)
        return trip, metrics.anomalies

    # -- batch recompute ---------------------------------------------------

    def recompute_fleet(self, start: datetime, end: datetime,
                        vehicle_ids: Optional[List[int]] = None,
                        now: Optional[datetime] = None,
                        cancel_event: Optional[threading.Event] = None,
                        output_dir: Optional[str] = None) -> BatchSummary:
        """
        Recompute trips for many vehicles.

        Per-vehicle failures and timeouts are collected; cancellation is honoured
        between vehicles. Only configuration errors abort the batch.

        Args:
            start: Range start
            end: Range end
            vehicle_ids: Vehicles to process (defaults to every active vehicle)
            now: Reference time for open trips
            cancel_event: Set it to stop picking up further vehicles
            output_dir: If given, the fleet trip report is written there

        Returns:
            BatchSummary
        """
        summary = BatchSummary(job='recompute', started_at=datetime.now(pytz.UTC))

        if vehicle_ids is None:
            vehicle_ids = [vehicle.id for vehicle in self.store.list_vehicles(active_only=True)]

        logger.info(f"Recomputing trips for {len(vehicle_ids)} vehicles: {start} to {end}")

        if self.config.analysis.parallel_processing and len(vehicle_ids) > 1:
            self._recompute_parallel(vehicle_ids, start, end, now, cancel_event, summary)
        else:
            self._recompute_sequential(vehicle_ids, start, end, now, cancel_event, summary)

        summary.results.sort(key=lambda r: r.vehicle_id)
        summary.failures.sort(key=lambda f: str(f.unit_id))
        summary.finished_at = datetime.now(pytz.UTC)

        logger.info(
            f"Recompute finished: processed {summary.processed}, skipped {summary.skipped}, "
            f"anomalies {summary.anomaly_count}, trips {summary.trips_written}"
            + (" (cancelled)" if summary.cancelled else "")
        )

        if output_dir:
            self._save_results(summary, Path(output_dir))

        return summary

    def _recompute_parallel(self, vehicle_ids, start, end, now, cancel_event, summary):
        with ThreadPoolExecutor(max_workers=self.config.analysis.max_workers) as executor:
            future_to_vehicle = {
                executor.submit(self._recompute_unit, vehicle_id, start, end, now, cancel_event): vehicle_id
                for vehicle_id in vehicle_ids
            }

            with tqdm(total=len(vehicle_ids), desc="Recomputing trips") as pbar:
                for future in as_completed(future_to_vehicle):
                    self._record_unit(summary, future_to_vehicle[future], future.result())
                    pbar.update(1)

    def _recompute_sequential(self, vehicle_ids, start, end, now, cancel_event, summary):
        for vehicle_id in tqdm(vehicle_ids, desc="Recomputing trips"):
            self._record_unit(summary, vehicle_id,
                              self._recompute_unit(vehicle_id, start, end, now, cancel_event))

    def _recompute_unit(self, vehicle_id: int, start: datetime, end: datetime,
                        now: Optional[datetime], cancel_event: Optional[threading.Event]):
        """Run one vehicle; returns a RecomputeResult, a UnitFailure, or None when cancelled."""
        if cancel_event is not None and cancel_event.is_set():
            return None

        deadline = Deadline(vehicle_id, self.config.analysis.unit_timeout_seconds)
        try:
            return self.segment(vehicle_id, start, end, now=now, deadline=deadline)
        except ConfigurationError:
            raise
        except FleetTripError as e:
            logger.error(f"Vehicle {vehicle_id} failed ({e.error_code}): {e.message}")
            return UnitFailure(vehicle_id, e.error_code, e.message)
        except Exception as e:
            logger.error(f"Error recomputing vehicle {vehicle_id}: {str(e)}")
            return UnitFailure(vehicle_id, 'ERR_INTERNAL', str(e))

    @staticmethod
    def _record_unit(summary: BatchSummary, vehicle_id: int, outcome) -> None:
        if outcome is None:
            summary.cancelled = True
            summary.skipped += 1
        elif isinstance(outcome, UnitFailure):
            summary.skipped += 1
            summary.failures.append(outcome)
        else:
            summary.processed += 1
            summary.anomaly_count += outcome.anomaly_count
            summary.trips_written += len(outcome.trips)
            summary.results.append(outcome)

    # -- monitors ----------------------------------------------------------

    def run_monitor(self, name: str, now: Optional[datetime] = None) -> MonitorRunResult:
        """
        Run one monitor now.

        Args:
            name: One of MONITOR_NAMES
            now: Reference time (defaults to the current UTC time)

        Returns:
            MonitorRunResult
        """
        now = as_utc(now) or datetime.now(pytz.UTC)
        if name == GEOFENCE_MONITOR:
            return self._run_geofence_monitor(now)

        monitor_cls = THRESHOLD_MONITORS.get(name)
        if monitor_cls is None:
            raise InvalidInput(
                f"Unknown monitor '{name}'. Available: {', '.join(MONITOR_NAMES)}",
                details={'monitor': name}
            )
        monitor = monitor_cls(self.store, self.alert_manager, self.config.monitors)
        return monitor.run(now)

    def run_all_monitors(self, now: Optional[datetime] = None) -> List[MonitorRunResult]:
        now = as_utc(now) or datetime.now(pytz.UTC)
        return [self.run_monitor(name, now) for name in THRESHOLD_MONITORS]

    def _run_geofence_monitor(self, now: datetime) -> MonitorRunResult:
        """Replay the look-back window of every active vehicle through the geofence monitor."""
        monitor = GeofenceMonitor(self.store, self.alert_manager, self.config.monitors)
        result = MonitorRunResult(monitor=GEOFENCE_MONITOR, ran_at=now)
        start = now - timedelta(hours=self.config.analysis.default_lookback_hours)

        for vehicle in self.store.list_vehicles(active_only=True):
            result.scanned += 1
            try:
                samples = self.store.get_locations(vehicle.id, start, now)
                result.alerts.extend(monitor.check_locations(samples))
            except ConfigurationError:
                raise
            except FleetTripError as e:
                logger.error(f"{GEOFENCE_MONITOR}: vehicle {vehicle.id} failed: {e.message}")
                result.failures.append(UnitFailure(vehicle.id, e.error_code, e.message))

        logger.info(f"{GEOFENCE_MONITOR}: scanned {result.scanned}, emitted {result.alerts_emitted}")
        return result

    # -- reporting ---------------------------------------------------------

    def build_trip_report(self, vehicle_ids: Optional[List[int]] = None) -> pd.DataFrame:
        """Per-vehicle trip summary as a DataFrame."""
        if vehicle_ids is None:
            vehicle_ids = [vehicle.id for vehicle in self.store.list_vehicles(active_only=False)]

        rows = []
        for vehicle_id in vehicle_ids:
            vehicle = self.store.get_vehicle(vehicle_id)
            trips = self.store.get_trips(vehicle_id)
            scores = [t.driver_score for t in trips if t.driver_score is not None]
            rows.append({
                'vehicle_id': vehicle_id,
                'vehicle_name': vehicle.name if vehicle else '',
                'trips': len(trips),
                'open_trips': sum(1 for t in trips if t.is_open),
                'distance_km': round(sum(t.distance_km for t in trips), 3),
                'duration_hours': round(sum(t.duration_hours for t in trips), 2),
                'idle_hours': round(sum(t.idle_seconds for t in trips) / 3600, 2),
                'stops': sum(t.stops_count for t in trips),
                'avg_driver_score': round(sum(scores) / len(scores), 1) if scores else None,
                'harsh_braking': sum(t.harsh_braking_count for t in trips),
                'harsh_acceleration': sum(t.harsh_acceleration_count for t in trips),
                'speeding_events': sum(t.speeding_count for t in trips),
                'anomalies': sum(t.anomaly_count for t in trips),
                'cost': round(sum(t.cost for t in trips if t.cost is not None), 2),
                'co2_kg': round(sum(t.co2_kg for t in trips if t.co2_kg is not None), 3)
            })

        return pd.DataFrame(rows)

    def _save_results(self, summary: BatchSummary, output_path: Path) -> None:
        """Write the batch summary, the per-vehicle report and the trip list."""
        save_json_data(summary.to_dict(), str(output_path), 'recompute_summary.json')

        vehicle_ids = [result.vehicle_id for result in summary.results]
        report = self.build_trip_report(vehicle_ids)
        if not report.empty:
            intervals = {r.vehicle_id: r.sampling.get('avg_interval_seconds') for r in summary.results}
            report['avg_sample_interval_seconds'] = report['vehicle_id'].map(intervals)
        report.to_csv(output_path / 'fleet_trip_report.csv', index=False, encoding='utf-8')

        trip_rows: List[Dict[str, Any]] = []
        for result in summary.results:
            for trip in result.trips:
                row = trip.to_dict()
                row.pop('stops')
                row.pop('route_coordinates')
                trip_rows.append(row)
        if trip_rows:
            pd.DataFrame(trip_rows).to_csv(output_path / 'trips.csv', index=False, encoding='utf-8')

        logger.info(f"Saved report for {len(vehicle_ids)} vehicles to {output_path}")
