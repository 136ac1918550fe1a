"""
Geofence enter/exit detection and in-geofence speed alerts.
"""
import logging
from datetime import datetime
from typing import List, Optional

from shapely.geometry import Point, Polygon

from fleet_trip_analyzer.config import MonitorConfig
from fleet_trip_analyzer.models import AlertEvent, Geofence, GeofenceEvent, LocationSample
from fleet_trip_analyzer.monitoring.alert_manager import AlertManager
from fleet_trip_analyzer.utils.data_processor import DataProcessor

logger = logging.getLogger(__name__)


class GeofenceMonitor:
    """Tracks inside/outside state per (geofence, vehicle) and reports transitions."""

    def __init__(self, store, alert_manager: AlertManager, config: MonitorConfig):
        self.store = store
        self.alert_manager = alert_manager
        self.config = config
        self.cache = alert_manager.cache
        self.data_processor = DataProcessor()

    def is_inside(self, sample: LocationSample, geofence: Geofence) -> bool:
        if geofence.type == 'circle':
            if geofence.center_latitude is None or geofence.center_longitude is None \
                    or geofence.radius_m is None:
                return False
            distance = self.data_processor.calculate_distance_between_points(
                sample.coordinates, (geofence.center_latitude, geofence.center_longitude)
            )
            return distance <= geofence.radius_m

        if len(geofence.coordinates) < 3:
            return False
        # Polygon vertices are [lng, lat]
        polygon = Polygon([(lng, lat) for lng, lat in geofence.coordinates])
        return polygon.covers(Point(sample.longitude, sample.latitude))

    def check_location(self, sample: LocationSample) -> List[AlertEvent]:
        """
        Evaluate one sample against the active geofences of its organization.

        The first observation of a (geofence, vehicle) pair only records state.

        Returns:
            Alerts dispatched for this sample
        """
        vehicle_id = self._vehicle_id(sample)
        if vehicle_id is None:
            return []
        if self._already_checked(sample, vehicle_id):
            logger.debug(f"Sample {sample.id} already checked for vehicle {vehicle_id}")
            return []

        alerts = []
        for geofence in self.store.list_geofences(sample.organization_id, active_only=True):
            inside = self.is_inside(sample, geofence)
            state_key = f"geofence_state.{geofence.id}.vehicle.{vehicle_id}"
            was_inside = self.cache.get(state_key)

            if was_inside is None:
                self.cache.set(state_key, inside, self.config.geofence_state_ttl_seconds)
                continue

            if inside != was_inside:
                event_type = 'enter' if inside else 'exit'
                alert = self._transition_alert(sample, vehicle_id, geofence, event_type)
                self.alert_manager.fire(alert)
                self.store.add_geofence_event(GeofenceEvent(
                    organization_id=sample.organization_id,
                    geofence_id=geofence.id,
                    vehicle_id=vehicle_id,
                    tracker_id=sample.tracker_id,
                    type=event_type,
                    latitude=sample.latitude,
                    longitude=sample.longitude,
                    recorded_at=sample.recorded_at
                ))
                alerts.append(alert)

            speed = sample.speed_kmh or 0.0
            if inside and geofence.speed_limit_kmh is not None and speed > geofence.speed_limit_kmh:
                alert = self._speed_alert(sample, vehicle_id, geofence, speed)
                key = f"geofence_speed_alert.vehicle.{vehicle_id}"
                if self.alert_manager.fire(alert, dedup_key=key,
                                           ttl_seconds=self.config.geofence_speed_cooldown_seconds):
                    alerts.append(alert)

            self.cache.set(state_key, inside, self.config.geofence_state_ttl_seconds)

        self.cache.set(
            self._checkpoint_key(vehicle_id),
            [sample.recorded_at.isoformat(), sample.ordering_key[1].isoformat(), sample.id],
            self.config.geofence_checkpoint_ttl_seconds
        )
        return alerts

    def check_locations(self, samples: List[LocationSample]) -> List[AlertEvent]:
        """Replay samples in recorded order."""
        alerts = []
        for sample in self.data_processor.sort_samples(samples):
            alerts.extend(self.check_location(sample))
        return alerts

    @staticmethod
    def _checkpoint_key(vehicle_id: int) -> str:
        return f"geofence_checkpoint.vehicle.{vehicle_id}"

    def _already_checked(self, sample: LocationSample, vehicle_id: int) -> bool:
        """True when the sample is not after the last one evaluated for this vehicle."""
        checkpoint = self.cache.get(self._checkpoint_key(vehicle_id))
        if checkpoint is None:
            return False
        recorded_at, ingested_at, sample_id = checkpoint
        last_key = (datetime.fromisoformat(recorded_at), datetime.fromisoformat(ingested_at), sample_id)
        return sample.ordering_key <= last_key

    def _vehicle_id(self, sample: LocationSample) -> Optional[int]:
        if sample.vehicle_id is not None:
            return sample.vehicle_id
        vehicle = self.store.vehicle_for_tracker(sample.tracker_id)
        return vehicle.id if vehicle else None

    def _vehicle_name(self, vehicle_id: int) -> str:
        vehicle = self.store.get_vehicle(vehicle_id)
        return vehicle.name if vehicle else 'A vehicle'

    def _transition_alert(self, sample: LocationSample, vehicle_id: int,
                          geofence: Geofence, event_type: str) -> AlertEvent:
        verb = 'entered' if event_type == 'enter' else 'exited'
        return self.alert_manager.create_alert(
            alert_type='geofence_alert',
            organization_id=sample.organization_id,
            subject_type='vehicle',
            subject_id=vehicle_id,
            message=f'{self._vehicle_name(vehicle_id)} {verb} geofence "{geofence.name}"',
            timestamp=sample.recorded_at,
            severity='info',
            details={
                'event': event_type,
                'geofence_id': geofence.id,
                'geofence_name': geofence.name,
                'vehicle_id': vehicle_id,
                'recorded_at': sample.recorded_at.isoformat()
            }
        )

    def _speed_alert(self, sample: LocationSample, vehicle_id: int,
                     geofence: Geofence, speed: float) -> AlertEvent:
        return self.alert_manager.create_alert(
            alert_type='speed_alert',
            organization_id=sample.organization_id,
            subject_type='vehicle',
            subject_id=vehicle_id,
            message=(f"{self._vehicle_name(vehicle_id)} exceeded speed limit: "
                     f"{round(speed)} km/h (limit: {round(geofence.speed_limit_kmh)} km/h)"),
            timestamp=sample.recorded_at,
            details={
                'geofence_id': geofence.id,
                'vehicle_id': vehicle_id,
                'speed': round(speed),
                'threshold': round(geofence.speed_limit_kmh),
                'recorded_at': sample.recorded_at.isoformat()
            }
        )
