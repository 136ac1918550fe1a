"""
In-memory fleet store.

Implements the read/write contract the engine and monitors need: location
samples per vehicle, trips (replace-per-range), trackers, vehicles, drivers
and their assignments, documents, geofences, fuel logs and the recipient
lookup. Can be loaded from and saved to a JSON snapshot.
"""
import json
import logging
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Any, Optional

from fleet_trip_analyzer.core.exceptions import InvalidInput
from fleet_trip_analyzer.models import (
    LocationSample, Tracker, Vehicle, Driver, DriverAssignment, VehicleDocument,
    Geofence, GeofenceEvent, FuelLog, Trip, TripStop, as_utc
)

logger = logging.getLogger(__name__)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (a trailing 'Z' is accepted) into a UTC datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return as_utc(datetime.fromisoformat(text))


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == '':
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class InMemoryFleetStore:
    """Thread-safe in-memory store."""

    def __init__(self):
        self._lock = threading.RLock()
        self.trackers: Dict[int, Tracker] = {}
        self.vehicles: Dict[int, Vehicle] = {}
        self.drivers: Dict[int, Driver] = {}
        self.assignments: List[DriverAssignment] = []
        self.documents: Dict[int, VehicleDocument] = {}
        self.geofences: Dict[int, Geofence] = {}
        self.geofence_events: List[GeofenceEvent] = []
        self.fuel_logs: List[FuelLog] = []
        self.locations: List[LocationSample] = []
        self.trips: Dict[int, List[Trip]] = {}
        self.members: Dict[int, List[int]] = {}
        # Dedup cache entries carried in the snapshot when no shared cache is configured
        self.dedup_entries: Dict[str, Dict[str, Any]] = {}

    # -- loading -----------------------------------------------------------

    @classmethod
    def from_json(cls, path: str) -> 'InMemoryFleetStore':
        """Load a store from a JSON snapshot file."""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        store = cls.from_dict(data)
        logger.info(
            f"Loaded snapshot {path}: {len(store.vehicles)} vehicles, "
            f"{len(store.locations)} location samples"
        )
        return store

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InMemoryFleetStore':
        """Build a store from a snapshot dictionary."""
        store = cls()

        for org in data.get('organizations', []):
            store.members[org['id']] = list(org.get('member_ids', []))

        for item in data.get('trackers', []):
            store.add_tracker(Tracker(
                id=item['id'],
                organization_id=item['organization_id'],
                name=item.get('name', f"Tracker {item['id']}"),
                is_active=item.get('is_active', True),
                last_communication_at=parse_timestamp(item.get('last_communication_at'))
            ))

        for item in data.get('vehicles', []):
            store.add_vehicle(Vehicle(
                id=item['id'],
                organization_id=item['organization_id'],
                name=item.get('name', f"Vehicle {item['id']}"),
                tracker_id=item.get('tracker_id'),
                is_active=item.get('is_active', True)
            ))

        for item in data.get('drivers', []):
            store.add_driver(Driver(
                id=item['id'],
                organization_id=item['organization_id'],
                name=item.get('name', f"Driver {item['id']}"),
                is_active=item.get('is_active', True)
            ))

        for item in data.get('driver_assignments', []):
            store.add_assignment(DriverAssignment(
                driver_id=item['driver_id'],
                vehicle_id=item['vehicle_id'],
                assigned_from=parse_timestamp(item['assigned_from']),
                assigned_until=parse_timestamp(item.get('assigned_until'))
            ))

        for item in data.get('documents', []):
            store.add_document(VehicleDocument(
                id=item['id'],
                organization_id=item['organization_id'],
                vehicle_id=item['vehicle_id'],
                title=item.get('title', item.get('type', 'Document')),
                type=item.get('type', 'other'),
                expiry_date=_parse_date(item.get('expiry_date')),
                is_active=item.get('is_active', True)
            ))

        for item in data.get('geofences', []):
            store.add_geofence(Geofence(
                id=item['id'],
                organization_id=item['organization_id'],
                name=item.get('name', f"Geofence {item['id']}"),
                type=item.get('type', 'circle'),
                center_latitude=item.get('center_latitude'),
                center_longitude=item.get('center_longitude'),
                radius_m=item.get('radius_m'),
                coordinates=item.get('coordinates', []),
                speed_limit_kmh=item.get('speed_limit_kmh'),
                is_active=item.get('is_active', True)
            ))

        for item in data.get('fuel_logs', []):
            store.add_fuel_log(FuelLog(
                vehicle_id=item['vehicle_id'],
                litres=float(item['litres']),
                total_cost=float(item['total_cost']),
                filled_at=parse_timestamp(item.get('filled_at'))
            ))

        for item in data.get('locations', []):
            store.add_location(LocationSample(
                id=item['id'],
                tracker_id=item['tracker_id'],
                vehicle_id=item.get('vehicle_id'),
                organization_id=item['organization_id'],
                latitude=float(item['latitude']),
                longitude=float(item['longitude']),
                altitude=item.get('altitude'),
                speed_kmh=item.get('speed_kmh'),
                heading_degrees=item.get('heading_degrees'),
                accuracy=item.get('accuracy'),
                satellites=item.get('satellites'),
                recorded_at=parse_timestamp(item['recorded_at']),
                ingested_at=parse_timestamp(item.get('ingested_at'))
            ))

        for item in data.get('trips', []):
            trip_data = dict(item)
            trip_data['started_at'] = parse_timestamp(trip_data['started_at'])
            trip_data['ended_at'] = parse_timestamp(trip_data.get('ended_at'))
            trip_data['stops'] = [
                TripStop(
                    latitude=stop['latitude'],
                    longitude=stop['longitude'],
                    started_at=parse_timestamp(stop['started_at']),
                    duration_seconds=stop['duration_seconds']
                )
                for stop in trip_data.get('stops', [])
            ]
            trip = Trip(**trip_data)
            store.trips.setdefault(trip.vehicle_id, []).append(trip)

        for vehicle_trips in store.trips.values():
            vehicle_trips.sort(key=lambda t: t.started_at)

        for item in data.get('geofence_events', []):
            event_data = dict(item)
            event_data['recorded_at'] = parse_timestamp(event_data['recorded_at'])
            store.geofence_events.append(GeofenceEvent(**event_data))

        store.dedup_entries = dict(data.get('dedup') or {})

        return store

    def to_dict(self) -> Dict[str, Any]:
        """Snapshot of the derived data (trips, geofence events and dedup entries)."""
        with self._lock:
            return {
                'trips': [trip.to_dict() for trips in self.trips.values() for trip in trips],
                'geofence_events': [event.to_dict() for event in self.geofence_events],
                'dedup': dict(self.dedup_entries)
            }

    def save_json(self, path: str) -> str:
        """Write the original snapshot merged with the derived data to ``path``."""
        target = Path(path)
        data: Dict[str, Any] = {}
        if target.exists():
            with open(target, 'r', encoding='utf-8') as f:
                data = json.load(f)
        data.update(self.to_dict())
        with open(target, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=str, ensure_ascii=False)
        return str(target)

    # -- writers -----------------------------------------------------------

    def add_tracker(self, tracker: Tracker) -> None:
        with self._lock:
            self.trackers[tracker.id] = tracker

    def add_vehicle(self, vehicle: Vehicle) -> None:
        with self._lock:
            self.vehicles[vehicle.id] = vehicle

    def add_driver(self, driver: Driver) -> None:
        with self._lock:
            self.drivers[driver.id] = driver

    def add_assignment(self, assignment: DriverAssignment) -> None:
        with self._lock:
            self.assignments.append(assignment)

    def add_document(self, document: VehicleDocument) -> None:
        with self._lock:
            self.documents[document.id] = document

    def add_geofence(self, geofence: Geofence) -> None:
        with self._lock:
            self.geofences[geofence.id] = geofence

    def add_fuel_log(self, fuel_log: FuelLog) -> None:
        with self._lock:
            self.fuel_logs.append(fuel_log)

    def add_location(self, sample: LocationSample) -> None:
        with self._lock:
            self.locations.append(sample)

    def add_members(self, organization_id: int, user_ids: List[int]) -> None:
        with self._lock:
            self.members.setdefault(organization_id, []).extend(user_ids)

    def add_geofence_event(self, event: GeofenceEvent) -> None:
        with self._lock:
            self.geofence_events.append(event)

    def replace_trips(self, vehicle_id: int, start: datetime, end: datetime,
                      trips: List[Trip]) -> int:
        """
        Delete the vehicle's trips overlapping [start, end] and insert ``trips``.

        The swap happens under the store lock so readers see either the old
        or the new set, never a mix.

        Returns:
            Number of trips removed
        """
        with self._lock:
            existing = self.trips.get(vehicle_id, [])
            kept = [trip for trip in existing if not trip.overlaps(start, end)]
            removed = len(existing) - len(kept)
            self.trips[vehicle_id] = sorted(kept + list(trips), key=lambda t: t.started_at)
        logger.debug(f"Vehicle {vehicle_id}: replaced {removed} trips with {len(trips)}")
        return removed

    # -- readers -----------------------------------------------------------

    def get_vehicle(self, vehicle_id: int) -> Optional[Vehicle]:
        with self._lock:
            return self.vehicles.get(vehicle_id)

    def list_vehicles(self, active_only: bool = True) -> List[Vehicle]:
        with self._lock:
            vehicles = sorted(self.vehicles.values(), key=lambda v: v.id)
        return [v for v in vehicles if v.is_active or not active_only]

    def vehicle_for_tracker(self, tracker_id: int) -> Optional[Vehicle]:
        with self._lock:
            for vehicle in self.vehicles.values():
                if vehicle.tracker_id == tracker_id:
                    return vehicle
        return None

    def list_trackers(self, active_only: bool = True) -> List[Tracker]:
        with self._lock:
            trackers = sorted(self.trackers.values(), key=lambda t: t.id)
        return [t for t in trackers if t.is_active or not active_only]

    def list_drivers(self, active_only: bool = True) -> List[Driver]:
        with self._lock:
            drivers = sorted(self.drivers.values(), key=lambda d: d.id)
        return [d for d in drivers if d.is_active or not active_only]

    def list_documents(self, active_only: bool = True) -> List[VehicleDocument]:
        with self._lock:
            documents = sorted(self.documents.values(), key=lambda d: d.id)
        return [d for d in documents if d.is_active or not active_only]

    def list_geofences(self, organization_id: Optional[int] = None,
                       active_only: bool = True) -> List[Geofence]:
        with self._lock:
            geofences = sorted(self.geofences.values(), key=lambda g: g.id)
        return [
            g for g in geofences
            if (g.is_active or not active_only)
            and (organization_id is None or g.organization_id == organization_id)
        ]

    def get_locations(self, vehicle_id: int, start: datetime, end: datetime) -> List[LocationSample]:
        """Samples for the vehicle with recorded_at in [start, end], in storage order."""
        vehicle = self.get_vehicle(vehicle_id)
        if vehicle is None:
            raise InvalidInput(f"Unknown vehicle {vehicle_id}", details={'vehicle_id': vehicle_id})
        with self._lock:
            return [
                sample for sample in self.locations
                if (sample.vehicle_id == vehicle_id
                    or (sample.vehicle_id is None and sample.tracker_id == vehicle.tracker_id))
                and start <= sample.recorded_at <= end
            ]

    def get_trips(self, vehicle_id: int, start: Optional[datetime] = None,
                  end: Optional[datetime] = None) -> List[Trip]:
        with self._lock:
            trips = list(self.trips.get(vehicle_id, []))
        if start is not None and end is not None:
            trips = [trip for trip in trips if trip.overlaps(start, end)]
        return trips

    def get_driver_trips(self, driver_id: int, start: datetime, end: datetime) -> List[Trip]:
        """Trips driven by ``driver_id`` that started in [start, end), ordered by start."""
        with self._lock:
            trips = [
                trip for vehicle_trips in self.trips.values() for trip in vehicle_trips
                if trip.driver_id == driver_id and start <= trip.started_at < end
            ]
        return sorted(trips, key=lambda t: t.started_at)

    def driver_at(self, vehicle_id: int, moment: datetime) -> Optional[int]:
        """Driver assigned to the vehicle at ``moment``; the latest assignment wins."""
        with self._lock:
            matching = [
                a for a in self.assignments
                if a.vehicle_id == vehicle_id and a.covers(moment)
            ]
        if not matching:
            return None
        return max(matching, key=lambda a: a.assigned_from).driver_id

    def get_fuel_logs(self, vehicle_id: int) -> List[FuelLog]:
        with self._lock:
            return [log for log in self.fuel_logs if log.vehicle_id == vehicle_id]

    def recipients_for(self, organization_id: int) -> List[int]:
        """User ids to notify for alerts in an organization."""
        with self._lock:
            return list(self.members.get(organization_id, []))
