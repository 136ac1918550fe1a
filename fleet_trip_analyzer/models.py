"""
Data models for trip derivation and threshold monitoring.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Dict, Any, Optional, Tuple
import pytz

from fleet_trip_analyzer.core.exceptions import InvalidInput


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return a timezone-aware UTC datetime; naive values are assumed to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class LocationSample:
    """One GPS reading reported by a tracker. Immutable once written."""
    id: int
    tracker_id: int
    organization_id: int
    latitude: float
    longitude: float
    recorded_at: datetime
    vehicle_id: Optional[int] = None
    altitude: Optional[float] = None
    speed_kmh: Optional[float] = None
    heading_degrees: Optional[float] = None
    accuracy: Optional[float] = None
    satellites: Optional[int] = None
    ingested_at: Optional[datetime] = None

    def __post_init__(self):
        """Ensure timestamps are timezone-aware."""
        self.recorded_at = as_utc(self.recorded_at)
        self.ingested_at = as_utc(self.ingested_at)

    @property
    def coordinates(self) -> Tuple[float, float]:
        """(latitude, longitude) tuple as expected by geopy."""
        return (self.latitude, self.longitude)

    @property
    def ordering_key(self) -> Tuple[datetime, datetime, int]:
        """Sort key: recorded_at, ties broken by ingestion order."""
        return (self.recorded_at, self.ingested_at or self.recorded_at, self.id)

    def validate(self) -> None:
        """Reject samples that violate coordinate or speed bounds."""
        if not -90.0 <= self.latitude <= 90.0:
            raise InvalidInput(
                f"Sample {self.id} latitude {self.latitude} outside [-90, 90]",
                details={'sample_id': self.id, 'latitude': self.latitude}
            )
        if not -180.0 <= self.longitude <= 180.0:
            raise InvalidInput(
                f"Sample {self.id} longitude {self.longitude} outside [-180, 180]",
                details={'sample_id': self.id, 'longitude': self.longitude}
            )
        if self.speed_kmh is not None and self.speed_kmh < 0:
            raise InvalidInput(
                f"Sample {self.id} has negative speed {self.speed_kmh}",
                details={'sample_id': self.id, 'speed_kmh': self.speed_kmh}
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'id': self.id,
            'tracker_id': self.tracker_id,
            'vehicle_id': self.vehicle_id,
            'organization_id': self.organization_id,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'altitude': self.altitude,
            'speed_kmh': self.speed_kmh,
            'heading_degrees': self.heading_degrees,
            'accuracy': self.accuracy,
            'satellites': self.satellites,
            'recorded_at': _isoformat(self.recorded_at),
            'ingested_at': _isoformat(self.ingested_at)
        }


@dataclass
class Tracker:
    """A physical device reporting location samples."""
    id: int
    organization_id: int
    name: str
    is_active: bool = True
    last_communication_at: Optional[datetime] = None

    def __post_init__(self):
        self.last_communication_at = as_utc(self.last_communication_at)


@dataclass
class Vehicle:
    """The tracked entity a tracker is attached to."""
    id: int
    organization_id: int
    name: str
    tracker_id: Optional[int] = None
    is_active: bool = True


@dataclass
class Driver:
    id: int
    organization_id: int
    name: str
    is_active: bool = True


@dataclass
class DriverAssignment:
    """A driver assigned to a vehicle over a time window (open-ended when until is None)."""
    driver_id: int
    vehicle_id: int
    assigned_from: datetime
    assigned_until: Optional[datetime] = None

    def __post_init__(self):
        self.assigned_from = as_utc(self.assigned_from)
        self.assigned_until = as_utc(self.assigned_until)

    def covers(self, moment: datetime) -> bool:
        if moment < self.assigned_from:
            return False
        return self.assigned_until is None or moment < self.assigned_until


@dataclass
class VehicleDocument:
    """Registration, insurance, inspection certificate etc. with an expiry date."""
    id: int
    organization_id: int
    vehicle_id: int
    title: str
    type: str = 'other'
    expiry_date: Optional[date] = None
    is_active: bool = True

    def days_until_expiry(self, today: date) -> Optional[int]:
        if self.expiry_date is None:
            return None
        return (self.expiry_date - today).days


@dataclass
class Geofence:
    """Circle (center + radius in meters) or polygon ([lng, lat] pairs) area."""
    id: int
    organization_id: int
    name: str
    type: str = 'circle'
    center_latitude: Optional[float] = None
    center_longitude: Optional[float] = None
    radius_m: Optional[float] = None
    coordinates: List[List[float]] = field(default_factory=list)
    speed_limit_kmh: Optional[float] = None
    is_active: bool = True


@dataclass
class GeofenceEvent:
    organization_id: int
    geofence_id: int
    vehicle_id: int
    tracker_id: int
    type: str  # 'enter' or 'exit'
    latitude: float
    longitude: float
    recorded_at: datetime

    def __post_init__(self):
        self.recorded_at = as_utc(self.recorded_at)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'organization_id': self.organization_id,
            'geofence_id': self.geofence_id,
            'vehicle_id': self.vehicle_id,
            'tracker_id': self.tracker_id,
            'type': self.type,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'recorded_at': _isoformat(self.recorded_at)
        }


@dataclass
class FuelLog:
    vehicle_id: int
    litres: float
    total_cost: float
    filled_at: Optional[datetime] = None

    def __post_init__(self):
        self.filled_at = as_utc(self.filled_at)


@dataclass
class DataAnomaly:
    """A physically implausible segment excluded from trip aggregates."""
    vehicle_id: Optional[int]
    from_sample_id: int
    to_sample_id: int
    distance_m: float
    elapsed_seconds: float
    implied_speed_kmh: Optional[float]
    kind: str = 'implausible_speed'

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'vehicle_id': self.vehicle_id,
            'from_sample_id': self.from_sample_id,
            'to_sample_id': self.to_sample_id,
            'distance_m': self.distance_m,
            'elapsed_seconds': self.elapsed_seconds,
            'implied_speed_kmh': self.implied_speed_kmh,
            'kind': self.kind
        }


@dataclass
class TripStop:
    """A brief halt inside a trip, shorter than the stop dwell."""
    latitude: float
    longitude: float
    started_at: datetime
    duration_seconds: float

    def __post_init__(self):
        self.started_at = as_utc(self.started_at)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'latitude': self.latitude,
            'longitude': self.longitude,
            'started_at': _isoformat(self.started_at),
            'duration_seconds': self.duration_seconds
        }


@dataclass
class TripBoundary:
    """Boundary samples of one detected trip plus the brief halts inside it."""
    samples: List[LocationSample]
    is_open: bool = False
    stops: List[TripStop] = field(default_factory=list)

    @property
    def start_sample(self) -> LocationSample:
        return self.samples[0]

    @property
    def end_sample(self) -> LocationSample:
        return self.samples[-1]

    @property
    def idle_seconds(self) -> float:
        return sum(stop.duration_seconds for stop in self.stops)


@dataclass
class TripMetrics:
    """Derived metrics for one trip."""
    distance_km: float
    duration_seconds: float
    average_speed: float
    max_speed: float
    driver_score: Optional[int]
    is_provisional: bool = False
    harsh_braking_count: int = 0
    harsh_acceleration_count: int = 0
    speeding_count: int = 0
    speeding_seconds: float = 0.0
    anomalies: List[DataAnomaly] = field(default_factory=list)

    @property
    def anomaly_count(self) -> int:
        return len(self.anomalies)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'distance_km': self.distance_km,
            'duration_seconds': self.duration_seconds,
            'average_speed': self.average_speed,
            'max_speed': self.max_speed,
            'driver_score': self.driver_score,
            'is_provisional': self.is_provisional,
            'harsh_braking_count': self.harsh_braking_count,
            'harsh_acceleration_count': self.harsh_acceleration_count,
            'speeding_count': self.speeding_count,
            'speeding_seconds': self.speeding_seconds,
            'anomaly_count': self.anomaly_count
        }


@dataclass
class Trip:
    """A derived segment of motion for one vehicle, bounded by two location samples."""
    trip_id: str
    vehicle_id: int
    tracker_id: int
    organization_id: int
    started_at: datetime  # Should be timezone-aware
    ended_at: Optional[datetime]  # None while the trip is still open
    start_location_id: int
    end_location_id: int
    start_latitude: float
    start_longitude: float
    end_latitude: float
    end_longitude: float
    driver_id: Optional[int] = None
    distance_km: float = 0.0
    duration_seconds: float = 0.0
    idle_seconds: float = 0.0
    stops_count: int = 0
    stops: List[TripStop] = field(default_factory=list)
    average_speed: float = 0.0
    max_speed: float = 0.0
    driver_score: Optional[int] = None
    harsh_braking_count: int = 0
    harsh_acceleration_count: int = 0
    speeding_count: int = 0
    speeding_seconds: float = 0.0
    anomaly_count: int = 0
    is_provisional: bool = False
    cost: Optional[float] = None
    co2_kg: Optional[float] = None
    route_coordinates: List[List[float]] = field(default_factory=list)

    def __post_init__(self):
        """Ensure timestamps are timezone-aware."""
        self.started_at = as_utc(self.started_at)
        self.ended_at = as_utc(self.ended_at)

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def duration_hours(self) -> float:
        return self.duration_seconds / 3600

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """True when the trip intersects [start, end]; open trips extend indefinitely."""
        if self.started_at > end:
            return False
        return self.ended_at is None or self.ended_at >= start

    def apply_metrics(self, metrics: TripMetrics) -> None:
        self.distance_km = metrics.distance_km
        self.duration_seconds = metrics.duration_seconds
        self.average_speed = metrics.average_speed
        self.max_speed = metrics.max_speed
        self.driver_score = metrics.driver_score
        self.is_provisional = metrics.is_provisional
        self.harsh_braking_count = metrics.harsh_braking_count
        self.harsh_acceleration_count = metrics.harsh_acceleration_count
        self.speeding_count = metrics.speeding_count
        self.speeding_seconds = metrics.speeding_seconds
        self.anomaly_count = metrics.anomaly_count

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'trip_id': self.trip_id,
            'vehicle_id': self.vehicle_id,
            'tracker_id': self.tracker_id,
            'organization_id': self.organization_id,
            'driver_id': self.driver_id,
            'started_at': _isoformat(self.started_at),
            'ended_at': _isoformat(self.ended_at),
            'start_location_id': self.start_location_id,
            'end_location_id': self.end_location_id,
            'start_latitude': self.start_latitude,
            'start_longitude': self.start_longitude,
            'end_latitude': self.end_latitude,
            'end_longitude': self.end_longitude,
            'distance_km': self.distance_km,
            'duration_seconds': self.duration_seconds,
            'idle_seconds': self.idle_seconds,
            'stops_count': self.stops_count,
            'stops': [stop.to_dict() for stop in self.stops],
            'average_speed': self.average_speed,
            'max_speed': self.max_speed,
            'driver_score': self.driver_score,
            'harsh_braking_count': self.harsh_braking_count,
            'harsh_acceleration_count': self.harsh_acceleration_count,
            'speeding_count': self.speeding_count,
            'speeding_seconds': self.speeding_seconds,
            'anomaly_count': self.anomaly_count,
            'is_provisional': self.is_provisional,
            'cost': self.cost,
            'co2_kg': self.co2_kg,
            'route_coordinates': self.route_coordinates
        }


@dataclass
class AlertEvent:
    """Ephemeral message describing a detected condition. Not persisted by the core."""
    alert_id: str
    alert_type: str
    organization_id: int
    subject_type: str
    subject_id: Any
    message: str
    timestamp: datetime  # Should be timezone-aware
    severity: str = 'warning'
    details: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        """Ensure timestamp is timezone-aware."""
        self.timestamp = as_utc(self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'alert_id': self.alert_id,
            'type': self.alert_type,
            'organization_id': self.organization_id,
            'subject_type': self.subject_type,
            'subject_id': self.subject_id,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'severity': self.severity,
            'details': self.details
        }


@dataclass
class UnitFailure:
    """A recoverable failure of one unit inside a batch run."""
    unit_id: Any
    error_code: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'unit_id': self.unit_id,
            'error_code': self.error_code,
            'message': self.message
        }


@dataclass
class RecomputeResult:
    """Outcome of one vehicle's segmentation run."""
    vehicle_id: int
    range_start: datetime
    range_end: datetime
    trips: List[Trip] = field(default_factory=list)
    samples_processed: int = 0
    anomalies: List[DataAnomaly] = field(default_factory=list)
    sampling: Dict[str, Any] = field(default_factory=dict)  # interval statistics of the input samples

    @property
    def anomaly_count(self) -> int:
        return len(self.anomalies)


@dataclass
class BatchSummary:
    """Summary of a batch job: processed/skipped counts plus the partial-failure list."""
    job: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    processed: int = 0
    skipped: int = 0
    anomaly_count: int = 0
    trips_written: int = 0
    cancelled: bool = False
    failures: List[UnitFailure] = field(default_factory=list)
    results: List[RecomputeResult] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'job': self.job,
            'started_at': _isoformat(self.started_at),
            'finished_at': _isoformat(self.finished_at),
            'processed': self.processed,
            'skipped': self.skipped,
            'anomaly_count': self.anomaly_count,
            'trips_written': self.trips_written,
            'cancelled': self.cancelled,
            'failures': [failure.to_dict() for failure in self.failures]
        }


@dataclass
class MonitorRunResult:
    """Outcome of one threshold monitor run."""
    monitor: str
    ran_at: datetime
    scanned: int = 0
    suppressed: int = 0
    alerts: List[AlertEvent] = field(default_factory=list)
    failures: List[UnitFailure] = field(default_factory=list)

    @property
    def alerts_emitted(self) -> int:
        return len(self.alerts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'monitor': self.monitor,
            'ran_at': _isoformat(self.ran_at),
            'scanned': self.scanned,
            'suppressed': self.suppressed,
            'alerts_emitted': self.alerts_emitted,
            'alerts': [alert.to_dict() for alert in self.alerts],
            'failures': [failure.to_dict() for failure in self.failures]
        }
