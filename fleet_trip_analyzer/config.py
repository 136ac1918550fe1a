"""
Configuration module for trip derivation and threshold monitoring.
"""
from dataclasses import dataclass, field
from typing import Dict, Any, List
import pytz

from fleet_trip_analyzer.core.exceptions import ConfigurationError


@dataclass
class SegmentationConfig:
    """Configuration for the stop/drive/stop state machine."""
    moving_speed_kmh: float = 5.0
    min_moving_samples: int = 2
    stop_dwell_seconds: float = 180.0
    max_sample_gap_seconds: float = 3600.0
    noise_floor_m: float = 10.0  # displacement at or below this counts as stationary

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'moving_speed_kmh': self.moving_speed_kmh,
            'min_moving_samples': self.min_moving_samples,
            'stop_dwell_seconds': self.stop_dwell_seconds,
            'max_sample_gap_seconds': self.max_sample_gap_seconds,
            'noise_floor_m': self.noise_floor_m
        }


@dataclass
class MetricsConfig:
    """Configuration for trip metrics and driver scoring."""
    anomaly_speed_kmh: float = 300.0
    speeding_limit_kmh: float = 120.0
    hard_braking_delta_kmh: float = 30.0
    harsh_event_window_seconds: float = 5.0
    hard_braking_penalty: float = 5.0
    speeding_penalty: float = 2.0
    harsh_acceleration_penalty: float = 0.0
    co2_kg_per_litre: float = 2.31

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'anomaly_speed_kmh': self.anomaly_speed_kmh,
            'speeding_limit_kmh': self.speeding_limit_kmh,
            'hard_braking_delta_kmh': self.hard_braking_delta_kmh,
            'harsh_event_window_seconds': self.harsh_event_window_seconds,
            'hard_braking_penalty': self.hard_braking_penalty,
            'speeding_penalty': self.speeding_penalty,
            'harsh_acceleration_penalty': self.harsh_acceleration_penalty,
            'co2_kg_per_litre': self.co2_kg_per_litre
        }


@dataclass
class MonitorConfig:
    """Thresholds and dedup windows for the threshold monitors."""
    no_signal_minutes: float = 30.0
    no_signal_ttl_hours: float = 2.0
    document_expiry_thresholds_days: List[int] = field(default_factory=lambda: [30, 7, 0])
    document_ttl_days: float = 2.0
    daily_limit_hours: float = 9.0
    daily_ttl_hours: float = 12.0
    continuous_limit_hours: float = 4.5
    continuous_gap_minutes: float = 15.0
    continuous_ttl_hours: float = 6.0
    geofence_state_ttl_seconds: int = 3600
    geofence_speed_cooldown_seconds: int = 300
    # Must outlive the geofence replay lookback
    geofence_checkpoint_ttl_seconds: int = 172800

    # Day boundaries for the working-hours monitors
    timezone: str = 'UTC'

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'no_signal_minutes': self.no_signal_minutes,
            'no_signal_ttl_hours': self.no_signal_ttl_hours,
            'document_expiry_thresholds_days': list(self.document_expiry_thresholds_days),
            'document_ttl_days': self.document_ttl_days,
            'daily_limit_hours': self.daily_limit_hours,
            'daily_ttl_hours': self.daily_ttl_hours,
            'continuous_limit_hours': self.continuous_limit_hours,
            'continuous_gap_minutes': self.continuous_gap_minutes,
            'continuous_ttl_hours': self.continuous_ttl_hours,
            'geofence_state_ttl_seconds': self.geofence_state_ttl_seconds,
            'geofence_speed_cooldown_seconds': self.geofence_speed_cooldown_seconds,
            'geofence_checkpoint_ttl_seconds': self.geofence_checkpoint_ttl_seconds,
            'timezone': self.timezone
        }


@dataclass
class AnalysisConfig:
    """Configuration for batch runs."""
    parallel_processing: bool = True
    max_workers: int = 4
    unit_timeout_seconds: float = 60.0
    default_lookback_hours: float = 24.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'parallel_processing': self.parallel_processing,
            'max_workers': self.max_workers,
            'unit_timeout_seconds': self.unit_timeout_seconds,
            'default_lookback_hours': self.default_lookback_hours
        }


@dataclass
class EngineConfig:
    """All tunables in one place."""
    segmentation: SegmentationConfig = field(default_factory=SegmentationConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    monitors: MonitorConfig = field(default_factory=MonitorConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EngineConfig':
        """
        Build a configuration from a nested dictionary.

        Args:
            data: Dictionary with optional 'segmentation', 'metrics', 'monitors'
                and 'analysis' sections

        Returns:
            Validated EngineConfig
        """
        sections = {
            'segmentation': SegmentationConfig,
            'metrics': MetricsConfig,
            'monitors': MonitorConfig,
            'analysis': AnalysisConfig
        }
        kwargs = {}
        for name, section_cls in sections.items():
            values = data.get(name) or {}
            try:
                kwargs[name] = section_cls(**values)
            except TypeError as e:
                raise ConfigurationError(
                    f"Invalid '{name}' configuration: {e}",
                    details={'section': name}
                ) from e

        config = cls(**kwargs)
        config.validate()
        return config

    def validate(self) -> None:
        """Raise ConfigurationError for values the engine cannot run with."""
        positive = {
            'segmentation.moving_speed_kmh': self.segmentation.moving_speed_kmh,
            'segmentation.min_moving_samples': self.segmentation.min_moving_samples,
            'segmentation.stop_dwell_seconds': self.segmentation.stop_dwell_seconds,
            'segmentation.max_sample_gap_seconds': self.segmentation.max_sample_gap_seconds,
            'metrics.anomaly_speed_kmh': self.metrics.anomaly_speed_kmh,
            'metrics.speeding_limit_kmh': self.metrics.speeding_limit_kmh,
            'metrics.hard_braking_delta_kmh': self.metrics.hard_braking_delta_kmh,
            'metrics.harsh_event_window_seconds': self.metrics.harsh_event_window_seconds,
            'monitors.no_signal_minutes': self.monitors.no_signal_minutes,
            'monitors.no_signal_ttl_hours': self.monitors.no_signal_ttl_hours,
            'monitors.document_ttl_days': self.monitors.document_ttl_days,
            'monitors.daily_limit_hours': self.monitors.daily_limit_hours,
            'monitors.daily_ttl_hours': self.monitors.daily_ttl_hours,
            'monitors.continuous_limit_hours': self.monitors.continuous_limit_hours,
            'monitors.continuous_gap_minutes': self.monitors.continuous_gap_minutes,
            'monitors.continuous_ttl_hours': self.monitors.continuous_ttl_hours,
            'monitors.geofence_state_ttl_seconds': self.monitors.geofence_state_ttl_seconds,
            'monitors.geofence_speed_cooldown_seconds': self.monitors.geofence_speed_cooldown_seconds,
            'monitors.geofence_checkpoint_ttl_seconds': self.monitors.geofence_checkpoint_ttl_seconds,
            'analysis.max_workers': self.analysis.max_workers,
            'analysis.unit_timeout_seconds': self.analysis.unit_timeout_seconds,
            'analysis.default_lookback_hours': self.analysis.default_lookback_hours
        }
        for name, value in positive.items():
            if value is None or value <= 0:
                raise ConfigurationError(
                    f"{name} must be positive, got {value}",
                    details={'setting': name, 'value': value}
                )

        if self.segmentation.noise_floor_m < 0:
            raise ConfigurationError(
                f"segmentation.noise_floor_m must not be negative, got {self.segmentation.noise_floor_m}",
                details={'setting': 'segmentation.noise_floor_m'}
            )

        for name in ('hard_braking_penalty', 'speeding_penalty', 'harsh_acceleration_penalty'):
            if getattr(self.metrics, name) < 0:
                raise ConfigurationError(
                    f"metrics.{name} must not be negative",
                    details={'setting': f'metrics.{name}'}
                )

        thresholds = self.monitors.document_expiry_thresholds_days
        if not thresholds:
            raise ConfigurationError("monitors.document_expiry_thresholds_days must not be empty")
        if any(days < 0 for days in thresholds):
            raise ConfigurationError(
                "monitors.document_expiry_thresholds_days must not contain negative values",
                details={'value': list(thresholds)}
            )

        if self.monitors.timezone not in pytz.all_timezones_set:
            raise ConfigurationError(
                f"Unknown timezone: {self.monitors.timezone}",
                details={'setting': 'monitors.timezone'}
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'segmentation': self.segmentation.to_dict(),
            'metrics': self.metrics.to_dict(),
            'monitors': self.monitors.to_dict(),
            'analysis': self.analysis.to_dict()
        }
