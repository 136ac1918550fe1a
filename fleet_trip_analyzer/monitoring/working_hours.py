"""
Driver working-hours monitors: daily total and longest continuous stretch.
"""
import logging
from datetime import datetime, time, timedelta
from typing import List, Tuple

import pytz

from fleet_trip_analyzer.models import Trip
from fleet_trip_analyzer.monitoring.threshold_monitors import Candidate, ThresholdMonitor

logger = logging.getLogger(__name__)


def trip_seconds(trip: Trip, now: datetime) -> float:
    """Stored duration for closed trips; elapsed time so far for open ones."""
    if trip.ended_at is None:
        return max(0.0, (now - trip.started_at).total_seconds())
    return trip.duration_seconds


def longest_continuous_stretch(trips: List[Trip], max_gap_seconds: float, now: datetime) -> float:
    """
    Longest run of driving, in seconds, with no break longer than ``max_gap_seconds``.

    Trips are taken in start order; the running stretch resets whenever the
    next trip starts more than the allowed gap after the previous one ended.
    """
    longest = 0.0
    current = 0.0
    previous_end = None
    for trip in sorted(trips, key=lambda t: t.started_at):
        if previous_end is not None:
            gap = (trip.started_at - previous_end).total_seconds()
            if gap > max_gap_seconds:
                current = 0.0
        current += trip_seconds(trip, now)
        longest = max(longest, current)
        previous_end = trip.ended_at or trip.started_at
    return longest


class _WorkingHoursMonitor(ThresholdMonitor):
    """Shared scan over active drivers and their trips started today."""

    def subjects(self):
        return self.store.list_drivers(active_only=True)

    def day_bounds(self, now: datetime) -> Tuple[datetime, datetime]:
        """UTC bounds of the local calendar day containing ``now``."""
        day = self.local_date(now)
        start = self.timezone.localize(datetime.combine(day, time.min))
        end = self.timezone.localize(datetime.combine(day + timedelta(days=1), time.min))
        return start.astimezone(pytz.UTC), end.astimezone(pytz.UTC)

    def todays_trips(self, driver_id: int, now: datetime) -> List[Trip]:
        start, end = self.day_bounds(now)
        return self.store.get_driver_trips(driver_id, start, end)


class DailyWorkingHoursMonitor(_WorkingHoursMonitor):
    """Alerts when a driver's total driving today exceeds the daily limit."""

    name = 'working-hours-daily'

    def evaluate(self, driver, now: datetime) -> List[Candidate]:
        trips = self.todays_trips(driver.id, now)
        if not trips:
            return []

        total_hours = sum(trip_seconds(trip, now) for trip in trips) / 3600
        if total_hours <= self.config.daily_limit_hours:
            return []

        today = self.local_date(now).isoformat()
        alert = self.alert_manager.create_alert(
            alert_type='working_hours',
            organization_id=driver.organization_id,
            subject_type='driver',
            subject_id=driver.id,
            message=(f"{driver.name} has driven {total_hours:.1f} hours today "
                     f"(limit: {self.config.daily_limit_hours:g} hours)"),
            timestamp=now,
            details={
                'driver_id': driver.id,
                'violation_type': 'daily',
                'total_hours': round(total_hours, 1),
                'limit_hours': self.config.daily_limit_hours,
                'date': today,
                'trip_count': len(trips)
            }
        )
        key = f"working_hours_daily.{driver.id}.{today}"
        return [(alert, key, self.config.daily_ttl_hours * 3600)]


class ContinuousDrivingMonitor(_WorkingHoursMonitor):
    """Alerts when a driver's longest unbroken stretch today exceeds the limit."""

    name = 'working-hours-continuous'

    def evaluate(self, driver, now: datetime) -> List[Candidate]:
        trips = self.todays_trips(driver.id, now)
        if not trips:
            return []

        longest_hours = longest_continuous_stretch(
            trips, self.config.continuous_gap_minutes * 60, now
        ) / 3600
        if longest_hours <= self.config.continuous_limit_hours:
            return []

        today = self.local_date(now).isoformat()
        alert = self.alert_manager.create_alert(
            alert_type='working_hours',
            organization_id=driver.organization_id,
            subject_type='driver',
            subject_id=driver.id,
            message=f"{driver.name} has driven {longest_hours:.1f} continuous hours without a break",
            timestamp=now,
            details={
                'driver_id': driver.id,
                'violation_type': 'continuous',
                'total_hours': round(longest_hours, 1),
                'limit_hours': self.config.continuous_limit_hours,
                'date': today
            }
        )
        key = f"working_hours_continuous.{driver.id}.{today}"
        return [(alert, key, self.config.continuous_ttl_hours * 3600)]
