"""
Periodic threshold monitors.

Each run scans its subjects, decides which conditions hold and fires one
alert per subject, deduplicated through the alert manager's cache. Runs are
pure scan-and-decide cycles and are safe to repeat.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Iterable, List, Optional, Tuple

import pytz

from fleet_trip_analyzer.config import MonitorConfig
from fleet_trip_analyzer.core.exceptions import ConfigurationError, FleetTripError
from fleet_trip_analyzer.models import AlertEvent, MonitorRunResult, UnitFailure
from fleet_trip_analyzer.monitoring.alert_manager import AlertManager

logger = logging.getLogger(__name__)

# (alert, dedup key, ttl seconds)
Candidate = Tuple[AlertEvent, str, float]


class ThresholdMonitor:
    """Base class: subclasses provide ``subjects`` and ``evaluate``."""

    name = 'threshold'

    def __init__(self, store, alert_manager: AlertManager, config: MonitorConfig):
        self.store = store
        self.alert_manager = alert_manager
        self.config = config
        self.timezone = pytz.timezone(config.timezone)

    def subjects(self) -> Iterable[Any]:
        raise NotImplementedError

    def subject_id(self, subject: Any) -> Any:
        return subject.id

    def evaluate(self, subject: Any, now: datetime) -> List[Candidate]:
        raise NotImplementedError

    def local_date(self, now: datetime) -> date:
        """Calendar date of ``now`` in the configured timezone."""
        return now.astimezone(self.timezone).date()

    def run(self, now: Optional[datetime] = None) -> MonitorRunResult:
        """
        Run one scan.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            MonitorRunResult with emitted alerts, suppressed count and failures
        """
        now = now or datetime.now(pytz.UTC)
        result = MonitorRunResult(monitor=self.name, ran_at=now)

        for subject in self.subjects():
            result.scanned += 1
            subject_id = self.subject_id(subject)
            try:
                for alert, key, ttl in self.evaluate(subject, now):
                    if self.alert_manager.fire(alert, dedup_key=key, ttl_seconds=ttl):
                        result.alerts.append(alert)
                    else:
                        result.suppressed += 1
            except ConfigurationError:
                raise
            except FleetTripError as e:
                logger.error(f"{self.name}: subject {subject_id} failed: {e.message}")
                result.failures.append(UnitFailure(subject_id, e.error_code, e.message))
            except Exception as e:
                logger.error(f"{self.name}: error checking subject {subject_id}: {str(e)}")
                result.failures.append(UnitFailure(subject_id, 'ERR_INTERNAL', str(e)))

        logger.info(
            f"{self.name}: scanned {result.scanned}, emitted {result.alerts_emitted}, "
            f"suppressed {result.suppressed}, failed {len(result.failures)}"
        )
        return result


class NoSignalMonitor(ThresholdMonitor):
    """Alerts when an active tracker has been silent longer than the threshold."""

    name = 'no-signal'

    def subjects(self):
        return self.store.list_trackers(active_only=True)

    def evaluate(self, tracker, now: datetime) -> List[Candidate]:
        if tracker.last_communication_at is None:
            return []

        silent_minutes = (now - tracker.last_communication_at).total_seconds() / 60
        if silent_minutes <= self.config.no_signal_minutes:
            return []

        vehicle = self.store.vehicle_for_tracker(tracker.id)
        label = vehicle.name if vehicle else tracker.name
        alert = self.alert_manager.create_alert(
            alert_type='no_signal',
            organization_id=tracker.organization_id,
            subject_type='tracker',
            subject_id=tracker.id,
            message=f"No signal from {label} for {int(silent_minutes)} minutes",
            timestamp=now,
            details={
                'tracker_id': tracker.id,
                'vehicle_id': vehicle.id if vehicle else None,
                'last_communication_at': tracker.last_communication_at.isoformat(),
                'minutes_silent': int(silent_minutes)
            }
        )
        key = f"no_signal_notified.{tracker.id}"
        return [(alert, key, self.config.no_signal_ttl_hours * 3600)]


class DocumentExpiryMonitor(ThresholdMonitor):
    """Alerts when a document is exactly 30, 7 or 0 days from expiry."""

    name = 'document-expiry'

    def subjects(self):
        return [doc for doc in self.store.list_documents(active_only=True) if doc.expiry_date is not None]

    def evaluate(self, document, now: datetime) -> List[Candidate]:
        days = document.days_until_expiry(self.local_date(now))
        if days not in self.config.document_expiry_thresholds_days:
            return []

        vehicle = self.store.get_vehicle(document.vehicle_id)
        vehicle_name = vehicle.name if vehicle else 'Vehicle'
        status = 'expired' if days <= 0 else f"expiring in {days} days"
        alert = self.alert_manager.create_alert(
            alert_type='document_expiry',
            organization_id=document.organization_id,
            subject_type='document',
            subject_id=document.id,
            message=f"{vehicle_name}: {document.title} {status}",
            timestamp=now,
            severity='critical' if days <= 0 else 'warning',
            details={
                'document_id': document.id,
                'document_title': document.title,
                'document_type': document.type,
                'vehicle_id': document.vehicle_id,
                'expiry_date': document.expiry_date.isoformat(),
                'days_until_expiry': days
            }
        )
        key = f"doc_expiry_notified.{document.id}.{days}"
        return [(alert, key, timedelta(days=self.config.document_ttl_days).total_seconds())]
