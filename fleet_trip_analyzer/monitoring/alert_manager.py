"""
Alert creation, deduplication and fan-out to recipients.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pytz

from fleet_trip_analyzer.core.exceptions import DependencyUnavailable
from fleet_trip_analyzer.core.notifier import NotificationDispatcher
from fleet_trip_analyzer.models import AlertEvent

logger = logging.getLogger(__name__)


class AlertManager:
    """
    Fires alerts at most once per dedup window.

    The dedup entry is written before dispatch. If dispatch fails the entry is
    removed again so the next run retries the notification.
    """

    def __init__(self, cache, dispatcher: NotificationDispatcher,
                 recipients_for: Callable[[int], List[int]]):
        self.cache = cache
        self.dispatcher = dispatcher
        self.recipients_for = recipients_for

    @staticmethod
    def create_alert(alert_type: str, organization_id: int, subject_type: str, subject_id: Any,
                     message: str, timestamp: Optional[datetime] = None,
                     severity: str = 'warning',
                     details: Optional[Dict[str, Any]] = None) -> AlertEvent:
        """Build an AlertEvent with a deterministic id."""
        now = timestamp or datetime.now(pytz.UTC)
        return AlertEvent(
            alert_id=f"{alert_type.upper()}_{subject_id}_{now.strftime('%Y%m%d_%H%M%S')}",
            alert_type=alert_type,
            organization_id=organization_id,
            subject_type=subject_type,
            subject_id=subject_id,
            message=message,
            timestamp=now,
            severity=severity,
            details=details or {}
        )

    def fire(self, alert: AlertEvent, dedup_key: Optional[str] = None,
             ttl_seconds: Optional[float] = None) -> bool:
        """
        Record the dedup entry (if any) and notify every recipient.

        Args:
            alert: The alert to send
            dedup_key: Key suppressing repeats while it lives in the cache
            ttl_seconds: Lifetime of the dedup entry

        Returns:
            True if the alert was dispatched, False if it was suppressed

        Raises:
            DependencyUnavailable: dispatch failed; the dedup entry was rolled back
        """
        if dedup_key is not None:
            if not self.cache.add(dedup_key, alert.timestamp.isoformat(), ttl_seconds):
                logger.debug(f"Suppressed {alert.alert_type} for {alert.subject_id} ({dedup_key})")
                return False

        try:
            self._dispatch(alert)
        except DependencyUnavailable:
            if dedup_key is not None:
                self.cache.delete(dedup_key)
            raise

        logger.info(f"Alert {alert.alert_id}: {alert.message}")
        return True

    def _dispatch(self, alert: AlertEvent) -> None:
        recipients = self.recipients_for(alert.organization_id)
        if not recipients:
            logger.warning(f"No recipients for organization {alert.organization_id}; "
                           f"alert {alert.alert_id} not delivered")
            return
        for user_id in recipients:
            self.dispatcher.notify(user_id, alert)
