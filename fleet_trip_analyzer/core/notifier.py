"""
Notification dispatch.

``notify(user_id, alert)`` is called once per recipient per alert event. The
delivery mechanism is pluggable; a logging dispatcher and an HTTP webhook
dispatcher are provided.
"""
import logging
import threading
from typing import List, Optional, Tuple

import requests
from tenacity import (RetryError, Retrying, before_sleep_log,
                      retry_if_exception_type, stop_after_attempt,
                      wait_exponential)

from fleet_trip_analyzer.core.exceptions import DependencyUnavailable
from fleet_trip_analyzer.models import AlertEvent

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Base dispatcher. Subclasses deliver one alert to one user."""

    def notify(self, user_id: int, alert: AlertEvent) -> None:
        raise NotImplementedError


class LoggingNotifier(NotificationDispatcher):
    """Writes alerts to the log and keeps the delivered (user, alert) pairs."""

    def __init__(self):
        self.delivered: List[Tuple[int, AlertEvent]] = []
        self._lock = threading.Lock()

    def notify(self, user_id: int, alert: AlertEvent) -> None:
        logger.info(f"[{alert.alert_type}] to user {user_id}: {alert.message}")
        with self._lock:
            self.delivered.append((user_id, alert))


class WebhookNotifier(NotificationDispatcher):
    """POSTs each alert as JSON to a webhook, retrying transient failures."""

    def __init__(self, url: str, timeout_seconds: float = 10.0, max_retries: int = 3,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self._session = session or requests.Session()
        logger.info(f"Initialized webhook notifier for {url}")

    def notify(self, user_id: int, alert: AlertEvent) -> None:
        payload = {'user_id': user_id, 'alert': alert.to_dict()}
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=0.5, max=8),
            retry=retry_if_exception_type(requests.RequestException),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        try:
            for attempt in retrying:
                with attempt:
                    response = self._session.post(self.url, json=payload, timeout=self.timeout_seconds)
                    response.raise_for_status()
        except RetryError as e:
            last_error = e.last_attempt.exception()
            raise DependencyUnavailable("notification webhook", str(last_error)) from last_error
        logger.debug(f"Delivered {alert.alert_id} to user {user_id}")
