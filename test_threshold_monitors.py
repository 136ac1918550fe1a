#!/usr/bin/env python3
"""
Tests for the threshold monitors: no-signal, document expiry, daily and
continuous working hours, deduplication and dispatch failure handling.
"""

import gc
import os
import tempfile
import weakref
from datetime import date, datetime, timedelta
from unittest.mock import Mock, patch

import pytest
import pytz
import requests

from fleet_trip_analyzer.config import EngineConfig, MonitorConfig
from fleet_trip_analyzer.core.cache import InMemoryDedupCache
from fleet_trip_analyzer.core.exceptions import ConfigurationError, DependencyUnavailable
from fleet_trip_analyzer.core.notifier import LoggingNotifier, WebhookNotifier
from fleet_trip_analyzer.core.store import InMemoryFleetStore
from fleet_trip_analyzer.core.utils import load_config
from fleet_trip_analyzer.models import Driver, Tracker, Trip, Vehicle, VehicleDocument
from fleet_trip_analyzer.monitoring.alert_manager import AlertManager
from fleet_trip_analyzer.monitoring.threshold_monitors import DocumentExpiryMonitor, NoSignalMonitor
from fleet_trip_analyzer.monitoring.working_hours import (ContinuousDrivingMonitor, DailyWorkingHoursMonitor,
                                                          longest_continuous_stretch)

NOW = datetime(2025, 3, 3, 15, 0, 0, tzinfo=pytz.UTC)
ORG_ID = 1
RECIPIENTS = [101, 102]


class FakeClock:
    """Controllable clock for the dedup cache."""

    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def create_store():
    store = InMemoryFleetStore()
    store.add_members(ORG_ID, RECIPIENTS)
    store.add_tracker(Tracker(id=70, organization_id=ORG_ID, name='T-70'))
    store.add_vehicle(Vehicle(id=7, organization_id=ORG_ID, name='Van 7', tracker_id=70))
    return store


def create_alert_manager(store, clock=None, dispatcher=None):
    return AlertManager(
        InMemoryDedupCache(clock=clock or FakeClock()),
        dispatcher or LoggingNotifier(),
        store.recipients_for
    )


def create_trip(trip_id, driver_id, start, hours):
    return Trip(
        trip_id=trip_id,
        vehicle_id=7,
        tracker_id=70,
        organization_id=ORG_ID,
        driver_id=driver_id,
        started_at=start,
        ended_at=start + timedelta(hours=hours),
        start_location_id=1,
        end_location_id=2,
        start_latitude=0.0,
        start_longitude=0.0,
        end_latitude=0.0,
        end_longitude=0.0,
        duration_seconds=hours * 3600
    )


def test_no_signal_fires_once():
    print("Testing no-signal monitor...")

    store = create_store()
    store.trackers[70].last_communication_at = NOW - timedelta(minutes=45)
    notifier = LoggingNotifier()
    manager = create_alert_manager(store, dispatcher=notifier)
    monitor = NoSignalMonitor(store, manager, MonitorConfig())

    first = monitor.run(NOW)
    assert first.alerts_emitted == 1, "A tracker silent for 45 minutes should alert"
    alert = first.alerts[0]
    assert alert.alert_type == 'no_signal'
    assert alert.message == "No signal from Van 7 for 45 minutes"
    assert [user for user, _ in notifier.delivered] == RECIPIENTS, "One call per recipient"

    second = monitor.run(NOW)
    assert second.alerts_emitted == 0, "Re-running immediately should not alert again"
    assert second.suppressed == 1
    assert len(notifier.delivered) == 2
    print("✓ No-signal test passed")


def test_no_signal_skips_recent_and_unknown():
    store = create_store()
    store.add_tracker(Tracker(id=71, organization_id=ORG_ID, name='T-71', last_communication_at=None))
    store.add_tracker(Tracker(id=72, organization_id=ORG_ID, name='T-72', is_active=False,
                              last_communication_at=NOW - timedelta(hours=5)))
    store.trackers[70].last_communication_at = NOW - timedelta(minutes=20)
    monitor = NoSignalMonitor(store, create_alert_manager(store), MonitorConfig())

    result = monitor.run(NOW)
    assert result.alerts_emitted == 0
    assert result.scanned == 2, "Inactive trackers are not scanned"
    print("✓ No-signal skip test passed")


def test_dedup_window_expires():
    print("Testing dedup window...")

    store = create_store()
    store.trackers[70].last_communication_at = NOW - timedelta(minutes=45)
    clock = FakeClock()
    monitor = NoSignalMonitor(store, create_alert_manager(store, clock=clock), MonitorConfig())

    assert monitor.run(NOW).alerts_emitted == 1
    clock.advance(3600)
    assert monitor.run(NOW).alerts_emitted == 0, "Still inside the two hour window"
    clock.advance(3601)
    assert monitor.run(NOW).alerts_emitted == 1, "Window expired, alert again"
    print("✓ Dedup window test passed")


def test_document_expiry_thresholds():
    print("Testing document expiry monitor...")

    store = create_store()
    today = date(2025, 3, 3)
    for doc_id, days, title in [(1, 30, 'Insurance'), (2, 7, 'Registration'),
                                (3, 0, 'Inspection'), (4, 5, 'Permit')]:
        store.add_document(VehicleDocument(
            id=doc_id, organization_id=ORG_ID, vehicle_id=7, title=title,
            expiry_date=today + timedelta(days=days)
        ))
    store.add_document(VehicleDocument(id=5, organization_id=ORG_ID, vehicle_id=7, title='Old', expiry_date=None))

    monitor = DocumentExpiryMonitor(store, create_alert_manager(store), MonitorConfig())
    result = monitor.run(NOW)

    messages = sorted(alert.message for alert in result.alerts)
    assert messages == [
        "Van 7: Inspection expired",
        "Van 7: Insurance expiring in 30 days",
        "Van 7: Registration expiring in 7 days",
    ]
    assert monitor.run(NOW).alerts_emitted == 0, "Same day re-run is deduplicated"
    print("✓ Document expiry test passed")


def test_dispatch_failure_rolls_back_dedup_entry():
    print("Testing dispatch failure...")

    store = create_store()
    store.trackers[70].last_communication_at = NOW - timedelta(minutes=45)
    notifier = LoggingNotifier()
    manager = create_alert_manager(store, dispatcher=notifier)
    monitor = NoSignalMonitor(store, manager, MonitorConfig())

    with patch.object(notifier, 'notify', side_effect=DependencyUnavailable('notification webhook', 'down')):
        failed = monitor.run(NOW)

    assert failed.alerts_emitted == 0
    assert len(failed.failures) == 1
    assert failed.failures[0].error_code == 'ERR_DEPENDENCY'
    assert not manager.cache.has('no_signal_notified.70'), "Dedup entry should be removed"

    retried = monitor.run(NOW)
    assert retried.alerts_emitted == 1, "Next run retries the notification"
    print("✓ Dispatch failure test passed")


def test_fired_alerts_are_not_retained():
    print("Testing fired alerts are released...")

    store = create_store()
    dispatcher = Mock()
    manager = create_alert_manager(store, dispatcher=dispatcher)
    alert = manager.create_alert('no_signal', ORG_ID, 'tracker', 70, 'No signal from Van 7', timestamp=NOW)

    dispatched = manager.fire(alert)
    assert dispatched
    assert dispatcher.notify.call_count == len(RECIPIENTS)

    released = weakref.ref(alert)
    del alert
    dispatcher.reset_mock()
    gc.collect()
    assert released() is None, "The manager keeps no reference to dispatched alerts"
    print("✓ Alert retention test passed")


def test_webhook_notifier_retries_then_fails():
    print("Testing webhook notifier...")

    alert = AlertManager.create_alert('no_signal', ORG_ID, 'tracker', 70, 'No signal', timestamp=NOW)

    session = Mock()
    session.post.side_effect = requests.ConnectionError("refused")
    notifier = WebhookNotifier('http://hooks.local/alerts', max_retries=2, session=session)
    with pytest.raises(DependencyUnavailable):
        notifier.notify(101, alert)
    assert session.post.call_count == 2

    ok_session = Mock()
    ok_session.post.return_value = Mock(raise_for_status=Mock(return_value=None))
    WebhookNotifier('http://hooks.local/alerts', session=ok_session).notify(101, alert)
    _, kwargs = ok_session.post.call_args
    assert kwargs['json']['user_id'] == 101
    assert kwargs['json']['alert']['type'] == 'no_signal'
    print("✓ Webhook notifier test passed")


def test_daily_working_hours():
    print("Testing daily working hours...")

    store = create_store()
    store.add_driver(Driver(id=5, organization_id=ORG_ID, name='Alex Driver'))
    store.add_driver(Driver(id=6, organization_id=ORG_ID, name='Sam Driver'))
    day_start = datetime(2025, 3, 3, 0, 0, tzinfo=pytz.UTC)
    store.trips[7] = [
        create_trip('A1', 5, day_start + timedelta(hours=1), 5.0),
        create_trip('A2', 5, day_start + timedelta(hours=7), 4.5),
        create_trip('B1', 6, day_start + timedelta(hours=1), 8.0),
        create_trip('A0', 5, day_start - timedelta(hours=6), 5.0),  # yesterday
    ]
    monitor = DailyWorkingHoursMonitor(store, create_alert_manager(store), MonitorConfig())

    result = monitor.run(NOW)
    assert result.alerts_emitted == 1
    alert = result.alerts[0]
    assert alert.subject_id == 5
    assert alert.message == "Alex Driver has driven 9.5 hours today (limit: 9 hours)"
    assert alert.details['violation_type'] == 'daily'
    assert monitor.run(NOW).alerts_emitted == 0
    print("✓ Daily working hours test passed")


def test_continuous_stretch_resets_after_break():
    print("Testing continuous stretch...")

    start = datetime(2025, 3, 3, 1, 0, tzinfo=pytz.UTC)
    first = create_trip('C1', 5, start, 3.0)
    second = create_trip('C2', 5, first.ended_at + timedelta(minutes=20), 3.0)
    assert longest_continuous_stretch([second, first], 15 * 60, NOW) == 3 * 3600

    short_break = create_trip('C3', 5, first.ended_at + timedelta(minutes=10), 2.0)
    assert longest_continuous_stretch([first, short_break], 15 * 60, NOW) == 5 * 3600

    store = create_store()
    store.add_driver(Driver(id=5, organization_id=ORG_ID, name='Alex Driver'))
    store.trips[7] = [first, second]
    monitor = ContinuousDrivingMonitor(store, create_alert_manager(store), MonitorConfig())
    assert monitor.run(NOW).alerts_emitted == 0, "A 20 minute break resets the stretch"

    store.trips[7] = [first, short_break]
    result = monitor.run(NOW)
    assert result.alerts_emitted == 1
    assert result.alerts[0].message == "Alex Driver has driven 5.0 continuous hours without a break"
    print("✓ Continuous stretch test passed")


def test_day_boundaries_follow_timezone():
    store = create_store()
    monitor = DailyWorkingHoursMonitor(store, create_alert_manager(store),
                                       MonitorConfig(timezone='Australia/Perth'))
    now = datetime(2025, 3, 3, 2, 0, tzinfo=pytz.UTC)  # 10:00 in Perth

    start, end = monitor.day_bounds(now)
    assert start == datetime(2025, 3, 2, 16, 0, tzinfo=pytz.UTC)
    assert end == datetime(2025, 3, 3, 16, 0, tzinfo=pytz.UTC)
    print("✓ Timezone day boundary test passed")


def test_configuration_validation():
    print("Testing configuration validation...")

    with pytest.raises(ConfigurationError):
        EngineConfig.from_dict({'monitors': {'timezone': 'Mars/Olympus_Mons'}})
    with pytest.raises(ConfigurationError):
        EngineConfig.from_dict({'segmentation': {'stop_dwell_seconds': 0}})
    with pytest.raises(ConfigurationError):
        EngineConfig.from_dict({'segmentation': {'no_such_setting': 1}})
    with pytest.raises(ConfigurationError):
        EngineConfig.from_dict({'monitors': {'document_expiry_thresholds_days': []}})

    config = EngineConfig.from_dict({'monitors': {'timezone': 'Europe/Berlin'}})
    assert config.monitors.timezone == 'Europe/Berlin'
    assert config.segmentation.moving_speed_kmh == 5.0
    print("✓ Configuration validation test passed")


def test_load_config_layers():
    print("Testing configuration loading...")

    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, 'config.yaml')
        with open(path, 'w') as f:
            f.write("segmentation:\n  stop_dwell_seconds: 240\nanalysis:\n  max_workers: 2\n")

        with patch.dict(os.environ, {'FLEET_TRIPS_MAX_WORKERS': '8'}):
            config = load_config(path)

    assert config['segmentation']['stop_dwell_seconds'] == 240
    assert config['segmentation']['moving_speed_kmh'] == 5.0, "Defaults survive"
    assert config['analysis']['max_workers'] == 8, "Environment wins over the file"

    with pytest.raises(ConfigurationError):
        load_config('/nonexistent/config.yaml')

    with patch.dict(os.environ, {'FLEET_TRIPS_MAX_WORKERS': 'many'}):
        with pytest.raises(ConfigurationError):
            load_config()
    print("✓ Configuration loading test passed")


def run_all_tests():
    """Run all tests."""
    print("Running threshold monitor tests...\n")

    try:
        test_no_signal_fires_once()
        test_no_signal_skips_recent_and_unknown()
        test_dedup_window_expires()
        test_document_expiry_thresholds()
        test_dispatch_failure_rolls_back_dedup_entry()
        test_fired_alerts_are_not_retained()
        test_webhook_notifier_retries_then_fails()
        test_daily_working_hours()
        test_continuous_stretch_resets_after_break()
        test_day_boundaries_follow_timezone()
        test_configuration_validation()
        test_load_config_layers()
        print()
        print("✅ All tests passed!")

    except Exception as e:
        print(f"❌ Test failed: {str(e)}")
        import traceback
        traceback.print_exc()


if __name__ == "__main__":
    run_all_tests()
