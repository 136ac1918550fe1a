#!/usr/bin/env python3
"""
Fleet Trip Analyzer - command line entry point
"""
import click
import logging
from typing import Any, Dict, List, Optional
from datetime import datetime
import pytz

from fleet_trip_analyzer.analyzers.fleet_analyzer import FleetAnalyzer, MONITOR_NAMES
from fleet_trip_analyzer.core.cache import InMemoryDedupCache, RedisDedupCache
from fleet_trip_analyzer.core.exceptions import ConfigurationError, FleetTripError
from fleet_trip_analyzer.core.notifier import LoggingNotifier, WebhookNotifier
from fleet_trip_analyzer.core.store import InMemoryFleetStore
from fleet_trip_analyzer.core.utils import build_engine_config, calculate_time_window, load_config, setup_logging
from fleet_trip_analyzer.models import BatchSummary, MonitorRunResult

logger = logging.getLogger(__name__)


def parse_datetime_string(datetime_str: str, timezone_str: str, is_end_date: bool = False) -> datetime:
    """
    Parse a datetime string that could be either a date or datetime.

    Args:
        datetime_str: Date or datetime string in format 'YYYY-MM-DD' or 'YYYY-MM-DD HH:MM:SS'
        timezone_str: Timezone string (e.g., 'Australia/Perth', 'US/Eastern')
        is_end_date: If True and only date is provided, set to end of day

    Returns:
        UTC datetime object
    """
    local_tz = pytz.timezone(timezone_str)

    formats = [
        "%Y-%m-%d %H:%M:%S",
        "%Y-%m-%d %H:%M",
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%dT%H:%M",
        "%Y-%m-%d"
    ]

    parsed_datetime = None
    for fmt in formats:
        try:
            parsed_datetime = datetime.strptime(datetime_str, fmt)
            break
        except ValueError:
            continue

    if parsed_datetime is None:
        raise ValueError(f"Could not parse datetime string: {datetime_str}. "
                         f"Expected formats: YYYY-MM-DD or YYYY-MM-DD HH:MM:SS")

    # Date only: end dates run to the end of that day
    if len(datetime_str) <= 10 and is_end_date:
        parsed_datetime = parsed_datetime.replace(hour=23, minute=59, second=59)

    local_datetime = local_tz.localize(parsed_datetime)
    return local_datetime.astimezone(pytz.UTC)


def save_snapshot(analyzer: FleetAnalyzer, store_path: str) -> None:
    """Write derived data back into the snapshot, with the in-memory dedup entries."""
    if isinstance(analyzer.alert_manager.cache, InMemoryDedupCache):
        analyzer.store.dedup_entries = analyzer.alert_manager.cache.snapshot()
    analyzer.store.save_json(store_path)


def build_analyzer(config: Dict[str, Any], store_path: str, timezone: Optional[str],
                   webhook_url: Optional[str]) -> FleetAnalyzer:
    """Wire store, cache, dispatcher and configuration into a FleetAnalyzer."""
    if timezone:
        config['monitors']['timezone'] = timezone
    if webhook_url:
        config['notifications']['webhook_url'] = webhook_url
    engine_config = build_engine_config(
        {name: config[name] for name in ('segmentation', 'metrics', 'monitors', 'analysis')}
    )

    store = InMemoryFleetStore.from_json(store_path)

    redis_url = config['cache'].get('redis_url')
    if redis_url:
        cache = RedisDedupCache(redis_url=redis_url, key_prefix=config['cache'].get('key_prefix', 'fleet_trips:'))
        logger.info(f"Using Redis dedup cache at {redis_url}")
    else:
        cache = InMemoryDedupCache()
        cache.restore(store.dedup_entries)
        logger.debug(f"Restored {len(cache)} dedup entries from {store_path}")

    notifications = config['notifications']
    if notifications.get('webhook_url'):
        dispatcher = WebhookNotifier(
            notifications['webhook_url'],
            timeout_seconds=notifications.get('timeout_seconds', 10.0),
            max_retries=notifications.get('max_retries', 3)
        )
    else:
        dispatcher = LoggingNotifier()

    return FleetAnalyzer(store, engine_config, cache=cache, dispatcher=dispatcher)


@click.group()
@click.option('--config', 'config_path', default=None, help='YAML configuration file')
@click.option('--store', 'store_path', required=True, type=click.Path(exists=True, dir_okay=False),
              help='JSON snapshot of vehicles, trackers, locations, drivers and documents')
@click.option('--timezone', default=None, help='Timezone for day boundaries and dates (e.g. Europe/Berlin)')
@click.option('--webhook-url', default=None, help='Deliver alerts to this webhook instead of the log')
@click.option('--log-level', default='INFO', help='Logging level')
@click.pass_context
def cli(ctx, config_path: Optional[str], store_path: str, timezone: Optional[str],
        webhook_url: Optional[str], log_level: str):
    """Derive trips from GPS samples and run fleet threshold monitors."""
    setup_logging(log_level)

    if timezone:
        try:
            pytz.timezone(timezone)
        except pytz.exceptions.UnknownTimeZoneError:
            logger.error(f"Unknown timezone: {timezone}")
            ctx.exit(2)

    try:
        config = load_config(config_path)
        analyzer = build_analyzer(config, store_path, timezone, webhook_url)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        ctx.exit(2)

    ctx.obj = {
        'analyzer': analyzer,
        'store_path': store_path,
        'timezone': analyzer.config.monitors.timezone,
        'output_dir': config['output'].get('dir')
    }


@cli.command()
@click.option('--vehicle-id', 'vehicle_ids', type=int, multiple=True,
              help='Vehicle to recompute (repeatable)')
@click.option('--all', 'all_vehicles', is_flag=True, default=False, help='Recompute every active vehicle')
@click.option('--start', 'start_date', default=None,
              help='Range start in local time. Formats: YYYY-MM-DD or YYYY-MM-DD HH:MM:SS')
@click.option('--end', 'end_date', default=None,
              help='Range end in local time. Formats: YYYY-MM-DD or YYYY-MM-DD HH:MM:SS')
@click.option('--output-dir', default=None, help='Write the fleet trip report here')
@click.option('--save/--no-save', default=False, help='Write derived trips back into the snapshot')
@click.option('--parallel/--no-parallel', default=True, help='Process vehicles in parallel')
@click.option('--max-workers', default=None, type=int, help='Maximum parallel workers')
@click.pass_obj
def recompute(obj: Dict[str, Any], vehicle_ids: List[int], all_vehicles: bool,
              start_date: Optional[str], end_date: Optional[str], output_dir: Optional[str],
              save: bool, parallel: bool, max_workers: Optional[int]):
    """
    Recompute trips for one or more vehicles over a time range.

    Without --start/--end the last 24 hours (default_lookback_hours) are used.

    Examples:
        fleet-trip-analyzer --store fleet.json recompute --vehicle-id 7
        fleet-trip-analyzer --store fleet.json recompute --all --start 2024-05-01 --end 2024-05-02
    """
    if not vehicle_ids and not all_vehicles:
        raise click.UsageError("Pass --vehicle-id or --all")

    analyzer: FleetAnalyzer = obj['analyzer']
    timezone = obj['timezone']
    try:
        if start_date and end_date:
            start = parse_datetime_string(start_date, timezone, is_end_date=False)
            end = parse_datetime_string(end_date, timezone, is_end_date=True)
        else:
            start, end = calculate_time_window(analyzer.config.analysis.default_lookback_hours)
    except ValueError as e:
        logger.error(f"Date parsing error: {str(e)}")
        logger.info("Hint: Use format 'YYYY-MM-DD' for dates or 'YYYY-MM-DD HH:MM:SS' for date+time")
        raise SystemExit(2)

    if end <= start:
        logger.error("End date/time must be after start date/time")
        raise SystemExit(2)

    analyzer.config.analysis.parallel_processing = parallel
    if max_workers:
        analyzer.config.analysis.max_workers = max_workers

    summary = analyzer.recompute_fleet(
        start, end,
        vehicle_ids=None if all_vehicles else list(vehicle_ids),
        output_dir=output_dir or obj['output_dir']
    )

    if save:
        save_snapshot(analyzer, obj['store_path'])
        logger.info(f"Saved derived trips to {obj['store_path']}")

    print_recompute_summary(summary, analyzer, timezone)


@cli.command()
@click.argument('name', type=click.Choice(MONITOR_NAMES + ['all']))
@click.option('--save/--no-save', default=False, help='Write geofence events and alert dedup state back into the snapshot')
@click.pass_obj
def monitor(obj: Dict[str, Any], name: str, save: bool):
    """Run a threshold monitor now (or all of them)."""
    analyzer: FleetAnalyzer = obj['analyzer']
    try:
        if name == 'all':
            results = analyzer.run_all_monitors()
        else:
            results = [analyzer.run_monitor(name)]
    except FleetTripError as e:
        logger.error(f"Monitor run failed ({e.error_code}): {e.message}")
        raise SystemExit(1)

    if save:
        save_snapshot(analyzer, obj['store_path'])
    elif isinstance(analyzer.alert_manager.cache, InMemoryDedupCache):
        logger.warning("Dedup state is not persisted without --save or a redis_url; alerts may repeat next run")

    for result in results:
        print_monitor_summary(result)


def print_recompute_summary(summary: BatchSummary, analyzer: FleetAnalyzer, timezone: str = 'UTC'):
    """Print recompute summary to console."""
    tz = pytz.timezone(timezone)

    print(f"\n{'='*60}")
    print("TRIP RECOMPUTE SUMMARY")
    print(f"{'='*60}")
    print(f"Vehicles processed: {summary.processed}")
    print(f"Vehicles skipped:   {summary.skipped}")
    print(f"Trips written:      {summary.trips_written}")
    print(f"Data anomalies:     {summary.anomaly_count}")
    if summary.cancelled:
        print("\033[93mRun was cancelled before all vehicles were processed.\033[0m")

    for result in summary.results:
        vehicle = analyzer.store.get_vehicle(result.vehicle_id)
        name = vehicle.name if vehicle else result.vehicle_id
        print(f"\n{name}: {len(result.trips)} trips from {result.samples_processed} samples")
        for trip in result.trips:
            start_local = trip.started_at.astimezone(tz).strftime('%Y-%m-%d %H:%M:%S')
            end_local = trip.ended_at.astimezone(tz).strftime('%H:%M:%S') if trip.ended_at else 'open'
            score = trip.driver_score if trip.driver_score is not None else '-'
            print(f"  • {start_local} → {end_local}  {trip.distance_km:.2f} km  "
                  f"{trip.duration_seconds / 60:.0f} min  stops {trip.stops_count}  score {score}")

    if summary.failures:
        print(f"\n\033[91mFAILURES ({len(summary.failures)}):\033[0m")
        for failure in summary.failures:
            print(f"  - vehicle {failure.unit_id} [{failure.error_code}] {failure.message}")


def print_monitor_summary(result: MonitorRunResult):
    """Print one monitor run to console."""
    print(f"\n{'='*60}")
    print(f"MONITOR: {result.monitor}")
    print(f"{'='*60}")
    print(f"Scanned: {result.scanned}  Emitted: {result.alerts_emitted}  "
          f"Suppressed: {result.suppressed}  Failed: {len(result.failures)}")

    if result.alerts:
        for alert in result.alerts[:10]:
            print(f"  [{alert.severity.upper()}] {alert.message}")
        if len(result.alerts) > 10:
            print(f"  ... and {len(result.alerts) - 10} more alerts")
    else:
        print("\033[92mNo new alerts.\033[0m")

    for failure in result.failures:
        print(f"\033[91m  - {failure.unit_id} [{failure.error_code}] {failure.message}\033[0m")


def main():
    cli()


if __name__ == "__main__":
    main()
