#!/usr/bin/env python3
"""
Tests for trip metrics (distance, duration, speeds, driver score) and
fuel cost / CO2 attribution.
"""

from datetime import datetime, timedelta

import pytz

from fleet_trip_analyzer.analyzers.trip_cost import TripCostCalculator
from fleet_trip_analyzer.analyzers.trip_metrics import TripMetricsCalculator
from fleet_trip_analyzer.config import MetricsConfig
from fleet_trip_analyzer.models import FuelLog, LocationSample, Trip

BASE_TIME = datetime(2025, 3, 3, 8, 0, 0, tzinfo=pytz.UTC)


def create_sample(sample_id, seconds, speed=None, lat=48.8566, lng=2.3522):
    return LocationSample(
        id=sample_id,
        tracker_id=1,
        vehicle_id=1,
        organization_id=1,
        latitude=lat,
        longitude=lng,
        speed_kmh=speed,
        recorded_at=BASE_TIME + timedelta(seconds=seconds)
    )


def create_trip(start_seconds, end_seconds=None, distance_km=0.0, trip_id='TRIP_1'):
    return Trip(
        trip_id=trip_id,
        vehicle_id=1,
        tracker_id=1,
        organization_id=1,
        started_at=BASE_TIME + timedelta(seconds=start_seconds),
        ended_at=BASE_TIME + timedelta(seconds=end_seconds) if end_seconds is not None else None,
        start_location_id=1,
        end_location_id=2,
        start_latitude=0.0,
        start_longitude=0.0,
        end_latitude=0.0,
        end_longitude=0.0,
        distance_km=distance_km
    )


def test_distance_excludes_implausible_segment():
    print("Testing anomaly exclusion...")

    calculator = TripMetricsCalculator(MetricsConfig())
    samples = [
        create_sample(1, 0, lat=48.8566),
        create_sample(2, 60, lat=48.8656),   # ~1 km north in a minute
        create_sample(3, 120, lat=49.8656),  # ~111 km in a minute
    ]
    metrics = calculator.compute_metrics(create_trip(0, 120), samples)

    assert metrics.anomaly_count == 1, "The jump should be flagged"
    anomaly = metrics.anomalies[0]
    assert (anomaly.from_sample_id, anomaly.to_sample_id) == (2, 3)
    assert anomaly.implied_speed_kmh > 300
    assert 0.9 < metrics.distance_km < 1.1, "Only the plausible segment should count"
    print("✓ Anomaly exclusion test passed")


def test_distance_is_sane():
    print("Testing distance sanity...")

    calculator = TripMetricsCalculator(MetricsConfig())
    samples = [create_sample(i + 1, i * 30, lat=48.8566 + i * 0.002) for i in range(20)]
    metrics = calculator.compute_metrics(create_trip(0, 19 * 30), samples)

    assert metrics.distance_km >= 0
    assert metrics.anomaly_count == 0
    assert metrics.average_speed <= MetricsConfig().anomaly_speed_kmh
    print("✓ Distance sanity test passed")


def test_duration_and_average_speed():
    print("Testing duration and average speed...")

    calculator = TripMetricsCalculator(MetricsConfig())
    samples = [
        create_sample(1, 0, lat=48.8566),
        create_sample(2, 900, lat=48.8566 + 0.0449),
        create_sample(3, 1800, lat=48.8566 + 0.0899),
    ]
    metrics = calculator.compute_metrics(create_trip(0, 1800), samples)

    assert metrics.duration_seconds == 1800
    assert metrics.is_provisional is False
    assert 9.9 < metrics.distance_km < 10.1
    assert abs(metrics.average_speed - metrics.distance_km * 2) < 1e-9
    print("✓ Duration test passed")


def test_zero_duration_has_zero_average():
    calculator = TripMetricsCalculator(MetricsConfig())
    samples = [create_sample(1, 0), create_sample(2, 0)]
    metrics = calculator.compute_metrics(create_trip(0, 0), samples)

    assert metrics.duration_seconds == 0
    assert metrics.average_speed == 0
    print("✓ Zero duration test passed")


def test_open_trip_is_provisional():
    calculator = TripMetricsCalculator(MetricsConfig())
    samples = [create_sample(1, 0, speed=30.0), create_sample(2, 60, speed=30.0)]
    metrics = calculator.compute_metrics(
        create_trip(0, None), samples, now=BASE_TIME + timedelta(minutes=10)
    )

    assert metrics.is_provisional is True
    assert metrics.duration_seconds == 600
    print("✓ Open trip test passed")


def test_max_speed_prefers_reported_speed():
    print("Testing max speed...")

    calculator = TripMetricsCalculator(MetricsConfig())
    reported = [
        create_sample(1, 0, speed=20.0, lat=48.8566),
        create_sample(2, 60, speed=72.5, lat=48.8576),
        create_sample(3, 120, speed=40.0, lat=48.8586),
    ]
    assert calculator.compute_metrics(create_trip(0, 120), reported).max_speed == 72.5

    implied = [
        create_sample(1, 0, lat=48.8566),
        create_sample(2, 60, lat=48.8656),  # ~60 km/h
        create_sample(3, 120, lat=48.8686),  # ~20 km/h
    ]
    max_speed = calculator.compute_metrics(create_trip(0, 120), implied).max_speed
    assert 55 < max_speed < 65
    print("✓ Max speed test passed")


def test_driver_score_penalties():
    print("Testing driver score...")

    calculator = TripMetricsCalculator(MetricsConfig())
    samples = [
        create_sample(1, 0, speed=50.0),
        create_sample(2, 2, speed=90.0),    # harsh acceleration
        create_sample(3, 4, speed=130.0),   # harsh acceleration, speeding starts
        create_sample(4, 10, speed=130.0),
        create_sample(5, 12, speed=80.0),   # hard braking
        create_sample(6, 20, speed=125.0),  # second speeding event
    ]
    metrics = calculator.compute_metrics(create_trip(0, 20), samples)

    assert metrics.harsh_acceleration_count == 2
    assert metrics.harsh_braking_count == 1
    assert metrics.speeding_count == 2
    assert metrics.speeding_seconds == 8
    # 100 - 5 * 1 braking - 2 * 2 speeding (acceleration weight defaults to 0)
    assert metrics.driver_score == 91
    print("✓ Driver score test passed")


def test_driver_score_floor_and_missing_speeds():
    calculator = TripMetricsCalculator(MetricsConfig(hard_braking_penalty=40.0))
    samples = []
    for i in range(4):
        samples.append(create_sample(2 * i + 1, i * 10, speed=100.0))
        samples.append(create_sample(2 * i + 2, i * 10 + 2, speed=20.0))
    metrics = calculator.compute_metrics(create_trip(0, 32), samples)

    assert metrics.harsh_braking_count == 4
    assert metrics.driver_score == 0, "Score should be floored at zero"

    no_speed = [create_sample(1, 0), create_sample(2, 60, lat=48.8576)]
    assert calculator.compute_metrics(create_trip(0, 60), no_speed).driver_score is None
    print("✓ Score floor test passed")


def test_trip_cost_and_co2():
    print("Testing trip cost...")

    calculator = TripCostCalculator(MetricsConfig())
    trips = [
        create_trip(0, 3600, distance_km=60.0, trip_id='A'),
        create_trip(7200, 9000, distance_km=40.0, trip_id='B'),
    ]
    fuel_logs = [
        FuelLog(vehicle_id=1, litres=8.0, total_cost=15.0),
        FuelLog(vehicle_id=1, litres=2.0, total_cost=5.0),
    ]
    calculator.apply(trips, fuel_logs)

    # 20.00 over 100 km, 10 L/100km
    assert trips[0].cost == 12.0
    assert trips[1].cost == 8.0
    assert trips[0].co2_kg == 13.86
    assert trips[1].co2_kg == 9.24
    print("✓ Trip cost test passed")


def test_trip_cost_needs_enough_data():
    calculator = TripCostCalculator(MetricsConfig())

    short = [create_trip(0, 60, distance_km=0.5)]
    calculator.apply(short, [FuelLog(vehicle_id=1, litres=10.0, total_cost=20.0)])
    assert short[0].cost is None
    assert short[0].co2_kg is None

    no_logs = [create_trip(0, 3600, distance_km=50.0)]
    calculator.apply(no_logs, [])
    assert no_logs[0].cost is None
    assert no_logs[0].co2_kg is None
    print("✓ Trip cost threshold test passed")


def test_free_fuel_costs_zero():
    calculator = TripCostCalculator(MetricsConfig())

    trips = [create_trip(0, 3600, distance_km=50.0)]
    calculator.apply(trips, [FuelLog(vehicle_id=1, litres=4.0, total_cost=0.0)])

    assert trips[0].cost == 0.0, "Zero spend is a known cost, not a missing one"
    assert trips[0].co2_kg is not None
    print("✓ Zero fuel cost test passed")


def run_all_tests():
    """Run all tests."""
    print("Running trip metrics tests...\n")

    try:
        test_distance_excludes_implausible_segment()
        test_distance_is_sane()
        test_duration_and_average_speed()
        test_zero_duration_has_zero_average()
        test_open_trip_is_provisional()
        test_max_speed_prefers_reported_speed()
        test_driver_score_penalties()
        test_driver_score_floor_and_missing_speeds()
        test_trip_cost_and_co2()
        test_trip_cost_needs_enough_data()
        test_free_fuel_costs_zero()
        print()
        print("✅ All tests passed!")

    except Exception as e:
        print(f"❌ Test failed: {str(e)}")
        import traceback
        traceback.print_exc()


if __name__ == "__main__":
    run_all_tests()
