"""
Fuel cost and CO2 attribution for trips, derived from a vehicle's fuel logs.
"""
import logging
from typing import List, Optional

from fleet_trip_analyzer.config import MetricsConfig
from fleet_trip_analyzer.models import FuelLog, Trip

logger = logging.getLogger(__name__)

MIN_TOTAL_DISTANCE_KM = 1.0
MIN_TOTAL_LITRES = 0.1


class TripCostCalculator:
    """Spreads fuel spend over distance driven."""

    def __init__(self, config: MetricsConfig):
        self.config = config

    @staticmethod
    def cost_per_km(fuel_logs: List[FuelLog], total_distance_km: float) -> Optional[float]:
        if not fuel_logs or total_distance_km < MIN_TOTAL_DISTANCE_KM:
            return None
        return sum(log.total_cost for log in fuel_logs) / total_distance_km

    @staticmethod
    def litres_per_100km(fuel_logs: List[FuelLog], total_distance_km: float) -> Optional[float]:
        total_litres = sum(log.litres for log in fuel_logs)
        if total_distance_km < MIN_TOTAL_DISTANCE_KM or total_litres < MIN_TOTAL_LITRES:
            return None
        return total_litres / total_distance_km * 100

    def apply(self, trips: List[Trip], fuel_logs: List[FuelLog]) -> None:
        """
        Set cost and co2_kg on every trip of one vehicle.

        Args:
            trips: All of the vehicle's trips (the totals are taken over these)
            fuel_logs: The vehicle's fuel logs
        """
        total_distance_km = sum(trip.distance_km for trip in trips)
        cost_per_km = self.cost_per_km(fuel_logs, total_distance_km)
        l_per_100km = self.litres_per_100km(fuel_logs, total_distance_km)

        for trip in trips:
            trip.cost = round(trip.distance_km * cost_per_km, 4) if cost_per_km is not None else None
            if l_per_100km is not None:
                litres = trip.distance_km * l_per_100km / 100
                trip.co2_kg = round(litres * self.config.co2_kg_per_litre, 3)
            else:
                trip.co2_kg = None

        if cost_per_km is not None:
            logger.debug(f"Cost per km {cost_per_km:.4f} over {total_distance_km:.1f} km")
