"""
Fare Utilities
Solo fare and pool fare-split calculation
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

from rikride import config


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero"""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def is_peak_hour(now: Optional[datetime] = None) -> bool:
    """
    Check whether the local clock is inside a peak window

    Args:
        now: Local time to check (defaults to the current local time)
    """
    hour = (now or datetime.now()).hour
    return any(start <= hour <= end for start, end in config.PEAK_HOUR_WINDOWS)


def calculate_fare(distance_km: float, now: Optional[datetime] = None) -> int:
    """
    Calculate solo ride fare based on distance

    The peak multiplier is applied to base + distance cost before rounding,
    then the result is floored at the minimum fare.

    Args:
        distance_km: Trip distance in kilometers
        now: Local time used for the peak-hour check

    Returns:
        Fare in INR
    """
    if distance_km < 0:
        raise ValueError("Distance cannot be negative")

    fare = config.FARE_BASE + distance_km * config.FARE_PER_KM

    if is_peak_hour(now):
        fare *= config.FARE_PEAK_MULTIPLIER

    return max(round_half_up(fare), round_half_up(config.FARE_MINIMUM))


def calculate_pool_fare(base_fare: float, total_seats: int) -> Dict:
    """
    Calculate pool fare breakdown

    Args:
        base_fare: Full solo fare for the route
        total_seats: Seats the pool is priced for

    Returns:
        Dict with per-seat fare, pool total, driver earning and savings
    """
    discount = config.POOL_DISCOUNT
    fare_per_seat = round_half_up(base_fare * (1 - discount))

    return {
        "base_fare": base_fare,
        "fare_per_seat": fare_per_seat,
        "total_pool_fare": fare_per_seat * total_seats,
        "driver_earning": round_half_up(base_fare * (1 + config.DRIVER_POOL_BONUS)),
        "savings_per_person": base_fare - fare_per_seat,
        "discount_percent": round_half_up(discount * 100),
    }
