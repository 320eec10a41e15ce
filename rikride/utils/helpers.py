"""
Helper Utilities
Common utility functions used across the application
"""

import math
from datetime import datetime, timezone
from typing import Mapping, Tuple

EARTH_RADIUS_KM = 6371.0


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the form MongoDB hands back"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two coordinates using Haversine formula

    Args:
        lat1, lon1: First coordinate (latitude, longitude)
        lat2, lon2: Second coordinate (latitude, longitude)

    Returns:
        Distance in kilometers (unrounded)
    """
    # Convert degrees to radians
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)

    # Differences
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    # Haversine formula
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def distance_between(a: Mapping, b: Mapping) -> float:
    """Haversine distance between two {"lat", "lng"} points in kilometers"""
    return calculate_distance(a["lat"], a["lng"], b["lat"], b["lng"])


def validate_coordinates(latitude: str, longitude: str) -> Tuple[bool, str]:
    """
    Validate latitude and longitude coordinates

    Args:
        latitude: Latitude string
        longitude: Longitude string

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        lat = float(latitude)
        lon = float(longitude)

        # Check valid ranges
        if not (-90 <= lat <= 90):
            return False, "Latitude must be between -90 and 90"

        if not (-180 <= lon <= 180):
            return False, "Longitude must be between -180 and 180"

        return True, ""

    except (TypeError, ValueError):
        return False, "Invalid coordinate format"


def get_booking_status_message(status: str) -> str:
    """
    Get user-friendly message for booking status

    Args:
        status: Booking status

    Returns:
        User-friendly status message
    """
    messages = {
        "pending": "Waiting for the driver to accept...",
        "accepted": "Driver is on the way to pick you up",
        "in_progress": "Ride in progress",
        "completed": "Ride completed successfully",
        "cancelled": "Ride was cancelled",
    }

    return messages.get(status, "Unknown status")


def get_pool_status_message(status: str) -> str:
    """User-friendly message for pool ride status"""
    messages = {
        "waiting": "Waiting for more riders to join",
        "ready": "Pool is ready, searching for a driver",
        "driver_assigned": "Driver assigned, heading to the first pickup",
        "pickup_in_progress": "Driver is picking up riders",
        "in_progress": "Everyone is on board",
        "completed": "Pool ride completed",
        "cancelled": "Pool ride was cancelled",
        "expired": "Pool expired before it filled up",
    }

    return messages.get(status, "Unknown status")


def calculate_eta(distance_km: float, is_pickup: bool = True) -> int:
    """
    Calculate estimated time of arrival in minutes

    Args:
        distance_km: Distance in kilometers
        is_pickup: Driver heading to pickup (slower city average) or en route

    Returns:
        ETA in minutes, never below 2
    """
    avg_speed_kmh = 25.0 if is_pickup else 30.0

    if distance_km <= 0:
        return 2

    minutes = math.ceil(distance_km / avg_speed_kmh * 60)

    return max(minutes, 2)
