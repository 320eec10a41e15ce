"""
Google Maps Integration Utilities
Distance, duration and route polyline lookups using the Google Routes API.
Used for display and fare estimates only; booked fares never depend on it.
"""

import logging
from typing import Dict, Optional, Tuple

import httpx

from rikride.utils.helpers import calculate_distance
from rikride.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

ROUTES_URL = "https://routes.googleapis.com/directions/v2:computeRoutes"
ROUTES_FIELD_MASK = "routes.duration,routes.distanceMeters,routes.polyline.encodedPolyline"
RATE_LIMIT_KEY = "google_routes"


class MapsClient:
    """Rate-limited, cached client for the Google Routes API."""

    def __init__(
        self,
        api_key: Optional[str],
        rate_limiter: RateLimiter,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self._transport = transport

    async def get_directions(
        self, origin: Tuple[float, float], destination: Tuple[float, float]
    ) -> Dict:
        """
        Get distance and estimated duration between two points

        Args:
            origin: Tuple of (latitude, longitude) for starting point
            destination: Tuple of (latitude, longitude) for ending point

        Returns:
            Dict with distance_km, duration_minutes, distance_text,
            duration_text, polyline and source ("google", "cache" or "fallback")
        """
        cache_key = RateLimiter.directions_key(origin, destination)
        cached = self.rate_limiter.get_cached(cache_key)
        if cached is not None:
            return {**cached, "source": "cache"}

        if not self.api_key:
            logger.warning("Google Maps API key not configured, using fallback calculation")
            return fallback_directions(origin, destination)

        decision = self.rate_limiter.check(RATE_LIMIT_KEY)
        if not decision.allowed:
            logger.warning(f"Routes API throttled: {decision.reason}, using fallback")
            return fallback_directions(origin, destination)

        try:
            self.rate_limiter.record(RATE_LIMIT_KEY)
            result = await self._request_route(origin, destination)
        except Exception as e:
            logger.warning(f"Google Routes API error: {str(e)}, using fallback calculation")
            return fallback_directions(origin, destination)

        if result is None:
            return fallback_directions(origin, destination)

        self.rate_limiter.set_cached(cache_key, result)
        return {**result, "source": "google"}

    async def _request_route(
        self, origin: Tuple[float, float], destination: Tuple[float, float]
    ) -> Optional[Dict]:
        payload = {
            "origin": {
                "location": {"latLng": {"latitude": origin[0], "longitude": origin[1]}}
            },
            "destination": {
                "location": {
                    "latLng": {"latitude": destination[0], "longitude": destination[1]}
                }
            },
            "travelMode": "DRIVE",
        }

        headers = {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": ROUTES_FIELD_MASK,
        }

        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(
                ROUTES_URL, json=payload, headers=headers, timeout=self.timeout
            )

            if response.status_code != 200:
                logger.warning(
                    f"Routes API returned {response.status_code}: {response.text}, using fallback"
                )
                return None

            data = response.json()

        if not data or not data.get("routes"):
            logger.warning("Routes API returned no routes, using fallback")
            return None

        route = data["routes"][0]

        distance_meters = route.get("distanceMeters", 0)
        duration_str = route.get("duration", "0s")

        # Duration comes back as "123s"
        duration_seconds = (
            int(duration_str.rstrip("s") or 0) if isinstance(duration_str, str) else 0
        )

        distance_km = round(distance_meters / 1000, 2)
        duration_minutes = max(round(duration_seconds / 60), 2)

        return {
            "distance_km": distance_km,
            "duration_minutes": duration_minutes,
            "distance_text": f"{distance_km:.1f} km",
            "duration_text": f"{duration_minutes} mins",
            "polyline": route.get("polyline", {}).get("encodedPolyline"),
        }


def fallback_directions(
    origin: Tuple[float, float], destination: Tuple[float, float]
) -> Dict:
    """
    Fallback calculation using Haversine formula when Google Maps API is unavailable
    """
    distance_km = calculate_distance(origin[0], origin[1], destination[0], destination[1])

    # Estimate duration (assuming average speed of 30 km/h in city traffic)
    duration_minutes = max(round((distance_km / 30) * 60), 2)

    return {
        "distance_km": round(distance_km, 2),
        "duration_minutes": duration_minutes,
        "distance_text": f"{distance_km:.1f} km",
        "duration_text": f"{duration_minutes} mins",
        "polyline": None,
        "source": "fallback",
    }
