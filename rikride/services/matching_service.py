"""
Pool Matching Engine
Ranks waiting pools against a rider's requested route.
Read-only: results may be stale by the time the rider joins, join_pool
re-validates everything.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from rikride import config
from rikride.models.pool_model import PoolRide
from rikride.services.errors import InputValidationError
from rikride.utils.fare_utils import calculate_fare
from rikride.utils.helpers import distance_between, utc_now

logger = logging.getLogger(__name__)


@dataclass
class PoolMatch:
    pool: PoolRide
    match_score: int
    pickup_deviation: float
    drop_deviation: float
    estimated_fare: float
    estimated_savings: float

    @property
    def pool_id(self) -> str:
        return str(self.pool.id)

    def to_dict(self) -> Dict:
        return {
            "pool_id": self.pool_id,
            "pool": self.pool.to_dict(),
            "match_score": self.match_score,
            "pickup_deviation": self.pickup_deviation,
            "drop_deviation": self.drop_deviation,
            "estimated_fare": self.estimated_fare,
            "estimated_savings": self.estimated_savings,
        }


def _point(value) -> Dict:
    if isinstance(value, dict):
        return value
    return {"lat": value.lat, "lng": value.lng}


def proximity_score(deviation_km: float, radius_km: Optional[float] = None) -> float:
    """Up to 50 points, decaying linearly to 0 at the preferred match radius"""
    radius_km = radius_km or config.POOL_MATCH_RADIUS_KM
    return max(0.0, 50 - (deviation_km / radius_km) * 50)


def find_matching_pools(
    rider_id: str,
    pickup,
    drop,
    seats_needed: int,
    distance_km: float,
    now: Optional[datetime] = None,
) -> List[PoolMatch]:
    """
    Find waiting pools compatible with the requested route

    Args:
        rider_id: Requesting rider (pools they already ride in are skipped)
        pickup, drop: Requested points ({"lat", "lng"} or GeoPoint)
        seats_needed: Seats the rider wants
        distance_km: Rider's trip distance, used for the solo fare comparison
        now: Reference time for expiry and peak pricing

    Returns:
        Matches sorted by score, best first
    """
    if not isinstance(seats_needed, int) or seats_needed <= 0:
        raise InputValidationError("Seats needed must be at least 1")

    # Peak hours follow the local clock; expiry checks use UTC
    solo_fare = calculate_fare(distance_km, now)
    now = now or utc_now()
    rider_id = str(rider_id)
    pickup = _point(pickup)
    drop = _point(drop)

    matches = []
    candidates = PoolRide.objects(status="waiting").order_by("-created_at")

    for pool in candidates:
        # Stored status may lag behind the clock
        if pool.is_expired(now):
            continue

        if pool.available_seats < seats_needed:
            continue

        if pool.has_active_participant(rider_id):
            continue

        pickup_deviation = distance_between(pickup, pool.general_pickup_area.to_dict())
        drop_deviation = distance_between(drop, pool.general_drop_area.to_dict())

        max_radius = config.POOL_MAX_MATCH_RADIUS_KM
        if pickup_deviation > max_radius or drop_deviation > max_radius:
            continue

        score = proximity_score(pickup_deviation) + proximity_score(drop_deviation)
        estimated_fare = pool.fare_per_seat * seats_needed

        matches.append(
            PoolMatch(
                pool=pool,
                match_score=round(score),
                pickup_deviation=round(pickup_deviation, 2),
                drop_deviation=round(drop_deviation, 2),
                estimated_fare=estimated_fare,
                estimated_savings=solo_fare - estimated_fare,
            )
        )

    matches.sort(key=lambda m: m.match_score, reverse=True)

    logger.info(
        f"Found {len(matches)} matching pool(s) for rider {rider_id} "
        f"({seats_needed} seat(s), {distance_km} km)"
    )
    return matches
