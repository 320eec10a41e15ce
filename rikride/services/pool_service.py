"""
Pool Ride Service
Owns the PoolRide aggregate and its lifecycle:
- Create/join/leave pools with seat accounting
- Readiness promotion (automatic on join, manual by the creator)
- Driver assignment and sequential pickup/dropoff
- Expiry sweep and read-side queries

Every mutation runs through run_transition so guards are checked against
the exact snapshot that gets written.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from mongoengine.errors import ValidationError as DocumentValidationError

from rikride import config
from rikride.models.pool_model import (
    ACTIVE_POOL_STATUSES,
    DRIVER_ACTIVE_POOL_STATUSES,
    OPEN_POOL_STATUSES,
    TERMINAL_POOL_STATUSES,
    GeoLocation,
    PoolParticipant,
    PoolRide,
)
from rikride.models.user_model import User
from rikride.services.errors import (
    InputValidationError,
    InsufficientSeats,
    InvalidStateTransitionError,
    DuplicateParticipantError,
    PoolExpired,
    PoolNotFound,
    PoolNotJoinable,
    RiderNotInPool,
    UnauthorizedError,
)
from rikride.services.transactions import run_transition
from rikride.utils.fare_utils import calculate_fare, calculate_pool_fare
from rikride.utils.helpers import utc_now

logger = logging.getLogger(__name__)


def _to_location(point) -> GeoLocation:
    """Accept a GeoLocation, a pydantic GeoPoint or a {"lat", "lng"} dict"""
    if isinstance(point, GeoLocation):
        return GeoLocation(lat=point.lat, lng=point.lng, address=point.address)
    if isinstance(point, dict):
        return GeoLocation(lat=point["lat"], lng=point["lng"], address=point.get("address"))
    return GeoLocation(lat=point.lat, lng=point.lng, address=getattr(point, "address", None))


def _validate_seats(seats_needed: int) -> None:
    if not isinstance(seats_needed, int) or seats_needed <= 0:
        raise InputValidationError("Seats needed must be at least 1")


def _load_pool(pool_id: str) -> PoolRide:
    try:
        pool = PoolRide.objects(id=pool_id).first()
    except DocumentValidationError:
        # Malformed ObjectId
        pool = None
    if not pool:
        raise PoolNotFound("Pool ride not found")
    return pool


def _ensure_not_terminal(pool: PoolRide) -> None:
    if pool.is_terminal():
        raise InvalidStateTransitionError(f"This pool ride is already {pool.status}")


def _ensure_assigned_driver(pool: PoolRide, driver_id: str) -> None:
    if not pool.driver_id or pool.driver_id != str(driver_id):
        raise UnauthorizedError("Only the assigned driver can update this pool ride")


def _require_active_participant(pool: PoolRide, rider_id: str) -> PoolParticipant:
    participant = pool.find_active_participant(str(rider_id))
    if not participant:
        raise RiderNotInPool("Rider is not in this pool")
    return participant


def _new_participant(
    rider: User,
    pickup: GeoLocation,
    drop: GeoLocation,
    seats_needed: int,
    fare_per_seat: float,
    order: int,
    now: datetime,
) -> PoolParticipant:
    return PoolParticipant(
        rider_id=str(rider.id),
        rider_name=rider.full_name,
        rider_phone=rider.phone,
        pickup_location=pickup,
        drop_location=drop,
        seats_needed=seats_needed,
        fare_per_seat=fare_per_seat,
        total_fare=fare_per_seat * seats_needed,
        status="joined",
        pickup_order=order,
        dropoff_order=order,
        joined_at=now,
    )


# =============================================================================
# LIFECYCLE
# =============================================================================


def create_pool(
    rider: User,
    pickup,
    drop,
    seats_needed: int,
    distance_km: float,
    departure_time: Optional[datetime] = None,
    is_immediate: bool = True,
    now: Optional[datetime] = None,
) -> PoolRide:
    """
    Create a new pool ride with the rider as its first participant

    The base fare is the solo fare for the rider's distance; every seat in
    the pool is priced at the discounted per-seat fare.
    """
    # Peak hours follow the local clock; stored timestamps stay UTC
    fare_clock = now
    now = now or utc_now()
    _validate_seats(seats_needed)

    max_seats = config.POOL_MAX_SEATS
    if seats_needed > max_seats:
        raise InsufficientSeats(f"A pool can hold at most {max_seats} seat(s)")

    if distance_km < 0:
        raise InputValidationError("Distance cannot be negative")

    pickup_area = _to_location(pickup)
    drop_area = _to_location(drop)

    base_fare = calculate_fare(distance_km, fare_clock)
    pool_fare = calculate_pool_fare(base_fare, max_seats)

    participant = _new_participant(
        rider,
        _to_location(pickup_area),
        _to_location(drop_area),
        seats_needed,
        pool_fare["fare_per_seat"],
        order=1,
        now=now,
    )

    pool = PoolRide(
        created_by=str(rider.id),
        general_pickup_area=pickup_area,
        general_drop_area=drop_area,
        route_direction=f"{pickup_area.address or 'Pickup'} → {drop_area.address or 'Drop'}",
        departure_time=departure_time or now,
        is_immediate=is_immediate,
        expires_at=now + timedelta(minutes=config.POOL_EXPIRY_MINUTES),
        max_seats=max_seats,
        occupied_seats=0,
        available_seats=max_seats,
        base_fare=base_fare,
        fare_per_seat=pool_fare["fare_per_seat"],
        pool_discount=config.POOL_DISCOUNT,
        status="waiting",
        participants=[participant],
        match_radius=config.POOL_MATCH_RADIUS_KM,
        version=0,
        created_at=now,
        updated_at=now,
    )
    pool.recompute_seats()
    pool.save()

    logger.info(
        f"Pool {pool.id} created by {rider.id}: {seats_needed} seat(s), "
        f"base fare {base_fare}, per seat {pool.fare_per_seat}"
    )
    return pool


def join_pool(
    pool_id: str,
    rider: User,
    pickup,
    drop,
    seats_needed: int,
    now: Optional[datetime] = None,
) -> PoolRide:
    """
    Add a rider to a waiting pool

    Seat check and seat update happen in one conditional write, so two
    riders racing for the last seat cannot both get in.
    """
    now = now or utc_now()
    rider_id = str(rider.id)
    pickup_point = _to_location(pickup)
    drop_point = _to_location(drop)

    def apply(pool: PoolRide):
        if pool.is_expired(now):
            raise PoolExpired("This pool has expired")

        if pool.status != "waiting":
            raise PoolNotJoinable("This pool is no longer accepting passengers")

        _validate_seats(seats_needed)

        if pool.has_active_participant(rider_id):
            raise DuplicateParticipantError("You are already in this pool")

        if pool.available_seats < seats_needed:
            raise InsufficientSeats(f"Only {pool.available_seats} seat(s) available")

        order = len(pool.participants) + 1
        pool.participants.append(
            _new_participant(
                rider,
                _to_location(pickup_point),
                _to_location(drop_point),
                seats_needed,
                pool.fare_per_seat,
                order=order,
                now=now,
            )
        )
        pool.recompute_seats()

        # Auto-promote once the minimum is met or the pool is full
        if (
            len(pool.active_participants()) >= config.POOL_MIN_PARTICIPANTS
            or pool.available_seats == 0
        ):
            pool.status = "ready"

    pool = run_transition(lambda: _load_pool(pool_id), apply, label="join_pool")

    logger.info(
        f"Rider {rider_id} joined pool {pool_id} with {seats_needed} seat(s), "
        f"occupied {pool.occupied_seats}/{pool.max_seats}, status {pool.status}"
    )
    return pool


def leave_pool(pool_id: str, rider_id: str, now: Optional[datetime] = None) -> PoolRide:
    """
    Remove a rider from a pool before a driver is assigned

    The pool goes back to waiting, or is cancelled if nobody is left.
    """
    rider_id = str(rider_id)

    def apply(pool: PoolRide):
        _ensure_not_terminal(pool)

        if pool.status not in OPEN_POOL_STATUSES:
            raise InvalidStateTransitionError("Cannot leave pool after a driver has been assigned")

        participant = _require_active_participant(pool, rider_id)
        participant.status = "cancelled"
        pool.recompute_seats()

        if not pool.active_participants():
            pool.status = "cancelled"
        else:
            pool.status = "waiting"

    pool = run_transition(lambda: _load_pool(pool_id), apply, label="leave_pool")

    logger.info(f"Rider {rider_id} left pool {pool_id}, status now {pool.status}")
    return pool


def mark_pool_ready(pool_id: str, rider_id: str, now: Optional[datetime] = None) -> PoolRide:
    """Creator starts the driver search early once the minimum is met"""
    now = now or utc_now()
    rider_id = str(rider_id)

    def apply(pool: PoolRide):
        if pool.created_by != rider_id:
            raise UnauthorizedError("Only the pool creator can start the pool")

        if pool.status != "waiting":
            raise InvalidStateTransitionError("Pool is already started or no longer available")

        if pool.is_expired(now):
            raise PoolExpired("This pool has expired")

        if len(pool.active_participants()) < config.POOL_MIN_PARTICIPANTS:
            raise InvalidStateTransitionError(
                f"Need at least {config.POOL_MIN_PARTICIPANTS} riders to start the pool"
            )

        pool.status = "ready"

    pool = run_transition(lambda: _load_pool(pool_id), apply, label="mark_pool_ready")

    logger.info(f"Pool {pool_id} marked ready by creator {rider_id}")
    return pool


def accept_pool_ride(
    pool_id: str,
    driver: User,
    booking_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PoolRide:
    """Driver takes a waiting or ready pool; only one driver can win"""
    now = now or utc_now()

    if driver.role != "driver":
        raise UnauthorizedError("Only drivers can accept pool rides")

    def apply(pool: PoolRide):
        if pool.driver_id:
            raise InvalidStateTransitionError("This pool ride has already been accepted")

        if pool.status not in OPEN_POOL_STATUSES:
            raise InvalidStateTransitionError("This pool ride is no longer available")

        if pool.is_expired(now):
            raise PoolExpired("This pool has expired")

        if not pool.active_participants():
            raise InvalidStateTransitionError("This pool has no riders")

        pool.driver_id = str(driver.id)
        pool.driver_name = driver.full_name
        pool.driver_phone = driver.phone
        pool.vehicle_number = driver.vehicle_number
        pool.booking_id = booking_id
        pool.status = "driver_assigned"

        for participant in pool.participants:
            if participant.status == "joined":
                participant.status = "confirmed"

    pool = run_transition(lambda: _load_pool(pool_id), apply, label="accept_pool_ride")

    logger.info(f"Pool {pool_id} accepted by driver {driver.id}")
    return pool


def pickup_participant(
    pool_id: str, rider_id: str, driver_id: str, now: Optional[datetime] = None
) -> PoolRide:
    """Driver marks a rider as picked up"""
    now = now or utc_now()
    rider_id = str(rider_id)

    def apply(pool: PoolRide):
        _ensure_not_terminal(pool)
        _ensure_assigned_driver(pool, driver_id)

        if pool.status not in ("driver_assigned", "pickup_in_progress"):
            raise InvalidStateTransitionError(
                f"Cannot pick up riders while pool is {pool.status}"
            )

        participant = _require_active_participant(pool, rider_id)
        if participant.status not in ("joined", "confirmed"):
            raise InvalidStateTransitionError("Rider has already been picked up")

        participant.status = "picked_up"
        participant.picked_up_at = now

        all_picked_up = all(
            p.status in ("picked_up", "dropped_off") for p in pool.active_participants()
        )
        pool.status = "in_progress" if all_picked_up else "pickup_in_progress"

    pool = run_transition(lambda: _load_pool(pool_id), apply, label="pickup_participant")

    logger.info(f"Pool {pool_id}: rider {rider_id} picked up, status {pool.status}")
    return pool


def dropoff_participant(
    pool_id: str, rider_id: str, driver_id: str, now: Optional[datetime] = None
) -> PoolRide:
    """Driver marks a rider as dropped off; the last dropoff completes the pool"""
    now = now or utc_now()
    rider_id = str(rider_id)

    def apply(pool: PoolRide):
        _ensure_not_terminal(pool)
        _ensure_assigned_driver(pool, driver_id)

        if pool.status != "in_progress":
            raise InvalidStateTransitionError(
                "All riders must be picked up before dropoffs start"
            )

        participant = _require_active_participant(pool, rider_id)
        if participant.status != "picked_up":
            raise InvalidStateTransitionError("Rider must be picked up before being dropped off")

        participant.status = "dropped_off"
        participant.dropped_off_at = now

        if all(p.status == "dropped_off" for p in pool.active_participants()):
            pool.status = "completed"

    pool = run_transition(lambda: _load_pool(pool_id), apply, label="dropoff_participant")

    logger.info(f"Pool {pool_id}: rider {rider_id} dropped off, status {pool.status}")
    return pool


def expire_pools(now: Optional[datetime] = None) -> int:
    """
    Expiry sweep, meant to be run by an external scheduler

    Returns:
        Number of pools moved to expired
    """
    now = now or utc_now()
    candidates = PoolRide.objects(
        status__nin=TERMINAL_POOL_STATUSES, expires_at__lt=now
    ).only("id")

    expired = 0
    for candidate in candidates:
        pool_id = str(candidate.id)

        def apply(pool: PoolRide):
            # Re-check against the fresh snapshot
            if pool.is_terminal() or not pool.is_expired(now):
                return False
            pool.status = "expired"

        pool = run_transition(lambda: _load_pool(pool_id), apply, label="expire_pool")
        if pool.status == "expired":
            expired += 1

    if expired:
        logger.info(f"Expired {expired} pool ride(s)")
    return expired


# =============================================================================
# QUERIES
# =============================================================================


def get_pool(pool_id: str) -> PoolRide:
    return _load_pool(pool_id)


def can_view_pool(
    pool: PoolRide, user_id: str, role: str, open_to_drivers: bool = True
) -> bool:
    """
    Whether a user may see a pool's participants

    Admins always can, the assigned driver can, and so can any rider who
    ever took part. Other drivers see pools still open for acceptance
    unless open_to_drivers is False.
    """
    user_id = str(user_id)
    if role == "admin":
        return True
    if role == "driver":
        if pool.driver_id == user_id:
            return True
        return open_to_drivers and not pool.driver_id and pool.status in OPEN_POOL_STATUSES
    return any(p.rider_id == user_id for p in pool.participants)


def get_rider_active_pools(rider_id: str) -> List[PoolRide]:
    """Pools the rider is currently an active participant of"""
    rider_id = str(rider_id)
    pools = PoolRide.objects(
        status__in=ACTIVE_POOL_STATUSES, participants__rider_id=rider_id
    ).order_by("-created_at")
    return [pool for pool in pools if pool.has_active_participant(rider_id)]


def get_driver_pool_requests(now: Optional[datetime] = None) -> List[PoolRide]:
    """Open, non-expired pools a driver could accept"""
    now = now or utc_now()
    return list(
        PoolRide.objects(status__in=OPEN_POOL_STATUSES, expires_at__gt=now).order_by(
            "-created_at"
        )
    )


def get_driver_active_pool(driver_id: str) -> Optional[PoolRide]:
    return (
        PoolRide.objects(driver_id=str(driver_id), status__in=DRIVER_ACTIVE_POOL_STATUSES)
        .order_by("-created_at")
        .first()
    )


def get_rider_pool_history(rider_id: str) -> List[PoolRide]:
    """Finished pools the rider was ever part of, newest first"""
    return list(
        PoolRide.objects(
            status__in=TERMINAL_POOL_STATUSES, participants__rider_id=str(rider_id)
        ).order_by("-created_at")
    )


def build_route_plan(pool: PoolRide) -> Dict:
    """
    Driver's stop sequence: pickups by pickup order, then dropoffs by dropoff order
    """
    active = pool.active_participants()

    def stop(participant: PoolParticipant, kind: str) -> Dict:
        location = (
            participant.pickup_location if kind == "pickup" else participant.drop_location
        )
        return {
            "rider_id": participant.rider_id,
            "rider_name": participant.rider_name,
            "rider_phone": participant.rider_phone,
            "order": participant.pickup_order if kind == "pickup" else participant.dropoff_order,
            "location": location.to_dict(),
            "status": participant.status,
            "done": (
                participant.status in ("picked_up", "dropped_off")
                if kind == "pickup"
                else participant.status == "dropped_off"
            ),
        }

    pickups = sorted(active, key=lambda p: p.pickup_order)
    dropoffs = sorted(active, key=lambda p: p.dropoff_order)

    return {
        "pool_id": str(pool.id),
        "status": pool.status,
        "pickups": [stop(p, "pickup") for p in pickups],
        "dropoffs": [stop(p, "dropoff") for p in dropoffs],
    }
