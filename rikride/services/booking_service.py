"""
Booking Service
Solo ride lifecycle: request → accept/reject → start → complete,
with rider cancellation, two-way ratings and nearby-driver search.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from mongoengine.errors import ValidationError as DocumentValidationError

from rikride.models.booking_model import Booking
from rikride.models.user_model import User
from rikride.services.errors import (
    InputValidationError,
    InvalidStateTransitionError,
    NotFoundError,
    UnauthorizedError,
)
from rikride.services.transactions import run_transition
from rikride.utils.fare_utils import calculate_fare
from rikride.utils.helpers import calculate_distance, calculate_eta, utc_now

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ["cash", "upi"]

# Order matters: the first match is the booking the user is busy with
ACTIVE_BOOKING_PRIORITY = ["in_progress", "accepted", "pending"]


def _load_booking(booking_id: str) -> Booking:
    try:
        booking = Booking.objects(id=booking_id).first()
    except DocumentValidationError:
        booking = None
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def _ensure_driver(booking: Booking, driver_id: str, action: str) -> None:
    if booking.driver_id != str(driver_id):
        raise UnauthorizedError(f"Only the assigned driver can {action} this ride")


def _ensure_status(booking: Booking, expected: str, action: str) -> None:
    if booking.status != expected:
        logger.warning(
            f"Invalid transition attempt: {booking.status} -> {action} for booking {booking.id}"
        )
        raise InvalidStateTransitionError(
            f"Cannot {action} ride with status: {booking.status}"
        )


def _validate_rating(rating) -> None:
    if not isinstance(rating, int) or isinstance(rating, bool) or not 1 <= rating <= 5:
        raise InputValidationError("Rating must be between 1 and 5")


# =============================================================================
# LIFECYCLE
# =============================================================================


def create_booking(
    rider: User,
    driver_id: str,
    pickup,
    drop,
    distance_km: float,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Rider requests a solo ride from a specific driver

    The fare is locked in here from the client-computed distance.
    """
    if rider.role != "rider":
        raise UnauthorizedError("Only riders can book rides")

    if distance_km is None or distance_km < 0:
        raise InputValidationError("Distance cannot be negative")

    try:
        driver = User.objects(id=driver_id).first()
    except DocumentValidationError:
        driver = None
    if not driver or driver.role != "driver":
        raise NotFoundError("Driver not found")

    # Peak hours follow the local clock; stored timestamps stay UTC
    fare_clock = now
    now = now or utc_now()
    booking = Booking(
        rider=rider,
        driver=driver,
        pickup_address=getattr(pickup, "address", None),
        pickup_latitude=pickup.lat,
        pickup_longitude=pickup.lng,
        dropoff_address=getattr(drop, "address", None),
        dropoff_latitude=drop.lat,
        dropoff_longitude=drop.lng,
        distance_km=distance_km,
        fare=calculate_fare(distance_km, fare_clock),
        status="pending",
        created_at=now,
        updated_at=now,
    )
    booking.save()

    logger.info(
        f"Booking {booking.id} created by rider {rider.id} for driver {driver.id}, fare {booking.fare}"
    )
    return booking


def accept_booking(booking_id: str, driver_id: str) -> Booking:
    """Driver accepts a pending booking"""

    def apply(booking: Booking):
        _ensure_driver(booking, driver_id, "accept")
        _ensure_status(booking, "pending", "accept")
        booking.status = "accepted"
        booking.accepted_at = utc_now()

    booking = run_transition(lambda: _load_booking(booking_id), apply, label="accept_booking")
    User.objects(id=booking.driver.id).update_one(set__is_available=False)

    logger.info(f"Booking {booking_id} accepted by driver {driver_id}")
    return booking


def reject_booking(booking_id: str, driver_id: str, reason: Optional[str] = None) -> Booking:
    """Driver declines a pending booking"""

    def apply(booking: Booking):
        _ensure_driver(booking, driver_id, "reject")
        _ensure_status(booking, "pending", "reject")
        booking.status = "cancelled"
        booking.cancelled_by = "driver"
        booking.cancellation_reason = reason or "Driver declined the ride"
        booking.cancelled_at = utc_now()

    booking = run_transition(lambda: _load_booking(booking_id), apply, label="reject_booking")

    logger.info(f"Booking {booking_id} rejected by driver {driver_id}")
    return booking


def start_ride(booking_id: str, driver_id: str) -> Booking:
    def apply(booking: Booking):
        _ensure_driver(booking, driver_id, "start")
        _ensure_status(booking, "accepted", "start")
        booking.status = "in_progress"
        booking.started_at = utc_now()

    booking = run_transition(lambda: _load_booking(booking_id), apply, label="start_ride")

    logger.info(f"Booking {booking_id} started by driver {driver_id}")
    return booking


def _record_completion_stats(booking: Booking) -> bool:
    """
    Apply ride count and earnings to both users exactly once

    The stats_recorded claim is a single conditional update, so only one
    caller ever gets past it.
    """
    claimed = Booking.objects(id=booking.id, stats_recorded=False).update_one(
        set__stats_recorded=True
    )
    if not claimed:
        return False

    User.objects(id=booking.driver.id).update_one(
        inc__total_rides=1,
        inc__total_earnings=booking.fare,
        set__is_available=True,
        set__updated_at=utc_now(),
    )
    User.objects(id=booking.rider.id).update_one(
        inc__total_rides=1, set__updated_at=utc_now()
    )
    logger.info(f"Recorded completion stats for booking {booking.id}")
    return True


def complete_ride(
    booking_id: str, driver_id: str, payment_method: Optional[str] = None
) -> Booking:
    """
    Driver completes an in-progress ride

    Completing an already completed booking succeeds without counting the
    ride twice.
    """
    if payment_method is not None and payment_method not in PAYMENT_METHODS:
        raise InputValidationError("Payment method must be cash or upi")

    def apply(booking: Booking):
        _ensure_driver(booking, driver_id, "complete")
        if booking.status == "completed":
            return False
        _ensure_status(booking, "in_progress", "complete")
        booking.status = "completed"
        booking.completed_at = utc_now()
        booking.payment_status = "completed"
        booking.payment_method = payment_method or booking.payment_method or "cash"

    booking = run_transition(lambda: _load_booking(booking_id), apply, label="complete_ride")

    # Runs on retries too, in case an earlier attempt died before recording
    if _record_completion_stats(booking):
        booking.reload()

    logger.info(f"Booking {booking_id} completed by driver {driver_id}")
    return booking


def cancel_booking(booking_id: str, rider_id: str, reason: Optional[str] = None) -> Booking:
    """Rider cancels a booking; only possible before the driver accepts"""

    def apply(booking: Booking):
        if booking.rider_id != str(rider_id):
            raise UnauthorizedError("Only the rider can cancel this booking")

        if booking.status == "accepted":
            raise InvalidStateTransitionError(
                "Cannot cancel after driver has accepted. Please contact the driver directly."
            )
        if booking.status == "in_progress":
            raise InvalidStateTransitionError("Cannot cancel a ride in progress")
        if booking.status == "completed":
            raise InvalidStateTransitionError("Cannot cancel a completed ride")
        if booking.status == "cancelled":
            raise InvalidStateTransitionError("Booking is already cancelled")

        booking.status = "cancelled"
        booking.cancelled_by = "rider"
        booking.cancellation_reason = reason or "Cancelled by rider"
        booking.cancelled_at = utc_now()

    booking = run_transition(lambda: _load_booking(booking_id), apply, label="cancel_booking")

    logger.info(f"Booking {booking_id} cancelled by rider {rider_id}")
    return booking


# =============================================================================
# RATINGS
# =============================================================================


def _refresh_driver_rating(driver: User) -> None:
    rated = Booking.objects(driver=driver, driver_rating__exists=True)
    ratings = [b.driver_rating for b in rated if b.driver_rating is not None]
    if not ratings:
        return
    User.objects(id=driver.id).update_one(
        set__rating=round(sum(ratings) / len(ratings), 2),
        set__total_ratings=len(ratings),
    )
    logger.info(f"Updated driver {driver.id} rating over {len(ratings)} ratings")


def _refresh_rider_rating(rider: User) -> None:
    rated = Booking.objects(rider=rider, rider_rating__exists=True)
    ratings = [b.rider_rating for b in rated if b.rider_rating is not None]
    if not ratings:
        return
    User.objects(id=rider.id).update_one(
        set__rating=round(sum(ratings) / len(ratings), 2),
        set__total_ratings=len(ratings),
    )
    logger.info(f"Updated rider {rider.id} rating over {len(ratings)} ratings")


def rate_driver(
    booking_id: str, rider_id: str, rating: int, review: Optional[str] = None
) -> Booking:
    """Rider rates the driver of a completed ride (once)"""
    _validate_rating(rating)

    def apply(booking: Booking):
        if booking.rider_id != str(rider_id):
            raise UnauthorizedError("Only the rider can rate the driver")
        if booking.status != "completed":
            raise InvalidStateTransitionError("Can only rate completed rides")
        if booking.driver_rating is not None:
            raise InvalidStateTransitionError("You have already rated this ride")
        booking.driver_rating = rating
        booking.driver_review = review

    booking = run_transition(lambda: _load_booking(booking_id), apply, label="rate_driver")
    _refresh_driver_rating(booking.driver)

    logger.info(f"Booking {booking_id}: driver rated {rating} by rider {rider_id}")
    return booking


def rate_rider(
    booking_id: str, driver_id: str, rating: int, review: Optional[str] = None
) -> Booking:
    """Driver rates the rider of a completed ride (once)"""
    _validate_rating(rating)

    def apply(booking: Booking):
        _ensure_driver(booking, driver_id, "rate the rider of")
        if booking.status != "completed":
            raise InvalidStateTransitionError("Can only rate completed rides")
        if booking.rider_rating is not None:
            raise InvalidStateTransitionError("You have already rated this rider")
        booking.rider_rating = rating
        booking.rider_review = review

    booking = run_transition(lambda: _load_booking(booking_id), apply, label="rate_rider")
    _refresh_rider_rating(booking.rider)

    logger.info(f"Booking {booking_id}: rider rated {rating} by driver {driver_id}")
    return booking


# =============================================================================
# QUERIES
# =============================================================================


def find_nearby_drivers(lat: float, lng: float, radius_km: float = 5) -> List[Dict]:
    """
    Available, verified drivers within radius_km, closest first

    Returns:
        Driver dicts with distance_km and pickup eta_minutes keys
    """
    candidates = User.objects(
        role="driver",
        is_available=True,
        is_active=True,
        is_verified=True,
        location__exists=True,
    )

    nearby = []
    for driver in candidates:
        coords = driver.coordinates
        if not coords:
            continue

        distance = calculate_distance(lat, lng, coords["lat"], coords["lng"])
        if distance > radius_km:
            continue

        driver_dict = driver.to_dict()
        driver_dict["distance_km"] = round(distance, 2)
        driver_dict["eta_minutes"] = calculate_eta(distance)
        nearby.append(driver_dict)

    nearby.sort(key=lambda d: d["distance_km"])

    logger.info(f"Found {len(nearby)} driver(s) near ({lat}, {lng}) within {radius_km}km")
    return nearby


def get_booking(booking_id: str, user: Optional[User] = None) -> Booking:
    """Fetch a booking; when a user is given they must be its rider, driver or an admin"""
    booking = _load_booking(booking_id)
    if user is not None and user.role != "admin":
        if str(user.id) not in (booking.rider_id, booking.driver_id):
            raise UnauthorizedError("You are not part of this booking")
    return booking


def get_driver_pending_bookings(driver_id: str) -> List[Booking]:
    return list(
        Booking.objects(driver=driver_id, status="pending").order_by("-created_at")
    )


def _user_filter(user: User) -> Dict:
    return {"driver": user.id} if user.role == "driver" else {"rider": user.id}


def get_active_booking(user: User) -> Optional[Booking]:
    """The booking the user is currently busy with, most advanced first"""
    for status in ACTIVE_BOOKING_PRIORITY:
        booking = (
            Booking.objects(status=status, **_user_filter(user))
            .order_by("-created_at")
            .first()
        )
        if booking:
            return booking
    return None


def get_booking_history(user: User, limit: int = 50) -> List[Booking]:
    return list(
        Booking.objects(**_user_filter(user)).order_by("-created_at").limit(limit)
    )
