"""
Driver Service
Driver location, availability and admin verification.
Nearby-driver search only sees drivers that are verified, available and
have reported a location, so every one of those flags is set here.
"""

import logging
from typing import List, Optional

from mongoengine.errors import ValidationError as DocumentValidationError

from rikride.models.user_model import User
from rikride.services.errors import (
    InputValidationError,
    InvalidStateTransitionError,
    NotFoundError,
    UnauthorizedError,
)
from rikride.utils.helpers import utc_now, validate_coordinates

logger = logging.getLogger(__name__)


def _load_driver(driver_id: str) -> User:
    try:
        driver = User.objects(id=driver_id).first()
    except DocumentValidationError:
        driver = None
    if not driver or driver.role != "driver":
        raise NotFoundError("Driver not found")
    return driver


def _geo_point(latitude, longitude) -> dict:
    is_valid, error = validate_coordinates(latitude, longitude)
    if not is_valid:
        raise InputValidationError(error)
    # GeoJSON stores [longitude, latitude]
    return {"type": "Point", "coordinates": [float(longitude), float(latitude)]}


def update_location(driver_id: str, latitude: float, longitude: float) -> User:
    """Store the driver's current position"""
    driver = _load_driver(driver_id)

    driver.location = _geo_point(latitude, longitude)
    driver.updated_at = utc_now()
    driver.save()

    logger.debug(f"Location updated for driver {driver_id}: [{latitude}, {longitude}]")
    return driver


def set_availability(
    driver_id: str,
    is_available: bool,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
) -> User:
    """
    Go online or offline

    Going online needs admin verification and a known position, either
    passed here or reported earlier.
    """
    driver = _load_driver(driver_id)

    if is_available:
        if not driver.is_verified:
            raise UnauthorizedError("Driver must be verified to go online")
        if not driver.is_active:
            raise UnauthorizedError("Account is deactivated")

        if latitude is not None and longitude is not None:
            driver.location = _geo_point(latitude, longitude)
        elif not driver.coordinates:
            raise InputValidationError(
                "Location is required when becoming available. "
                "Please provide latitude and longitude."
            )

    driver.is_available = is_available
    driver.updated_at = utc_now()
    driver.save()

    logger.info(
        f"Driver {driver_id} is now {'available' if is_available else 'unavailable'}"
    )
    return driver


def verify_driver(driver_id: str, approved: bool, admin: User) -> User:
    """Admin approves or rejects a driver's documents"""
    if admin.role != "admin":
        raise UnauthorizedError("Admin access required")

    driver = _load_driver(driver_id)
    if approved and driver.is_verified:
        raise InvalidStateTransitionError("Driver is already verified")

    driver.is_verified = approved
    if not approved:
        # A rejected driver drops out of search immediately
        driver.is_available = False
    driver.updated_at = utc_now()
    driver.save()

    logger.info(
        f"Driver {driver_id} {'approved' if approved else 'rejected'} by admin {admin.email}"
    )
    return driver


def list_drivers(available_only: bool = False, limit: int = 100) -> List[User]:
    query = {"role": "driver"}
    if available_only:
        query.update(is_available=True, is_active=True)
    return list(User.objects(**query).order_by("-created_at").limit(limit))
