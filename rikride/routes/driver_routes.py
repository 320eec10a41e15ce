"""
Driver Routes
Location reporting and going online/offline
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from rikride.models.user_model import User
from rikride.services import driver_service
from rikride.sockets.ride_socket import driver_ride_rooms
from rikride.utils.jwt_utils import require_driver

router = APIRouter()
logger = logging.getLogger(__name__)


class LocationUpdateRequest(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class AvailabilityRequest(BaseModel):
    is_available: bool
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


@router.put("/me/location")
async def update_location(
    data: LocationUpdateRequest,
    request: Request,
    current_user: User = Depends(require_driver),
):
    """
    Update driver's current location
    Pushed to the rooms of the booking or pool ride being served
    """
    driver = driver_service.update_location(str(current_user.id), data.latitude, data.longitude)

    await request.app.state.notifier.driver_location(
        driver.id, data.latitude, data.longitude, driver_ride_rooms(driver)
    )

    return {
        "success": True,
        "message": "Location updated successfully",
        "data": {"latitude": data.latitude, "longitude": data.longitude},
    }


@router.put("/me/availability")
async def set_availability(
    data: AvailabilityRequest, current_user: User = Depends(require_driver)
):
    """
    Go online or offline
    Location is required when becoming available, unless already known
    """
    driver = driver_service.set_availability(
        str(current_user.id), data.is_available, data.latitude, data.longitude
    )

    response_data = {
        "success": True,
        "message": f"Availability set to {'available' if driver.is_available else 'unavailable'}",
        "is_available": driver.is_available,
    }

    coords = driver.coordinates
    if coords:
        response_data["location"] = {"latitude": coords["lat"], "longitude": coords["lng"]}

    return response_data
