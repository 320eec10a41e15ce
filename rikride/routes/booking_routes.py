"""
Booking Routes
Solo ride requests, driver acceptance, status updates, ratings and history
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from rikride import config
from rikride.models.location_model import GeoPoint, NearbyDriversRequest
from rikride.models.user_model import User
from rikride.services import booking_service
from rikride.services.errors import ServiceError, UnauthorizedError
from rikride.utils.fare_utils import calculate_fare, calculate_pool_fare
from rikride.utils.jwt_utils import get_current_user, require_driver, require_rider

router = APIRouter()
logger = logging.getLogger(__name__)


# Pydantic models for request validation
class CreateBookingRequest(BaseModel):
    driver_id: str
    pickup: GeoPoint
    drop: GeoPoint
    distance_km: float = Field(..., ge=0, description="Client-computed trip distance")


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class CompleteRideRequest(BaseModel):
    payment_method: Optional[str] = Field(default=None, pattern="^(cash|upi)$")


class RatingRequest(BaseModel):
    rating: int
    review: Optional[str] = Field(default=None, max_length=500)


async def _push(request: Request, booking, message: Optional[str] = None) -> None:
    await request.app.state.notifier.booking_updated(booking, message)


@router.get("/estimate")
async def estimate_fare(
    request: Request,
    pickup_lat: float = Query(..., ge=-90, le=90),
    pickup_lng: float = Query(..., ge=-180, le=180),
    drop_lat: float = Query(..., ge=-90, le=90),
    drop_lng: float = Query(..., ge=-180, le=180),
    current_user: User = Depends(get_current_user),
):
    """
    Distance, duration and fare preview for a route
    Display only; the booked fare is computed again at booking time
    """
    try:
        directions = await request.app.state.maps_client.get_directions(
            (pickup_lat, pickup_lng), (drop_lat, drop_lng)
        )
        fare = calculate_fare(directions["distance_km"])

        return {
            "success": True,
            "distance_km": directions["distance_km"],
            "duration_minutes": directions["duration_minutes"],
            "distance_text": directions["distance_text"],
            "duration_text": directions["duration_text"],
            "source": directions["source"],
            "fare": fare,
            "pool_fare": calculate_pool_fare(fare, config.POOL_MAX_SEATS),
        }

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Fare estimate error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to estimate fare",
        )


@router.post("/nearby-drivers")
async def nearby_drivers(
    data: NearbyDriversRequest, current_user: User = Depends(get_current_user)
):
    """Available drivers within the radius, closest first (max 10)"""
    drivers = booking_service.find_nearby_drivers(
        data.latitude, data.longitude, data.radius_km
    )

    return {
        "success": True,
        "count": len(drivers),
        "drivers": drivers[:10],
        "search_radius_km": data.radius_km,
    }


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: CreateBookingRequest,
    request: Request,
    current_user: User = Depends(require_rider),
):
    try:
        booking = booking_service.create_booking(
            current_user, data.driver_id, data.pickup, data.drop, data.distance_km
        )
        await request.app.state.notifier.notify(
            booking.driver_id,
            "booking_requested",
            {
                "booking_id": str(booking.id),
                "message": f"New ride request from {current_user.full_name}",
                "booking": booking.to_dict(),
            },
        )

        return {
            "success": True,
            "message": "Booking requested. Waiting for the driver.",
            "booking": booking.to_dict(),
        }

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Create booking error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create booking",
        )


@router.get("/driver/pending")
async def driver_pending_bookings(current_user: User = Depends(require_driver)):
    bookings = booking_service.get_driver_pending_bookings(str(current_user.id))
    return {
        "success": True,
        "count": len(bookings),
        "bookings": [b.to_dict() for b in bookings],
    }


@router.get("/active")
async def active_booking(current_user: User = Depends(get_current_user)):
    booking = booking_service.get_active_booking(current_user)
    return {"success": True, "booking": booking.to_dict() if booking else None}


@router.get("/history")
async def booking_history(
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
):
    bookings = booking_service.get_booking_history(current_user, limit=limit)
    return {
        "success": True,
        "count": len(bookings),
        "bookings": [b.to_dict() for b in bookings],
    }


@router.get("/{booking_id}")
async def get_booking(booking_id: str, current_user: User = Depends(get_current_user)):
    booking = booking_service.get_booking(booking_id, current_user)
    return {"success": True, "booking": booking.to_dict()}


@router.post("/{booking_id}/accept")
async def accept_booking(
    booking_id: str, request: Request, current_user: User = Depends(require_driver)
):
    try:
        booking = booking_service.accept_booking(booking_id, str(current_user.id))
        await _push(request, booking, "Your ride has been accepted!")

        return {"success": True, "message": "Ride accepted successfully", "booking": booking.to_dict()}

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Accept booking error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to accept ride",
        )


@router.post("/{booking_id}/reject")
async def reject_booking(
    booking_id: str,
    request: Request,
    data: Optional[ReasonRequest] = None,
    current_user: User = Depends(require_driver),
):
    try:
        booking = booking_service.reject_booking(
            booking_id, str(current_user.id), data.reason if data else None
        )
        await _push(request, booking, "The driver could not take your ride")

        return {"success": True, "message": "Ride rejected", "booking": booking.to_dict()}

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Reject booking error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reject ride",
        )


@router.post("/{booking_id}/start")
async def start_ride(
    booking_id: str, request: Request, current_user: User = Depends(require_driver)
):
    try:
        booking = booking_service.start_ride(booking_id, str(current_user.id))
        await _push(request, booking, "Your ride has started")

        return {"success": True, "message": "Ride started", "booking": booking.to_dict()}

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Start ride error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start ride",
        )


@router.post("/{booking_id}/complete")
async def complete_ride(
    booking_id: str,
    request: Request,
    data: Optional[CompleteRideRequest] = None,
    current_user: User = Depends(require_driver),
):
    try:
        booking = booking_service.complete_ride(
            booking_id, str(current_user.id), data.payment_method if data else None
        )

        duration_minutes = 0
        if booking.started_at and booking.completed_at:
            duration = booking.completed_at - booking.started_at
            duration_minutes = int(duration.total_seconds() / 60)

        await _push(request, booking, "Your ride has been completed!")

        return {
            "success": True,
            "message": "Ride completed successfully",
            "booking": booking.to_dict(),
            "duration_minutes": duration_minutes,
        }

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Complete ride error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to complete ride",
        )


@router.post("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str,
    request: Request,
    data: Optional[ReasonRequest] = None,
    current_user: User = Depends(require_rider),
):
    try:
        booking = booking_service.cancel_booking(
            booking_id, str(current_user.id), data.reason if data else None
        )
        await _push(request, booking, "The rider cancelled the booking")

        return {"success": True, "message": "Booking cancelled", "booking": booking.to_dict()}

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Cancel booking error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel booking",
        )


@router.post("/{booking_id}/rating")
async def rate_booking(
    booking_id: str, data: RatingRequest, current_user: User = Depends(get_current_user)
):
    """
    Rate the other party of a completed ride.
    Riders rate the driver, drivers rate the rider.
    """
    try:
        if current_user.role == "rider":
            booking = booking_service.rate_driver(
                booking_id, str(current_user.id), data.rating, data.review
            )
        elif current_user.role == "driver":
            booking = booking_service.rate_rider(
                booking_id, str(current_user.id), data.rating, data.review
            )
        else:
            raise UnauthorizedError("Only riders and drivers can rate rides")

        return {
            "success": True,
            "message": "Rating submitted successfully",
            "rating": data.rating,
            "booking": booking.to_dict(),
        }

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Rate booking error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to submit rating",
        )
