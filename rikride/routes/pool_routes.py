"""
Pool Ride Routes
Create, match, join and leave pools; driver acceptance and pickup/dropoff
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from rikride import config
from rikride.models.location_model import GeoPoint
from rikride.models.user_model import User
from rikride.services import matching_service, pool_service
from rikride.services.errors import ServiceError, UnauthorizedError
from rikride.utils.fare_utils import calculate_fare, calculate_pool_fare
from rikride.utils.jwt_utils import get_current_user, require_driver, require_rider

router = APIRouter()
logger = logging.getLogger(__name__)


# Pydantic models for request validation
class CreatePoolRequest(BaseModel):
    pickup: GeoPoint
    drop: GeoPoint
    seats_needed: int = Field(default=1, description="Seats for this rider")
    distance_km: float = Field(..., ge=0, description="Rider's trip distance")
    departure_time: Optional[datetime] = None
    is_immediate: bool = True


class MatchPoolsRequest(BaseModel):
    pickup: GeoPoint
    drop: GeoPoint
    seats_needed: int = 1
    distance_km: float = Field(..., ge=0)


class JoinPoolRequest(BaseModel):
    pickup: GeoPoint
    drop: GeoPoint
    seats_needed: int = 1


async def _push(request: Request, pool, message: Optional[str] = None) -> None:
    await request.app.state.notifier.pool_updated(pool, message)


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_pool(
    data: CreatePoolRequest,
    request: Request,
    current_user: User = Depends(require_rider),
):
    """Start a new pool ride with the caller as first participant"""
    try:
        pool = pool_service.create_pool(
            current_user,
            data.pickup,
            data.drop,
            data.seats_needed,
            data.distance_km,
            departure_time=data.departure_time,
            is_immediate=data.is_immediate,
        )

        return {
            "success": True,
            "message": "Pool ride created. Waiting for others to join.",
            "pool": pool.to_dict(),
        }

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Create pool error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create pool ride",
        )


@router.post("/match")
async def match_pools(data: MatchPoolsRequest, current_user: User = Depends(require_rider)):
    """
    Rank waiting pools against the requested route
    Best match first; nothing is reserved until the rider joins
    """
    try:
        matches = matching_service.find_matching_pools(
            str(current_user.id),
            data.pickup,
            data.drop,
            data.seats_needed,
            data.distance_km,
        )

        return {
            "success": True,
            "count": len(matches),
            "matches": [m.to_dict() for m in matches],
        }

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Match pools error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to search for pool rides",
        )


@router.get("/fare-quote")
async def pool_fare_quote(
    distance_km: float = Query(..., ge=0),
    seats: int = Query(default=1, ge=1),
    current_user: User = Depends(get_current_user),
):
    """Solo fare versus pooled fare for a distance"""
    base_fare = calculate_fare(distance_km)
    breakdown = calculate_pool_fare(base_fare, config.POOL_MAX_SEATS)

    return {
        "success": True,
        "solo_fare": base_fare,
        "pool_fare": breakdown,
        "estimated_fare": breakdown["fare_per_seat"] * seats,
        "seats": seats,
    }


@router.get("/my/active")
async def my_active_pools(current_user: User = Depends(require_rider)):
    pools = pool_service.get_rider_active_pools(str(current_user.id))
    return {"success": True, "count": len(pools), "pools": [p.to_dict() for p in pools]}


@router.get("/my/history")
async def my_pool_history(current_user: User = Depends(require_rider)):
    pools = pool_service.get_rider_pool_history(str(current_user.id))
    return {"success": True, "count": len(pools), "pools": [p.to_dict() for p in pools]}


@router.get("/driver/requests")
async def driver_pool_requests(current_user: User = Depends(require_driver)):
    """Open pools a driver can accept, newest first"""
    pools = pool_service.get_driver_pool_requests()
    return {"success": True, "count": len(pools), "pools": [p.to_dict() for p in pools]}


@router.get("/driver/active")
async def driver_active_pool(current_user: User = Depends(require_driver)):
    pool = pool_service.get_driver_active_pool(str(current_user.id))
    return {"success": True, "pool": pool.to_dict() if pool else None}


@router.get("/{pool_id}")
async def get_pool(pool_id: str, current_user: User = Depends(get_current_user)):
    pool = pool_service.get_pool(pool_id)
    if not pool_service.can_view_pool(pool, current_user.id, current_user.role):
        raise UnauthorizedError("You are not part of this pool ride")

    return {"success": True, "pool": pool.to_dict()}


@router.get("/{pool_id}/route")
async def get_route_plan(pool_id: str, current_user: User = Depends(get_current_user)):
    """Ordered pickup and dropoff stops for the pool"""
    pool = pool_service.get_pool(pool_id)

    if not pool_service.can_view_pool(
        pool, current_user.id, current_user.role, open_to_drivers=False
    ):
        raise UnauthorizedError("You are not part of this pool ride")

    return {"success": True, "route": pool_service.build_route_plan(pool)}


@router.post("/{pool_id}/join")
async def join_pool(
    pool_id: str,
    data: JoinPoolRequest,
    request: Request,
    current_user: User = Depends(require_rider),
):
    try:
        pool = pool_service.join_pool(
            pool_id, current_user, data.pickup, data.drop, data.seats_needed
        )
        await _push(request, pool, f"{current_user.full_name} joined the pool")

        return {
            "success": True,
            "message": "Joined pool ride successfully",
            "pool": pool.to_dict(),
        }

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Join pool error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to join pool ride",
        )


@router.post("/{pool_id}/leave")
async def leave_pool(
    pool_id: str, request: Request, current_user: User = Depends(require_rider)
):
    try:
        pool = pool_service.leave_pool(pool_id, str(current_user.id))
        await _push(request, pool, f"{current_user.full_name} left the pool")

        return {"success": True, "message": "Left pool ride", "pool": pool.to_dict()}

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Leave pool error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to leave pool ride",
        )


@router.post("/{pool_id}/ready")
async def mark_pool_ready(
    pool_id: str, request: Request, current_user: User = Depends(require_rider)
):
    """Creator starts the driver search without waiting for more riders"""
    try:
        pool = pool_service.mark_pool_ready(pool_id, str(current_user.id))
        await _push(request, pool)

        return {
            "success": True,
            "message": "Pool is ready. Looking for a driver.",
            "pool": pool.to_dict(),
        }

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Mark pool ready error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start pool ride",
        )


@router.post("/{pool_id}/accept")
async def accept_pool_ride(
    pool_id: str, request: Request, current_user: User = Depends(require_driver)
):
    try:
        pool = pool_service.accept_pool_ride(pool_id, current_user)
        await _push(request, pool, f"{current_user.full_name} accepted your pool ride")

        return {
            "success": True,
            "message": "Pool ride accepted",
            "pool": pool.to_dict(),
            "route": pool_service.build_route_plan(pool),
        }

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Accept pool error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to accept pool ride",
        )


@router.post("/{pool_id}/pickup/{rider_id}")
async def pickup_participant(
    pool_id: str,
    rider_id: str,
    request: Request,
    current_user: User = Depends(require_driver),
):
    try:
        pool = pool_service.pickup_participant(pool_id, rider_id, str(current_user.id))
        await _push(request, pool)

        return {"success": True, "message": "Rider picked up", "pool": pool.to_dict()}

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Pickup participant error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to mark rider as picked up",
        )


@router.post("/{pool_id}/dropoff/{rider_id}")
async def dropoff_participant(
    pool_id: str,
    rider_id: str,
    request: Request,
    current_user: User = Depends(require_driver),
):
    try:
        pool = pool_service.dropoff_participant(pool_id, rider_id, str(current_user.id))
        await _push(request, pool)

        return {"success": True, "message": "Rider dropped off", "pool": pool.to_dict()}

    except (HTTPException, ServiceError):
        raise
    except Exception as e:
        logger.error(f"Dropoff participant error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to mark rider as dropped off",
        )
