"""
Admin Routes
Expiry sweep, pool, booking and driver listings, driver verification,
platform statistics
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel

from rikride.models.booking_model import Booking
from rikride.models.pool_model import ACTIVE_POOL_STATUSES, PoolRide
from rikride.models.user_model import User
from rikride.services import driver_service, pool_service
from rikride.utils.helpers import utc_now
from rikride.utils.jwt_utils import require_admin

router = APIRouter()
logger = logging.getLogger(__name__)


class VerifyDriverRequest(BaseModel):
    approved: bool


@router.post("/pools/expire")
async def expire_pools(current_user: User = Depends(require_admin)):
    """
    Run the pool expiry sweep
    Meant to be hit by a scheduler; safe to call repeatedly
    """
    expired = pool_service.expire_pools()

    logger.info(f"Expiry sweep by admin {current_user.email}: {expired} pool(s) expired")

    return {"success": True, "expired": expired}


@router.get("/pools")
async def get_all_pools(
    status_filter: Optional[str] = Query(None, description="Filter by status"),
    limit: int = Query(100, description="Number of pools to return"),
    current_user: User = Depends(require_admin),
):
    query = {}
    if status_filter:
        query["status"] = status_filter

    pools = list(PoolRide.objects(**query).order_by("-created_at").limit(limit))

    return {
        "success": True,
        "count": len(pools),
        "pools": [pool.to_dict() for pool in pools],
    }


@router.get("/bookings")
async def get_all_bookings(
    status_filter: Optional[str] = Query(None, description="Filter by status"),
    limit: int = Query(100, description="Number of bookings to return"),
    current_user: User = Depends(require_admin),
):
    query = {}
    if status_filter:
        query["status"] = status_filter

    bookings = list(Booking.objects(**query).order_by("-created_at").limit(limit))

    return {
        "success": True,
        "count": len(bookings),
        "bookings": [booking.to_dict() for booking in bookings],
    }


@router.get("/drivers")
async def get_drivers(
    available_only: bool = Query(False, description="Only drivers currently online"),
    limit: int = Query(100, description="Number of drivers to return"),
    current_user: User = Depends(require_admin),
):
    drivers = driver_service.list_drivers(available_only=available_only, limit=limit)

    return {
        "success": True,
        "count": len(drivers),
        "drivers": [driver.to_dict() for driver in drivers],
    }


@router.post("/drivers/{driver_id}/verify")
async def verify_driver(
    driver_id: str,
    data: VerifyDriverRequest,
    current_user: User = Depends(require_admin),
):
    """Approve or reject a driver; only approved drivers can go online"""
    driver = driver_service.verify_driver(driver_id, data.approved, current_user)

    return {
        "success": True,
        "message": "Driver approved" if data.approved else "Driver rejected",
        "driver": driver.to_dict(),
    }


@router.get("/stats")
async def get_platform_stats(request: Request, current_user: User = Depends(require_admin)):
    """
    Get aggregated platform statistics
    Admin only
    """
    try:
        today_start = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)

        completed_bookings = Booking.objects(status="completed")
        booking_revenue = sum(b.fare for b in completed_bookings)
        completed_count = completed_bookings.count()

        pool_revenue = sum(
            p.total_fare
            for pool in PoolRide.objects(status="completed")
            for p in pool.active_participants()
        )

        return {
            "success": True,
            "stats": {
                "users": {
                    "total": User.objects.count(),
                    "riders": User.objects(role="rider").count(),
                    "drivers": User.objects(role="driver").count(),
                    "available_drivers": User.objects(role="driver", is_available=True).count(),
                },
                "bookings": {
                    "total": Booking.objects.count(),
                    "pending": Booking.objects(status="pending").count(),
                    "active": Booking.objects(status__in=["accepted", "in_progress"]).count(),
                    "completed": completed_count,
                    "cancelled": Booking.objects(status="cancelled").count(),
                    "today": Booking.objects(created_at__gte=today_start).count(),
                },
                "pools": {
                    "total": PoolRide.objects.count(),
                    "active": PoolRide.objects(status__in=ACTIVE_POOL_STATUSES).count(),
                    "completed": PoolRide.objects(status="completed").count(),
                    "cancelled": PoolRide.objects(status="cancelled").count(),
                    "expired": PoolRide.objects(status="expired").count(),
                    "today": PoolRide.objects(created_at__gte=today_start).count(),
                },
                "revenue": {
                    "bookings": round(booking_revenue, 2),
                    "pools": round(pool_revenue, 2),
                    "average_fare": (
                        round(booking_revenue / completed_count, 2) if completed_count else 0
                    ),
                },
                "realtime": request.app.state.connection_manager.get_stats(),
                "maps_cache": request.app.state.rate_limiter.get_stats(),
            },
        }

    except Exception as e:
        logger.error(f"Stats error: {str(e)}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch statistics",
        )
