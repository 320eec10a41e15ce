"""
Notifier
Fire-and-forget pushes over the WebSocket connection manager.
A failed push is logged and never propagates into the operation that
triggered it.
"""

import logging
from typing import Any, Dict, Iterable, Optional

from rikride.models.events import BookingEvent, ParticipantEvent, PoolEvent
from rikride.sockets.ride_socket import ConnectionManager, booking_room, pool_room
from rikride.utils.helpers import (
    get_booking_status_message,
    get_pool_status_message,
    utc_now,
)

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    async def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> bool:
        """Push an event to one user; returns whether it was delivered"""
        try:
            return await self.manager.send_to_user(
                str(user_id), {"event_type": event_type, **payload}
            )
        except Exception as e:
            logger.error(f"Failed to notify {user_id} of {event_type}: {str(e)}")
            return False

    async def publish(
        self,
        room: str,
        event_type: str,
        payload: Dict[str, Any],
        exclude_user: Optional[str] = None,
    ) -> int:
        """Push an event to every subscriber of a room; returns delivered count"""
        try:
            return await self.manager.broadcast_to_room(
                room, {"event_type": event_type, **payload}, exclude_user=exclude_user
            )
        except Exception as e:
            logger.error(f"Failed to publish {event_type} to {room}: {str(e)}")
            return 0

    async def pool_updated(self, pool, message: str = None) -> int:
        """Snapshot to the pool room plus a status event for each active rider"""
        pool_id = str(pool.id)
        event = PoolEvent(
            pool_id=pool_id,
            status=pool.status,
            message=message or get_pool_status_message(pool.status),
            occupied_seats=pool.occupied_seats,
            available_seats=pool.available_seats,
        )
        delivered = await self.publish(
            pool_room(pool_id),
            "pool_updated",
            {**event.model_dump(mode="json"), "pool": pool.to_dict()},
        )

        for participant in pool.active_participants():
            participant_event = ParticipantEvent(
                pool_id=pool_id,
                rider_id=participant.rider_id,
                participant_status=participant.status,
                pool_status=pool.status,
                message=event.message,
            )
            await self.notify(
                participant.rider_id,
                "pool_participant_updated",
                participant_event.model_dump(mode="json"),
            )

        return delivered

    async def booking_updated(self, booking, message: str = None) -> int:
        """Snapshot to the booking room and a direct event to the other party"""
        booking_id = str(booking.id)
        event = BookingEvent(
            booking_id=booking_id,
            status=booking.status,
            message=message or get_booking_status_message(booking.status),
            details={"fare": booking.fare, "distance_km": booking.distance_km},
        )
        payload = {**event.model_dump(mode="json"), "booking": booking.to_dict()}

        delivered = await self.publish(booking_room(booking_id), "booking_updated", payload)

        # Both parties get it even before they subscribe
        for user_id in (booking.rider_id, booking.driver_id):
            await self.notify(user_id, "booking_updated", payload)

        return delivered

    async def driver_location(
        self, driver_id: str, latitude: float, longitude: float, rooms: Iterable[str]
    ) -> int:
        """Driver position to the rooms of the rides they are serving"""
        payload = {
            "driver_id": str(driver_id),
            "latitude": latitude,
            "longitude": longitude,
            "timestamp": utc_now().isoformat(),
        }
        delivered = 0
        for room in rooms:
            delivered += await self.publish(
                room, "driver_location_update", payload, exclude_user=str(driver_id)
            )
        return delivered
