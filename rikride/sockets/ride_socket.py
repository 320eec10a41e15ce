"""
WebSocket connection manager for Rik-Ride real-time updates.

This module provides:
- Connection management with per-connection write locks
- Room-based messaging (one room per pool ride or booking)
- Automatic stale connection cleanup
- Server-initiated keepalive pings
- Subscribe handlers that answer with the current pool/booking snapshot
- Reconnect support (active pool and booking reported on connect)
- Throttled driver location relay to the rooms of rides being served

One ConnectionManager is created per process in main.py and reached
through app.state.
"""

import asyncio
import json
import time
import logging
from typing import Dict, List, Set, Optional, Tuple
from dataclasses import dataclass, field

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect, status

from rikride.models.user_model import User
from rikride.services import booking_service, driver_service, pool_service
from rikride.services.errors import NotFoundError, ServiceError
from rikride.sockets.ws_auth import authenticate_websocket
from rikride.utils.helpers import calculate_distance, utc_now, validate_coordinates

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# CONFIGURATION
# =============================================================================

HEARTBEAT_INTERVAL_SECONDS = 15
HEARTBEAT_TIMEOUT_SECONDS = 45
SEND_TIMEOUT_SECONDS = 5
CLEANUP_INTERVAL_SECONDS = 30
PING_INTERVAL_SECONDS = 10
LOCATION_THROTTLE_MS = 400  # Minimum gap between location broadcasts
LOCATION_MIN_DISTANCE_METERS = 1  # Movement that bypasses the throttle


def pool_room(pool_id: str) -> str:
    return f"pool:{pool_id}"


def booking_room(booking_id: str) -> str:
    return f"booking:{booking_id}"


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class ClientConnection:
    """A single WebSocket client connection with metadata"""

    websocket: WebSocket
    user_id: str
    role: str
    connected_at: float = field(default_factory=time.time)
    last_heartbeat: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    is_alive: bool = True
    joined_rooms: Set[str] = field(default_factory=set)
    last_location_broadcast: float = 0.0  # ms
    last_location_coords: Optional[Tuple[float, float]] = None

    def update_heartbeat(self) -> None:
        self.last_heartbeat = time.time()
        self.last_activity = time.time()

    def update_activity(self) -> None:
        self.last_activity = time.time()

    def is_stale(self, timeout: float = HEARTBEAT_TIMEOUT_SECONDS) -> bool:
        return (time.time() - self.last_heartbeat) > timeout

    def needs_ping(self, interval: float = PING_INTERVAL_SECONDS) -> bool:
        return (time.time() - self.last_activity) > interval

    def should_throttle_location(self, lat: float, lon: float) -> bool:
        """Drop updates that arrive too fast unless the driver actually moved"""
        since_last = time.time() * 1000 - self.last_location_broadcast
        if since_last >= LOCATION_THROTTLE_MS:
            return False

        if self.last_location_coords:
            prev_lat, prev_lon = self.last_location_coords
            moved_m = calculate_distance(prev_lat, prev_lon, lat, lon) * 1000
            if moved_m >= LOCATION_MIN_DISTANCE_METERS:
                return False

        return True

    def update_location_state(self, lat: float, lon: float) -> None:
        self.last_location_broadcast = time.time() * 1000
        self.last_location_coords = (lat, lon)


@dataclass
class Room:
    """Subscribers of one pool ride or booking"""

    name: str
    participants: Set[str] = field(default_factory=set)
    created_at: float = field(default_factory=time.time)

    def add_participant(self, user_id: str) -> bool:
        """Returns True if newly added, False if already present"""
        if user_id in self.participants:
            return False
        self.participants.add(user_id)
        return True

    def remove_participant(self, user_id: str) -> None:
        self.participants.discard(user_id)

    def is_empty(self) -> bool:
        return len(self.participants) == 0


# =============================================================================
# CONNECTION MANAGER
# =============================================================================


class ConnectionManager:
    """WebSocket connection and room registry"""

    def __init__(self):
        self._connections: Dict[str, ClientConnection] = {}
        self._rooms: Dict[str, Room] = {}
        self._connections_lock = asyncio.Lock()
        self._rooms_lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._is_running = False

    async def start(self) -> None:
        if self._is_running:
            return
        self._is_running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        logger.info("ConnectionManager started with background cleanup and keepalive")

    async def stop(self) -> None:
        self._is_running = False
        for task in [self._cleanup_task, self._keepalive_task]:
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._cleanup_task = None
        self._keepalive_task = None
        logger.info("ConnectionManager stopped")

    async def _cleanup_loop(self) -> None:
        while self._is_running:
            try:
                await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
                await self.cleanup_stale_connections()
                await self._cleanup_empty_rooms()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Cleanup loop error: {type(e).__name__}: {str(e)}")

    async def _keepalive_loop(self) -> None:
        while self._is_running:
            try:
                await asyncio.sleep(PING_INTERVAL_SECONDS)
                await self._send_keepalive_pings()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Keepalive loop error: {type(e).__name__}: {str(e)}")

    async def _send_keepalive_pings(self) -> None:
        async with self._connections_lock:
            connections_to_ping = [
                user_id
                for user_id, conn in self._connections.items()
                if conn.is_alive and conn.needs_ping()
            ]

        for user_id in connections_to_ping:
            await self.send_to_user(
                user_id, {"event_type": "ping", "timestamp": utc_now().isoformat()}
            )

    async def cleanup_stale_connections(self) -> int:
        """Disconnect every connection whose heartbeat has timed out"""
        async with self._connections_lock:
            stale = [
                (user_id, conn)
                for user_id, conn in self._connections.items()
                if conn.is_stale() or not conn.is_alive
            ]

        for user_id, conn in stale:
            logger.warning(f"Removing stale connection: {user_id}")
            await self.disconnect(user_id, reason="Heartbeat timeout", connection=conn)

        return len(stale)

    async def _cleanup_empty_rooms(self) -> None:
        async with self._rooms_lock:
            empty_rooms = [name for name, room in self._rooms.items() if room.is_empty()]
            for name in empty_rooms:
                del self._rooms[name]
                logger.debug(f"Cleaned up empty room: {name}")

    # -------------------------------------------------------------------------
    # Connection Management
    # -------------------------------------------------------------------------

    async def connect(self, websocket: WebSocket, user_id: str, role: str) -> ClientConnection:
        """Accept and register a new WebSocket connection"""
        if user_id in self._connections:
            logger.info(f"Closing existing connection for user {user_id} (new connection)")
            await self.disconnect(user_id, reason="New connection established")

        await websocket.accept()

        connection = ClientConnection(websocket=websocket, user_id=user_id, role=role)

        async with self._connections_lock:
            self._connections[user_id] = connection

        logger.info(f"WebSocket connected: user_id={user_id}, role={role}")
        return connection

    async def disconnect(
        self,
        user_id: str,
        reason: str = "Client disconnected",
        connection: Optional[ClientConnection] = None,
    ) -> None:
        """
        Disconnect and clean up a WebSocket connection

        When a connection is given, only that connection is removed, so a
        closing socket never tears down the one that replaced it.
        """
        async with self._connections_lock:
            current = self._connections.get(user_id)
            if current is None or (connection is not None and current is not connection):
                return
            del self._connections[user_id]
        connection = current

        connection.is_alive = False

        for room_name in list(connection.joined_rooms):
            await self.leave_room(room_name, user_id)

        try:
            await connection.websocket.close(code=status.WS_1000_NORMAL_CLOSURE, reason=reason)
        except Exception as e:
            # Already closed by the client
            logger.debug(f"WebSocket close for {user_id} skipped: {type(e).__name__}")

        logger.info(f"WebSocket disconnected: user_id={user_id}, reason={reason}")

    def get_connection(self, user_id: str) -> Optional[ClientConnection]:
        return self._connections.get(user_id)

    def is_connected(self, user_id: str) -> bool:
        conn = self._connections.get(user_id)
        return conn is not None and conn.is_alive

    # -------------------------------------------------------------------------
    # Room Management
    # -------------------------------------------------------------------------

    async def join_room(self, room_name: str, user_id: str) -> bool:
        """Add a user to a room. Returns False if already joined."""
        connection = self.get_connection(user_id)

        async with self._rooms_lock:
            room = self._rooms.setdefault(room_name, Room(name=room_name))
            if not room.add_participant(user_id):
                return False

        if connection:
            connection.joined_rooms.add(room_name)

        logger.info(f"User {user_id} joined room {room_name}")
        return True

    async def leave_room(self, room_name: str, user_id: str) -> bool:
        connection = self.get_connection(user_id)

        async with self._rooms_lock:
            room = self._rooms.get(room_name)
            if not room:
                return False

            room.remove_participant(user_id)
            if room.is_empty():
                del self._rooms[room_name]

        if connection:
            connection.joined_rooms.discard(room_name)

        logger.info(f"User {user_id} left room {room_name}")
        return True

    def get_room_participants(self, room_name: str) -> Set[str]:
        room = self._rooms.get(room_name)
        return room.participants.copy() if room else set()

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    async def send_to_user(
        self, user_id: str, message: dict, timeout: float = SEND_TIMEOUT_SECONDS
    ) -> bool:
        """Send a message to a specific user with timeout protection"""
        connection = self.get_connection(user_id)
        if not connection or not connection.is_alive:
            return False

        try:
            async with connection.write_lock:
                await asyncio.wait_for(connection.websocket.send_json(message), timeout=timeout)
            connection.update_activity()
            logger.debug(f"Message sent to {user_id}: {message.get('event_type', 'unknown')}")
            return True

        except asyncio.TimeoutError:
            logger.warning(f"Send timeout for user {user_id}, marking as stale")
            connection.is_alive = False
            return False

        except Exception as e:
            logger.error(f"Error sending to {user_id}: {type(e).__name__}: {str(e)}")
            connection.is_alive = False
            return False

    async def broadcast_to_room(
        self, room_name: str, message: dict, exclude_user: Optional[str] = None
    ) -> int:
        """Send a message to every subscriber of a room; returns delivered count"""
        participants = self.get_room_participants(room_name)
        if exclude_user:
            participants.discard(exclude_user)
        if not participants:
            return 0

        results = await asyncio.gather(
            *[self.send_to_user(user_id, message) for user_id in participants],
            return_exceptions=True,
        )
        success_count = sum(1 for r in results if r is True)

        logger.debug(
            f"Broadcast to room {room_name}: {success_count}/{len(participants)} successful, "
            f"event={message.get('event_type', 'unknown')}"
        )
        return success_count

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict:
        counts = {"rider": 0, "driver": 0, "admin": 0}
        for conn in self._connections.values():
            if conn.role in counts:
                counts[conn.role] += 1

        return {
            "active_connections": len(self._connections),
            "active_rooms": len(self._rooms),
            "rooms": {name: len(room.participants) for name, room in self._rooms.items()},
            "connections_by_role": counts,
        }


# =============================================================================
# EVENT HANDLERS
# =============================================================================


async def handle_subscribe_pool(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> dict:
    pool_id = data.get("pool_id")
    if not pool_id:
        return {"event_type": "error", "message": "Missing pool_id"}

    try:
        pool = pool_service.get_pool(pool_id)
    except NotFoundError as e:
        return {"event_type": "error", "message": e.message}

    if not pool_service.can_view_pool(pool, connection.user_id, connection.role):
        logger.warning(f"Unauthorized pool subscribe: user {connection.user_id} for pool {pool_id}")
        return {"event_type": "error", "message": "You are not part of this pool ride"}

    await manager.join_room(pool_room(pool_id), connection.user_id)
    connection.update_heartbeat()

    return {"event_type": "pool_subscribed", "pool_id": pool_id, "pool": pool.to_dict()}


async def handle_unsubscribe_pool(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> dict:
    pool_id = data.get("pool_id")
    if not pool_id:
        return {"event_type": "error", "message": "Missing pool_id"}

    await manager.leave_room(pool_room(pool_id), connection.user_id)
    return {"event_type": "pool_unsubscribed", "pool_id": pool_id}


async def handle_subscribe_booking(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> dict:
    booking_id = data.get("booking_id")
    if not booking_id:
        return {"event_type": "error", "message": "Missing booking_id"}

    try:
        booking = booking_service.get_booking(booking_id)
    except NotFoundError as e:
        return {"event_type": "error", "message": e.message}

    if connection.role != "admin" and connection.user_id not in (
        booking.rider_id,
        booking.driver_id,
    ):
        logger.warning(
            f"Unauthorized booking subscribe: user {connection.user_id} for booking {booking_id}"
        )
        return {"event_type": "error", "message": "You are not part of this booking"}

    await manager.join_room(booking_room(booking_id), connection.user_id)
    connection.update_heartbeat()

    return {
        "event_type": "booking_subscribed",
        "booking_id": booking_id,
        "booking": booking.to_dict(),
    }


async def handle_unsubscribe_booking(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> dict:
    booking_id = data.get("booking_id")
    if not booking_id:
        return {"event_type": "error", "message": "Missing booking_id"}

    await manager.leave_room(booking_room(booking_id), connection.user_id)
    return {"event_type": "booking_unsubscribed", "booking_id": booking_id}


async def handle_ping(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> dict:
    connection.update_heartbeat()
    return {"event_type": "pong", "timestamp": utc_now().isoformat()}


async def handle_pong(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> Optional[dict]:
    connection.update_heartbeat()
    connection.is_alive = True
    return None


def driver_ride_rooms(driver: User) -> List[str]:
    """Rooms of the booking and pool ride a driver is currently serving"""
    rooms = []
    booking = booking_service.get_active_booking(driver)
    if booking:
        rooms.append(booking_room(str(booking.id)))
    pool = pool_service.get_driver_active_pool(str(driver.id))
    if pool:
        rooms.append(pool_room(str(pool.id)))
    return rooms


async def handle_location_update(
    manager: ConnectionManager, connection: ClientConnection, data: dict
) -> Optional[dict]:
    """Store a driver's position and relay it to their ride rooms, throttled"""
    if connection.role != "driver":
        logger.warning(f"Non-driver {connection.user_id} attempted location update")
        return {"event_type": "error", "message": "Only drivers can send location updates"}

    latitude = data.get("latitude")
    longitude = data.get("longitude")
    if latitude is None or longitude is None:
        return {"event_type": "error", "message": "Missing latitude or longitude"}

    is_valid, error = validate_coordinates(latitude, longitude)
    if not is_valid:
        return {"event_type": "error", "message": error}
    latitude, longitude = float(latitude), float(longitude)

    if connection.should_throttle_location(latitude, longitude):
        logger.debug(f"Throttled location update from {connection.user_id}")
        return None

    try:
        driver = driver_service.update_location(connection.user_id, latitude, longitude)
    except ServiceError as e:
        return {"event_type": "error", "message": e.message}

    connection.update_heartbeat()
    connection.update_location_state(latitude, longitude)

    message = {
        "event_type": "driver_location_update",
        "driver_id": connection.user_id,
        "latitude": latitude,
        "longitude": longitude,
        "heading": data.get("heading"),
        "speed": data.get("speed"),
        "timestamp": utc_now().isoformat(),
    }
    for room in driver_ride_rooms(driver):
        await manager.broadcast_to_room(room, message, exclude_user=connection.user_id)

    return None


EVENT_HANDLERS = {
    "subscribe_pool": handle_subscribe_pool,
    "unsubscribe_pool": handle_unsubscribe_pool,
    "subscribe_booking": handle_subscribe_booking,
    "unsubscribe_booking": handle_unsubscribe_booking,
    "ping": handle_ping,
    "pong": handle_pong,
    "location_update": handle_location_update,
}


def _active_rides_for_user(user_id: str, role: str) -> dict:
    """Active pool/booking ids so a reconnecting client can resubscribe"""
    user = User.objects(id=user_id).first()
    if not user:
        return {}

    active = {}
    booking = booking_service.get_active_booking(user)
    if booking:
        active["active_booking"] = {"booking_id": str(booking.id), "status": booking.status}

    if role == "driver":
        pool = pool_service.get_driver_active_pool(user_id)
        pools = [pool] if pool else []
    else:
        pools = pool_service.get_rider_active_pools(user_id)
    if pools:
        active["active_pools"] = [{"pool_id": str(p.id), "status": p.status} for p in pools]

    return active


# =============================================================================
# WEBSOCKET ENDPOINT
# =============================================================================


@router.websocket("/ride")
async def websocket_endpoint(websocket: WebSocket):
    """Main WebSocket endpoint for real-time pool and booking updates"""
    manager: ConnectionManager = websocket.app.state.connection_manager
    user_id: Optional[str] = None
    connection: Optional[ClientConnection] = None

    try:
        auth_result = await authenticate_websocket(websocket)
        if not auth_result:
            return

        user_id = auth_result["user_id"]
        role = auth_result["role"]

        connection = await manager.connect(websocket, user_id, role)

        connected_response = {
            "event_type": "connected",
            "message": "Connected to Rik-Ride real-time service",
            "user_id": user_id,
            "role": role,
            "timestamp": utc_now().isoformat(),
        }
        connected_response.update(_active_rides_for_user(user_id, role))
        await manager.send_to_user(user_id, connected_response)

        # Message loop
        while True:
            try:
                raw_message = await asyncio.wait_for(
                    websocket.receive_text(), timeout=HEARTBEAT_INTERVAL_SECONDS
                )
            except asyncio.TimeoutError:
                if not connection.is_alive:
                    logger.info(f"Connection marked dead for {user_id}")
                    break
                continue

            connection.update_activity()

            try:
                data = json.loads(raw_message)
            except json.JSONDecodeError:
                await manager.send_to_user(
                    user_id, {"event_type": "error", "message": "Invalid JSON format"}
                )
                continue

            event_type = data.get("event_type") or data.get("type")
            handler = EVENT_HANDLERS.get(event_type)
            if not handler:
                await manager.send_to_user(
                    user_id,
                    {"event_type": "error", "message": f"Unknown event type: {event_type}"},
                )
                continue

            try:
                response = await handler(manager, connection, data)
            except Exception as e:
                logger.error(
                    f"Message processing error for {user_id}: {type(e).__name__}: {str(e)}"
                )
                response = {"event_type": "error", "message": "Failed to process event"}

            if response:
                await manager.send_to_user(user_id, response)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally: {user_id}")

    except Exception as e:
        logger.error(
            f"WebSocket connection error for {user_id}: {type(e).__name__}: {str(e)}",
            exc_info=True,
        )

    finally:
        if connection:
            await manager.disconnect(user_id, reason="Connection ended", connection=connection)


# =============================================================================
# STATS ENDPOINT
# =============================================================================


@router.get("/stats")
async def get_websocket_stats(request: Request):
    """WebSocket statistics for monitoring"""
    stats = request.app.state.connection_manager.get_stats()
    return {
        "success": True,
        "data": {
            "active_connections": stats["active_connections"],
            "active_rooms": stats["active_rooms"],
            "rooms": stats["rooms"],
            "connections_by_role": stats["connections_by_role"],
        },
    }
