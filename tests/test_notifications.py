import asyncio
import time

from rikride.models.user_model import User
from rikride.services import booking_service, pool_service
from rikride.services.notifications import Notifier
from rikride.sockets.ride_socket import (
    ConnectionManager,
    booking_room,
    handle_location_update,
    handle_ping,
    handle_subscribe_booking,
    handle_subscribe_pool,
    pool_room,
)


class FakeWebSocket:
    def __init__(self, fail_sends=False):
        self.accepted = False
        self.closed_with = None
        self.sent = []
        self.fail_sends = fail_sends

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self.fail_sends:
            raise RuntimeError("socket gone")
        self.sent.append(message)

    async def close(self, code=1000, reason=None):
        self.closed_with = code

    def events(self):
        return [m["event_type"] for m in self.sent]


class ExplodingManager:
    async def send_to_user(self, user_id, message):
        raise RuntimeError("boom")

    async def broadcast_to_room(self, room, message, exclude_user=None):
        raise RuntimeError("boom")


def run(coro):
    return asyncio.run(coro)


def test_room_broadcast_reaches_only_members():
    async def scenario():
        manager = ConnectionManager()
        a, b, c = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        await manager.connect(a, "a", "rider")
        await manager.connect(b, "b", "rider")
        await manager.connect(c, "c", "driver")
        await manager.join_room("pool:1", "a")
        await manager.join_room("pool:1", "c")

        delivered = await manager.broadcast_to_room("pool:1", {"event_type": "pool_updated"})
        return manager, delivered, a, b, c

    manager, delivered, a, b, c = run(scenario())

    assert delivered == 2
    assert a.events() == ["pool_updated"]
    assert b.sent == []
    assert c.events() == ["pool_updated"]
    stats = manager.get_stats()
    assert stats["active_connections"] == 3
    assert stats["rooms"] == {"pool:1": 2}
    assert stats["connections_by_role"] == {"rider": 2, "driver": 1, "admin": 0}


def test_join_room_twice_is_noop():
    async def scenario():
        manager = ConnectionManager()
        await manager.connect(FakeWebSocket(), "a", "rider")
        return await manager.join_room("r", "a"), await manager.join_room("r", "a")

    assert run(scenario()) == (True, False)


def test_disconnect_leaves_rooms_and_closes():
    async def scenario():
        manager = ConnectionManager()
        ws = FakeWebSocket()
        await manager.connect(ws, "a", "rider")
        await manager.join_room("booking:9", "a")
        await manager.disconnect("a")
        return manager, ws

    manager, ws = run(scenario())

    assert ws.closed_with == 1000
    assert not manager.is_connected("a")
    assert manager.get_room_participants("booking:9") == set()


def test_reconnect_replaces_old_socket():
    async def scenario():
        manager = ConnectionManager()
        old, new = FakeWebSocket(), FakeWebSocket()
        await manager.connect(old, "a", "rider")
        await manager.connect(new, "a", "rider")
        await manager.send_to_user("a", {"event_type": "ping"})
        return old, new

    old, new = run(scenario())

    assert old.closed_with == 1000
    assert new.events() == ["ping"]


def test_stale_socket_cannot_disconnect_its_replacement():
    async def scenario():
        manager = ConnectionManager()
        old_ws, new_ws = FakeWebSocket(), FakeWebSocket()
        old = await manager.connect(old_ws, "a", "rider")
        await manager.connect(new_ws, "a", "rider")
        await manager.join_room("pool:1", "a")

        # The replaced socket's handler finishes after the reconnect
        await manager.disconnect("a", reason="Connection ended", connection=old)
        delivered = await manager.broadcast_to_room("pool:1", {"event_type": "pool_updated"})
        return manager, delivered, new_ws

    manager, delivered, new_ws = run(scenario())

    assert manager.is_connected("a")
    assert new_ws.closed_with is None
    assert delivered == 1
    assert new_ws.events() == ["pool_updated"]


def test_failed_send_marks_connection_dead_and_cleanup_removes_it():
    async def scenario():
        manager = ConnectionManager()
        healthy, broken = FakeWebSocket(), FakeWebSocket(fail_sends=True)
        await manager.connect(healthy, "ok", "rider")
        await manager.connect(broken, "bad", "rider")

        sent = await manager.send_to_user("bad", {"event_type": "ping"})
        removed = await manager.cleanup_stale_connections()
        return manager, sent, removed

    manager, sent, removed = run(scenario())

    assert sent is False
    assert removed == 1
    assert manager.is_connected("ok")
    assert not manager.is_connected("bad")


def test_heartbeat_timeout_is_stale():
    async def scenario():
        manager = ConnectionManager()
        connection = await manager.connect(FakeWebSocket(), "a", "rider")
        connection.last_heartbeat = time.time() - 120
        return await manager.cleanup_stale_connections()

    assert run(scenario()) == 1


def test_send_to_unknown_user():
    assert run(ConnectionManager().send_to_user("ghost", {"event_type": "ping"})) is False


def test_notifier_swallows_manager_errors():
    notifier = Notifier(ExplodingManager())

    assert run(notifier.notify("a", "booking_updated", {})) is False
    assert run(notifier.publish("pool:1", "pool_updated", {})) == 0


def test_pool_updated_payloads(rider, rider2, pickup, drop, now):
    pool = pool_service.create_pool(rider, pickup, drop, 1, 5, now=now)
    pool = pool_service.join_pool(str(pool.id), rider2, pickup, drop, 1, now=now)

    async def scenario():
        manager = ConnectionManager()
        watcher, first, second = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        await manager.connect(watcher, "watcher", "admin")
        await manager.connect(first, str(rider.id), "rider")
        await manager.connect(second, str(rider2.id), "rider")
        await manager.join_room(pool_room(str(pool.id)), "watcher")

        delivered = await Notifier(manager).pool_updated(pool, "Ben joined")
        return delivered, watcher, first, second

    delivered, watcher, first, second = run(scenario())

    assert delivered == 1
    snapshot = watcher.sent[0]
    assert snapshot["event_type"] == "pool_updated"
    assert snapshot["pool_id"] == str(pool.id)
    assert snapshot["message"] == "Ben joined"
    assert snapshot["occupied_seats"] == 2
    assert snapshot["pool"]["id"] == str(pool.id)

    for ws, rider_user in ((first, rider), (second, rider2)):
        assert ws.events() == ["pool_participant_updated"]
        assert ws.sent[0]["rider_id"] == str(rider_user.id)
        assert ws.sent[0]["pool_status"] == pool.status


def test_booking_updated_reaches_both_parties(rider, driver, pickup, drop, now):
    booking = booking_service.create_booking(rider, driver.id, pickup, drop, 5, now=now)

    async def scenario():
        manager = ConnectionManager()
        rider_ws, driver_ws = FakeWebSocket(), FakeWebSocket()
        await manager.connect(rider_ws, str(rider.id), "rider")
        await manager.connect(driver_ws, str(driver.id), "driver")
        await manager.join_room(booking_room(str(booking.id)), str(rider.id))

        delivered = await Notifier(manager).booking_updated(booking)
        return delivered, rider_ws, driver_ws

    delivered, rider_ws, driver_ws = run(scenario())

    assert delivered == 1
    # Room snapshot plus the direct push
    assert rider_ws.events() == ["booking_updated", "booking_updated"]
    assert driver_ws.events() == ["booking_updated"]
    payload = driver_ws.sent[0]
    assert payload["status"] == "pending"
    assert payload["details"] == {"fare": 70, "distance_km": 5}
    assert payload["booking"]["id"] == str(booking.id)


def test_subscribe_pool_checks_membership(rider, rider2, driver, pickup, drop, now):
    pool = pool_service.create_pool(rider, pickup, drop, 1, 5, now=now)

    async def scenario():
        manager = ConnectionManager()
        member = await manager.connect(FakeWebSocket(), str(rider.id), "rider")
        outsider = await manager.connect(FakeWebSocket(), str(rider2.id), "rider")
        open_driver = await manager.connect(FakeWebSocket(), str(driver.id), "driver")
        data = {"pool_id": str(pool.id)}
        return (
            await handle_subscribe_pool(manager, member, data),
            await handle_subscribe_pool(manager, outsider, data),
            await handle_subscribe_pool(manager, open_driver, data),
            await handle_subscribe_pool(manager, member, {}),
            manager.get_room_participants(pool_room(str(pool.id))),
        )

    member_resp, outsider_resp, driver_resp, missing_resp, room = run(scenario())

    assert member_resp["event_type"] == "pool_subscribed"
    assert member_resp["pool"]["id"] == str(pool.id)
    assert outsider_resp["event_type"] == "error"
    assert driver_resp["event_type"] == "pool_subscribed"
    assert missing_resp == {"event_type": "error", "message": "Missing pool_id"}
    assert room == {str(rider.id), str(driver.id)}


def test_subscribe_booking_rejects_strangers(rider, rider2, driver, pickup, drop, now):
    booking = booking_service.create_booking(rider, driver.id, pickup, drop, 5, now=now)

    async def scenario():
        manager = ConnectionManager()
        stranger = await manager.connect(FakeWebSocket(), str(rider2.id), "rider")
        owner = await manager.connect(FakeWebSocket(), str(rider.id), "rider")
        data = {"booking_id": str(booking.id)}
        return (
            await handle_subscribe_booking(manager, stranger, data),
            await handle_subscribe_booking(manager, owner, data),
            await handle_subscribe_booking(manager, owner, {"booking_id": "nope"}),
        )

    stranger_resp, owner_resp, missing = run(scenario())

    assert stranger_resp["event_type"] == "error"
    assert owner_resp["event_type"] == "booking_subscribed"
    assert missing == {"event_type": "error", "message": "Booking not found"}


def test_ping_answers_pong():
    async def scenario():
        manager = ConnectionManager()
        connection = await manager.connect(FakeWebSocket(), "a", "rider")
        return await handle_ping(manager, connection, {})

    assert run(scenario())["event_type"] == "pong"


def test_location_update_reaches_ride_room(rider, rider2, driver, pickup, drop, now):
    booking = booking_service.create_booking(rider, driver.id, pickup, drop, 5, now=now)
    booking_service.accept_booking(str(booking.id), str(driver.id))
    room = booking_room(str(booking.id))

    async def scenario():
        manager = ConnectionManager()
        rider_ws, other_ws, driver_ws = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        await manager.connect(rider_ws, str(rider.id), "rider")
        await manager.connect(other_ws, str(rider2.id), "rider")
        connection = await manager.connect(driver_ws, str(driver.id), "driver")
        await manager.join_room(room, str(rider.id))
        await manager.join_room(room, str(driver.id))

        first = await handle_location_update(
            manager, connection, {"latitude": 12.95, "longitude": 77.60, "heading": 90}
        )
        # Same spot straight away is dropped
        repeat = await handle_location_update(
            manager, connection, {"latitude": 12.95, "longitude": 77.60}
        )
        return first, repeat, rider_ws, other_ws, driver_ws

    first, repeat, rider_ws, other_ws, driver_ws = run(scenario())

    assert first is None and repeat is None
    assert rider_ws.events() == ["driver_location_update"]
    update = rider_ws.sent[0]
    assert update["driver_id"] == str(driver.id)
    assert (update["latitude"], update["longitude"], update["heading"]) == (12.95, 77.60, 90)
    assert other_ws.sent == []
    assert driver_ws.sent == []
    assert User.objects.get(id=driver.id).coordinates == {"lat": 12.95, "lng": 77.60}


def test_location_update_rejects_riders_and_bad_input(rider, driver):
    async def scenario():
        manager = ConnectionManager()
        as_rider = await manager.connect(FakeWebSocket(), str(rider.id), "rider")
        as_driver = await manager.connect(FakeWebSocket(), str(driver.id), "driver")
        return (
            await handle_location_update(manager, as_rider, {"latitude": 1, "longitude": 1}),
            await handle_location_update(manager, as_driver, {"latitude": 1}),
            await handle_location_update(manager, as_driver, {"latitude": 95, "longitude": 1}),
        )

    rider_resp, missing, out_of_range = run(scenario())

    assert rider_resp["message"] == "Only drivers can send location updates"
    assert missing == {"event_type": "error", "message": "Missing latitude or longitude"}
    assert out_of_range == {
        "event_type": "error",
        "message": "Latitude must be between -90 and 90",
    }
    assert User.objects.get(id=driver.id).coordinates == {"lat": 12.9716, "lng": 77.5946}


def test_moving_driver_is_not_throttled():
    async def scenario():
        manager = ConnectionManager()
        return await manager.connect(FakeWebSocket(), "d", "driver")

    connection = run(scenario())
    connection.update_location_state(12.95, 77.60)

    assert connection.should_throttle_location(12.95, 77.60) is True
    assert connection.should_throttle_location(12.951, 77.60) is False  # ~110 m
    connection.last_location_broadcast -= 1000
    assert connection.should_throttle_location(12.95, 77.60) is False
