from datetime import timedelta

import pytest

from rikride import config
from rikride.models.pool_model import GeoLocation, PoolRide
from rikride.services import pool_service
from rikride.services.errors import (
    DuplicateParticipantError,
    InputValidationError,
    InsufficientSeats,
    InvalidStateTransitionError,
    PoolExpired,
    PoolNotFound,
    PoolNotJoinable,
    RiderNotInPool,
    UnauthorizedError,
)


def near(point, offset):
    return GeoLocation(lat=point.lat + offset, lng=point.lng + offset, address=point.address)


def assert_seats_consistent(pool):
    fresh = PoolRide.objects.get(id=pool.id)
    occupied = sum(p.seats_needed for p in fresh.participants if p.status != "cancelled")
    assert fresh.occupied_seats == occupied
    assert fresh.occupied_seats + fresh.available_seats == fresh.max_seats
    assert fresh.occupied_seats >= 0
    assert fresh.available_seats >= 0


@pytest.fixture
def pool(rider, pickup, drop, now):
    return pool_service.create_pool(rider, pickup, drop, 1, 5, now=now)


# =============================================================================
# CREATE
# =============================================================================


def test_create_pool(rider, pickup, drop, now):
    pool = pool_service.create_pool(rider, pickup, drop, 1, 5, now=now)

    assert pool.status == "waiting"
    assert pool.created_by == str(rider.id)
    assert pool.max_seats == config.POOL_MAX_SEATS
    assert pool.occupied_seats == 1
    assert pool.available_seats == config.POOL_MAX_SEATS - 1
    assert pool.base_fare == 70
    assert pool.fare_per_seat == 46
    assert pool.pool_discount == config.POOL_DISCOUNT
    assert pool.expires_at == now + timedelta(minutes=config.POOL_EXPIRY_MINUTES)
    assert pool.route_direction == "Main Gate → Metro Station"
    assert pool.version == 0

    creator = pool.participants[0]
    assert creator.rider_id == str(rider.id)
    assert creator.rider_name == "Asha Rao"
    assert creator.status == "joined"
    assert creator.pickup_order == creator.dropoff_order == 1
    assert creator.total_fare == 46


def test_create_pool_rejects_bad_seat_counts(rider, pickup, drop, now):
    with pytest.raises(InputValidationError):
        pool_service.create_pool(rider, pickup, drop, 0, 5, now=now)

    with pytest.raises(InsufficientSeats):
        pool_service.create_pool(rider, pickup, drop, config.POOL_MAX_SEATS + 1, 5, now=now)

    assert PoolRide.objects.count() == 0


def test_create_pool_accepts_plain_dicts(rider, now):
    pool = pool_service.create_pool(
        rider, {"lat": 12.9, "lng": 77.59}, {"lat": 12.93, "lng": 77.61}, 2, 3, now=now
    )

    assert pool.occupied_seats == 2
    assert pool.route_direction == "Pickup → Drop"


# =============================================================================
# JOIN / LEAVE
# =============================================================================


def test_join_promotes_to_ready_at_minimum(pool, rider2, pickup, drop, now):
    pool = pool_service.join_pool(pool.id, rider2, near(pickup, 0.001), drop, 1, now=now)

    assert pool.status == "ready"
    assert pool.occupied_seats == 2
    assert pool.version == 1

    joined = pool.participants[1]
    assert joined.rider_id == str(rider2.id)
    assert joined.pickup_order == joined.dropoff_order == 2
    assert joined.fare_per_seat == pool.fare_per_seat
    assert joined.pickup_location.lat == pytest.approx(12.901)


def test_join_stays_waiting_below_minimum(monkeypatch, pool, rider2, pickup, drop, now):
    monkeypatch.setattr(config, "POOL_MIN_PARTICIPANTS", 3)

    pool = pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)

    assert pool.status == "waiting"
    assert pool.available_seats == 1


def test_join_promotes_to_ready_when_full(monkeypatch, rider, rider2, pickup, drop, now):
    monkeypatch.setattr(config, "POOL_MIN_PARTICIPANTS", 5)
    pool = pool_service.create_pool(rider, pickup, drop, 1, 5, now=now)

    pool = pool_service.join_pool(pool.id, rider2, pickup, drop, 2, now=now)

    assert pool.available_seats == 0
    assert pool.status == "ready"


def test_join_rejects_more_seats_than_available(rider, rider2, pickup, drop, now):
    pool = pool_service.create_pool(rider, pickup, drop, 2, 5, now=now)

    with pytest.raises(InsufficientSeats) as exc:
        pool_service.join_pool(pool.id, rider2, pickup, drop, 2, now=now)

    assert exc.value.message == "Only 1 seat(s) available"
    assert exc.value.kind == "capacity_exceeded"
    assert_seats_consistent(pool)
    assert PoolRide.objects.get(id=pool.id).occupied_seats == 2


def test_join_rejects_duplicate_rider(pool, rider, pickup, drop, now):
    with pytest.raises(DuplicateParticipantError):
        pool_service.join_pool(pool.id, rider, pickup, drop, 1, now=now)


def test_join_rejects_expired_pool(pool, rider2, pickup, drop, now):
    later = now + timedelta(minutes=config.POOL_EXPIRY_MINUTES, seconds=1)

    with pytest.raises(PoolExpired) as exc:
        pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=later)

    assert exc.value.status_code == 410


def test_join_rejects_non_waiting_pool(pool, rider2, rider3, pickup, drop, now):
    pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)

    with pytest.raises(PoolNotJoinable):
        pool_service.join_pool(pool.id, rider3, pickup, drop, 1, now=now)


def test_join_rejects_zero_seats(pool, rider2, pickup, drop, now):
    with pytest.raises(InputValidationError):
        pool_service.join_pool(pool.id, rider2, pickup, drop, 0, now=now)


def test_join_unknown_pool(rider2, pickup, drop, now):
    with pytest.raises(PoolNotFound):
        pool_service.join_pool("5f1d7f1e2a3b4c5d6e7f8a9b", rider2, pickup, drop, 1, now=now)

    with pytest.raises(PoolNotFound):
        pool_service.join_pool("not-an-id", rider2, pickup, drop, 1, now=now)


def test_leave_returns_pool_to_waiting(pool, rider2, pickup, drop, now):
    pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)

    pool = pool_service.leave_pool(pool.id, rider2.id, now=now)

    assert pool.status == "waiting"
    assert pool.occupied_seats == 1
    assert pool.participants[1].status == "cancelled"
    assert_seats_consistent(pool)


def test_leave_last_rider_cancels_pool(pool, rider, now):
    pool = pool_service.leave_pool(pool.id, rider.id, now=now)

    assert pool.status == "cancelled"
    assert pool.occupied_seats == 0
    assert pool.available_seats == pool.max_seats


def test_rider_can_rejoin_after_leaving(pool, rider2, pickup, drop, now):
    pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)
    pool_service.leave_pool(pool.id, rider2.id, now=now)

    pool = pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)

    assert len(pool.participants) == 3
    assert pool.participants[2].pickup_order == 3
    assert len(pool.active_participants()) == 2


def test_leave_requires_membership(pool, rider2, now):
    with pytest.raises(RiderNotInPool):
        pool_service.leave_pool(pool.id, rider2.id, now=now)


def test_leave_locked_after_driver_assigned(pool, rider2, driver, pickup, drop, now):
    pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)
    pool_service.accept_pool_ride(pool.id, driver, now=now)

    with pytest.raises(InvalidStateTransitionError):
        pool_service.leave_pool(pool.id, rider2.id, now=now)


def test_seat_conservation_over_join_leave_sequence(
    monkeypatch, rider, rider2, rider3, pickup, drop, now
):
    monkeypatch.setattr(config, "POOL_MAX_SEATS", 4)
    monkeypatch.setattr(config, "POOL_MIN_PARTICIPANTS", 4)
    pool = pool_service.create_pool(rider, pickup, drop, 1, 5, now=now)

    steps = [
        lambda: pool_service.join_pool(pool.id, rider2, pickup, drop, 2, now=now),
        lambda: pool_service.leave_pool(pool.id, rider.id, now=now),
        lambda: pool_service.join_pool(pool.id, rider3, pickup, drop, 1, now=now),
        lambda: pool_service.join_pool(pool.id, rider, pickup, drop, 1, now=now),
        lambda: pool_service.leave_pool(pool.id, rider2.id, now=now),
    ]
    for step in steps:
        step()
        assert_seats_consistent(pool)

    with pytest.raises(InsufficientSeats):
        pool_service.join_pool(pool.id, rider2, pickup, drop, 3, now=now)
    assert_seats_consistent(pool)


# =============================================================================
# READY
# =============================================================================


def test_mark_ready_by_creator(monkeypatch, rider, rider2, pickup, drop, now):
    monkeypatch.setattr(config, "POOL_MAX_SEATS", 4)
    monkeypatch.setattr(config, "POOL_MIN_PARTICIPANTS", 3)
    pool = pool_service.create_pool(rider, pickup, drop, 1, 5, now=now)
    pool = pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)
    assert pool.status == "waiting"

    # Minimum lowered while the pool waits for a third rider
    monkeypatch.setattr(config, "POOL_MIN_PARTICIPANTS", 2)
    ready = pool_service.mark_pool_ready(pool.id, rider.id, now=now)

    assert ready.status == "ready"
    assert ready.available_seats == 2


def test_mark_ready_twice_is_rejected(pool, rider, rider2, pickup, drop, now):
    pool = pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)
    assert pool.status == "ready"

    with pytest.raises(InvalidStateTransitionError):
        pool_service.mark_pool_ready(pool.id, rider.id, now=now)

    assert PoolRide.objects.get(id=pool.id).version == pool.version


def test_mark_ready_guards(monkeypatch, pool, rider, rider2, pickup, drop, now):
    with pytest.raises(InvalidStateTransitionError):
        pool_service.mark_pool_ready(pool.id, rider.id, now=now)

    monkeypatch.setattr(config, "POOL_MIN_PARTICIPANTS", 3)
    pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)

    with pytest.raises(UnauthorizedError):
        pool_service.mark_pool_ready(pool.id, rider2.id, now=now)

    with pytest.raises(InvalidStateTransitionError):
        pool_service.mark_pool_ready(pool.id, rider.id, now=now)

    monkeypatch.setattr(config, "POOL_MIN_PARTICIPANTS", 2)
    with pytest.raises(PoolExpired):
        pool_service.mark_pool_ready(pool.id, rider.id, now=now + timedelta(hours=1))


# =============================================================================
# DRIVER FLOW
# =============================================================================


def test_end_to_end_pool_flow(monkeypatch, rider, rider2, driver, pickup, drop, now):
    monkeypatch.setattr(config, "POOL_MAX_SEATS", 4)

    pool = pool_service.create_pool(rider, pickup, drop, 1, 5, now=now)
    assert (pool.status, pool.occupied_seats, pool.available_seats) == ("waiting", 1, 3)

    pool = pool_service.join_pool(pool.id, rider2, near(pickup, 0.002), drop, 1, now=now)
    assert (pool.status, pool.occupied_seats, pool.available_seats) == ("ready", 2, 2)

    pool = pool_service.accept_pool_ride(pool.id, driver, now=now)
    assert pool.status == "driver_assigned"
    assert pool.driver_id == str(driver.id)
    assert pool.driver_name == "Dev Patel"
    assert pool.vehicle_number == "KA01AB1234"
    assert [p.status for p in pool.participants] == ["confirmed", "confirmed"]

    pool = pool_service.pickup_participant(pool.id, rider.id, driver.id, now=now)
    assert pool.status == "pickup_in_progress"
    assert pool.participants[0].picked_up_at == now

    pool = pool_service.pickup_participant(pool.id, rider2.id, driver.id, now=now)
    assert pool.status == "in_progress"

    pool = pool_service.dropoff_participant(pool.id, rider.id, driver.id, now=now)
    assert pool.status == "in_progress"
    assert pool.participants[0].status == "dropped_off"

    pool = pool_service.dropoff_participant(pool.id, rider2.id, driver.id, now=now)
    assert pool.status == "completed"
    assert all(p.dropped_off_at == now for p in pool.participants)


def test_accept_guards(pool, rider, driver, driver2, now):
    with pytest.raises(UnauthorizedError):
        pool_service.accept_pool_ride(pool.id, rider, now=now)

    with pytest.raises(PoolExpired):
        pool_service.accept_pool_ride(pool.id, driver, now=now + timedelta(hours=1))

    pool_service.accept_pool_ride(pool.id, driver, now=now)

    with pytest.raises(InvalidStateTransitionError) as exc:
        pool_service.accept_pool_ride(pool.id, driver2, now=now)
    assert exc.value.message == "This pool ride has already been accepted"


def test_pickup_guards(pool, rider, rider2, driver, driver2, pickup, drop, now):
    pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)

    with pytest.raises(UnauthorizedError):
        pool_service.pickup_participant(pool.id, rider.id, driver.id, now=now)

    pool_service.accept_pool_ride(pool.id, driver, now=now)

    with pytest.raises(UnauthorizedError):
        pool_service.pickup_participant(pool.id, rider.id, driver2.id, now=now)

    pool_service.pickup_participant(pool.id, rider.id, driver.id, now=now)

    with pytest.raises(InvalidStateTransitionError):
        pool_service.pickup_participant(pool.id, rider.id, driver.id, now=now)

    # Dropoffs wait until everyone is on board
    with pytest.raises(InvalidStateTransitionError):
        pool_service.dropoff_participant(pool.id, rider.id, driver.id, now=now)


def test_pickup_unknown_rider(pool, rider2, driver, now):
    pool_service.accept_pool_ride(pool.id, driver, now=now)

    with pytest.raises(RiderNotInPool):
        pool_service.pickup_participant(pool.id, rider2.id, driver.id, now=now)


def test_single_rider_pool_goes_straight_to_in_progress(pool, rider, driver, now):
    pool_service.accept_pool_ride(pool.id, driver, now=now)

    pool = pool_service.pickup_participant(pool.id, rider.id, driver.id, now=now)

    assert pool.status == "in_progress"


def test_completed_pool_is_final(pool, rider, rider2, rider3, driver, pickup, drop, now):
    pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)
    pool_service.accept_pool_ride(pool.id, driver, now=now)
    for r in (rider, rider2):
        pool_service.pickup_participant(pool.id, r.id, driver.id, now=now)
    for r in (rider, rider2):
        pool_service.dropoff_participant(pool.id, r.id, driver.id, now=now)

    with pytest.raises(PoolNotJoinable):
        pool_service.join_pool(pool.id, rider3, pickup, drop, 1, now=now)
    with pytest.raises(InvalidStateTransitionError):
        pool_service.leave_pool(pool.id, rider.id, now=now)
    with pytest.raises(InvalidStateTransitionError):
        pool_service.pickup_participant(pool.id, rider.id, driver.id, now=now)
    with pytest.raises(InvalidStateTransitionError):
        pool_service.dropoff_participant(pool.id, rider2.id, driver.id, now=now)

    assert PoolRide.objects.get(id=pool.id).status == "completed"


def test_cancelled_pool_is_final(pool, rider, rider2, driver, pickup, drop, now):
    pool_service.leave_pool(pool.id, rider.id, now=now)

    with pytest.raises(PoolNotJoinable):
        pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)
    with pytest.raises(InvalidStateTransitionError):
        pool_service.accept_pool_ride(pool.id, driver, now=now)
    with pytest.raises(InvalidStateTransitionError):
        pool_service.leave_pool(pool.id, rider.id, now=now)


# =============================================================================
# CONCURRENCY
# =============================================================================


def test_racing_riders_cannot_oversell_last_seat(
    monkeypatch, rider, rider2, rider3, pickup, drop, now
):
    pool = pool_service.create_pool(rider, pickup, drop, 2, 5, now=now)
    original_load = pool_service._load_pool
    raced = []

    def load_then_lose_race(pool_id):
        snapshot = original_load(pool_id)
        if not raced:
            raced.append(True)
            # Another rider takes the last seat after our read
            pool_service.join_pool(pool_id, rider3, pickup, drop, 1, now=now)
        return snapshot

    monkeypatch.setattr(pool_service, "_load_pool", load_then_lose_race)

    with pytest.raises(PoolNotJoinable):
        pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)

    fresh = PoolRide.objects.get(id=pool.id)
    assert fresh.occupied_seats == 3
    assert [p.rider_id for p in fresh.participants] == [str(rider.id), str(rider3.id)]


def test_racing_drivers_only_one_wins(monkeypatch, pool, driver, driver2, now):
    original_load = pool_service._load_pool
    raced = []

    def load_then_lose_race(pool_id):
        snapshot = original_load(pool_id)
        if not raced:
            raced.append(True)
            pool_service.accept_pool_ride(pool_id, driver2, now=now)
        return snapshot

    monkeypatch.setattr(pool_service, "_load_pool", load_then_lose_race)

    with pytest.raises(InvalidStateTransitionError):
        pool_service.accept_pool_ride(pool.id, driver, now=now)

    assert PoolRide.objects.get(id=pool.id).driver_id == str(driver2.id)


# =============================================================================
# EXPIRY
# =============================================================================


def test_expire_pools_sweep(rider, rider2, pickup, drop, now):
    old = pool_service.create_pool(rider, pickup, drop, 1, 5, now=now)
    fresh = pool_service.create_pool(rider2, pickup, drop, 1, 5, now=now + timedelta(minutes=10))
    done = pool_service.create_pool(rider2, pickup, drop, 1, 5, now=now)
    pool_service.leave_pool(done.id, rider2.id, now=now)

    sweep_time = now + timedelta(minutes=20)
    assert pool_service.expire_pools(now=sweep_time) == 1
    assert pool_service.expire_pools(now=sweep_time) == 0

    assert PoolRide.objects.get(id=old.id).status == "expired"
    assert PoolRide.objects.get(id=fresh.id).status == "waiting"
    assert PoolRide.objects.get(id=done.id).status == "cancelled"


# =============================================================================
# QUERIES
# =============================================================================


def test_rider_and_driver_queries(pool, rider, rider2, driver, pickup, drop, now):
    other = pool_service.create_pool(rider2, pickup, drop, 1, 5, now=now)

    assert [p.id for p in pool_service.get_rider_active_pools(rider.id)] == [pool.id]
    assert {p.id for p in pool_service.get_driver_pool_requests(now=now)} == {pool.id, other.id}
    assert pool_service.get_driver_pool_requests(now=now + timedelta(hours=1)) == []
    assert pool_service.get_driver_active_pool(driver.id) is None

    pool_service.accept_pool_ride(pool.id, driver, now=now)
    assert pool_service.get_driver_active_pool(driver.id).id == pool.id
    assert [p.id for p in pool_service.get_driver_pool_requests(now=now)] == [other.id]

    pool_service.leave_pool(other.id, rider2.id, now=now)
    assert pool_service.get_rider_active_pools(rider2.id) == []
    assert [p.id for p in pool_service.get_rider_pool_history(rider2.id)] == [other.id]
    assert pool_service.get_rider_pool_history(rider.id) == []


def test_build_route_plan_orders_stops(monkeypatch, rider, rider2, rider3, pickup, drop, now):
    monkeypatch.setattr(config, "POOL_MAX_SEATS", 4)
    monkeypatch.setattr(config, "POOL_MIN_PARTICIPANTS", 4)
    pool = pool_service.create_pool(rider, pickup, drop, 1, 5, now=now)
    pool_service.join_pool(pool.id, rider2, near(pickup, 0.001), near(drop, 0.001), 1, now=now)
    pool_service.join_pool(pool.id, rider3, near(pickup, 0.002), near(drop, 0.002), 1, now=now)
    pool = pool_service.leave_pool(pool.id, rider2.id, now=now)

    plan = pool_service.build_route_plan(pool)

    assert plan["pool_id"] == str(pool.id)
    assert [s["rider_id"] for s in plan["pickups"]] == [str(rider.id), str(rider3.id)]
    assert [s["order"] for s in plan["pickups"]] == [1, 3]
    assert [s["rider_id"] for s in plan["dropoffs"]] == [str(rider.id), str(rider3.id)]
    assert plan["pickups"][1]["location"]["lat"] == pytest.approx(12.902)
    assert not any(s["done"] for s in plan["pickups"])


def test_can_view_pool(
    pool, rider, rider2, rider3, driver, driver2, admin, pickup, drop, now
):
    pool = pool_service.join_pool(pool.id, rider2, pickup, drop, 1, now=now)
    pool = pool_service.leave_pool(pool.id, rider2.id, now=now)

    def visible(user, **kwargs):
        return pool_service.can_view_pool(pool, user.id, user.role, **kwargs)

    assert visible(rider) and visible(admin)
    assert visible(rider2)  # left, but took part
    assert not visible(rider3)
    assert visible(driver)
    assert not visible(driver, open_to_drivers=False)

    pool = pool_service.accept_pool_ride(pool.id, driver, now=now)

    assert visible(driver, open_to_drivers=False)
    assert not visible(driver2)
