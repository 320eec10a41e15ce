from datetime import datetime

import mongomock
import pytest
from fastapi.testclient import TestClient
from mongoengine import connect, disconnect

from rikride.models.booking_model import Booking
from rikride.models.pool_model import GeoLocation, PoolRide
from rikride.models.user_model import User

# Off-peak local time so fares are base + per-km
NOON = datetime(2024, 3, 4, 12, 0, 0)


@pytest.fixture(autouse=True)
def db():
    connect(
        "rikride-test",
        host="mongodb://localhost",
        mongo_client_class=mongomock.MongoClient,
        alias="default",
    )
    yield
    for document in (User, Booking, PoolRide):
        document.drop_collection()
    disconnect(alias="default")


def make_user(name, role="rider", **extra):
    user = User(
        full_name=name,
        email=f"{name.lower().replace(' ', '.')}@campus.edu",
        phone="9800000000",
        role=role,
        **extra,
    )
    user.save()
    return user


@pytest.fixture
def rider():
    return make_user("Asha Rao")


@pytest.fixture
def rider2():
    return make_user("Ben Okafor")


@pytest.fixture
def rider3():
    return make_user("Chen Wei")


@pytest.fixture
def driver():
    return make_user(
        "Dev Patel",
        role="driver",
        vehicle_number="KA01AB1234",
        vehicle_model="Bajaj RE",
        is_verified=True,
        is_available=True,
        location=[77.5946, 12.9716],
    )


@pytest.fixture
def driver2():
    return make_user(
        "Eli Mensah",
        role="driver",
        vehicle_number="KA01CD5678",
        is_verified=True,
        is_available=True,
    )


@pytest.fixture
def admin():
    return make_user("Fatima Noor", role="admin")


@pytest.fixture
def pickup():
    return GeoLocation(lat=12.90, lng=77.59, address="Main Gate")


@pytest.fixture
def drop():
    return GeoLocation(lat=12.93, lng=77.61, address="Metro Station")


@pytest.fixture
def now():
    return NOON


@pytest.fixture
def client():
    from rikride.main import app

    return TestClient(app)


@pytest.fixture
def user_factory():
    return make_user
