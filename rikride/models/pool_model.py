"""
Pool Ride Model - Shared rides with several riders and one driver
One document per pool; participants are embedded and never deleted
"""

from datetime import datetime
from typing import List, Optional

from mongoengine import (
    Document,
    EmbeddedDocument,
    EmbeddedDocumentField,
    EmbeddedDocumentListField,
    StringField,
    DateTimeField,
    FloatField,
    IntField,
    BooleanField,
)

from rikride.utils.helpers import utc_now

# Pool status flow:
# waiting → ready → driver_assigned → pickup_in_progress → in_progress → completed
# cancelled / expired are terminal
POOL_STATUSES = [
    "waiting",
    "ready",
    "driver_assigned",
    "pickup_in_progress",
    "in_progress",
    "completed",
    "cancelled",
    "expired",
]
OPEN_POOL_STATUSES = ["waiting", "ready"]
ACTIVE_POOL_STATUSES = [
    "waiting",
    "ready",
    "driver_assigned",
    "pickup_in_progress",
    "in_progress",
]
DRIVER_ACTIVE_POOL_STATUSES = ["driver_assigned", "pickup_in_progress", "in_progress"]
TERMINAL_POOL_STATUSES = ["completed", "cancelled", "expired"]

PARTICIPANT_STATUSES = ["joined", "confirmed", "picked_up", "dropped_off", "cancelled"]


class GeoLocation(EmbeddedDocument):
    """Named geo-point"""

    lat = FloatField(required=True, min_value=-90, max_value=90)
    lng = FloatField(required=True, min_value=-180, max_value=180)
    address = StringField(max_length=200)

    def to_dict(self):
        return {"lat": self.lat, "lng": self.lng, "address": self.address}


class PoolParticipant(EmbeddedDocument):
    """A rider's membership in a pool ride"""

    rider_id = StringField(required=True)
    rider_name = StringField(max_length=100)
    rider_phone = StringField(max_length=15)

    # Per-rider points, may deviate from the pool's general area
    pickup_location = EmbeddedDocumentField(GeoLocation, required=True)
    drop_location = EmbeddedDocumentField(GeoLocation, required=True)

    seats_needed = IntField(required=True, min_value=1)
    fare_per_seat = FloatField(required=True, min_value=0)
    total_fare = FloatField(required=True, min_value=0)

    status = StringField(required=True, choices=PARTICIPANT_STATUSES, default="joined")

    # Route sequence, assigned at join time
    pickup_order = IntField(required=True, min_value=1)
    dropoff_order = IntField(required=True, min_value=1)

    joined_at = DateTimeField(default=utc_now)
    picked_up_at = DateTimeField()
    dropped_off_at = DateTimeField()

    @property
    def is_active(self) -> bool:
        return self.status != "cancelled"

    def to_dict(self):
        return {
            "rider_id": self.rider_id,
            "rider_name": self.rider_name,
            "rider_phone": self.rider_phone,
            "pickup_location": self.pickup_location.to_dict(),
            "drop_location": self.drop_location.to_dict(),
            "seats_needed": self.seats_needed,
            "fare_per_seat": self.fare_per_seat,
            "total_fare": self.total_fare,
            "status": self.status,
            "pickup_order": self.pickup_order,
            "dropoff_order": self.dropoff_order,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
            "picked_up_at": (
                self.picked_up_at.isoformat() if self.picked_up_at else None
            ),
            "dropped_off_at": (
                self.dropped_off_at.isoformat() if self.dropped_off_at else None
            ),
        }


class PoolRide(Document):
    """
    Pool ride aggregate root
    Seat counts are always recomputed from the non-cancelled participants
    """

    meta = {
        "collection": "pool_rides",
        "indexes": ["status", "created_by", "driver_id", "created_at", "expires_at"],
    }

    created_by = StringField(required=True)

    # Route
    general_pickup_area = EmbeddedDocumentField(GeoLocation, required=True)
    general_drop_area = EmbeddedDocumentField(GeoLocation, required=True)
    route_direction = StringField(max_length=420)

    # Timing
    departure_time = DateTimeField(required=True)
    is_immediate = BooleanField(default=True)
    expires_at = DateTimeField(required=True)

    # Capacity
    max_seats = IntField(required=True, min_value=1)
    occupied_seats = IntField(required=True, min_value=0)
    available_seats = IntField(required=True, min_value=0)

    # Fare
    base_fare = FloatField(required=True, min_value=0)
    fare_per_seat = FloatField(required=True, min_value=0)
    pool_discount = FloatField(required=True, min_value=0, max_value=1)

    status = StringField(required=True, choices=POOL_STATUSES, default="waiting")
    participants = EmbeddedDocumentListField(PoolParticipant)

    # Driver binding, null until assigned
    driver_id = StringField()
    driver_name = StringField(max_length=100)
    driver_phone = StringField(max_length=15)
    vehicle_number = StringField(max_length=20)
    booking_id = StringField()

    match_radius = FloatField(required=True, min_value=0)

    # Optimistic concurrency token
    version = IntField(default=0, min_value=0)

    created_at = DateTimeField(default=utc_now)
    updated_at = DateTimeField(default=utc_now)

    def active_participants(self) -> List[PoolParticipant]:
        """Participants that count toward seats and completion"""
        return [p for p in self.participants if p.is_active]

    def find_active_participant(self, rider_id: str) -> Optional[PoolParticipant]:
        for participant in self.participants:
            if participant.rider_id == rider_id and participant.is_active:
                return participant
        return None

    def has_active_participant(self, rider_id: str) -> bool:
        return self.find_active_participant(rider_id) is not None

    def recompute_seats(self) -> None:
        """Rebuild seat accounting from the participant list"""
        occupied = sum(p.seats_needed for p in self.active_participants())
        self.occupied_seats = occupied
        self.available_seats = max(self.max_seats - occupied, 0)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) > self.expires_at

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_POOL_STATUSES

    def to_dict(self):
        """Convert pool ride to dictionary"""
        return {
            "id": str(self.id),
            "created_by": self.created_by,
            "route": {
                "general_pickup_area": self.general_pickup_area.to_dict(),
                "general_drop_area": self.general_drop_area.to_dict(),
                "route_direction": self.route_direction,
            },
            "departure_time": (
                self.departure_time.isoformat() if self.departure_time else None
            ),
            "is_immediate": self.is_immediate,
            "max_seats": self.max_seats,
            "occupied_seats": self.occupied_seats,
            "available_seats": self.available_seats,
            "base_fare": self.base_fare,
            "fare_per_seat": self.fare_per_seat,
            "pool_discount": self.pool_discount,
            "status": self.status,
            "participants": [p.to_dict() for p in self.participants],
            "driver": (
                {
                    "id": self.driver_id,
                    "name": self.driver_name,
                    "phone": self.driver_phone,
                    "vehicle_number": self.vehicle_number,
                }
                if self.driver_id
                else None
            ),
            "booking_id": self.booking_id,
            "match_radius": self.match_radius,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __str__(self):
        return f"PoolRide({self.id}, {self.status})"
