"""
Booking Model - Represents solo ride bookings and their lifecycle
Tracks status from pending to completed/cancelled
"""

from mongoengine import (
    Document,
    StringField,
    ReferenceField,
    DateTimeField,
    FloatField,
    IntField,
    BooleanField,
)

from rikride.models.user_model import User
from rikride.utils.helpers import utc_now

BOOKING_STATUSES = ["pending", "accepted", "in_progress", "completed", "cancelled"]
ACTIVE_BOOKING_STATUSES = ["pending", "accepted", "in_progress"]


class Booking(Document):
    """
    Solo booking between one rider and one driver
    Status flow: pending → accepted → in_progress → completed
    Cancelled is reachable only from pending (rider cancel or driver reject)
    """

    meta = {
        "collection": "bookings",
        "indexes": ["status", "rider", "driver", "created_at"],
    }

    # Participants
    rider = ReferenceField(User, required=True)
    driver = ReferenceField(User, required=True)

    # Location Details
    pickup_address = StringField(max_length=200)
    pickup_latitude = FloatField(required=True)
    pickup_longitude = FloatField(required=True)

    dropoff_address = StringField(max_length=200)
    dropoff_latitude = FloatField(required=True)
    dropoff_longitude = FloatField(required=True)

    # Fare is locked in at booking time from the client-computed distance
    distance_km = FloatField(required=True, min_value=0)
    fare = FloatField(required=True, min_value=0)

    # Status Management
    status = StringField(required=True, choices=BOOKING_STATUSES, default="pending")
    cancelled_by = StringField(choices=["rider", "driver"])
    cancellation_reason = StringField(max_length=500)

    # Payment bookkeeping (cash/UPI only)
    payment_status = StringField(choices=["pending", "completed"], default="pending")
    payment_method = StringField(choices=["cash", "upi"])

    # Rider rates driver
    driver_rating = IntField(min_value=1, max_value=5)
    driver_review = StringField(max_length=500)
    # Driver rates rider
    rider_rating = IntField(min_value=1, max_value=5)
    rider_review = StringField(max_length=500)

    # Set once the completion stats have been applied to both users
    stats_recorded = BooleanField(default=False)

    # Optimistic concurrency token
    version = IntField(default=0, min_value=0)

    # Timestamps for lifecycle tracking
    created_at = DateTimeField(default=utc_now)
    accepted_at = DateTimeField()
    started_at = DateTimeField()
    completed_at = DateTimeField()
    cancelled_at = DateTimeField()
    updated_at = DateTimeField(default=utc_now)

    @property
    def rider_id(self) -> str:
        return str(self.rider.id)

    @property
    def driver_id(self) -> str:
        return str(self.driver.id)

    def to_dict(self):
        """Convert booking to dictionary"""
        return {
            "id": str(self.id),
            "rider": {
                "id": str(self.rider.id),
                "name": self.rider.full_name,
                "phone": self.rider.phone,
            },
            "driver": {
                "id": str(self.driver.id),
                "name": self.driver.full_name,
                "phone": self.driver.phone,
                "vehicle_number": self.driver.vehicle_number,
                "vehicle_model": self.driver.vehicle_model,
                "rating": self.driver.rating,
            },
            "pickup": {
                "address": self.pickup_address,
                "lat": self.pickup_latitude,
                "lng": self.pickup_longitude,
            },
            "dropoff": {
                "address": self.dropoff_address,
                "lat": self.dropoff_latitude,
                "lng": self.dropoff_longitude,
            },
            "distance_km": self.distance_km,
            "fare": self.fare,
            "status": self.status,
            "cancelled_by": self.cancelled_by,
            "cancellation_reason": self.cancellation_reason,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "driver_rating": self.driver_rating,
            "driver_review": self.driver_review,
            "rider_rating": self.rider_rating,
            "rider_review": self.rider_review,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "cancelled_at": (
                self.cancelled_at.isoformat() if self.cancelled_at else None
            ),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __str__(self):
        return f"Booking({self.id}, {self.status})"
