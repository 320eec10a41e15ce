"""
User Model - Represents riders (students), drivers and admins
Carries role-based access and the aggregate ride statistics
"""

from mongoengine import (
    Document,
    StringField,
    EmailField,
    BooleanField,
    DateTimeField,
    FloatField,
    IntField,
    PointField,
)

from rikride.utils.helpers import utc_now


class User(Document):
    """
    User model for riders, drivers and admins
    Role determines access level: 'rider', 'driver', 'admin'
    """

    meta = {
        "collection": "users",
        "indexes": ["email", "phone", "role"],
        "strict": False,
    }

    # Basic Information
    full_name = StringField(required=True, max_length=100)
    email = EmailField(required=True, unique=True)
    phone = StringField(required=True, max_length=15)

    # Role and Status
    role = StringField(
        required=True, choices=["rider", "driver", "admin"], default="rider"
    )
    is_active = BooleanField(default=True)
    is_verified = BooleanField(default=False)  # Drivers need document approval

    # Driver-specific fields
    vehicle_number = StringField(max_length=20)
    vehicle_model = StringField(max_length=50)
    is_available = BooleanField(default=False)  # For drivers only

    location = PointField(
        auto_index=False
    )  # GeoJSON Point: {"type": "Point", "coordinates": [longitude, latitude]}

    # Ratings and statistics
    rating = FloatField(default=5.0)
    total_ratings = IntField(default=0, min_value=0)
    total_rides = IntField(default=0, min_value=0)
    total_earnings = FloatField(default=0.0, min_value=0)

    # Timestamps
    created_at = DateTimeField(default=utc_now)
    updated_at = DateTimeField(default=utc_now)

    @property
    def coordinates(self):
        """Current location as {"lat", "lng"}, or None if unknown"""
        if not self.location:
            return None
        # GeoJSON stores [longitude, latitude]
        coords = (
            self.location.get("coordinates")
            if isinstance(self.location, dict)
            else self.location
        )
        if not coords:
            return None
        return {"lat": coords[1], "lng": coords[0]}

    def to_dict(self):
        """Convert user to dictionary"""
        user_dict = {
            "id": str(self.id),
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "is_active": self.is_active,
            "is_verified": self.is_verified,
            "rating": self.rating,
            "total_ratings": self.total_ratings,
            "total_rides": self.total_rides,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

        # Driver-specific fields
        if self.role == "driver":
            user_dict.update(
                {
                    "vehicle_number": self.vehicle_number,
                    "vehicle_model": self.vehicle_model,
                    "is_available": self.is_available,
                    "total_earnings": self.total_earnings,
                    "location": self.coordinates,
                }
            )

        return user_dict

    def __str__(self):
        return f"User({self.full_name}, {self.role})"
