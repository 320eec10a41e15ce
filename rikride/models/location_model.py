from typing import Optional

from pydantic import BaseModel, Field, field_validator


class GeoPoint(BaseModel):
    """Model for a named coordinate in request bodies"""

    lat: float = Field(..., ge=-90, le=90, description="Latitude coordinate")
    lng: float = Field(..., ge=-180, le=180, description="Longitude coordinate")
    address: Optional[str] = Field(default=None, max_length=200)

    @field_validator("address")
    @classmethod
    def strip_address(cls, v):
        if v is None:
            return v
        v = v.strip()
        return v or None


class NearbyDriversRequest(BaseModel):
    """Request model for finding nearby drivers"""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    radius_km: float = Field(
        default=5.0, ge=0.1, le=50, description="Search radius in kilometers"
    )
