"""
Real-time Event Models
Structured payloads pushed to riders and drivers over WebSocket
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from rikride.utils.helpers import utc_now


class PoolEvent(BaseModel):
    """Emitted when a pool ride changes state"""

    pool_id: str
    status: str
    message: Optional[str] = None
    occupied_seats: Optional[int] = None
    available_seats: Optional[int] = None
    timestamp: datetime = Field(default_factory=utc_now)


class ParticipantEvent(BaseModel):
    """Emitted to a rider when their own participant record changes"""

    pool_id: str
    rider_id: str
    participant_status: str
    pool_status: str
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class BookingEvent(BaseModel):
    """Emitted when a solo booking changes state"""

    booking_id: str
    status: str
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)
