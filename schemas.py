"""
Database Schemas for Campus Shuttle Tracker (MongoDB via Pydantic models)
Each Pydantic model represents a collection; field names are stored in
snake_case and exposed over the API in camelCase.

- User        -> "users"
- Bus         -> "buses"
- BusLocation -> "busLocations"
- Schedule    -> "schedules"
"""

from enum import Enum
from typing import Optional
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Role(str, Enum):
    ADMIN = "admin"
    DRIVER = "driver"
    STUDENT = "student"


class Day(str, Enum):
    WEEKDAY = "weekday"
    SUNDAY = "sunday"


# Small integer bus ids used by drivers and schedules map onto these labels.
BUS_NUMBERS = {1: "B1", 2: "B2"}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PublicUser(CamelModel):
    """User profile without credentials; also the shape of a session record."""
    id: str
    name: str
    email: str
    username: str
    role: Role
    bus_id: Optional[int] = None


class User(PublicUser):
    password_hash: str = Field(..., description="bcrypt hash of the password")

    def public(self) -> PublicUser:
        return PublicUser(**self.model_dump(exclude={"password_hash"}))


class LatLng(CamelModel):
    latitude: str
    longitude: str


class Bus(CamelModel):
    id: str
    bus_number: str = Field(..., description="Human label, B1 or B2")
    is_active: bool = False
    last_location: Optional[LatLng] = None
    last_updated: Optional[datetime] = None


class BusLocation(CamelModel):
    """Append-only log of positions reported by drivers"""
    id: str
    bus_id: str = Field(..., description="Id of the Bus document")
    latitude: str
    longitude: str
    timestamp: datetime
    is_active: bool = True


class Schedule(CamelModel):
    id: str
    bus_id: int = Field(..., description="Small integer bus id (1 -> B1, 2 -> B2)")
    day: Day
    departure_time: str
    arrival_time: str
    start_location: str
    end_location: str
    route: str = ""
    is_arrival: bool = Field(False, description="True for arrivals at campus")
