from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, Field, model_validator

from .intervals import as_utc

NOTES_MAX_LENGTH = 500
DESCRIPTION_MAX_LENGTH = 500

UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class BookingStatus(StrEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELED = "CANCELED"
    COMPLETED = "COMPLETED"


EventType = Literal["booking.created", "booking.updated", "booking.confirmed", "booking.canceled"]


class BookingCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    resource_id: str = Field(..., min_length=1)
    start_time: UtcDatetime
    end_time: UtcDatetime
    notes: str = Field(default="", max_length=NOTES_MAX_LENGTH)


class BookingUpdate(BaseModel):
    start_time: UtcDatetime | None = None
    end_time: UtcDatetime | None = None
    notes: str | None = Field(default=None, max_length=NOTES_MAX_LENGTH)


class Booking(BaseModel):
    booking_id: str
    user_id: str
    resource_id: str
    start_time: UtcDatetime
    end_time: UtcDatetime
    status: BookingStatus = BookingStatus.PENDING
    notes: str = Field(default="", max_length=NOTES_MAX_LENGTH)
    created_at: UtcDatetime
    updated_at: UtcDatetime
    canceled_at: UtcDatetime | None = None

    @model_validator(mode="after")
    def _check_interval(self) -> Booking:
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    def is_active(self, now: datetime) -> bool:
        return self.status == BookingStatus.CONFIRMED and self.start_time < now < self.end_time

    def is_upcoming(self, now: datetime) -> bool:
        return self.status in (BookingStatus.PENDING, BookingStatus.CONFIRMED) and now < self.start_time


class BookingConflict(BaseModel):
    booking_id: str
    start_time: datetime
    end_time: datetime
    message: str

    @classmethod
    def from_booking(cls, booking: Booking) -> BookingConflict:
        return cls(
            booking_id=booking.booking_id,
            start_time=booking.start_time,
            end_time=booking.end_time,
            message=f"Booking {booking.booking_id} conflicts with requested time",
        )


class AvailabilityCheckRequest(BaseModel):
    resource_id: str = Field(..., min_length=1)
    start_time: UtcDatetime
    end_time: UtcDatetime


class AvailabilityCheck(BaseModel):
    available: bool
    conflicts: list[BookingConflict] = Field(default_factory=list)


class WeeklySlotIn(BaseModel):
    # 0 = Sunday ... 6 = Saturday
    day_of_week: int = Field(..., ge=0, le=6)
    start_time: str
    end_time: str


class WeeklySlot(WeeklySlotIn):
    resource_id: str
    is_active: bool = True


class AvailabilityWindow(BaseModel):
    resource_id: str
    date: date
    start_time: datetime
    end_time: datetime
    is_booked: bool = False
    booking_id: str | None = None


class BookingFilter(BaseModel):
    user_id: str | None = None
    resource_id: str | None = None
    status: BookingStatus | None = None
    # inclusive calendar days, UTC
    start_date: date | None = None
    end_date: date | None = None
    # exact instants: start_time > starts_after, end_time <= ends_by
    starts_after: UtcDatetime | None = None
    ends_by: UtcDatetime | None = None


class ResourceType(StrEnum):
    ROOM = "room"
    EQUIPMENT = "equipment"
    VEHICLE = "vehicle"
    SPACE = "space"


class ResourceCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    type: ResourceType
    description: str = Field(default="", max_length=DESCRIPTION_MAX_LENGTH)
    capacity: int = Field(..., ge=1)
    location: str = Field(..., min_length=1, max_length=200)
    properties: dict[str, str] = Field(default_factory=dict)


class ResourceUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=100)
    type: ResourceType | None = None
    description: str | None = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)
    capacity: int | None = Field(default=None, ge=1)
    location: str | None = Field(default=None, min_length=1, max_length=200)
    properties: dict[str, str] | None = None
    is_active: bool | None = None


class Resource(ResourceCreate):
    resource_id: str
    is_active: bool = True
    created_at: UtcDatetime
    updated_at: UtcDatetime


class ResourceFilter(BaseModel):
    type: ResourceType | None = None
    # case-insensitive substring
    location: str | None = None
    min_capacity: int | None = Field(default=None, ge=1)


class BookingEvent(BaseModel):
    type: EventType
    booking_id: str
    user_id: str
    timestamp: datetime
    payload: Booking
