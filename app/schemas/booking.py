from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ReserveRequest(BaseModel):
    trip_id: int
    seat_numbers: List[Union[int, str]] = Field(..., min_length=1, description="seat labels, e.g. [1, 2] or ['A1']")
    total_amount: Optional[Decimal] = Field(None, ge=0, description="defaults to trip price x seat count")
    passenger_name: Optional[str] = Field(None, max_length=255)
    passenger_phone: Optional[str] = Field(None, max_length=32)

    @field_validator("seat_numbers")
    @classmethod
    def _as_labels(cls, value):
        return [str(seat).strip() for seat in value]


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    reference: str
    trip_id: int
    user_id: Optional[int] = None
    seat_numbers: List[str]
    passenger_name: Optional[str] = None
    passenger_phone: Optional[str] = None
    total_amount: Decimal
    status: str
    cancel_reason: Optional[str] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class ReservationResponse(BookingResponse):
    seconds_remaining: int


class HoldStatusResponse(BaseModel):
    booking_id: int
    state: str
    status: str
    seconds_remaining: int
    expires_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None


class CancellationResponse(BaseModel):
    booking: BookingResponse
    reason: str
    seats_released: int
    refund_required: bool


class InventoryResponse(BaseModel):
    trip_id: int
    capacity: int
    seats_available: int
    seats_held: int
    held_seat_numbers: List[str]
    consistent: bool


class SweepResponse(BaseModel):
    expired: int


class AuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    actor_id: Optional[int] = None
    action: str
    detail: Optional[dict] = None
    created_at: datetime
