import re
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Ugandan mobile-money numbers: 256 7XX XXX XXX
PHONE_PATTERN = re.compile(r"^256[7][0-9]{8}$")


class PaymentInitiateRequest(BaseModel):
    booking_id: int
    provider: str = Field(..., description="one of: mtn, airtel")
    phone_number: str

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("mtn", "airtel"):
            raise ValueError("provider must be one of: mtn, airtel")
        return value

    @field_validator("phone_number")
    @classmethod
    def _uganda_msisdn(cls, value: str) -> str:
        value = value.strip().replace(" ", "").lstrip("+")
        if not PHONE_PATTERN.match(value):
            raise ValueError("Invalid phone number format. Use format: 256701234567")
        return value


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    provider: str
    provider_ref: str
    amount: Decimal
    currency: str
    phone_number: str
    status: str
    detail: Optional[dict] = None
    initiated_at: datetime
    settled_at: Optional[datetime] = None


class WebhookAck(BaseModel):
    received: bool
    duplicate: bool = False
    status: Optional[str] = None
