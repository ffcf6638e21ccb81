"""Booking domain schemas - Pydantic models for validation"""

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, field_validator

from ...statuses import BookingStatus, PaymentMethod, PaymentStatus, PayoutStatus


class BookingCreate(BaseModel):
    """Schema for creating a booking request"""

    client_id: str
    provider_id: str
    service_id: str
    scheduled_date: datetime
    duration_minutes: int = 60
    total_amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    address: Optional[str] = None

    @field_validator("total_amount")
    @classmethod
    def validate_total_amount(cls, v):
        if v <= 0:
            raise ValueError("total_amount must be greater than zero")
        return v

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, v):
        if v <= 0:
            raise ValueError("duration_minutes must be positive")
        return v


class PriceUpdate(BaseModel):
    """Provider's revised quote for a booking"""

    total_amount: Decimal

    @field_validator("total_amount")
    @classmethod
    def validate_total_amount(cls, v):
        if v <= 0:
            raise ValueError("total_amount must be greater than zero")
        return v


class InitiatePaymentRequest(BaseModel):
    payment_method: Optional[PaymentMethod] = None


class DisputeRequest(BaseModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("A dispute reason is required")
        return v


class ResolveDisputeRequest(BaseModel):
    resolution: Literal["refund_client", "release_to_provider"]
    note: Optional[str] = None


class BookingStatusResponse(BaseModel):
    """Every booking action returns the state of all three records"""

    booking_id: str
    booking_status: BookingStatus
    payment_status: Optional[PaymentStatus] = None
    payout_status: Optional[PayoutStatus] = None


class PaymentInitiatedResponse(BookingStatusResponse):
    payment_id: str
    gateway_reference: str
    authorization_url: Optional[str] = None
    already_exists: bool = False


class BookingResponse(BaseModel):
    """Schema for booking response"""

    id: str
    client_id: str
    provider_id: str
    service_id: str
    scheduled_date: datetime
    duration_minutes: int
    total_amount: Decimal
    platform_fee: Decimal
    payment_method: PaymentMethod
    status: BookingStatus
    address: Optional[str] = None
    client_confirmed_at: Optional[datetime] = None
    dispute_reason: Optional[str] = None
    dispute_resolution: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
