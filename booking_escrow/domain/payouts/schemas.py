"""Payout domain schemas"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from ...statuses import PayoutFailureCode, PayoutStatus


class PayoutResponse(BaseModel):
    """Schema for payout response"""

    id: str
    payment_id: str
    provider_id: str
    amount: Decimal
    gateway_reference: str
    gateway_transfer_reference: Optional[str] = None
    status: PayoutStatus
    attempts: int
    failure_code: Optional[PayoutFailureCode] = None
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
