"""Payment domain schemas"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from ...statuses import PaymentMethod, PaymentStatus


class PaymentResponse(BaseModel):
    """Schema for payment response"""

    id: str
    booking_id: str
    amount: Decimal
    escrow_amount: Decimal
    platform_fee: Decimal
    currency: str
    gateway_reference: str
    status: PaymentStatus
    payment_method: PaymentMethod
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
