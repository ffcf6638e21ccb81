"""Payment router - operator endpoints for charges"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...database import get_db
from ...errors import NotFound
from ...services.gateway_client import GatewayClient, get_gateway_client
from ..payouts.retry import RetryEngine, get_retry_scheduler
from .repository import PaymentRepository
from .schemas import PaymentResponse
from .service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    scheduler=Depends(get_retry_scheduler),
) -> PaymentService:
    """Dependency injection for PaymentService"""
    return PaymentService(db, gateway=gateway, retry_engine=RetryEngine(db, scheduler=scheduler))


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: str, db: Session = Depends(get_db)):
    payment = PaymentRepository.get_payment(db, payment_id)
    if not payment:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


@router.post("/{payment_id}/recover", response_model=PaymentResponse)
async def recover_payment(payment_id: str, service: PaymentService = Depends(get_payment_service)):
    """
    Verify a PENDING charge with the gateway.

    Used when the charge webhook never arrived; the result is applied exactly
    as the webhook would have applied it.
    """
    return await service.recover_payment_status(payment_id)
