"""Booking router - FastAPI endpoints for the booking lifecycle"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...database import get_db
from ...errors import PaymentAlreadyExists
from ...services.gateway_client import GatewayClient, get_gateway_client
from ..payouts.retry import RetryEngine, get_retry_scheduler
from .schemas import (
    BookingCreate,
    BookingResponse,
    BookingStatusResponse,
    DisputeRequest,
    InitiatePaymentRequest,
    PaymentInitiatedResponse,
    PriceUpdate,
    ResolveDisputeRequest,
)
from .service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def get_booking_service(
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    scheduler=Depends(get_retry_scheduler),
) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db, gateway=gateway, retry_engine=RetryEngine(db, scheduler=scheduler))


# ============================================================================
# CLIENT ACTIONS
# ============================================================================


@router.post("", response_model=BookingResponse)
async def create_booking(data: BookingCreate, service: BookingService = Depends(get_booking_service)):
    """Request a booking with a provider"""
    return service.create_booking(data)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: str, service: BookingService = Depends(get_booking_service)):
    return service.get_booking(booking_id)


@router.get("/{booking_id}/status", response_model=BookingStatusResponse)
async def get_booking_status(booking_id: str, service: BookingService = Depends(get_booking_service)):
    return service.status_snapshot(booking_id)


@router.post("/{booking_id}/pay", response_model=PaymentInitiatedResponse)
async def initiate_payment(
    booking_id: str,
    data: Optional[InitiatePaymentRequest] = None,
    service: BookingService = Depends(get_booking_service),
):
    """
    Start payment for a confirmed booking.

    A repeated request returns the existing payment's reference instead of
    creating a second charge.
    """
    already_exists = False
    try:
        payment = await service.initiate_payment(booking_id, data.payment_method if data else None)
        payment_id, reference, authorization_url = payment.id, payment.gateway_reference, payment.authorization_url
    except PaymentAlreadyExists as e:
        already_exists = True
        payment_id, reference, authorization_url = e.payment_id, e.gateway_reference, e.authorization_url

    return PaymentInitiatedResponse(
        **service.status_snapshot(booking_id),
        payment_id=payment_id,
        gateway_reference=reference,
        authorization_url=authorization_url,
        already_exists=already_exists,
    )


@router.post("/{booking_id}/confirm-completion", response_model=BookingStatusResponse)
async def confirm_completion(booking_id: str, service: BookingService = Depends(get_booking_service)):
    """Client confirms the job is done; releases escrow to the provider"""
    await service.confirm_completion(booking_id)
    return service.status_snapshot(booking_id)


@router.post("/{booking_id}/cancel", response_model=BookingStatusResponse)
async def cancel_booking(booking_id: str, service: BookingService = Depends(get_booking_service)):
    service.cancel(booking_id)
    return service.status_snapshot(booking_id)


@router.post("/{booking_id}/dispute", response_model=BookingStatusResponse)
async def file_dispute(
    booking_id: str,
    data: DisputeRequest,
    service: BookingService = Depends(get_booking_service),
):
    service.file_dispute(booking_id, data.reason)
    return service.status_snapshot(booking_id)


# ============================================================================
# PROVIDER ACTIONS
# ============================================================================


@router.post("/{booking_id}/accept", response_model=BookingStatusResponse)
async def accept_booking(booking_id: str, service: BookingService = Depends(get_booking_service)):
    service.accept(booking_id)
    return service.status_snapshot(booking_id)


@router.post("/{booking_id}/reject", response_model=BookingStatusResponse)
async def reject_booking(booking_id: str, service: BookingService = Depends(get_booking_service)):
    service.reject(booking_id)
    return service.status_snapshot(booking_id)


@router.put("/{booking_id}/price", response_model=BookingResponse)
async def update_price(
    booking_id: str,
    data: PriceUpdate,
    service: BookingService = Depends(get_booking_service),
):
    """Revise the quote before the client pays"""
    return service.update_price(booking_id, data.total_amount)


@router.post("/{booking_id}/start", response_model=BookingStatusResponse)
async def start_booking(booking_id: str, service: BookingService = Depends(get_booking_service)):
    service.start(booking_id)
    return service.status_snapshot(booking_id)


@router.post("/{booking_id}/complete", response_model=BookingStatusResponse)
async def complete_booking(booking_id: str, service: BookingService = Depends(get_booking_service)):
    service.complete(booking_id)
    return service.status_snapshot(booking_id)


@router.post("/{booking_id}/cash-received", response_model=BookingStatusResponse)
async def cash_received(booking_id: str, service: BookingService = Depends(get_booking_service)):
    """Provider confirms the client paid in cash"""
    await service.mark_cash_received(booking_id)
    return service.status_snapshot(booking_id)


# ============================================================================
# OPERATOR ACTIONS
# ============================================================================


@router.post("/{booking_id}/verify-cash", response_model=BookingStatusResponse)
async def verify_cash(booking_id: str, service: BookingService = Depends(get_booking_service)):
    await service.verify_cash(booking_id)
    return service.status_snapshot(booking_id)


@router.post("/{booking_id}/resolve-dispute", response_model=BookingStatusResponse)
async def resolve_dispute(
    booking_id: str,
    data: ResolveDisputeRequest,
    service: BookingService = Depends(get_booking_service),
):
    await service.resolve_dispute(booking_id, data.resolution, data.note)
    return service.status_snapshot(booking_id)
