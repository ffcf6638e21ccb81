"""Booking service - Business logic for the booking lifecycle"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...errors import AmountLocked, InvalidBookingStatus, InvalidPaymentState, InvalidTransition, NotFound, StaleState
from ...models import Booking
from ...models_payment import Payment
from ...services.gateway_client import GatewayClient
from ...statuses import ESCROW_HELD_STATUSES, BookingEvent, BookingStatus, PaymentMethod, PaymentStatus
from ..payments.breakdown import calculate_breakdown
from ..payments.repository import PaymentRepository
from ..payments.service import PaymentService
from ..payouts.orchestrator import ReleaseOrchestrator
from ..payouts.repository import PayoutRepository
from ..payouts.retry import RetryEngine
from .repository import BookingRepository
from .schemas import BookingCreate
from .state_machine import transition

logger = logging.getLogger(__name__)


class BookingService:
    """Service layer for booking business logic"""

    def __init__(self, db: Session, gateway: Optional[GatewayClient] = None, retry_engine: Optional[RetryEngine] = None):
        self.db = db
        self.repo = BookingRepository()
        self.payment_repo = PaymentRepository()
        self.payout_repo = PayoutRepository()
        self.gateway = gateway or GatewayClient()
        self.retry_engine = retry_engine or RetryEngine(db)
        self.payments = PaymentService(db, gateway=self.gateway, retry_engine=self.retry_engine)
        self.orchestrator = ReleaseOrchestrator(db, gateway=self.gateway, retry_engine=self.retry_engine)

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    def create_booking(self, data: BookingCreate) -> Booking:
        """Client requests a booking; the provider accepts or rejects it"""
        if not self.repo.get_user(self.db, data.client_id):
            raise NotFound(f"Client {data.client_id} not found")
        if not self.repo.get_provider(self.db, data.provider_id):
            raise NotFound(f"Provider {data.provider_id} not found")

        breakdown = calculate_breakdown(data.total_amount)
        booking = self.repo.create_booking(
            self.db,
            client_id=data.client_id,
            provider_id=data.provider_id,
            service_id=data.service_id,
            scheduled_date=data.scheduled_date,
            duration_minutes=data.duration_minutes,
            address=data.address,
            total_amount=breakdown.total_amount,
            platform_fee=breakdown.platform_fee,
            payment_method=data.payment_method,
        )
        logger.info(f"📥 Booking {booking.id} created: {booking.total_amount} ({booking.payment_method.value})")
        return booking

    def status_snapshot(self, booking_id: str) -> dict:
        """booking/payment/payout status triple returned by every action"""
        booking = self.get_booking(booking_id)
        payment = self.payment_repo.get_payment_by_booking(self.db, booking_id)
        payout = self.payout_repo.get_payout_by_payment(self.db, payment.id) if payment else None
        return {
            "booking_id": booking.id,
            "booking_status": booking.status,
            "payment_status": payment.status if payment else None,
            "payout_status": payout.status if payout else None,
        }

    # ============================================================================
    # LIFECYCLE
    # ============================================================================

    def _apply(
        self,
        booking_id: str,
        event: BookingEvent,
        mutate: Optional[Callable[[Booking, Optional[Payment]], None]] = None,
    ) -> Booking:
        """Validate an event against the state machine and persist it in one transaction"""
        booking = self.repo.get_booking_for_update(self.db, booking_id)
        if not booking:
            raise NotFound(f"Booking {booking_id} not found")
        payment = self.payment_repo.get_payment_by_booking(self.db, booking_id, for_update=True)

        try:
            new_status = transition(
                booking.status,
                event,
                payment.status if payment else None,
                dispute_resolved=booking.dispute_resolved_at is not None,
            )
        except InvalidTransition:
            self.db.rollback()
            raise

        previous = booking.status
        if new_status != previous:
            booking.status = new_status
        if mutate:
            mutate(booking, payment)

        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise StaleState(f"Booking {booking_id} changed concurrently, retry the request") from e

        logger.info(f"📋 Booking {booking_id}: {event.value} {previous.value} -> {new_status.value}")
        return booking

    def update_price(self, booking_id: str, total_amount) -> Booking:
        """Provider revises the quote. Pricing is locked once a payment exists."""
        booking = self.repo.get_booking_for_update(self.db, booking_id)
        if not booking:
            raise NotFound(f"Booking {booking_id} not found")
        if booking.status not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
            self.db.rollback()
            raise InvalidBookingStatus(f"Booking {booking_id} is {booking.status.value}; its price can no longer change")

        breakdown = calculate_breakdown(total_amount)
        try:
            booking.total_amount = breakdown.total_amount
            booking.platform_fee = breakdown.platform_fee
        except AmountLocked:
            self.db.rollback()
            raise

        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise StaleState(f"Booking {booking_id} changed concurrently, retry the request") from e

        logger.info(f"💲 Booking {booking_id} repriced: {booking.total_amount} (fee={booking.platform_fee})")
        return booking

    def accept(self, booking_id: str) -> Booking:
        return self._apply(booking_id, BookingEvent.PROVIDER_ACCEPT)

    def reject(self, booking_id: str) -> Booking:
        return self._apply(booking_id, BookingEvent.PROVIDER_REJECT)

    def start(self, booking_id: str) -> Booking:
        return self._apply(booking_id, BookingEvent.PROVIDER_START)

    def complete(self, booking_id: str) -> Booking:
        return self._apply(booking_id, BookingEvent.PROVIDER_COMPLETE)

    def cancel(self, booking_id: str) -> Booking:
        def cancel_payment(booking: Booking, payment: Optional[Payment]) -> None:
            if payment:
                self.payments.cancel_payment(payment)

        return self._apply(booking_id, BookingEvent.CLIENT_CANCEL, cancel_payment)

    def file_dispute(self, booking_id: str, reason: str) -> Booking:
        def record_reason(booking: Booking, payment: Optional[Payment]) -> None:
            booking.dispute_reason = reason

        booking = self._apply(booking_id, BookingEvent.DISPUTE_FILED, record_reason)
        logger.warning(f"⚖️ Dispute filed on booking {booking_id}: {reason}")
        return booking

    async def confirm_completion(self, booking_id: str) -> Booking:
        """
        Client confirms the work is done.

        Online bookings start the escrow release and stay AWAITING_CONFIRMATION
        until the gateway confirms the transfer. Cash bookings complete at once.
        """

        def mark_confirmed(booking: Booking, payment: Optional[Payment]) -> None:
            if booking.client_confirmed_at is None:
                booking.client_confirmed_at = datetime.utcnow()

        booking = self._apply(booking_id, BookingEvent.CLIENT_CONFIRM, mark_confirmed)

        if booking.payment_method == PaymentMethod.ONLINE:
            await self.orchestrator.release(booking_id)
        return self.get_booking(booking_id)

    async def initiate_payment(self, booking_id: str, payment_method: Optional[PaymentMethod] = None) -> Payment:
        return await self.payments.initialize_charge(booking_id, payment_method)

    async def mark_cash_received(self, booking_id: str) -> Payment:
        return await self.payments.confirm_cash_received(booking_id)

    async def verify_cash(self, booking_id: str):
        """Operator confirms collected cash; records the payout and completes the booking"""
        payment = self.payment_repo.get_payment_by_booking(self.db, booking_id)
        if not payment or payment.payment_method != PaymentMethod.CASH:
            raise InvalidPaymentState(f"Booking {booking_id} has no cash payment")
        if payment.status not in (PaymentStatus.CASH_RECEIVED, PaymentStatus.CASH_VERIFIED):
            raise InvalidPaymentState(f"Cash for booking {booking_id} has not been received yet")
        return await self.orchestrator.release(booking_id)

    async def resolve_dispute(self, booking_id: str, resolution: str, note: Optional[str] = None) -> Booking:
        """Operator settles a dispute by refunding the client or paying the provider"""
        booking = self.get_booking(booking_id)
        # Fail fast on an illegal resolution before any money moves
        transition(
            booking.status,
            BookingEvent.DISPUTE_RESOLVED,
            dispute_resolved=booking.dispute_resolved_at is not None,
        )

        payment = self.payment_repo.get_payment_by_booking(self.db, booking_id)
        if payment and payment.status in ESCROW_HELD_STATUSES:
            if resolution == "refund_client":
                await self.payments.refund_payment(payment.id, reason=note or booking.dispute_reason)
            else:
                await self.orchestrator.release(booking_id, resume_failed=True)

        def mark_resolved(booking: Booking, payment: Optional[Payment]) -> None:
            booking.dispute_resolution = resolution
            booking.dispute_resolved_at = datetime.utcnow()

        booking = self._apply(booking_id, BookingEvent.DISPUTE_RESOLVED, mark_resolved)
        logger.info(f"⚖️ Dispute on booking {booking_id} resolved: {resolution}")
        return booking
