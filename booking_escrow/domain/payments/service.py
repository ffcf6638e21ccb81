"""Payment service - charges, escrow, cash collection and gateway events"""

import logging
import secrets
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...config import FRONTEND_URL, GATEWAY_CURRENCY
from ...errors import (
    GatewayError,
    InvalidAmount,
    InvalidBookingStatus,
    InvalidPaymentState,
    InvalidTransition,
    NotFound,
    PaymentAlreadyExists,
    StaleState,
)
from ...models_payment import Payment
from ...services.alert_service import (
    CHARGE_AMOUNT_MISMATCH,
    CHARGE_ON_INACTIVE_BOOKING,
    REFUND_FAILED,
    TRANSFER_AFTER_REFUND,
    raise_alert,
)
from ...services.gateway_client import GatewayClient, to_minor_units
from ...statuses import (
    ESCROW_HELD_STATUSES,
    BookingEvent,
    BookingStatus,
    PaymentEvent,
    PaymentMethod,
    PaymentStatus,
    WebhookOutcome,
)
from ..bookings.repository import BookingRepository
from ..bookings.state_machine import can_transition, transition
from ..ledger.service import LedgerService
from ..payouts.repository import PayoutRepository
from .breakdown import to_money
from .repository import PaymentRepository
from .state_machine import can_apply, next_payment_status

logger = logging.getLogger(__name__)

CASH_BOOKING_STATUSES = frozenset({BookingStatus.IN_PROGRESS, BookingStatus.AWAITING_CONFIRMATION})


def generate_reference(prefix: str = "BK") -> str:
    """Unique charge reference sent to the gateway"""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(6)}".upper()


class GatewayEventResult:
    """Outcome of applying one gateway event, plus work to run once it is committed"""

    def __init__(self, outcome: WebhookOutcome, reason: Optional[str] = None):
        self.outcome = outcome
        self.reason = reason
        self.post_commit: list[Callable[[], Awaitable[Any]]] = []

    @classmethod
    def ignored(cls, reason: str) -> "GatewayEventResult":
        return cls(WebhookOutcome.IGNORED, reason)


class PaymentService:
    """Service layer for payment business logic"""

    def __init__(self, db: Session, gateway: Optional[GatewayClient] = None, retry_engine=None):
        self.db = db
        self.gateway = gateway or GatewayClient()
        self.retry_engine = retry_engine
        self.repo = PaymentRepository()
        self.booking_repo = BookingRepository()
        self.payout_repo = PayoutRepository()
        self.ledger = LedgerService(db)

    # ============================================================================
    # CLIENT ACTIONS
    # ============================================================================

    async def initialize_charge(self, booking_id: str, payment_method: Optional[PaymentMethod] = None) -> Payment:
        """
        Create the booking's payment and start the gateway checkout.

        Raises:
            PaymentAlreadyExists: the booking already has a payment (carries its reference)
        """
        booking = self.booking_repo.get_booking_for_update(self.db, booking_id)
        if not booking:
            raise NotFound(f"Booking {booking_id} not found")

        existing = self.repo.get_payment_by_booking(self.db, booking_id)
        if existing:
            self.db.rollback()
            return await self._resume_existing_charge(existing)

        total = to_money(booking.total_amount)
        if total <= 0:
            self.db.rollback()
            raise InvalidAmount(f"Booking total must be greater than zero, got {total}")

        if booking.status != BookingStatus.CONFIRMED:
            self.db.rollback()
            raise InvalidBookingStatus(
                f"Booking {booking_id} is {booking.status.value}; payment requires a confirmed booking"
            )

        method = PaymentMethod(payment_method or booking.payment_method)
        booking.payment_method = method
        platform_fee = to_money(booking.platform_fee)

        payment = Payment(
            booking_id=booking.id,
            amount=total,
            platform_fee=platform_fee,
            escrow_amount=total - platform_fee,
            currency=GATEWAY_CURRENCY,
            gateway_reference=generate_reference("CASH" if method == PaymentMethod.CASH else "BK"),
            payment_method=method,
            status=PaymentStatus.CASH_PENDING if method == PaymentMethod.CASH else PaymentStatus.PENDING,
        )
        self.db.add(payment)
        try:
            self.db.commit()
        except (IntegrityError, StaleDataError) as e:
            self.db.rollback()
            existing = self.repo.get_payment_by_booking(self.db, booking_id)
            if existing:
                logger.info(f"🔒 Payment for booking {booking_id} created concurrently")
                raise PaymentAlreadyExists(existing.id, existing.gateway_reference, existing.authorization_url) from e
            raise StaleState(f"Booking {booking_id} changed during payment, retry the request") from e

        logger.info(
            f"💳 Payment {payment.id} created for booking {booking_id}: {payment.amount} "
            f"(fee={payment.platform_fee}, escrow={payment.escrow_amount}, method={method.value})"
        )

        if method == PaymentMethod.CASH:
            return payment

        await self._request_authorization_url(payment, booking.client.email)
        return payment

    async def _resume_existing_charge(self, payment: Payment) -> Payment:
        """Second InitiatePayment for a booking: hand back the first payment's reference"""
        if (
            payment.payment_method == PaymentMethod.ONLINE
            and payment.status == PaymentStatus.PENDING
            and not payment.authorization_url
        ):
            # The first gateway call never returned; ask again with the same reference
            logger.info(f"🔁 Re-requesting checkout for payment {payment.id} ({payment.gateway_reference})")
            await self._request_authorization_url(payment, payment.booking.client.email)

        raise PaymentAlreadyExists(payment.id, payment.gateway_reference, payment.authorization_url)

    async def _request_authorization_url(self, payment: Payment, email: str) -> None:
        try:
            data = await self.gateway.initialize_charge(
                payment.amount,
                payment.gateway_reference,
                email,
                callback_url=f"{FRONTEND_URL}/bookings/{payment.booking_id}/payment-complete",
                metadata={"booking_id": payment.booking_id, "payment_id": payment.id},
            )
        except GatewayError as e:
            # Payment stays PENDING without a URL; a repeat request reuses the reference
            logger.error(f"❌ Checkout initialization failed for payment {payment.id}: {e.message}")
            raise

        payment.authorization_url = data.get("authorization_url")
        self.db.commit()
        logger.info(f"✅ Checkout ready for payment {payment.id}")

    async def confirm_cash_received(self, booking_id: str) -> Payment:
        """Provider confirms the client paid in cash"""
        booking = self.booking_repo.get_booking_for_update(self.db, booking_id)
        if not booking:
            raise NotFound(f"Booking {booking_id} not found")

        payment = self.repo.get_payment_by_booking(self.db, booking_id, for_update=True)
        if not payment or payment.payment_method != PaymentMethod.CASH:
            self.db.rollback()
            raise InvalidPaymentState(f"Booking {booking_id} has no cash payment")

        if payment.status == PaymentStatus.CASH_RECEIVED:
            self.db.rollback()
            return payment

        if booking.status not in CASH_BOOKING_STATUSES:
            self.db.rollback()
            raise InvalidBookingStatus(
                f"Booking {booking_id} is {booking.status.value}; cash can only be received once work has started"
            )

        try:
            payment.status = next_payment_status(payment.status, PaymentEvent.CASH_RECEIVED)
        except InvalidTransition:
            self.db.rollback()
            raise
        payment.paid_at = datetime.utcnow()
        self._commit()
        logger.info(f"💵 Cash received for booking {booking_id}")
        return payment

    async def recover_payment_status(self, payment_id: str) -> Payment:
        """Ask the gateway about a PENDING charge whose webhook never arrived"""
        payment = self.repo.get_payment(self.db, payment_id)
        if not payment:
            raise NotFound(f"Payment {payment_id} not found")

        if payment.payment_method != PaymentMethod.ONLINE or payment.status != PaymentStatus.PENDING:
            logger.info(f"⏭️ Payment {payment_id} is {payment.status.value}, nothing to recover")
            return payment

        data = await self.gateway.verify_charge(payment.gateway_reference)
        charge_status = data.get("status")
        data.setdefault("reference", payment.gateway_reference)

        if charge_status == "success":
            result = self._on_charge_success(data)
        elif charge_status == "failed":
            result = self._on_charge_failed(data)
        else:
            logger.info(f"⏳ Charge {payment.gateway_reference} still {charge_status}")
            self.db.rollback()
            return payment

        self._commit()
        logger.info(f"🔄 Recovered payment {payment_id}: {result.outcome.value} ({result.reason or charge_status})")
        self.db.refresh(payment)
        return payment

    async def refund_payment(self, payment_id: str, reason: Optional[str] = None) -> Payment:
        """Return escrowed funds to the client (dispute resolution)"""
        payment = self.repo.get_payment(self.db, payment_id)
        if not payment:
            raise NotFound(f"Payment {payment_id} not found")
        if payment.status not in ESCROW_HELD_STATUSES:
            raise InvalidPaymentState(
                f"Payment {payment_id} is {payment.status.value}; only escrowed funds can be refunded"
            )

        try:
            await self.gateway.create_refund(payment.gateway_reference, payment.amount, reason)
        except GatewayError as e:
            raise_alert(
                self.db,
                REFUND_FAILED,
                f"Refund of payment {payment_id} failed: {e.message}",
                booking_id=payment.booking_id,
                payment_id=payment_id,
            )
            self.db.commit()
            raise

        from ..payouts.orchestrator import ReleaseOrchestrator

        payment = self.repo.get_payment_for_update(self.db, payment_id)
        payment.status = next_payment_status(payment.status, PaymentEvent.REFUNDED)
        payout = self.payout_repo.get_payout_by_payment(self.db, payment_id)
        if payout:
            ReleaseOrchestrator(self.db, gateway=self.gateway).cancel_for_refund(payout)
        booking = payment.booking
        self.ledger.record_refund(payment, booking.provider_id, booking.client_id)
        self._commit()
        logger.info(f"↩️ Payment {payment_id} refunded: {payment.amount}")
        return payment

    def cancel_payment(self, payment: Payment) -> None:
        """Booking cancelled before any money moved. Caller commits."""
        payment.status = next_payment_status(payment.status, PaymentEvent.PAYMENT_CANCELLED)
        payment.failure_reason = "Booking cancelled"

    # ============================================================================
    # GATEWAY EVENTS (inside the webhook ingestor's transaction, never commit)
    # ============================================================================

    def apply_gateway_event(self, event_type: str, data: dict) -> GatewayEventResult:
        handlers = {
            "charge.success": self._on_charge_success,
            "charge.failed": self._on_charge_failed,
            "transfer.success": self._on_transfer_success,
            "transfer.failed": self._on_transfer_failed,
            "transfer.reversed": self._on_transfer_failed,
        }
        handler = handlers.get(event_type)
        if not handler:
            logger.info(f"⏭️ Unhandled gateway event type: {event_type}")
            return GatewayEventResult.ignored(f"unhandled event type {event_type}")
        return handler(data)

    def _on_charge_success(self, data: dict) -> GatewayEventResult:
        reference = data.get("reference")
        payment = self.repo.get_payment_by_reference(self.db, reference, for_update=True) if reference else None
        if not payment:
            logger.warning(f"⚠️ charge.success for unknown reference {reference}")
            return GatewayEventResult.ignored("unknown reference")

        if not can_apply(payment.status, PaymentEvent.CHARGE_SUCCEEDED):
            if payment.status == PaymentStatus.FAILED:
                # Money was captured for a payment we already gave up on
                raise_alert(
                    self.db,
                    CHARGE_ON_INACTIVE_BOOKING,
                    f"Charge {reference} succeeded after payment {payment.id} failed "
                    f"({payment.failure_reason or 'no reason'}); refund the client",
                    severity="critical",
                    booking_id=payment.booking_id,
                    payment_id=payment.id,
                    details={"reference": reference, "amount": data.get("amount")},
                )
            logger.warning(f"⚠️ charge.success for payment {payment.id} not applied ({payment.status.value})")
            return GatewayEventResult.ignored(f"payment is {payment.status.value}")

        paid_minor = data.get("amount")
        if paid_minor is not None and int(paid_minor) != to_minor_units(payment.amount):
            raise_alert(
                self.db,
                CHARGE_AMOUNT_MISMATCH,
                f"Charge {reference} paid {paid_minor} minor units, expected {to_minor_units(payment.amount)}",
                severity="critical",
                booking_id=payment.booking_id,
                payment_id=payment.id,
                details={"paid": paid_minor, "expected": to_minor_units(payment.amount)},
            )
            return GatewayEventResult.ignored("amount mismatch")

        payment.status = next_payment_status(payment.status, PaymentEvent.CHARGE_SUCCEEDED)
        payment.paid_at = datetime.utcnow()
        if data.get("id") is not None:
            payment.gateway_transaction_id = str(data["id"])

        booking = self.booking_repo.get_booking_for_update(self.db, payment.booking_id)
        if can_transition(booking.status, BookingEvent.PAYMENT_ESCROWED, payment.status):
            booking.status = transition(booking.status, BookingEvent.PAYMENT_ESCROWED, payment.status)
        else:
            raise_alert(
                self.db,
                CHARGE_ON_INACTIVE_BOOKING,
                f"Payment {payment.id} escrowed while booking {booking.id} is {booking.status.value}",
                severity="warning",
                booking_id=booking.id,
                payment_id=payment.id,
            )

        self.ledger.record_charge(payment, booking.provider_id)
        logger.info(f"🔐 Payment {payment.id} held in escrow for booking {booking.id}")
        return GatewayEventResult(WebhookOutcome.PROCESSED)

    def _on_charge_failed(self, data: dict) -> GatewayEventResult:
        reference = data.get("reference")
        payment = self.repo.get_payment_by_reference(self.db, reference, for_update=True) if reference else None
        if not payment:
            logger.warning(f"⚠️ charge.failed for unknown reference {reference}")
            return GatewayEventResult.ignored("unknown reference")

        if not can_apply(payment.status, PaymentEvent.CHARGE_FAILED):
            logger.warning(f"⚠️ charge.failed for payment {payment.id} ignored ({payment.status.value})")
            return GatewayEventResult.ignored(f"payment is {payment.status.value}")

        payment.status = next_payment_status(payment.status, PaymentEvent.CHARGE_FAILED)
        payment.failure_reason = data.get("gateway_response") or data.get("message") or "Charge failed"

        booking = self.booking_repo.get_booking_for_update(self.db, payment.booking_id)
        if can_transition(booking.status, BookingEvent.PAYMENT_FAILED, payment.status):
            booking.status = transition(booking.status, BookingEvent.PAYMENT_FAILED, payment.status)

        logger.info(f"❌ Payment {payment.id} failed: {payment.failure_reason}")
        return GatewayEventResult(WebhookOutcome.PROCESSED)

    def _find_payout(self, data: dict):
        for key in ("reference", "transfer_code"):
            value = data.get(key)
            if value:
                payout = self.payout_repo.get_payout_by_reference(self.db, value, for_update=True)
                if payout:
                    return payout
        return None

    def _on_transfer_success(self, data: dict) -> GatewayEventResult:
        from ..payouts.orchestrator import ReleaseOrchestrator

        payout = self._find_payout(data)
        if not payout:
            logger.warning(f"⚠️ transfer.success for unknown reference {data.get('reference')}")
            return GatewayEventResult.ignored("unknown reference")

        payment = self.repo.get_payment_for_update(self.db, payout.payment_id)
        if not can_apply(payment.status, PaymentEvent.TRANSFER_SUCCEEDED):
            if payment.status == PaymentStatus.REFUNDED:
                raise_alert(
                    self.db,
                    TRANSFER_AFTER_REFUND,
                    f"Payout {payout.id} was paid out after payment {payment.id} was refunded",
                    severity="critical",
                    booking_id=payment.booking_id,
                    payment_id=payment.id,
                    payout_id=payout.id,
                    details={"transfer_code": data.get("transfer_code"), "amount": data.get("amount")},
                )
            logger.warning(f"⚠️ transfer.success for payout {payout.id} ignored (payment {payment.status.value})")
            return GatewayEventResult.ignored(f"payment is {payment.status.value}")

        payment.status = next_payment_status(payment.status, PaymentEvent.TRANSFER_SUCCEEDED)
        orchestrator = ReleaseOrchestrator(self.db, gateway=self.gateway, retry_engine=self.retry_engine)
        orchestrator.complete_from_webhook(payout, data.get("transfer_code"))

        booking = self.booking_repo.get_booking_for_update(self.db, payment.booking_id)
        if can_transition(booking.status, BookingEvent.PAYOUT_COMPLETED, payment.status):
            booking.status = transition(booking.status, BookingEvent.PAYOUT_COMPLETED, payment.status)
        else:
            logger.warning(f"⚠️ Payout {payout.id} completed while booking {booking.id} is {booking.status.value}")

        self.ledger.record_release(payout)
        logger.info(f"🎉 Payout {payout.id} completed, booking {booking.id} is {booking.status.value}")
        return GatewayEventResult(WebhookOutcome.PROCESSED)

    def _on_transfer_failed(self, data: dict) -> GatewayEventResult:
        from ..payouts.orchestrator import ReleaseOrchestrator
        from ..payouts.retry import RetryEngine

        payout = self._find_payout(data)
        if not payout:
            logger.warning(f"⚠️ transfer failure for unknown reference {data.get('reference')}")
            return GatewayEventResult.ignored("unknown reference")

        reason = data.get("reason") or data.get("message") or "Transfer failed at gateway"
        orchestrator = ReleaseOrchestrator(self.db, gateway=self.gateway, retry_engine=self.retry_engine)
        if not orchestrator.fail_from_webhook(payout, reason):
            logger.warning(f"⚠️ Transfer failure for payout {payout.id} ignored ({payout.status.value})")
            return GatewayEventResult.ignored(f"payout is {payout.status.value}")

        payment = self.repo.get_payment_for_update(self.db, payout.payment_id)
        if can_apply(payment.status, PaymentEvent.TRANSFER_FAILED):
            payment.status = next_payment_status(payment.status, PaymentEvent.TRANSFER_FAILED)

        result = GatewayEventResult(WebhookOutcome.PROCESSED)
        retry_engine = self.retry_engine or RetryEngine(self.db)
        payout_id, attempts = payout.id, payout.attempts
        result.post_commit.append(lambda: retry_engine.schedule_retry(payout_id, attempts))
        logger.warning(f"⚠️ Payout {payout.id} failed at gateway: {reason}")
        return result

    def _commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise StaleState("Payment changed concurrently, retry the request") from e
