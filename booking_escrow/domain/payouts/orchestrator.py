"""
Release Orchestrator

Moves escrowed funds to the provider once the client confirms completion.
Each step is idempotent so release() can be re-invoked at any point after a
crash, and every gateway call happens after the preceding state is committed.

1. Validate the payment can be released
2. Create the Payout (PENDING) and move the Payment to PROCESSING_RELEASE together
3. Make sure the provider has a gateway transfer recipient
4. Claim the payout and call the gateway transfer
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...config import PAYOUT_MAX_ATTEMPTS
from ...errors import (
    GatewayError,
    InvalidPaymentState,
    InvalidTransition,
    MissingBankDetails,
    NotFound,
    StaleState,
)
from ...models import Booking
from ...models_payment import Payment, Payout
from ...security_utils import decrypt_value
from ...services.alert_service import PAYOUT_REJECTED, RECIPIENT_CREATION_FAILED, raise_alert
from ...services.gateway_client import GatewayClient
from ...statuses import (
    ESCROW_HELD_STATUSES,
    BookingEvent,
    BookingStatus,
    PaymentEvent,
    PaymentStatus,
    PayoutFailureCode,
    PayoutStatus,
)
from ..bookings.repository import BookingRepository
from ..bookings.state_machine import transition
from ..payments.repository import PaymentRepository
from ..payments.state_machine import next_payment_status
from .repository import PayoutRepository
from .retry import RetryEngine

logger = logging.getLogger(__name__)


def payout_reference(payment_id: str) -> str:
    """Transfer reference derived from the payment, identical for every attempt and every worker"""
    return f"PO-{payment_id}"


class ReleaseOrchestrator:
    """Sole writer of Payout rows"""

    def __init__(
        self,
        db: Session,
        gateway: Optional[GatewayClient] = None,
        retry_engine: Optional[RetryEngine] = None,
        max_attempts: int = PAYOUT_MAX_ATTEMPTS,
    ):
        self.db = db
        self.gateway = gateway or GatewayClient()
        self.retry_engine = retry_engine or RetryEngine(db, max_attempts=max_attempts)
        self.max_attempts = max_attempts
        self.booking_repo = BookingRepository()
        self.payment_repo = PaymentRepository()
        self.payout_repo = PayoutRepository()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def release(self, booking_id: str, resume_failed: bool = False) -> Payout:
        """
        Release a booking's escrow (or verify its cash payment). Safe to call repeatedly.

        Args:
            booking_id: Booking whose payment is released
            resume_failed: Also re-drive a payout that is waiting on a retry
                (used once a dispute is settled in the provider's favour)
        """
        payout = self._prepare_payout(booking_id)

        if payout.status in (PayoutStatus.PROCESSING, PayoutStatus.COMPLETED):
            logger.info(f"⏭️ Payout {payout.id} already {payout.status.value}, nothing to do")
            return payout

        if payout.status == PayoutStatus.FAILED and not resume_failed:
            # Either parked for an operator or waiting on a scheduled retry
            logger.info(f"⏭️ Payout {payout.id} is FAILED (failure_code={payout.failure_code}), leaving to retries")
            return payout

        if payout.permanently_failed:
            return await self.retry_payout_manually(payout.id, allow_disputed=True)

        return await self.attempt_transfer(payout.id, allow_disputed=resume_failed)

    async def attempt_transfer(self, payout_id: str, allow_disputed: bool = False) -> Payout:
        """
        One transfer attempt. Used by release() and by every retry.

        The claim (status PROCESSING, attempts + 1) is an atomic conditional
        update, so two workers can never both send the same transfer.
        """
        payout = self.payout_repo.get_payout(self.db, payout_id)
        if not payout:
            raise NotFound(f"Payout {payout_id} not found")

        if payout.status in (PayoutStatus.PROCESSING, PayoutStatus.COMPLETED) or payout.permanently_failed:
            logger.info(f"⏭️ Payout {payout_id} is {payout.status.value}, skipping transfer")
            return payout

        booking = self.booking_repo.get_booking(self.db, payout.payment.booking_id)
        if booking.status == BookingStatus.DISPUTED and booking.dispute_resolved_at is None and not allow_disputed:
            # Funds stay in escrow until the dispute is settled
            payout.next_retry_at = None
            self._commit()
            logger.warning(f"⚖️ Payout {payout_id} held: booking {booking.id} is under dispute")
            return payout

        recipient_code = await self._ensure_recipient(payout)

        if not self.payout_repo.claim_for_transfer(self.db, payout_id, self.max_attempts):
            self.db.rollback()
            payout = self.payout_repo.get_payout_for_update(self.db, payout_id)
            if (
                payout.status == PayoutStatus.FAILED
                and payout.failure_code is None
                and payout.attempts >= self.max_attempts
            ):
                self.retry_engine.mark_permanently_failed(payout, payout.last_error or "retry attempts exhausted")
                self.db.commit()
            else:
                self.db.rollback()
            logger.info(f"⏭️ Payout {payout_id} not claimable ({payout.status.value}), skipping transfer")
            return payout

        payout = self.payout_repo.get_payout_for_update(self.db, payout_id)
        payment = self.payment_repo.get_payment_for_update(self.db, payout.payment_id)

        if payment.status in ESCROW_HELD_STATUSES:
            payment.status = next_payment_status(payment.status, PaymentEvent.RELEASE_STARTED)
        elif payment.status != PaymentStatus.PROCESSING_RELEASE:
            # Refunded or released by another path while this payout waited
            payout.status = PayoutStatus.FAILED
            payout.failure_code = PayoutFailureCode.TRANSFER_PERMANENTLY_FAILED
            payout.last_error = f"Payment is {payment.status.value}, transfer abandoned"
            self._commit()
            logger.warning(f"⚠️ Payout {payout_id} abandoned: payment {payment.id} is {payment.status.value}")
            return payout

        attempt = payout.attempts
        self._commit()

        logger.info(f"💸 Payout {payout_id} attempt {attempt}/{self.max_attempts}: {payout.amount}")
        try:
            result = await self.gateway.create_transfer(
                payout.amount,
                recipient_code,
                payout.gateway_reference,
                reason=f"Payout for booking {payment.booking_id}",
            )
        except GatewayError as e:
            if not e.transient:
                return self._record_rejection(payout_id, e)
            payout = self._record_transient_failure(payout_id, e)
            if payout.status == PayoutStatus.FAILED and payout.failure_code is None:
                await self.retry_engine.schedule_retry(payout_id, attempt)
                self.db.refresh(payout)
            return payout

        payout = self.payout_repo.get_payout_for_update(self.db, payout_id)
        transfer_code = result.get("transfer_code")
        if transfer_code and not payout.gateway_transfer_reference:
            payout.gateway_transfer_reference = transfer_code
        self._commit()
        logger.info(f"✅ Transfer accepted for payout {payout_id} ({transfer_code}), awaiting gateway confirmation")
        return payout

    async def retry_payout_manually(self, payout_id: str, allow_disputed: bool = False) -> Payout:
        """Operator action: give a failed payout a fresh attempt budget and try again"""
        payout = self.payout_repo.get_payout_for_update(self.db, payout_id)
        if not payout:
            raise NotFound(f"Payout {payout_id} not found")
        if payout.status != PayoutStatus.FAILED:
            self.db.rollback()
            raise InvalidTransition(payout.status.value, "ManualRetry", "only failed payouts can be retried")

        payment = self.payment_repo.get_payment_for_update(self.db, payout.payment_id)
        if payment.status not in ESCROW_HELD_STATUSES:
            self.db.rollback()
            raise InvalidPaymentState(
                f"Payment {payment.id} is {payment.status.value}; funds are no longer held in escrow"
            )

        logger.info(f"🔧 Manual retry for payout {payout_id} (previous attempts: {payout.attempts})")
        payout.attempts = 0
        payout.failure_code = None
        payout.next_retry_at = None
        self._commit()
        return await self.attempt_transfer(payout_id, allow_disputed=allow_disputed)

    async def resume_stalled(self, payout_id: str) -> Payout:
        """
        Re-drive a payout abandoned by a crashed worker. A PROCESSING payout the
        gateway never acknowledged is resent with the same reference, which the
        gateway deduplicates.
        """
        payout = self.payout_repo.get_payout_for_update(self.db, payout_id)
        if not payout:
            raise NotFound(f"Payout {payout_id} not found")

        if payout.status == PayoutStatus.PROCESSING and not payout.gateway_transfer_reference:
            payout.status = PayoutStatus.FAILED
            payout.last_error = "Transfer outcome unknown after worker stall"
            payment = self.payment_repo.get_payment_for_update(self.db, payout.payment_id)
            if payment.status == PaymentStatus.PROCESSING_RELEASE:
                payment.status = next_payment_status(payment.status, PaymentEvent.TRANSFER_FAILED)
            self._commit()
            logger.warning(f"🔄 Payout {payout_id} stalled in PROCESSING, resending")
        else:
            self.db.rollback()

        if payout.status == PayoutStatus.FAILED and payout.failure_code is None and payout.attempts >= self.max_attempts:
            payout = self.payout_repo.get_payout_for_update(self.db, payout_id)
            self.retry_engine.mark_permanently_failed(payout, payout.last_error or "retry attempts exhausted")
            self._commit()
            return payout

        return await self.attempt_transfer(payout_id)

    # ------------------------------------------------------------------
    # Webhook helpers (called inside the ingestor's transaction, never commit)
    # ------------------------------------------------------------------

    def complete_from_webhook(self, payout: Payout, transfer_code: Optional[str] = None) -> bool:
        """Mark a payout COMPLETED. Returns False when it already was."""
        if payout.status == PayoutStatus.COMPLETED:
            return False
        payout.status = PayoutStatus.COMPLETED
        payout.completed_at = datetime.utcnow()
        payout.failure_code = None
        payout.next_retry_at = None
        if transfer_code and not payout.gateway_transfer_reference:
            payout.gateway_transfer_reference = transfer_code
        return True

    def fail_from_webhook(self, payout: Payout, reason: str) -> bool:
        """Mark an in-flight payout FAILED (retryable). Returns False when there was nothing to fail."""
        if payout.status not in (PayoutStatus.PENDING, PayoutStatus.PROCESSING):
            return False
        payout.status = PayoutStatus.FAILED
        payout.last_error = reason
        return True

    def cancel_for_refund(self, payout: Payout) -> None:
        """Escrow is going back to the client; this payout must never be sent"""
        if payout.status == PayoutStatus.COMPLETED:
            raise InvalidPaymentState(f"Payout {payout.id} already completed")
        payout.status = PayoutStatus.FAILED
        payout.failure_code = PayoutFailureCode.TRANSFER_PERMANENTLY_FAILED
        payout.last_error = "Escrow refunded to client"
        payout.next_retry_at = None

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _prepare_payout(self, booking_id: str) -> Payout:
        """Steps 1 and 2: validate, then create the payout in one transaction"""
        booking = self.booking_repo.get_booking_for_update(self.db, booking_id)
        if not booking:
            raise NotFound(f"Booking {booking_id} not found")

        payment = self.payment_repo.get_payment_by_booking(self.db, booking_id, for_update=True)
        if not payment:
            self.db.rollback()
            raise InvalidPaymentState(f"Booking {booking_id} has no payment")

        existing = self.payout_repo.get_payout_by_payment(self.db, payment.id)
        if existing:
            self.db.rollback()
            return existing

        if payment.status == PaymentStatus.CASH_RECEIVED:
            return self._complete_cash(booking, payment)

        if payment.status not in ESCROW_HELD_STATUSES:
            self.db.rollback()
            raise InvalidPaymentState(
                f"Payment {payment.id} is {payment.status.value}; only escrowed funds can be released"
            )

        provider = booking.provider
        if not provider.has_bank_details and not provider.recipient_code:
            self.db.rollback()
            raise MissingBankDetails(f"Provider {provider.id} has no bank details for payout")

        payment.status = next_payment_status(payment.status, PaymentEvent.RELEASE_STARTED)
        payout = Payout(
            payment_id=payment.id,
            provider_id=booking.provider_id,
            amount=payment.escrow_amount,
            gateway_reference=payout_reference(payment.id),
            recipient_code=provider.recipient_code,
            status=PayoutStatus.PENDING,
            attempts=0,
        )
        self.db.add(payout)
        return self._commit_new_payout(payout, payment.id)

    def _complete_cash(self, booking: Booking, payment: Payment) -> Payout:
        """Cash changed hands directly: record a completed payout, no gateway call"""
        payment.status = next_payment_status(payment.status, PaymentEvent.CASH_VERIFIED)
        payout = Payout(
            payment_id=payment.id,
            provider_id=booking.provider_id,
            amount=payment.escrow_amount,
            gateway_reference=f"CASH-{payment.id}",
            status=PayoutStatus.COMPLETED,
            attempts=0,
            completed_at=datetime.utcnow(),
        )
        self.db.add(payout)

        if booking.status == BookingStatus.AWAITING_CONFIRMATION:
            booking.status = transition(booking.status, BookingEvent.PAYOUT_COMPLETED, payment.status)

        payout = self._commit_new_payout(payout, payment.id)
        logger.info(f"💵 Cash payment {payment.id} verified for booking {booking.id}")
        return payout

    def _commit_new_payout(self, payout: Payout, payment_id: str) -> Payout:
        try:
            self.db.commit()
        except (IntegrityError, StaleDataError) as e:
            # A concurrent release created the payout first; use the winner's row
            self.db.rollback()
            winner = self.payout_repo.get_payout_by_payment(self.db, payment_id)
            if winner:
                logger.info(f"🔒 Payout for payment {payment_id} created concurrently, reusing {winner.id}")
                return winner
            raise StaleState(f"Payment {payment_id} changed during release, retry the request") from e

        logger.info(f"📝 Payout {payout.id} created for payment {payment_id}: {payout.amount}")
        return payout

    async def _ensure_recipient(self, payout: Payout) -> str:
        """Step 3: the provider's recipient code, created with the gateway once"""
        if payout.recipient_code:
            return payout.recipient_code

        provider = self.booking_repo.get_provider(self.db, payout.provider_id)
        if provider.recipient_code:
            payout.recipient_code = provider.recipient_code
            self._commit()
            return provider.recipient_code

        if not provider.has_bank_details:
            raise MissingBankDetails(f"Provider {provider.id} has no bank details for payout")

        account_number = decrypt_value(provider.account_number_encrypted)
        try:
            recipient_code = await self.gateway.create_recipient(
                name=provider.account_name or provider.business_name or provider.id,
                account_number=account_number,
                bank_code=provider.bank_code,
            )
        except GatewayError as e:
            logger.error(f"❌ Recipient creation failed for provider {provider.id}: {e.message}")
            if not e.transient:
                raise_alert(
                    self.db,
                    RECIPIENT_CREATION_FAILED,
                    f"Gateway rejected bank details for provider {provider.id}: {e.message}",
                    payout_id=payout.id,
                    payment_id=payout.payment_id,
                )
                self.db.commit()
            raise

        provider.recipient_code = recipient_code
        payout.recipient_code = recipient_code
        self._commit()
        logger.info(f"🏦 Recipient {recipient_code} stored for provider {provider.id}")
        return recipient_code

    def _record_transient_failure(self, payout_id: str, error: GatewayError) -> Payout:
        payout = self.payout_repo.get_payout_for_update(self.db, payout_id)
        if payout.status != PayoutStatus.PROCESSING:
            # The transfer webhook settled it while we were waiting
            self.db.rollback()
            return payout

        payout.status = PayoutStatus.FAILED
        payout.last_error = f"{error.code}: {error.message}"
        payment = self.payment_repo.get_payment_for_update(self.db, payout.payment_id)
        if payment.status == PaymentStatus.PROCESSING_RELEASE:
            payment.status = next_payment_status(payment.status, PaymentEvent.TRANSFER_FAILED)
        self._commit()
        logger.warning(f"⚠️ Payout {payout_id} attempt {payout.attempts} failed: {payout.last_error}")
        return payout

    def _record_rejection(self, payout_id: str, error: GatewayError) -> Payout:
        payout = self.payout_repo.get_payout_for_update(self.db, payout_id)
        if payout.status != PayoutStatus.PROCESSING:
            self.db.rollback()
            return payout

        payout.status = PayoutStatus.FAILED
        payout.failure_code = PayoutFailureCode.GATEWAY_REJECTED
        payout.last_error = f"{error.code}: {error.message}"
        payout.next_retry_at = None
        payment = self.payment_repo.get_payment_for_update(self.db, payout.payment_id)
        if payment.status == PaymentStatus.PROCESSING_RELEASE:
            payment.status = next_payment_status(payment.status, PaymentEvent.TRANSFER_FAILED)

        raise_alert(
            self.db,
            PAYOUT_REJECTED,
            f"Gateway rejected payout {payout.id}: {error.message}",
            severity="critical",
            booking_id=payment.booking_id,
            payment_id=payment.id,
            payout_id=payout.id,
            details={"status_code": error.status_code, "amount": str(payout.amount)},
        )
        self._commit()
        return payout

    def _commit(self) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise StaleState("Record changed concurrently, retry the request") from e
