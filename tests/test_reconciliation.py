"""Periodic sweeps for lost webhooks and abandoned payouts"""

from datetime import datetime, timedelta

import pytest

from booking_escrow.domain.payouts.orchestrator import payout_reference
from booking_escrow.models import Booking
from booking_escrow.models_payment import Payment, Payout
from booking_escrow.services.reconciliation import recover_pending_payments, resume_stalled_payouts
from booking_escrow.statuses import BookingStatus, PaymentStatus, PayoutStatus


def reload(db, model, record_id):
    db.expire_all()
    return db.get(model, record_id)


async def stale_pending_payment(db, seed, payments) -> Payment:
    booking = seed.booking(status=BookingStatus.CONFIRMED)
    payment = await payments.initialize_charge(booking.id)
    payment.created_at = datetime.utcnow() - timedelta(hours=1)
    db.commit()
    return payment


@pytest.mark.anyio
async def test_lost_charge_webhook_is_recovered(db, seed, payments, gateway):
    payment = await stale_pending_payment(db, seed, payments)

    summary = await recover_pending_payments(db, gateway=gateway)

    assert summary == {"checked": 1, "recovered": 1, "errors": 0}
    assert gateway.count("verify_charge") == 1
    payment = reload(db, Payment, payment.id)
    assert payment.status == PaymentStatus.ESCROW
    assert reload(db, Booking, payment.booking_id).status == BookingStatus.PENDING_EXECUTION


@pytest.mark.anyio
async def test_failed_charge_is_recovered(db, seed, payments, gateway):
    payment = await stale_pending_payment(db, seed, payments)
    gateway.charge_status = "failed"

    await recover_pending_payments(db, gateway=gateway)

    assert reload(db, Payment, payment.id).status == PaymentStatus.FAILED
    assert reload(db, Booking, payment.booking_id).status == BookingStatus.CANCELLED


@pytest.mark.anyio
async def test_charge_still_pending_at_gateway_is_left_alone(db, seed, payments, gateway):
    payment = await stale_pending_payment(db, seed, payments)
    gateway.charge_status = "abandoned"

    summary = await recover_pending_payments(db, gateway=gateway)

    assert summary["recovered"] == 0
    assert reload(db, Payment, payment.id).status == PaymentStatus.PENDING


@pytest.mark.anyio
async def test_recent_pending_payments_are_not_checked(db, seed, payments, gateway):
    booking = seed.booking(status=BookingStatus.CONFIRMED)
    await payments.initialize_charge(booking.id)

    summary = await recover_pending_payments(db, gateway=gateway, older_than_minutes=30)

    assert summary["checked"] == 0
    assert gateway.count("verify_charge") == 0


@pytest.mark.anyio
async def test_unacknowledged_transfer_is_resent_with_the_same_reference(db, seed, gateway, retry_engine):
    booking = seed.escrowed_booking(provider=seed.provider(recipient_code="RCP_existing"))
    payment = db.query(Payment).filter(Payment.booking_id == booking.id).one()
    payment.status = PaymentStatus.PROCESSING_RELEASE
    payout = Payout(
        payment_id=payment.id,
        provider_id=booking.provider_id,
        amount=payment.escrow_amount,
        gateway_reference=payout_reference(payment.id),
        recipient_code="RCP_existing",
        status=PayoutStatus.PROCESSING,
        attempts=1,
        updated_at=datetime.utcnow() - timedelta(hours=1),
    )
    db.add(payout)
    db.commit()

    summary = await resume_stalled_payouts(db, gateway=gateway, retry_engine=retry_engine)

    assert summary == {"found": 1, "resumed": 1, "errors": 0}
    assert gateway.transfers() == [("create_transfer", payout.gateway_reference, payment.escrow_amount)]
    payout = reload(db, Payout, payout.id)
    assert payout.status == PayoutStatus.PROCESSING
    assert payout.attempts == 2
    assert reload(db, Payment, payment.id).status == PaymentStatus.PROCESSING_RELEASE


@pytest.mark.anyio
async def test_acknowledged_transfers_are_not_resent(db, seed, orchestrator, gateway, retry_engine):
    booking = seed.escrowed_booking()
    payout = await orchestrator.release(booking.id)
    assert payout.gateway_transfer_reference == "TRF_1"

    summary = await resume_stalled_payouts(db, gateway=gateway, retry_engine=retry_engine, older_than_minutes=0)

    assert summary["found"] == 0
    assert len(gateway.transfers()) == 1
