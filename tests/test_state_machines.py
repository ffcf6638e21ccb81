"""Booking and payment transition tables"""

import pytest

from booking_escrow.domain.bookings.state_machine import can_transition, transition
from booking_escrow.domain.payments.state_machine import can_apply, next_payment_status
from booking_escrow.errors import InvalidTransition
from booking_escrow.statuses import BookingEvent, BookingStatus, PaymentEvent, PaymentStatus


@pytest.mark.parametrize(
    "current,event,payment_status,expected",
    [
        (BookingStatus.PENDING, BookingEvent.PROVIDER_ACCEPT, None, BookingStatus.CONFIRMED),
        (BookingStatus.PENDING, BookingEvent.PROVIDER_REJECT, None, BookingStatus.CANCELLED),
        (BookingStatus.CONFIRMED, BookingEvent.PAYMENT_ESCROWED, PaymentStatus.ESCROW, BookingStatus.PENDING_EXECUTION),
        (BookingStatus.PENDING_EXECUTION, BookingEvent.PROVIDER_START, PaymentStatus.ESCROW, BookingStatus.IN_PROGRESS),
        (BookingStatus.CONFIRMED, BookingEvent.PROVIDER_START, PaymentStatus.CASH_PENDING, BookingStatus.IN_PROGRESS),
        (BookingStatus.IN_PROGRESS, BookingEvent.PROVIDER_COMPLETE, PaymentStatus.ESCROW, BookingStatus.AWAITING_CONFIRMATION),
        (
            BookingStatus.AWAITING_CONFIRMATION,
            BookingEvent.CLIENT_CONFIRM,
            PaymentStatus.ESCROW,
            BookingStatus.AWAITING_CONFIRMATION,
        ),
        (
            BookingStatus.AWAITING_CONFIRMATION,
            BookingEvent.CLIENT_CONFIRM,
            PaymentStatus.HELD_IN_ESCROW,
            BookingStatus.AWAITING_CONFIRMATION,
        ),
        (BookingStatus.AWAITING_CONFIRMATION, BookingEvent.CLIENT_CONFIRM, PaymentStatus.CASH_RECEIVED, BookingStatus.COMPLETED),
        (BookingStatus.AWAITING_CONFIRMATION, BookingEvent.PAYOUT_COMPLETED, PaymentStatus.RELEASED, BookingStatus.COMPLETED),
        (BookingStatus.PENDING, BookingEvent.CLIENT_CANCEL, None, BookingStatus.CANCELLED),
        (BookingStatus.CONFIRMED, BookingEvent.CLIENT_CANCEL, PaymentStatus.PENDING, BookingStatus.CANCELLED),
        (BookingStatus.IN_PROGRESS, BookingEvent.DISPUTE_FILED, PaymentStatus.ESCROW, BookingStatus.DISPUTED),
        (BookingStatus.COMPLETED, BookingEvent.DISPUTE_FILED, PaymentStatus.RELEASED, BookingStatus.DISPUTED),
        (BookingStatus.DISPUTED, BookingEvent.DISPUTE_RESOLVED, PaymentStatus.ESCROW, BookingStatus.DISPUTED),
        (BookingStatus.CONFIRMED, BookingEvent.PAYMENT_FAILED, PaymentStatus.FAILED, BookingStatus.CANCELLED),
    ],
)
def test_legal_booking_transitions(current, event, payment_status, expected):
    assert transition(current, event, payment_status) == expected


@pytest.mark.parametrize(
    "current,event,payment_status",
    [
        (BookingStatus.PENDING, BookingEvent.CLIENT_CONFIRM, None),
        (BookingStatus.AWAITING_CONFIRMATION, BookingEvent.CLIENT_CONFIRM, PaymentStatus.PENDING),
        (BookingStatus.CONFIRMED, BookingEvent.PAYMENT_ESCROWED, PaymentStatus.PENDING),
        (BookingStatus.CONFIRMED, BookingEvent.PROVIDER_START, PaymentStatus.PENDING),
        (BookingStatus.CONFIRMED, BookingEvent.CLIENT_CANCEL, PaymentStatus.ESCROW),
        (BookingStatus.IN_PROGRESS, BookingEvent.CLIENT_CANCEL, PaymentStatus.ESCROW),
        (BookingStatus.COMPLETED, BookingEvent.PROVIDER_START, PaymentStatus.RELEASED),
        (BookingStatus.CANCELLED, BookingEvent.PROVIDER_ACCEPT, None),
        (BookingStatus.PENDING, BookingEvent.DISPUTE_FILED, None),
    ],
)
def test_illegal_booking_transitions_raise(current, event, payment_status):
    with pytest.raises(InvalidTransition):
        transition(current, event, payment_status)
    assert not can_transition(current, event, payment_status)


def test_guard_failure_names_the_reason():
    with pytest.raises(InvalidTransition) as exc_info:
        transition(BookingStatus.AWAITING_CONFIRMATION, BookingEvent.CLIENT_CONFIRM, PaymentStatus.PENDING)

    assert "payment must be held in escrow" in exc_info.value.message
    assert exc_info.value.current == "AWAITING_CONFIRMATION"
    assert exc_info.value.event == "ClientConfirm"


def test_resolved_dispute_is_terminal():
    with pytest.raises(InvalidTransition) as exc_info:
        transition(BookingStatus.DISPUTED, BookingEvent.DISPUTE_RESOLVED, dispute_resolved=True)
    assert "dispute already resolved" in exc_info.value.message


def test_dispute_can_be_filed_while_the_payout_is_in_flight():
    assert (
        transition(BookingStatus.AWAITING_CONFIRMATION, BookingEvent.DISPUTE_FILED, PaymentStatus.PROCESSING_RELEASE)
        == BookingStatus.DISPUTED
    )


def test_transition_accepts_plain_strings():
    assert transition("PENDING", "ProviderAccept") == BookingStatus.CONFIRMED


@pytest.mark.parametrize(
    "current,event,expected",
    [
        (PaymentStatus.PENDING, PaymentEvent.CHARGE_SUCCEEDED, PaymentStatus.ESCROW),
        (PaymentStatus.PENDING, PaymentEvent.CHARGE_FAILED, PaymentStatus.FAILED),
        (PaymentStatus.ESCROW, PaymentEvent.RELEASE_STARTED, PaymentStatus.PROCESSING_RELEASE),
        (PaymentStatus.HELD_IN_ESCROW, PaymentEvent.RELEASE_STARTED, PaymentStatus.PROCESSING_RELEASE),
        (PaymentStatus.PROCESSING_RELEASE, PaymentEvent.TRANSFER_SUCCEEDED, PaymentStatus.RELEASED),
        (PaymentStatus.PROCESSING_RELEASE, PaymentEvent.TRANSFER_FAILED, PaymentStatus.ESCROW),
        (PaymentStatus.ESCROW, PaymentEvent.REFUNDED, PaymentStatus.REFUNDED),
        (PaymentStatus.CASH_PENDING, PaymentEvent.CASH_RECEIVED, PaymentStatus.CASH_RECEIVED),
        (PaymentStatus.CASH_RECEIVED, PaymentEvent.CASH_VERIFIED, PaymentStatus.CASH_VERIFIED),
        (PaymentStatus.CASH_PENDING, PaymentEvent.PAYMENT_CANCELLED, PaymentStatus.FAILED),
    ],
)
def test_legal_payment_transitions(current, event, expected):
    assert next_payment_status(current, event) == expected


@pytest.mark.parametrize(
    "current",
    [PaymentStatus.RELEASED, PaymentStatus.REFUNDED, PaymentStatus.FAILED, PaymentStatus.CASH_VERIFIED],
)
def test_terminal_payment_statuses_never_regress(current):
    for event in PaymentEvent:
        assert not can_apply(current, event)


def test_charge_success_cannot_be_applied_twice():
    escrowed = next_payment_status(PaymentStatus.PENDING, PaymentEvent.CHARGE_SUCCEEDED)
    with pytest.raises(InvalidTransition):
        next_payment_status(escrowed, PaymentEvent.CHARGE_SUCCEEDED)
