"""
Booking lifecycle state machine

Pure functions only: no database access, no side effects. Services ask the
machine for the next status and write it themselves, so an illegal event never
mutates anything.

    PENDING -> CONFIRMED -> PENDING_EXECUTION -> IN_PROGRESS
        -> AWAITING_CONFIRMATION -> COMPLETED

CANCELLED is reachable from PENDING and CONFIRMED, DISPUTED from IN_PROGRESS,
AWAITING_CONFIRMATION and COMPLETED.
"""

from typing import Callable, Optional, Union

from ...errors import InvalidTransition
from ...statuses import ESCROW_HELD_STATUSES, BookingEvent, BookingStatus, PaymentStatus

Guard = Callable[[Optional[PaymentStatus]], bool]


def _escrow_held(payment_status: Optional[PaymentStatus]) -> bool:
    return payment_status in ESCROW_HELD_STATUSES


def _escrow_held_or_cash_pending(payment_status: Optional[PaymentStatus]) -> bool:
    return payment_status in ESCROW_HELD_STATUSES or payment_status == PaymentStatus.CASH_PENDING


def _cash_pending(payment_status: Optional[PaymentStatus]) -> bool:
    return payment_status == PaymentStatus.CASH_PENDING


def _release_allowed(payment_status: Optional[PaymentStatus]) -> bool:
    return payment_status in ESCROW_HELD_STATUSES or payment_status == PaymentStatus.PROCESSING_RELEASE


def _cash_received(payment_status: Optional[PaymentStatus]) -> bool:
    return payment_status == PaymentStatus.CASH_RECEIVED


def _cancellable_payment(payment_status: Optional[PaymentStatus]) -> bool:
    return payment_status in (None, PaymentStatus.PENDING, PaymentStatus.CASH_PENDING)


def _always(payment_status: Optional[PaymentStatus]) -> bool:
    return True


# event -> ordered rules of (allowed source states, target state, guard, guard description)
# The first rule whose source state matches and whose guard passes wins.
TRANSITIONS: dict[BookingEvent, tuple[tuple[frozenset, BookingStatus, Guard, str], ...]] = {
    BookingEvent.PROVIDER_ACCEPT: (
        (frozenset({BookingStatus.PENDING}), BookingStatus.CONFIRMED, _always, ""),
    ),
    BookingEvent.PROVIDER_REJECT: (
        (frozenset({BookingStatus.PENDING}), BookingStatus.CANCELLED, _always, ""),
    ),
    BookingEvent.PAYMENT_ESCROWED: (
        (
            frozenset({BookingStatus.CONFIRMED}),
            BookingStatus.PENDING_EXECUTION,
            _escrow_held,
            "payment must be held in escrow",
        ),
    ),
    BookingEvent.PROVIDER_START: (
        (
            frozenset({BookingStatus.PENDING_EXECUTION}),
            BookingStatus.IN_PROGRESS,
            _escrow_held_or_cash_pending,
            "payment must be held in escrow or pending cash collection",
        ),
        # Cash bookings never pass through escrow
        (
            frozenset({BookingStatus.CONFIRMED}),
            BookingStatus.IN_PROGRESS,
            _cash_pending,
            "only cash bookings can start before payment is escrowed",
        ),
    ),
    BookingEvent.PROVIDER_COMPLETE: (
        (frozenset({BookingStatus.IN_PROGRESS}), BookingStatus.AWAITING_CONFIRMATION, _always, ""),
    ),
    BookingEvent.CLIENT_CONFIRM: (
        # Online: booking stays put until the gateway confirms the transfer
        (
            frozenset({BookingStatus.AWAITING_CONFIRMATION}),
            BookingStatus.AWAITING_CONFIRMATION,
            _release_allowed,
            "",
        ),
        (
            frozenset({BookingStatus.AWAITING_CONFIRMATION}),
            BookingStatus.COMPLETED,
            _cash_received,
            "payment must be held in escrow or cash must be received",
        ),
    ),
    BookingEvent.CLIENT_CANCEL: (
        (
            frozenset({BookingStatus.PENDING, BookingStatus.CONFIRMED}),
            BookingStatus.CANCELLED,
            _cancellable_payment,
            "payment has already been taken",
        ),
    ),
    BookingEvent.DISPUTE_FILED: (
        (
            frozenset(
                {
                    BookingStatus.IN_PROGRESS,
                    BookingStatus.AWAITING_CONFIRMATION,
                    BookingStatus.COMPLETED,
                }
            ),
            BookingStatus.DISPUTED,
            _always,
            "",
        ),
    ),
    BookingEvent.DISPUTE_RESOLVED: (
        (frozenset({BookingStatus.DISPUTED}), BookingStatus.DISPUTED, _always, ""),
    ),
    BookingEvent.PAYMENT_FAILED: (
        (frozenset({BookingStatus.CONFIRMED}), BookingStatus.CANCELLED, _always, ""),
    ),
    BookingEvent.PAYOUT_COMPLETED: (
        (frozenset({BookingStatus.AWAITING_CONFIRMATION}), BookingStatus.COMPLETED, _always, ""),
    ),
}


def transition(
    current: Union[BookingStatus, str],
    event: Union[BookingEvent, str],
    payment_status: Optional[Union[PaymentStatus, str]] = None,
    dispute_resolved: bool = False,
) -> BookingStatus:
    """
    Compute the status a booking moves to when `event` happens.

    Args:
        current: Current booking status
        event: Lifecycle event
        payment_status: Status of the booking's payment, None when no payment exists
        dispute_resolved: True once a DISPUTED booking has been resolved (terminal)

    Returns:
        The next BookingStatus

    Raises:
        InvalidTransition: the event is not legal from `current` or a guard failed
    """
    current = BookingStatus(current)
    event = BookingEvent(event)
    payment_status = PaymentStatus(payment_status) if payment_status is not None else None

    if current == BookingStatus.DISPUTED and dispute_resolved:
        raise InvalidTransition(current.value, event.value, "dispute already resolved")

    failed_guard = None
    for sources, target, guard, description in TRANSITIONS.get(event, ()):
        if current not in sources:
            continue
        if guard(payment_status):
            return target
        failed_guard = description

    raise InvalidTransition(current.value, event.value, failed_guard or None)


def can_transition(
    current: Union[BookingStatus, str],
    event: Union[BookingEvent, str],
    payment_status: Optional[Union[PaymentStatus, str]] = None,
    dispute_resolved: bool = False,
) -> bool:
    try:
        transition(current, event, payment_status, dispute_resolved)
    except InvalidTransition:
        return False
    return True
