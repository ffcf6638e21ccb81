"""Payment/escrow status transitions (pure, no side effects)"""

from typing import Union

from ...errors import InvalidTransition
from ...statuses import ESCROW_HELD_STATUSES, PaymentEvent, PaymentStatus

# event -> (allowed source statuses, target status)
TRANSITIONS: dict[PaymentEvent, tuple[frozenset, PaymentStatus]] = {
    PaymentEvent.CHARGE_SUCCEEDED: (frozenset({PaymentStatus.PENDING}), PaymentStatus.ESCROW),
    PaymentEvent.CHARGE_FAILED: (frozenset({PaymentStatus.PENDING}), PaymentStatus.FAILED),
    PaymentEvent.PAYMENT_CANCELLED: (
        frozenset({PaymentStatus.PENDING, PaymentStatus.CASH_PENDING}),
        PaymentStatus.FAILED,
    ),
    PaymentEvent.RELEASE_STARTED: (ESCROW_HELD_STATUSES, PaymentStatus.PROCESSING_RELEASE),
    # The transfer webhook is authoritative even after a timed-out call reverted the payment
    PaymentEvent.TRANSFER_SUCCEEDED: (
        ESCROW_HELD_STATUSES | {PaymentStatus.PROCESSING_RELEASE},
        PaymentStatus.RELEASED,
    ),
    PaymentEvent.TRANSFER_FAILED: (frozenset({PaymentStatus.PROCESSING_RELEASE}), PaymentStatus.ESCROW),
    PaymentEvent.REFUNDED: (ESCROW_HELD_STATUSES, PaymentStatus.REFUNDED),
    PaymentEvent.CASH_RECEIVED: (frozenset({PaymentStatus.CASH_PENDING}), PaymentStatus.CASH_RECEIVED),
    PaymentEvent.CASH_VERIFIED: (frozenset({PaymentStatus.CASH_RECEIVED}), PaymentStatus.CASH_VERIFIED),
}


def next_payment_status(current: Union[PaymentStatus, str], event: Union[PaymentEvent, str]) -> PaymentStatus:
    """Return the status a payment moves to, or raise InvalidTransition"""
    current = PaymentStatus(current)
    event = PaymentEvent(event)

    sources, target = TRANSITIONS[event]
    if current not in sources:
        raise InvalidTransition(current.value, event.value)
    return target


def can_apply(current: Union[PaymentStatus, str], event: Union[PaymentEvent, str]) -> bool:
    try:
        next_payment_status(current, event)
    except InvalidTransition:
        return False
    return True
