"""Closed status vocabularies shared by the models and the state machines"""

import enum


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PENDING_EXECUTION = "PENDING_EXECUTION"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class BookingEvent(str, enum.Enum):
    PROVIDER_ACCEPT = "ProviderAccept"
    PROVIDER_REJECT = "ProviderReject"
    PAYMENT_ESCROWED = "PaymentEscrowed"
    PROVIDER_START = "ProviderStart"
    PROVIDER_COMPLETE = "ProviderComplete"
    CLIENT_CONFIRM = "ClientConfirm"
    CLIENT_CANCEL = "ClientCancel"
    DISPUTE_FILED = "DisputeFiled"
    DISPUTE_RESOLVED = "DisputeResolved"
    # Raised by gateway events rather than by people
    PAYMENT_FAILED = "PaymentFailed"
    PAYOUT_COMPLETED = "PayoutCompleted"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    ESCROW = "ESCROW"
    HELD_IN_ESCROW = "HELD_IN_ESCROW"  # legacy spelling of ESCROW, still read but never written
    PROCESSING_RELEASE = "PROCESSING_RELEASE"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"
    CASH_PENDING = "CASH_PENDING"
    CASH_RECEIVED = "CASH_RECEIVED"
    CASH_VERIFIED = "CASH_VERIFIED"


class PaymentEvent(str, enum.Enum):
    CHARGE_SUCCEEDED = "ChargeSucceeded"
    CHARGE_FAILED = "ChargeFailed"
    PAYMENT_CANCELLED = "PaymentCancelled"
    RELEASE_STARTED = "ReleaseStarted"
    TRANSFER_SUCCEEDED = "TransferSucceeded"
    TRANSFER_FAILED = "TransferFailed"
    REFUNDED = "Refunded"
    CASH_RECEIVED = "CashReceived"
    CASH_VERIFIED = "CashVerified"


class PaymentMethod(str, enum.Enum):
    ONLINE = "ONLINE"
    CASH = "CASH"


class PayoutStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PayoutFailureCode(str, enum.Enum):
    GATEWAY_REJECTED = "GATEWAY_REJECTED"
    TRANSFER_PERMANENTLY_FAILED = "TRANSFER_PERMANENTLY_FAILED"


class WebhookOutcome(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"
    MALFORMED = "malformed"


# Outcomes after which a redelivered event is acknowledged without reprocessing
FINAL_WEBHOOK_OUTCOMES = frozenset(
    {WebhookOutcome.PROCESSED, WebhookOutcome.IGNORED, WebhookOutcome.MALFORMED}
)

ESCROW_HELD_STATUSES = frozenset({PaymentStatus.ESCROW, PaymentStatus.HELD_IN_ESCROW})
