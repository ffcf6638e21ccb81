"""
Escrow error taxonomy

Validation errors are rejected synchronously and never retried.
Idempotency short-circuits are treated as success by callers.
Gateway errors are split into transient (retried by the payout retry engine)
and permanent (recorded as terminal FAILED, operator action required).
"""

from typing import Optional

from .config import PAYMENT_SUPPORT_MESSAGE


class EscrowError(Exception):
    """Base class for every error the escrow engine surfaces to callers"""

    code = "ESCROW_ERROR"
    http_status = 400

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def public_message(self) -> str:
        return self.message


# ============================================================================
# VALIDATION ERRORS
# ============================================================================


class NotFound(EscrowError):
    code = "NOT_FOUND"
    http_status = 404


class InvalidTransition(EscrowError):
    """Event is not legal from the current state. Nothing was mutated."""

    code = "INVALID_TRANSITION"
    http_status = 409

    def __init__(self, current: str, event: str, reason: Optional[str] = None):
        message = f"Cannot apply {event} while status is {current}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, {"current_status": current, "event": event})
        self.current = current
        self.event = event


class StaleState(EscrowError):
    """Optimistic concurrency check failed - reload and retry"""

    code = "STALE_STATE"
    http_status = 409


class InvalidAmount(EscrowError):
    code = "INVALID_AMOUNT"
    http_status = 422


class InvalidBookingStatus(EscrowError):
    code = "INVALID_BOOKING_STATUS"
    http_status = 409


class InvalidPaymentState(EscrowError):
    code = "INVALID_PAYMENT_STATE"
    http_status = 409


class AmountLocked(EscrowError):
    """Booking amounts cannot change once a payment exists"""

    code = "AMOUNT_LOCKED"
    http_status = 409


class MissingBankDetails(EscrowError):
    code = "MISSING_BANK_DETAILS"
    http_status = 409


# ============================================================================
# IDEMPOTENCY SHORT-CIRCUITS (success, not failure)
# ============================================================================


class PaymentAlreadyExists(EscrowError):
    code = "PAYMENT_ALREADY_EXISTS"
    http_status = 200

    def __init__(self, payment_id: str, gateway_reference: str, authorization_url: Optional[str]):
        super().__init__(
            f"Payment {payment_id} already exists for this booking",
            {"payment_id": payment_id, "gateway_reference": gateway_reference},
        )
        self.payment_id = payment_id
        self.gateway_reference = gateway_reference
        self.authorization_url = authorization_url


class WebhookEventAlreadyProcessed(EscrowError):
    code = "WEBHOOK_EVENT_ALREADY_PROCESSED"
    http_status = 200


# ============================================================================
# GATEWAY ERRORS
# ============================================================================


class GatewayError(EscrowError):
    code = "GATEWAY_ERROR"
    http_status = 502
    transient = True

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.status_code = status_code

    @property
    def public_message(self) -> str:
        return PAYMENT_SUPPORT_MESSAGE


class GatewayTimeout(GatewayError):
    code = "GATEWAY_TIMEOUT"


class GatewayUnavailable(GatewayError):
    code = "GATEWAY_UNAVAILABLE"


class GatewayRejected(GatewayError):
    code = "GATEWAY_REJECTED"
    transient = False
