"""
Operator Alert Service
Records problems that need a human (permanent payout failures, amount
mismatches) so they can be reviewed from the database and the logs.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..models_payment import OperatorAlert

logger = logging.getLogger(__name__)

# Alert codes
PAYOUT_PERMANENTLY_FAILED = "PAYOUT_PERMANENTLY_FAILED"
PAYOUT_REJECTED = "PAYOUT_REJECTED"
CHARGE_AMOUNT_MISMATCH = "CHARGE_AMOUNT_MISMATCH"
CHARGE_ON_INACTIVE_BOOKING = "CHARGE_ON_INACTIVE_BOOKING"
REFUND_FAILED = "REFUND_FAILED"
RECIPIENT_CREATION_FAILED = "RECIPIENT_CREATION_FAILED"
TRANSFER_AFTER_REFUND = "TRANSFER_AFTER_REFUND"

_LOG_LEVELS = {"warning": logging.WARNING, "error": logging.ERROR, "critical": logging.CRITICAL}


def raise_alert(
    db: Session,
    code: str,
    message: str,
    severity: str = "error",
    booking_id: Optional[str] = None,
    payment_id: Optional[str] = None,
    payout_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> OperatorAlert:
    """
    Add an operator alert to the current transaction.

    The caller commits; the alert is persisted together with the state change
    that caused it.
    """
    alert = OperatorAlert(
        code=code,
        severity=severity,
        booking_id=booking_id,
        payment_id=payment_id,
        payout_id=payout_id,
        message=message,
        details=details or {},
    )
    db.add(alert)

    logger.log(
        _LOG_LEVELS.get(severity, logging.ERROR),
        f"🚨 Operator alert {code}: {message} (booking={booking_id}, payment={payment_id}, payout={payout_id})",
    )
    return alert
