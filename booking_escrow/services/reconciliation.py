"""
Reconciliation sweeps
Periodic recovery of work a lost webhook or a crashed process left behind.
Run from the ARQ cron jobs in worker.py.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..config import PENDING_PAYMENT_RECOVERY_AGE_MINUTES, STALLED_PAYOUT_AGE_MINUTES
from ..domain.payments.repository import PaymentRepository
from ..domain.payments.service import PaymentService
from ..domain.payouts.orchestrator import ReleaseOrchestrator
from ..domain.payouts.repository import PayoutRepository
from ..errors import EscrowError
from ..statuses import PaymentStatus
from .gateway_client import GatewayClient

logger = logging.getLogger(__name__)


async def recover_pending_payments(
    db: Session,
    gateway: Optional[GatewayClient] = None,
    older_than_minutes: int = PENDING_PAYMENT_RECOVERY_AGE_MINUTES,
) -> dict:
    """Verify online payments stuck in PENDING against the gateway"""
    cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
    payments = PaymentRepository.get_stale_pending_payments(db, cutoff)
    service = PaymentService(db, gateway=gateway)

    recovered = 0
    failed = 0
    for payment in payments:
        try:
            updated = await service.recover_payment_status(payment.id)
            if updated.status != PaymentStatus.PENDING:
                recovered += 1
        except EscrowError as e:
            failed += 1
            db.rollback()
            logger.error(f"❌ Could not recover payment {payment.id}: {e.message}")

    logger.info(f"🔄 Pending payment sweep: checked={len(payments)}, recovered={recovered}, errors={failed}")
    return {"checked": len(payments), "recovered": recovered, "errors": failed}


async def resume_stalled_payouts(
    db: Session,
    gateway: Optional[GatewayClient] = None,
    retry_engine=None,
    older_than_minutes: int = STALLED_PAYOUT_AGE_MINUTES,
) -> dict:
    """Re-drive payouts left PENDING, unacknowledged PROCESSING, or overdue for a retry"""
    cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
    payouts = PayoutRepository.get_stalled_payouts(db, cutoff)
    orchestrator = ReleaseOrchestrator(db, gateway=gateway, retry_engine=retry_engine)

    resumed = 0
    failed = 0
    for payout in payouts:
        try:
            await orchestrator.resume_stalled(payout.id)
            resumed += 1
        except EscrowError as e:
            failed += 1
            db.rollback()
            logger.error(f"❌ Could not resume payout {payout.id}: {e.message}")

    logger.info(f"🔄 Stalled payout sweep: found={len(payouts)}, resumed={resumed}, errors={failed}")
    return {"found": len(payouts), "resumed": resumed, "errors": failed}
