"""
Payout retry engine

Transient transfer failures are retried with exponential backoff as deferred
ARQ jobs. Each retry re-runs only the transfer step against the same Payout row
(and therefore the same gateway reference). When the attempt budget is spent the
payout is parked as permanently failed and an operator is alerted.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import PAYOUT_MAX_ATTEMPTS, PAYOUT_RETRY_BASE_DELAY, PAYOUT_RETRY_MAX_DELAY
from ...errors import NotFound
from ...models_payment import Payout
from ...services.alert_service import PAYOUT_PERMANENTLY_FAILED, raise_alert
from ...statuses import PayoutFailureCode, PayoutStatus
from .repository import PayoutRepository

logger = logging.getLogger(__name__)

RETRY_TASK_NAME = "retry_payout_transfer_task"


def compute_retry_delay(
    attempt: int,
    base_delay: float = PAYOUT_RETRY_BASE_DELAY,
    max_delay: float = PAYOUT_RETRY_MAX_DELAY,
    jitter: Optional[float] = None,
) -> float:
    """
    Backoff before the next transfer attempt.

    Args:
        attempt: Number of attempts already made (1 after the first failure)
        jitter: Extra seconds in [0, 1); random when not given

    Returns:
        min(base * 2^attempt + jitter, max) seconds
    """
    if jitter is None:
        jitter = random.uniform(0, 1)
    return min(base_delay * (2**attempt) + jitter, max_delay)


def retry_job_id(payout_id: str, attempt_number: int) -> str:
    """One job per payout attempt; ARQ refuses a second job with the same id"""
    return f"payout-retry:{payout_id}:{attempt_number}"


class ArqRetryScheduler:
    """Enqueues payout retries on the ARQ worker"""

    async def enqueue(self, payout_id: str, attempt_number: int, delay_seconds: float) -> Optional[str]:
        from arq import create_pool

        from ...worker import get_redis_settings

        job_id = retry_job_id(payout_id, attempt_number)
        pool = await create_pool(get_redis_settings())
        try:
            job = await pool.enqueue_job(
                RETRY_TASK_NAME,
                payout_id,
                _job_id=job_id,
                _defer_by=timedelta(seconds=delay_seconds),
            )
        finally:
            await pool.aclose()

        if job is None:
            logger.info(f"📋 Retry job {job_id} already queued")
            return None
        logger.info(f"📋 Payout retry queued: {job.job_id} (in {delay_seconds:.1f}s)")
        return job.job_id


class RetryEngine:
    """Schedules transfer retries and enforces the attempt limit"""

    def __init__(self, db: Session, scheduler=None, max_attempts: int = PAYOUT_MAX_ATTEMPTS):
        self.db = db
        self.repo = PayoutRepository()
        self.scheduler = scheduler or ArqRetryScheduler()
        self.max_attempts = max_attempts

    async def schedule_retry(self, payout_id: str, attempt_number: int) -> Optional[float]:
        """
        Schedule the next transfer attempt after `attempt_number` failed attempts.

        Returns:
            The delay in seconds, or None when nothing was scheduled (payout no
            longer retryable, or attempts exhausted and marked permanently failed)
        """
        payout = self.repo.get_payout_for_update(self.db, payout_id)
        if not payout:
            raise NotFound(f"Payout {payout_id} not found")

        if payout.status != PayoutStatus.FAILED or payout.failure_code is not None:
            logger.info(f"⏭️ Payout {payout_id} is {payout.status.value}, no retry needed")
            self.db.rollback()
            return None

        if attempt_number >= self.max_attempts:
            self.mark_permanently_failed(payout, payout.last_error or "retry attempts exhausted")
            self.db.commit()
            return None

        delay = compute_retry_delay(attempt_number)
        payout.next_retry_at = datetime.utcnow() + timedelta(seconds=delay)
        self.db.commit()

        try:
            await self.scheduler.enqueue(payout_id, attempt_number + 1, delay)
        except Exception as e:
            # next_retry_at is persisted; the stalled-payout sweep picks it up
            logger.error(f"❌ Failed to queue retry for payout {payout_id}: {e}")

        logger.info(
            f"🔁 Payout {payout_id} attempt {attempt_number}/{self.max_attempts} failed, retrying in {delay:.1f}s"
        )
        return delay

    def mark_permanently_failed(self, payout: Payout, reason: str) -> None:
        """Park the payout for an operator. Caller commits."""
        payout.status = PayoutStatus.FAILED
        payout.failure_code = PayoutFailureCode.TRANSFER_PERMANENTLY_FAILED
        payout.last_error = reason
        payout.next_retry_at = None

        raise_alert(
            self.db,
            PAYOUT_PERMANENTLY_FAILED,
            f"Payout {payout.id} failed after {payout.attempts} attempts: {reason}",
            severity="critical",
            booking_id=payout.payment.booking_id if payout.payment else None,
            payment_id=payout.payment_id,
            payout_id=payout.id,
            details={"attempts": payout.attempts, "amount": str(payout.amount)},
        )


def get_retry_scheduler() -> ArqRetryScheduler:
    """Dependency injection for the retry scheduler"""
    return ArqRetryScheduler()
