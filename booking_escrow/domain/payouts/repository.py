"""Payout repository - Database operations for payouts"""

from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from ...models_payment import Payout
from ...statuses import PayoutStatus


class PayoutRepository:
    """Repository for payout database operations. Writes flush but never commit."""

    @staticmethod
    def get_payout(db: Session, payout_id: str) -> Optional[Payout]:
        return db.query(Payout).filter(Payout.id == payout_id).populate_existing().first()

    @staticmethod
    def get_payout_for_update(db: Session, payout_id: str) -> Optional[Payout]:
        return (
            db.query(Payout)
            .filter(Payout.id == payout_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def get_payout_by_payment(db: Session, payment_id: str) -> Optional[Payout]:
        return db.query(Payout).filter(Payout.payment_id == payment_id).populate_existing().first()

    @staticmethod
    def get_payout_by_reference(db: Session, reference: str, for_update: bool = False) -> Optional[Payout]:
        """Match either our transfer reference or the transfer code the gateway assigned"""
        query = db.query(Payout).filter(
            or_(Payout.gateway_reference == reference, Payout.gateway_transfer_reference == reference)
        )
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    @staticmethod
    def claim_for_transfer(db: Session, payout_id: str, max_attempts: int) -> bool:
        """
        Atomically move a payout to PROCESSING and count the attempt.

        Only PENDING payouts, or FAILED ones that are still retryable (no failure
        code) and under the attempt limit, can be claimed. Returns False when
        another worker got there first or the payout is not claimable.
        """
        result = db.execute(
            update(Payout)
            .where(
                Payout.id == payout_id,
                Payout.attempts < max_attempts,
                or_(
                    Payout.status == PayoutStatus.PENDING,
                    and_(Payout.status == PayoutStatus.FAILED, Payout.failure_code.is_(None)),
                ),
            )
            .values(
                status=PayoutStatus.PROCESSING,
                attempts=Payout.attempts + 1,
                next_retry_at=None,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def get_stalled_payouts(db: Session, older_than: datetime, limit: int = 100) -> list[Payout]:
        """
        Payouts a crashed process may have abandoned: PENDING ones never attempted,
        PROCESSING ones the gateway never acknowledged, and retryable FAILED ones
        whose retry time has passed.
        """
        return (
            db.query(Payout)
            .filter(
                or_(
                    and_(Payout.status == PayoutStatus.PENDING, Payout.updated_at < older_than),
                    and_(
                        Payout.status == PayoutStatus.PROCESSING,
                        Payout.gateway_transfer_reference.is_(None),
                        Payout.updated_at < older_than,
                    ),
                    and_(
                        Payout.status == PayoutStatus.FAILED,
                        Payout.failure_code.is_(None),
                        Payout.next_retry_at.isnot(None),
                        Payout.next_retry_at < older_than,
                    ),
                )
            )
            .order_by(Payout.created_at)
            .limit(limit)
            .all()
        )
