"""Payment repository - Database operations for payments"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models_payment import Payment
from ...statuses import PaymentMethod, PaymentStatus


class PaymentRepository:
    """Repository for payment database operations. Writes flush but never commit."""

    @staticmethod
    def get_payment(db: Session, payment_id: str) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.id == payment_id).populate_existing().first()

    @staticmethod
    def get_payment_for_update(db: Session, payment_id: str) -> Optional[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.id == payment_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def get_payment_by_booking(db: Session, booking_id: str, for_update: bool = False) -> Optional[Payment]:
        query = db.query(Payment).filter(Payment.booking_id == booking_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    @staticmethod
    def get_payment_by_reference(db: Session, gateway_reference: str, for_update: bool = False) -> Optional[Payment]:
        query = db.query(Payment).filter(Payment.gateway_reference == gateway_reference)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    @staticmethod
    def get_stale_pending_payments(db: Session, older_than: datetime, limit: int = 100) -> list[Payment]:
        """Online payments still PENDING after the cutoff - webhook may have been lost"""
        return (
            db.query(Payment)
            .filter(
                Payment.status == PaymentStatus.PENDING,
                Payment.payment_method == PaymentMethod.ONLINE,
                Payment.created_at < older_than,
            )
            .order_by(Payment.created_at)
            .limit(limit)
            .all()
        )
