"""Ledger repository - Database operations for ledger entries"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from ...models_payment import LedgerEntry


class LedgerRepository:
    """Repository for ledger database operations. Never commits: callers own the transaction."""

    @staticmethod
    def get_entry(
        db: Session, reference_type: str, reference_id: str, account_type: str, entry_type: str
    ) -> Optional[LedgerEntry]:
        return (
            db.query(LedgerEntry)
            .filter(
                LedgerEntry.reference_type == reference_type,
                LedgerEntry.reference_id == reference_id,
                LedgerEntry.account_type == account_type,
                LedgerEntry.entry_type == entry_type,
            )
            .first()
        )

    @staticmethod
    def add_entry(db: Session, **entry_data) -> LedgerEntry:
        entry = LedgerEntry(**entry_data)
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def get_entries_for_reference(db: Session, reference_type: str, reference_id: str) -> list[LedgerEntry]:
        return (
            db.query(LedgerEntry)
            .filter(LedgerEntry.reference_type == reference_type, LedgerEntry.reference_id == reference_id)
            .order_by(LedgerEntry.created_at)
            .all()
        )

    @staticmethod
    def get_balance(db: Session, account_type: str, account_id: str) -> Decimal:
        """Credits minus debits for one account"""
        signed_amount = case(
            (LedgerEntry.entry_type == "CREDIT", LedgerEntry.amount),
            else_=-LedgerEntry.amount,
        )
        balance = (
            db.query(func.coalesce(func.sum(signed_amount), 0))
            .filter(LedgerEntry.account_type == account_type, LedgerEntry.account_id == account_id)
            .scalar()
        )
        return Decimal(balance).quantize(Decimal("0.01"))
