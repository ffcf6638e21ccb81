"""Ledger service - records every money movement exactly once"""

import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from ...models_payment import LedgerEntry, Payment, Payout
from .repository import LedgerRepository

logger = logging.getLogger(__name__)

PROVIDER_ESCROW = "PROVIDER_ESCROW"
PLATFORM_REVENUE = "PLATFORM_REVENUE"
CLIENT_REFUND = "CLIENT_REFUND"

PLATFORM_ACCOUNT_ID = "platform"

CREDIT = "CREDIT"
DEBIT = "DEBIT"


class LedgerService:
    """Service layer for ledger entries"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = LedgerRepository()

    def _record(
        self,
        account_type: str,
        account_id: str,
        entry_type: str,
        amount: Decimal,
        reference_type: str,
        reference_id: str,
        description: str,
    ) -> LedgerEntry:
        # Idempotent on (reference, account, side): a replayed event finds its entry
        existing = self.repo.get_entry(self.db, reference_type, reference_id, account_type, entry_type)
        if existing:
            logger.info(f"📒 Ledger entry already recorded: {reference_type}:{reference_id} {account_type} {entry_type}")
            return existing

        return self.repo.add_entry(
            self.db,
            account_type=account_type,
            account_id=account_id,
            entry_type=entry_type,
            amount=amount,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
        )

    def record_charge(self, payment: Payment, provider_id: str) -> None:
        """Client money arrived: escrow for the provider, fee for the platform"""
        self._record(
            PROVIDER_ESCROW,
            provider_id,
            CREDIT,
            payment.escrow_amount,
            "PAYMENT",
            payment.id,
            f"Escrow for booking {payment.booking_id}",
        )
        self._record(
            PLATFORM_REVENUE,
            PLATFORM_ACCOUNT_ID,
            CREDIT,
            payment.platform_fee,
            "PAYMENT",
            payment.id,
            f"Platform fee for booking {payment.booking_id}",
        )
        logger.info(f"📒 Recorded charge {payment.id}: escrow={payment.escrow_amount}, fee={payment.platform_fee}")

    def record_release(self, payout: Payout) -> None:
        """Escrow paid out to the provider"""
        self._record(
            PROVIDER_ESCROW,
            payout.provider_id,
            DEBIT,
            payout.amount,
            "PAYOUT",
            payout.id,
            f"Payout for payment {payout.payment_id}",
        )
        logger.info(f"📒 Recorded release {payout.id}: {payout.amount}")

    def record_refund(self, payment: Payment, provider_id: str, client_id: str) -> None:
        """Full refund to the client: both escrow and fee are given back"""
        self._record(
            PROVIDER_ESCROW,
            provider_id,
            DEBIT,
            payment.escrow_amount,
            "REFUND",
            payment.id,
            f"Refund of escrow for booking {payment.booking_id}",
        )
        self._record(
            PLATFORM_REVENUE,
            PLATFORM_ACCOUNT_ID,
            DEBIT,
            payment.platform_fee,
            "REFUND",
            payment.id,
            f"Refund of platform fee for booking {payment.booking_id}",
        )
        self._record(
            CLIENT_REFUND,
            client_id,
            CREDIT,
            payment.amount,
            "REFUND",
            payment.id,
            f"Refund for booking {payment.booking_id}",
        )
        logger.info(f"📒 Recorded refund for payment {payment.id}: {payment.amount}")

    def provider_escrow_balance(self, provider_id: str) -> Decimal:
        return self.repo.get_balance(self.db, PROVIDER_ESCROW, provider_id)
