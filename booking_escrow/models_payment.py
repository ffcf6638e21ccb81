"""
Payment, Payout and Webhook Models for the escrow engine
"""

from decimal import Decimal

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func

from .database import Base
from .models import generate_public_id, status_column
from .statuses import (
    PaymentMethod,
    PaymentStatus,
    PayoutFailureCode,
    PayoutStatus,
    WebhookOutcome,
)


class Payment(Base):
    """Client payment for a booking, held in escrow until release"""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), unique=True, nullable=False)

    # Amounts: amount == escrow_amount + platform_fee, always
    amount = Column(Numeric(12, 2), nullable=False)
    escrow_amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="ZAR")

    # Idempotency anchor for the charge
    gateway_reference = Column(String(100), unique=True, nullable=False, index=True)
    authorization_url = Column(String(500), nullable=True)  # Gateway checkout URL
    gateway_transaction_id = Column(String(100), nullable=True)

    status = status_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING, index=True)
    payment_method = status_column(PaymentMethod, nullable=False, default=PaymentMethod.ONLINE)
    failure_reason = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    booking = relationship("Booking", back_populates="payment")
    payout = relationship("Payout", back_populates="payment", uselist=False)

    __mapper_args__ = {"version_id_col": version}

    @validates("escrow_amount")
    def validate_escrow_amount(self, key, value):
        if self.amount is not None and self.platform_fee is not None:
            if Decimal(value) + Decimal(self.platform_fee) != Decimal(self.amount):
                raise ValueError("escrow_amount + platform_fee must equal amount")
        return value


class Payout(Base):
    """Transfer of escrowed funds to the provider - one per payment, retried in place"""

    __tablename__ = "payouts"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    payment_id = Column(String(36), ForeignKey("payments.id"), unique=True, nullable=False)
    provider_id = Column(String(36), ForeignKey("providers.id"), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)  # Equals payment.escrow_amount

    # Our transfer reference, reused on every attempt so the gateway deduplicates
    gateway_reference = Column(String(100), unique=True, nullable=False, index=True)
    # Transfer code returned by the gateway once a transfer is accepted
    gateway_transfer_reference = Column(String(100), nullable=True, index=True)
    recipient_code = Column(String(100), nullable=True)

    status = status_column(PayoutStatus, nullable=False, default=PayoutStatus.PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    failure_code = status_column(PayoutFailureCode, nullable=True)  # Set only for terminal failures
    last_error = Column(Text, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    payment = relationship("Payment", back_populates="payout")
    provider = relationship("Provider")

    @property
    def permanently_failed(self) -> bool:
        return self.status == PayoutStatus.FAILED and self.failure_code is not None


class WebhookEvent(Base):
    """Inbound gateway event, keyed by event id - the dedup boundary for webhooks"""

    __tablename__ = "webhook_events"

    id = Column(String(128), primary_key=True)  # Gateway event id or sha256 of the raw body
    event_type = Column(String(100), nullable=True, index=True)
    gateway_reference = Column(String(100), nullable=True, index=True)
    raw_payload = Column(Text, nullable=False)

    outcome = status_column(WebhookOutcome, nullable=False, default=WebhookOutcome.RECEIVED)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)

    received_at = Column(DateTime, server_default=func.now())
    processed_at = Column(DateTime, nullable=True)


class LedgerEntry(Base):
    """Double-entry style money movement record, one row per (reference, account, side)"""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint(
            "reference_type",
            "reference_id",
            "account_type",
            "entry_type",
            name="uq_ledger_entry_reference",
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_public_id)
    account_type = Column(String(30), nullable=False)  # PROVIDER_ESCROW, PLATFORM_REVENUE, CLIENT_REFUND
    account_id = Column(String(36), nullable=False, index=True)
    entry_type = Column(String(10), nullable=False)  # CREDIT, DEBIT
    amount = Column(Numeric(12, 2), nullable=False)
    reference_type = Column(String(20), nullable=False)  # PAYMENT, PAYOUT, REFUND
    reference_id = Column(String(36), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class OperatorAlert(Base):
    """Human-actionable problem raised by the engine (permanent payout failure, etc.)"""

    __tablename__ = "operator_alerts"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    code = Column(String(50), nullable=False, index=True)
    severity = Column(String(20), nullable=False, default="error")  # warning, error, critical
    booking_id = Column(String(36), nullable=True, index=True)
    payment_id = Column(String(36), nullable=True)
    payout_id = Column(String(36), nullable=True)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
