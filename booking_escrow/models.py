import uuid
from decimal import Decimal

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func

from .database import Base
from .errors import AmountLocked
from .statuses import BookingStatus, PaymentMethod


def generate_public_id():
    """Generate an opaque identifier for records exposed outside the service"""
    return str(uuid.uuid4())


def status_column(enum_cls, **kwargs):
    """Enum stored as a constrained VARCHAR so unknown values are a schema violation"""
    return Column(
        Enum(
            enum_cls,
            native_enum=False,
            validate_strings=True,
            length=32,
            values_callable=lambda members: [member.value for member in members],
        ),
        **kwargs,
    )


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    role = Column(String(20), default="client", nullable=False)  # client, provider, admin
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    provider = relationship("Provider", back_populates="user", uselist=False)
    bookings = relationship("Booking", back_populates="client")


class Provider(Base):
    __tablename__ = "providers"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    user_id = Column(String(36), ForeignKey("users.id"), unique=True, nullable=False)
    business_name = Column(String(255), nullable=True)

    # Bank details used to register a transfer recipient with the gateway
    bank_code = Column(String(20), nullable=True)
    account_number_encrypted = Column(Text, nullable=True)  # Fernet token, never plaintext
    account_last4 = Column(String(4), nullable=True)  # For display only
    account_name = Column(String(255), nullable=True)
    # Gateway transfer recipient, created once on first payout
    recipient_code = Column(String(100), nullable=True, index=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="provider")
    bookings = relationship("Booking", back_populates="provider")

    @property
    def has_bank_details(self) -> bool:
        return bool(self.bank_code and self.account_number_encrypted)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=generate_public_id)
    client_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    provider_id = Column(String(36), ForeignKey("providers.id"), nullable=False, index=True)
    service_id = Column(String(64), nullable=False)  # Catalogue entry, managed elsewhere

    scheduled_date = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    address = Column(Text, nullable=True)

    # Pricing - immutable once a payment exists
    total_amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    payment_method = status_column(PaymentMethod, nullable=False, default=PaymentMethod.ONLINE)

    # Written only through the booking state machine
    status = status_column(BookingStatus, nullable=False, default=BookingStatus.PENDING, index=True)

    client_confirmed_at = Column(DateTime, nullable=True)
    dispute_reason = Column(Text, nullable=True)
    dispute_resolution = Column(String(50), nullable=True)  # refund_client, release_to_provider
    dispute_resolved_at = Column(DateTime, nullable=True)

    # Optimistic concurrency counter (bumped on every flush that updates the row)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    client = relationship("User", back_populates="bookings")
    provider = relationship("Provider", back_populates="bookings")
    payment = relationship("Payment", back_populates="booking", uselist=False)

    __mapper_args__ = {"version_id_col": version}

    @validates("total_amount", "platform_fee")
    def validate_pricing(self, key, value):
        current = getattr(self, key)
        if self.payment is not None and current is not None and Decimal(value) != Decimal(current):
            raise AmountLocked(f"Booking {self.id} already has a payment; {key} cannot change")
        return value
