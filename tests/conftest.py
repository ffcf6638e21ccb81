"""Shared test configuration and fixtures.

- Every test gets a fresh SQLite database file (tables created and dropped per test).
- The payment gateway is replaced by FakeGateway; nothing leaves the process.
- Retry jobs are captured by FakeScheduler instead of going to Redis.
- HTTP tests go through the ASGI app with httpx.AsyncClient (@pytest.mark.anyio).
"""

import asyncio
import json
import os
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

# Configure the app before any booking_escrow module reads its settings
_TEST_DIR = tempfile.mkdtemp(prefix="booking-escrow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["GATEWAY_SECRET_KEY"] = "sk_test_gateway"
os.environ["GATEWAY_WEBHOOK_SECRET"] = "whsec_test"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"

import httpx
import pytest

from booking_escrow import models, models_payment  # noqa: F401
from booking_escrow.database import Base, SessionLocal, engine
from booking_escrow.domain.payments.breakdown import calculate_breakdown
from booking_escrow.domain.payments.service import PaymentService
from booking_escrow.domain.payouts.orchestrator import ReleaseOrchestrator
from booking_escrow.domain.payouts.retry import RetryEngine
from booking_escrow.models import Booking, Provider, User
from booking_escrow.models_payment import Payment
from booking_escrow.security_utils import encrypt_value
from booking_escrow.statuses import BookingStatus, PaymentMethod, PaymentStatus
from booking_escrow.webhook_security import create_webhook_signature

WEBHOOK_SECRET = "whsec_test"


class FakeGateway:
    """In-memory stand-in for GatewayClient that records every call"""

    def __init__(self):
        self.calls = []
        self.transfer_errors = []  # raised in order by create_transfer, one per call
        self.charge_status = "success"
        self.charge_amount = None
        self.refund_error = None
        self.recipient_error = None
        self._transfers = 0

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def initialize_charge(self, amount, reference, email, callback_url=None, metadata=None):
        self.calls.append(("initialize_charge", reference, amount))
        return {
            "authorization_url": f"https://checkout.test/{reference}",
            "access_code": f"AC_{reference}",
            "reference": reference,
        }

    async def verify_charge(self, reference):
        self.calls.append(("verify_charge", reference))
        return {"status": self.charge_status, "reference": reference, "amount": self.charge_amount, "id": 4242}

    async def create_recipient(self, name, account_number, bank_code):
        self.calls.append(("create_recipient", account_number, bank_code))
        if self.recipient_error:
            raise self.recipient_error
        return "RCP_test"

    async def create_transfer(self, amount, recipient_code, reference, reason=None):
        self.calls.append(("create_transfer", reference, amount))
        # Yield so concurrent releases interleave here
        await asyncio.sleep(0)
        if self.transfer_errors:
            raise self.transfer_errors.pop(0)
        self._transfers += 1
        return {"transfer_code": f"TRF_{self._transfers}", "status": "pending", "reference": reference}

    async def create_refund(self, reference, amount=None, reason=None):
        self.calls.append(("create_refund", reference, amount))
        if self.refund_error:
            raise self.refund_error
        return {"status": "pending", "transaction": {"reference": reference}}

    def transfers(self) -> list:
        return [call for call in self.calls if call[0] == "create_transfer"]


class FakeScheduler:
    """Captures payout retry jobs instead of enqueueing them on ARQ"""

    def __init__(self):
        self.jobs = []

    async def enqueue(self, payout_id, attempt_number, delay_seconds):
        self.jobs.append((payout_id, attempt_number, delay_seconds))
        return f"payout-retry:{payout_id}:{attempt_number}"


class Seeder:
    """Factories for users, providers and bookings in a given state"""

    def __init__(self, db):
        self.db = db
        self._n = 0

    def _next(self) -> int:
        self._n += 1
        return self._n

    def client(self) -> User:
        user = User(email=f"client{self._next()}@example.com", full_name="Test Client", role="client")
        self.db.add(user)
        self.db.commit()
        return user

    def provider(self, bank_details: bool = True, recipient_code=None) -> Provider:
        user = User(email=f"provider{self._next()}@example.com", full_name="Test Provider", role="provider")
        self.db.add(user)
        self.db.flush()
        provider = Provider(user_id=user.id, business_name="Sparkle Cleaning", recipient_code=recipient_code)
        if bank_details:
            provider.bank_code = "250655"
            provider.account_number_encrypted = encrypt_value("62812345678")
            provider.account_last4 = "5678"
            provider.account_name = "Sparkle Cleaning"
        self.db.add(provider)
        self.db.commit()
        return provider

    def booking(
        self,
        total="500.00",
        status: BookingStatus = BookingStatus.PENDING,
        payment_method: PaymentMethod = PaymentMethod.ONLINE,
        client: User = None,
        provider: Provider = None,
    ) -> Booking:
        client = client or self.client()
        provider = provider or self.provider()
        breakdown = calculate_breakdown(Decimal(total))
        booking = Booking(
            client_id=client.id,
            provider_id=provider.id,
            service_id="deep-clean",
            scheduled_date=datetime.utcnow() + timedelta(days=2),
            duration_minutes=120,
            total_amount=breakdown.total_amount,
            platform_fee=breakdown.platform_fee,
            payment_method=payment_method,
            status=status,
        )
        self.db.add(booking)
        self.db.commit()
        return booking

    def escrowed_booking(self, total="500.00", status: BookingStatus = BookingStatus.AWAITING_CONFIRMATION, **kwargs) -> Booking:
        """Online booking whose charge has already been captured into escrow"""
        booking = self.booking(total=total, status=status, **kwargs)
        payment = Payment(
            booking_id=booking.id,
            amount=booking.total_amount,
            platform_fee=booking.platform_fee,
            escrow_amount=booking.total_amount - booking.platform_fee,
            currency="ZAR",
            gateway_reference=f"BK-TEST-{self._next()}",
            payment_method=PaymentMethod.ONLINE,
            status=PaymentStatus.ESCROW,
            paid_at=datetime.utcnow(),
        )
        self.db.add(payment)
        self.db.commit()
        return booking


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""

    return "asyncio"


@pytest.fixture(autouse=True)
def database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def seed(db) -> Seeder:
    return Seeder(db)


@pytest.fixture
def retry_engine(db, scheduler) -> RetryEngine:
    return RetryEngine(db, scheduler=scheduler)


@pytest.fixture
def payments(db, gateway, retry_engine) -> PaymentService:
    return PaymentService(db, gateway=gateway, retry_engine=retry_engine)


@pytest.fixture
def orchestrator(db, gateway, retry_engine) -> ReleaseOrchestrator:
    return ReleaseOrchestrator(db, gateway=gateway, retry_engine=retry_engine)


@pytest.fixture
async def api_client(gateway, scheduler):
    from booking_escrow.domain.payouts.retry import get_retry_scheduler
    from booking_escrow.main import app
    from booking_escrow.services.gateway_client import get_gateway_client

    app.dependency_overrides[get_gateway_client] = lambda: gateway
    app.dependency_overrides[get_retry_scheduler] = lambda: scheduler
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def signed_webhook():
    """Serialize a gateway event and sign it the way the gateway does"""

    def sign(payload: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict]:
        body = json.dumps(payload).encode()
        return body, {"X-Signature": create_webhook_signature(secret, body), "Content-Type": "application/json"}

    return sign
