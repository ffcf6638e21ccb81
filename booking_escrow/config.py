import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking_escrow.db")

# Payment gateway (Paystack-compatible REST API)
GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "https://api.paystack.co")
GATEWAY_SECRET_KEY = os.getenv("GATEWAY_SECRET_KEY")
# Paystack signs webhooks with the account secret key; allow a dedicated secret for other gateways
GATEWAY_WEBHOOK_SECRET = os.getenv("GATEWAY_WEBHOOK_SECRET") or GATEWAY_SECRET_KEY
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "30"))
GATEWAY_CURRENCY = os.getenv("GATEWAY_CURRENCY", "ZAR")
# Bank recipient type used when registering providers (e.g. "nuban", "basa")
GATEWAY_RECIPIENT_TYPE = os.getenv("GATEWAY_RECIPIENT_TYPE", "basa")

# Platform commission taken from every booking total
PLATFORM_FEE_RATE = Decimal(os.getenv("PLATFORM_FEE_RATE", "0.10"))

# Payout retry policy
PAYOUT_MAX_ATTEMPTS = int(os.getenv("PAYOUT_MAX_ATTEMPTS", "3"))
PAYOUT_RETRY_BASE_DELAY = float(os.getenv("PAYOUT_RETRY_BASE_DELAY", "1"))  # seconds
PAYOUT_RETRY_MAX_DELAY = float(os.getenv("PAYOUT_RETRY_MAX_DELAY", "30"))  # seconds

# Reconciliation sweeps
PENDING_PAYMENT_RECOVERY_AGE_MINUTES = int(os.getenv("PENDING_PAYMENT_RECOVERY_AGE_MINUTES", "15"))
STALLED_PAYOUT_AGE_MINUTES = int(os.getenv("STALLED_PAYOUT_AGE_MINUTES", "10"))

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Frontend base URL for payment callbacks
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Message shown to clients whenever money movement fails; gateway details stay in the logs
PAYMENT_SUPPORT_MESSAGE = "Payment could not be completed, please contact support."
