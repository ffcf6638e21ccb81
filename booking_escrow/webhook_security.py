"""
Webhook Security Module

Signature verification for payment gateway webhooks.
- Constant-time signature comparison (prevents timing attacks)
- HMAC-SHA512 over the exact raw request body (Paystack scheme)
- Logging for security auditing without leaking secrets
"""

import hashlib
import hmac
import logging
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

# Header names accepted for the gateway signature, in order of preference
SIGNATURE_HEADERS = ("x-signature", "x-paystack-signature")


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha512(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA512 signature of payload (hex encoded)"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()


def extract_signature(headers: Mapping[str, str]) -> Optional[str]:
    """Return the first signature header present, or None"""
    for header_name in SIGNATURE_HEADERS:
        value = headers.get(header_name)
        if value:
            return value.strip()
    return None


def verify_gateway_signature(secret: Optional[str], raw_body: bytes, signature: Optional[str]) -> bool:
    """
    Verify a gateway webhook signature.

    Args:
        secret: Webhook signing secret
        raw_body: Request body bytes exactly as received - never re-serialized JSON
        signature: Hex digest from the signature header

    Returns:
        True if the signature matches, False otherwise
    """
    if not secret:
        logger.error("❌ Webhook secret not configured - rejecting all webhooks")
        return False

    if not signature:
        logger.warning("🚫 Gateway webhook missing signature header")
        return False

    expected_signature = compute_hmac_sha512(secret, raw_body)
    if not constant_time_compare(expected_signature, signature.lower()):
        logger.warning(f"🚫 Gateway webhook signature mismatch (body length: {len(raw_body)} bytes)")
        return False

    logger.debug("✅ Gateway webhook signature verified")
    return True


def create_webhook_signature(secret: str, payload: bytes) -> str:
    """
    Create a webhook signature for testing or replaying events.

    Args:
        secret: Signing secret
        payload: Request body bytes

    Returns:
        Signature string in the gateway's format
    """
    return compute_hmac_sha512(secret, payload)
