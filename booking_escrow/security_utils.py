"""
Security Utilities
Encryption of sensitive provider data at rest and masking for logs
"""

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from .config import SECRET_KEY

logger = logging.getLogger(__name__)

# Fernet needs a 32-byte urlsafe-base64 key; derive it from SECRET_KEY
cipher_suite = Fernet(base64.urlsafe_b64encode(hashlib.sha256(SECRET_KEY.encode()).digest()))


# ============================================================================
# ENCRYPTION
# ============================================================================


def encrypt_value(value: str) -> str:
    """Encrypt a sensitive value (bank account numbers)"""
    return cipher_suite.encrypt(value.encode()).decode()


def decrypt_value(encrypted_value: str) -> str:
    """Decrypt a stored value"""
    try:
        return cipher_suite.decrypt(encrypted_value.encode()).decode()
    except InvalidToken:
        logger.error("❌ Failed to decrypt stored value - SECRET_KEY may have changed")
        raise


# ============================================================================
# LOGGING HELPERS
# ============================================================================


def mask_sensitive_data(data: str, visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to show at the end

    Returns:
        Masked string (e.g., "****1234")
    """
    if not data or len(data) <= visible_chars:
        return "****"

    return "*" * (len(data) - visible_chars) + data[-visible_chars:]
