"""Provider service - payout bank details"""

import logging

from sqlalchemy.orm import Session

from ...errors import NotFound
from ...models import Provider
from ...security_utils import encrypt_value, mask_sensitive_data
from ..bookings.repository import BookingRepository
from .schemas import BankDetailsUpdate

logger = logging.getLogger(__name__)


class ProviderService:
    """Service layer for provider payout settings"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BookingRepository()

    def get_provider(self, provider_id: str) -> Provider:
        provider = self.repo.get_provider(self.db, provider_id)
        if not provider:
            raise NotFound(f"Provider {provider_id} not found")
        return provider

    def update_bank_details(self, provider_id: str, data: BankDetailsUpdate) -> Provider:
        """Store the account encrypted. A changed account needs a new gateway recipient."""
        provider = self.get_provider(provider_id)

        provider.bank_code = data.bank_code
        provider.account_number_encrypted = encrypt_value(data.account_number)
        provider.account_last4 = data.account_number[-4:]
        provider.account_name = data.account_name
        provider.recipient_code = None

        self.db.commit()
        self.db.refresh(provider)
        logger.info(
            f"🏦 Bank details updated for provider {provider_id}: bank={data.bank_code}, "
            f"account={mask_sensitive_data(data.account_number)}"
        )
        return provider
