"""Provider router - FastAPI endpoints for provider payout settings"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...database import get_db
from ...models import Provider
from .schemas import BankDetailsUpdate, ProviderPayoutDetailsResponse
from .service import ProviderService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/providers", tags=["Providers"])


def get_provider_service(db: Session = Depends(get_db)) -> ProviderService:
    """Dependency injection for ProviderService"""
    return ProviderService(db)


def _payout_details(provider: Provider) -> ProviderPayoutDetailsResponse:
    return ProviderPayoutDetailsResponse(
        provider_id=provider.id,
        bank_code=provider.bank_code,
        account_name=provider.account_name,
        account_last4=provider.account_last4,
        has_bank_details=provider.has_bank_details,
        recipient_registered=bool(provider.recipient_code),
    )


@router.get("/{provider_id}/bank-details", response_model=ProviderPayoutDetailsResponse)
async def get_bank_details(provider_id: str, service: ProviderService = Depends(get_provider_service)):
    """Masked payout bank details"""
    return _payout_details(service.get_provider(provider_id))


@router.put("/{provider_id}/bank-details", response_model=ProviderPayoutDetailsResponse)
async def update_bank_details(
    provider_id: str,
    data: BankDetailsUpdate,
    service: ProviderService = Depends(get_provider_service),
):
    """Set the bank account payouts are sent to"""
    return _payout_details(service.update_bank_details(provider_id, data))
