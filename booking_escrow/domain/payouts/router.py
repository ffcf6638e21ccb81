"""Payout router - operator view and manual retry of provider payouts"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...database import get_db
from ...errors import NotFound
from ...services.gateway_client import GatewayClient, get_gateway_client
from .orchestrator import ReleaseOrchestrator
from .repository import PayoutRepository
from .retry import RetryEngine, get_retry_scheduler
from .schemas import PayoutResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payouts", tags=["Payouts"])


def get_release_orchestrator(
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    scheduler=Depends(get_retry_scheduler),
) -> ReleaseOrchestrator:
    """Dependency injection for ReleaseOrchestrator"""
    return ReleaseOrchestrator(db, gateway=gateway, retry_engine=RetryEngine(db, scheduler=scheduler))


@router.get("/{payout_id}", response_model=PayoutResponse)
async def get_payout(payout_id: str, db: Session = Depends(get_db)):
    payout = PayoutRepository.get_payout(db, payout_id)
    if not payout:
        raise NotFound(f"Payout {payout_id} not found")
    return payout


@router.post("/{payout_id}/retry", response_model=PayoutResponse)
async def retry_payout(payout_id: str, orchestrator: ReleaseOrchestrator = Depends(get_release_orchestrator)):
    """Give a failed payout a fresh attempt budget and send it again"""
    payout = await orchestrator.retry_payout_manually(payout_id)
    logger.info(f"🔧 Manual payout retry requested for {payout_id}: {payout.status.value}")
    return payout
