"""Webhook router - inbound payment gateway events"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ...database import get_db
from ...services.gateway_client import GatewayClient, get_gateway_client
from ...webhook_security import extract_signature
from ..payments.service import PaymentService
from ..payouts.retry import RetryEngine, get_retry_scheduler
from .ingestor import WebhookIngestor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def get_webhook_ingestor(
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
    scheduler=Depends(get_retry_scheduler),
) -> WebhookIngestor:
    """Dependency injection for WebhookIngestor"""
    payment_service = PaymentService(db, gateway=gateway, retry_engine=RetryEngine(db, scheduler=scheduler))
    return WebhookIngestor(db, payment_service=payment_service)


@router.post("/gateway")
async def gateway_webhook(request: Request, ingestor: WebhookIngestor = Depends(get_webhook_ingestor)):
    """
    Payment gateway webhook.

    The signature is computed over the raw body, so the body is read as bytes
    and never re-serialized before verification.
    """
    raw_body = await request.body()
    status_code, body = await ingestor.receive(raw_body, extract_signature(request.headers))
    return JSONResponse(status_code=status_code, content=body)
