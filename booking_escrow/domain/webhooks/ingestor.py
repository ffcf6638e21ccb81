"""
Webhook Ingestor

Entry point for every gateway event. Guarantees exactly-once effect on top
of at-least-once delivery:

- signature checked over the raw body before anything is recorded
- one WebhookEvent row per event id, inserted with ON CONFLICT DO NOTHING
- the event row and the state changes it causes commit together
- a failed handler leaves no partial state; the failure is recorded on its own
"""

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from ...config import GATEWAY_WEBHOOK_SECRET
from ...errors import WebhookEventAlreadyProcessed
from ...statuses import FINAL_WEBHOOK_OUTCOMES, WebhookOutcome
from ...webhook_security import verify_gateway_signature
from ..payments.service import GatewayEventResult, PaymentService
from .repository import WebhookRepository

logger = logging.getLogger(__name__)


def compute_event_id(payload: Any, raw_body: bytes) -> str:
    """Gateway event id when present, otherwise a digest of the exact body"""
    if isinstance(payload, dict):
        event_id = payload.get("id")
        if isinstance(event_id, (str, int)) and str(event_id):
            return str(event_id)
    return hashlib.sha256(raw_body).hexdigest()


def _malformed_reason(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return "payload is not a JSON object"
    if not isinstance(payload.get("event"), str) or not payload["event"]:
        return "missing event type"
    if not isinstance(payload.get("data"), dict):
        return "missing data object"
    amount = payload["data"].get("amount")
    if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int)):
        return "amount must be an integer"
    reference = payload["data"].get("reference")
    if reference is not None and not isinstance(reference, str):
        return "reference must be a string"
    return None


class WebhookIngestor:
    """Verifies, deduplicates and dispatches gateway webhooks"""

    def __init__(self, db: Session, payment_service: Optional[PaymentService] = None, secret: Optional[str] = None):
        self.db = db
        self.repo = WebhookRepository()
        self.payment_service = payment_service or PaymentService(db)
        self.secret = secret if secret is not None else GATEWAY_WEBHOOK_SECRET

    async def receive(self, raw_body: bytes, signature: Optional[str]) -> tuple[int, dict]:
        """
        Process one delivery.

        Returns:
            (HTTP status, response body): 200 processed/ignored/duplicate,
            401 bad signature, 400 malformed, 500 handler failure
        """
        if not verify_gateway_signature(self.secret, raw_body, signature):
            return 401, {"error": "INVALID_SIGNATURE", "detail": "Invalid webhook signature"}

        raw_text = raw_body.decode("utf-8", errors="replace")
        try:
            payload = json.loads(raw_body)
        except ValueError:
            payload = None

        event_id = compute_event_id(payload, raw_body)
        reason = _malformed_reason(payload)
        if reason:
            self._record_malformed(event_id, payload, raw_text, reason)
            return 400, {"error": "MALFORMED_WEBHOOK", "detail": reason}

        event_type = payload["event"]
        data = payload["data"]
        reference = data.get("reference")
        logger.info(f"📥 Gateway webhook {event_type} received: id={event_id}, reference={reference}")

        try:
            inserted = self.repo.insert_event_if_absent(self.db, event_id, event_type, reference, raw_text)
            event = self.repo.get_event_for_update(self.db, event_id)
            if not inserted:
                if event.outcome in FINAL_WEBHOOK_OUTCOMES:
                    raise WebhookEventAlreadyProcessed(f"Event {event_id} already {event.outcome.value}")
                event.attempts += 1

            result = self.payment_service.apply_gateway_event(event_type, data)

            event.outcome = result.outcome
            event.error = result.reason if result.outcome == WebhookOutcome.IGNORED else None
            event.processed_at = datetime.utcnow()
            self.db.commit()
        except WebhookEventAlreadyProcessed as e:
            self.db.rollback()
            logger.info(f"⏭️ Duplicate webhook {event_id}: {e.message}, acknowledging")
            return 200, {"status": "duplicate", "event_id": event_id}
        except Exception as e:
            self.db.rollback()
            logger.exception(f"❌ Webhook {event_id} ({event_type}) failed: {e}")
            self._record_failure(event_id, event_type, reference, raw_text, e)
            return 500, {"error": "WEBHOOK_PROCESSING_FAILED", "detail": "Webhook processing failed"}

        await self._run_post_commit(event_id, result)
        logger.info(f"✅ Webhook {event_id} {result.outcome.value}")
        return 200, {"status": result.outcome.value, "event_id": event_id}

    async def _run_post_commit(self, event_id: str, result: GatewayEventResult) -> None:
        for action in result.post_commit:
            try:
                await action()
            except Exception as e:
                # The event is committed; stalled-payout sweeps re-drive anything missed here
                logger.error(f"❌ Post-commit action for webhook {event_id} failed: {e}")
                self.db.rollback()

    def _record_malformed(self, event_id: str, payload: Any, raw_text: str, reason: str) -> None:
        event_type = payload.get("event") if isinstance(payload, dict) else None
        self.repo.insert_event_if_absent(
            self.db,
            event_id,
            event_type if isinstance(event_type, str) else None,
            None,
            raw_text,
            outcome=WebhookOutcome.MALFORMED,
        )
        event = self.repo.get_event(self.db, event_id)
        if event and event.outcome == WebhookOutcome.MALFORMED:
            event.error = reason
            event.processed_at = datetime.utcnow()
        self.db.commit()
        logger.warning(f"🚫 Malformed webhook {event_id}: {reason}")

    def _record_failure(self, event_id: str, event_type: str, reference: Optional[str], raw_text: str, error: Exception) -> None:
        try:
            self.repo.record_failure(self.db, event_id, event_type, reference, raw_text, f"{type(error).__name__}: {error}")
            self.db.commit()
        except Exception as record_error:
            self.db.rollback()
            logger.error(f"❌ Could not record failure for webhook {event_id}: {record_error}")
