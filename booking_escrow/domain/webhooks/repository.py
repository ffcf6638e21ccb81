"""Webhook event repository - the dedup boundary for inbound gateway events"""

from datetime import datetime
from typing import Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from ...models_payment import WebhookEvent
from ...statuses import WebhookOutcome


def _dialect_insert(db: Session):
    """INSERT construct supporting ON CONFLICT for the bound database"""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect for webhook dedup: {dialect}")


class WebhookRepository:
    """Repository for webhook event database operations"""

    @staticmethod
    def insert_event_if_absent(
        db: Session,
        event_id: str,
        event_type: Optional[str],
        gateway_reference: Optional[str],
        raw_payload: str,
        outcome: WebhookOutcome = WebhookOutcome.RECEIVED,
    ) -> bool:
        """Insert the event row unless it exists. Returns True when this call inserted it."""
        insert = _dialect_insert(db)
        stmt = (
            insert(WebhookEvent)
            .values(
                id=event_id,
                event_type=event_type,
                gateway_reference=gateway_reference,
                raw_payload=raw_payload,
                outcome=outcome,
                attempts=1,
            )
            .on_conflict_do_nothing(index_elements=["id"])
        )
        result = db.execute(stmt)
        return result.rowcount == 1

    @staticmethod
    def get_event_for_update(db: Session, event_id: str) -> Optional[WebhookEvent]:
        return (
            db.query(WebhookEvent)
            .filter(WebhookEvent.id == event_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def get_event(db: Session, event_id: str) -> Optional[WebhookEvent]:
        return db.query(WebhookEvent).filter(WebhookEvent.id == event_id).populate_existing().first()

    @staticmethod
    def record_failure(
        db: Session,
        event_id: str,
        event_type: Optional[str],
        gateway_reference: Optional[str],
        raw_payload: str,
        error: str,
    ) -> None:
        """
        Persist a failed processing attempt. The event row may have been rolled
        back with the failed transaction, so this is an upsert.
        """
        insert = _dialect_insert(db)
        stmt = insert(WebhookEvent).values(
            id=event_id,
            event_type=event_type,
            gateway_reference=gateway_reference,
            raw_payload=raw_payload,
            outcome=WebhookOutcome.FAILED,
            error=error,
            attempts=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "outcome": WebhookOutcome.FAILED.value,
                "error": error,
                "attempts": WebhookEvent.attempts + 1,
                "processed_at": datetime.utcnow(),
            },
        )
        db.execute(stmt)
