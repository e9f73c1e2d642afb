# Webhook Event Ledger
# Durable, idempotent record of inbound gateway events. A delivery is processed
# only by whoever claims its row; every other delivery is a duplicate.

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.models import utcnow
from database.marketplace_models import WebhookEvent, WebhookEventStatusDB

logger = logging.getLogger(__name__)


class WebhookLedger:

    def __init__(self, db: Session):
        self.db = db

    def find(self, external_event_id: str) -> Optional[WebhookEvent]:
        return self.db.query(WebhookEvent).filter(
            WebhookEvent.external_event_id == external_event_id
        ).first()

    def get(self, event_row_id: str) -> Optional[WebhookEvent]:
        return self.db.query(WebhookEvent).filter(WebhookEvent.id == event_row_id).first()

    def claim(self, external_event_id: str, event_type: str, payload: dict) -> Optional[WebhookEvent]:
        """
        Claim an event for processing. Returns the row when this caller owns
        it, None when the delivery is a duplicate. Commits the claim.
        """
        existing = self.find(external_event_id)
        if existing is None:
            row = WebhookEvent(
                external_event_id=external_event_id,
                type=event_type,
                payload=payload,
                status=WebhookEventStatusDB.PROCESSING,
                attempts=1,
            )
            self.db.add(row)
            try:
                self.db.commit()
            except IntegrityError:
                # Lost the insert race to a concurrent delivery
                self.db.rollback()
                logger.info(f"Webhook {external_event_id} claimed concurrently; skipping")
                return None
            return row

        if existing.status == WebhookEventStatusDB.FAILED:
            return self.reclaim(existing)

        logger.info(f"Duplicate webhook {external_event_id} ({existing.status.value}); skipping")
        self.db.rollback()
        return None

    def reclaim(self, row: WebhookEvent) -> Optional[WebhookEvent]:
        """failed -> processing, guarded so only one caller wins."""
        updated = self.db.query(WebhookEvent).filter(
            WebhookEvent.id == row.id,
            WebhookEvent.status == WebhookEventStatusDB.FAILED,
        ).update({
            "status": WebhookEventStatusDB.PROCESSING,
            "attempts": WebhookEvent.attempts + 1,
            "error_message": None,
            "updated_at": utcnow(),
        }, synchronize_session=False)
        self.db.commit()
        if not updated:
            return None
        self.db.refresh(row)
        logger.info(f"Reclaimed failed webhook {row.external_event_id} (attempt {row.attempts})")
        return row

    def mark_processed(self, row: WebhookEvent):
        """Set inside the business transaction so both commit together."""
        row.status = WebhookEventStatusDB.PROCESSED
        row.processed_at = utcnow()
        row.error_message = None

    def mark_failed(self, event_row_id: str, message: str):
        """Called after the business transaction was rolled back."""
        self.db.query(WebhookEvent).filter(WebhookEvent.id == event_row_id).update({
            "status": WebhookEventStatusDB.FAILED,
            "error_message": message[:2000],
            "updated_at": utcnow(),
        }, synchronize_session=False)
        self.db.commit()

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def list_events(self, status: Optional[WebhookEventStatusDB] = None, limit: int = 100) -> List[WebhookEvent]:
        query = self.db.query(WebhookEvent)
        if status is not None:
            query = query.filter(WebhookEvent.status == status)
        return query.order_by(WebhookEvent.created_at.desc()).limit(limit).all()

    def find_stuck(self, older_than_minutes: int) -> List[WebhookEvent]:
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        return self.db.query(WebhookEvent).filter(
            WebhookEvent.status == WebhookEventStatusDB.PROCESSING,
            WebhookEvent.updated_at < cutoff,
        ).all()

    def mark_stuck_as_failed(self, older_than_minutes: int) -> int:
        """Rows left in processing by a crashed worker become replayable."""
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        count = self.db.query(WebhookEvent).filter(
            WebhookEvent.status == WebhookEventStatusDB.PROCESSING,
            WebhookEvent.updated_at < cutoff,
        ).update({
            "status": WebhookEventStatusDB.FAILED,
            "error_message": f"Stuck in processing for over {older_than_minutes} minutes",
            "updated_at": utcnow(),
        }, synchronize_session=False)
        self.db.commit()
        if count:
            logger.warning(f"Marked {count} stuck webhook events as failed")
        return count
