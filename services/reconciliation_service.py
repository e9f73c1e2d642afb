# Funding Reconciliation Processor
# Verifies, parses, de-duplicates and applies inbound gateway events.
#
# Each event is applied in one transaction together with its "processed"
# mark. Any failure rolls the business changes back and leaves the event row
# "failed" so a later delivery (or an operator) can replay it.

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from schemas.webhooks import (
    parse_event,
    CheckoutSessionCompleted, CheckoutAsyncPaymentSucceeded, CheckoutAsyncPaymentFailed,
    InvoicePaid, InvoicePaymentFailed,
    SubscriptionUpdated, SubscriptionDeleted,
    TransferSucceeded, TransferFailed,
    UnhandledEvent, CheckoutSessionObject,
)
from services.errors import GatewayError, LedgerError, NotFoundError, PreconditionError
from services.funding_service import FundingService, CONTRACT_FUNDING, IGNORED
from services.subscription_service import SubscriptionService
from services.webhook_ledger import WebhookLedger
from services.withdrawal_service import WithdrawalService

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
FAILED = "failed"


@dataclass
class WebhookResult:
    status: str
    event_id: str
    event_type: str
    outcome: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False

    @property
    def http_status(self) -> int:
        # Retryable failures ask the gateway to redeliver; everything else is final
        return 500 if self.status == FAILED and self.retryable else 200


class WebhookProcessor:

    HANDLERS = {
        CheckoutSessionCompleted: "_on_checkout_completed",
        CheckoutAsyncPaymentSucceeded: "_on_checkout_completed",
        CheckoutAsyncPaymentFailed: "_on_checkout_failed",
        InvoicePaid: "_on_invoice_paid",
        InvoicePaymentFailed: "_on_invoice_payment_failed",
        SubscriptionUpdated: "_on_subscription_updated",
        SubscriptionDeleted: "_on_subscription_deleted",
        TransferSucceeded: "_on_transfer_succeeded",
        TransferFailed: "_on_transfer_failed",
        UnhandledEvent: "_on_unhandled",
    }

    def __init__(self, db: Session, gateway):
        self.db = db
        self.gateway = gateway
        self.ledger = WebhookLedger(db)
        self.funding = FundingService(db, gateway)
        self.subscriptions = SubscriptionService(db, gateway)
        self.withdrawals = WithdrawalService(db, gateway)

    # ========================================================================
    # ENTRY POINTS
    # ========================================================================

    def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify and process one delivery. Raises WebhookVerificationError before any write."""
        raw = self.gateway.verify_webhook(payload, signature)
        return self.process_payload(raw)

    def process_payload(self, raw: dict) -> WebhookResult:
        """Process an already verified event payload."""
        return self.process(parse_event(raw), raw)

    def process(self, event, raw: dict) -> WebhookResult:
        row = self.ledger.claim(event.id, event.type, raw)
        if row is None:
            return WebhookResult(DUPLICATE, event.id, event.type)
        return self._apply(row, event)

    def replay(self, event_row_id: str) -> WebhookResult:
        """Operator replay of a failed event from its stored payload."""
        row = self.ledger.get(event_row_id)
        if row is None:
            raise NotFoundError("Webhook event not found", code="webhook_event_not_found")
        event = parse_event(row.payload or {})
        claimed = self.ledger.reclaim(row)
        if claimed is None:
            raise PreconditionError(
                f"Only failed events can be replayed (event is {row.status.value})",
                code="webhook_not_replayable",
            )
        return self._apply(claimed, event)

    def _apply(self, row, event) -> WebhookResult:
        row_id = row.id
        try:
            outcome = self.dispatch(event)
            self.ledger.mark_processed(row)
            self.db.commit()
        except (LedgerError, SQLAlchemyError) as e:
            self.db.rollback()
            message = e.reason if isinstance(e, LedgerError) else str(e)
            retryable = isinstance(e, (GatewayError, SQLAlchemyError))
            logger.error(f"Webhook {event.id} ({event.type}) failed: {message}")
            self.ledger.mark_failed(row_id, message)
            return WebhookResult(FAILED, event.id, event.type, error=message, retryable=retryable)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Unexpected error processing webhook {event.id}")
            self.ledger.mark_failed(row_id, f"{type(e).__name__}: {e}")
            return WebhookResult(FAILED, event.id, event.type, error=str(e), retryable=True)

        logger.info(f"Webhook {event.id} ({event.type}) processed: {outcome}")
        return WebhookResult(PROCESSED, event.id, event.type, outcome=outcome)

    def dispatch(self, event) -> str:
        handler = getattr(self, self.HANDLERS[type(event)])
        return handler(event)

    # ========================================================================
    # HANDLERS
    # ========================================================================

    def _on_checkout_completed(self, event) -> str:
        session: CheckoutSessionObject = event.data.object
        if session.mode == "subscription":
            return self.subscriptions.handle_checkout_completed(session)
        if session.mode == "setup":
            return self.funding.apply_payment_method_setup(session)
        if session.mode == "payment" and session.funding_type == CONTRACT_FUNDING:
            return self.funding.apply_contract_funding(session)
        logger.info(f"Checkout {session.id} (mode={session.mode}, type={session.funding_type}) not handled")
        return IGNORED

    def _on_checkout_failed(self, event) -> str:
        session: CheckoutSessionObject = event.data.object
        if session.funding_type == CONTRACT_FUNDING:
            return self.funding.mark_funding_failed(session)
        return IGNORED

    def _on_invoice_paid(self, event) -> str:
        return self.subscriptions.handle_invoice_paid(event.data.object)

    def _on_invoice_payment_failed(self, event) -> str:
        return self.subscriptions.handle_invoice_payment_failed(event.data.object)

    def _on_subscription_updated(self, event) -> str:
        return self.subscriptions.handle_subscription_changed(event.data.object)

    def _on_subscription_deleted(self, event) -> str:
        return self.subscriptions.handle_subscription_changed(event.data.object, deleted=True)

    def _on_transfer_succeeded(self, event) -> str:
        return self.withdrawals.handle_transfer_succeeded(event.data.object)

    def _on_transfer_failed(self, event) -> str:
        return self.withdrawals.handle_transfer_failed(event.data.object)

    def _on_unhandled(self, event) -> str:
        logger.debug(f"No handler for webhook type {event.type}")
        return IGNORED
