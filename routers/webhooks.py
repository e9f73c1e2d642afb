# Gateway Webhook Router
# Raw body in, definitive status out. Verification failures never touch the database.

import logging
from fastapi import APIRouter, Depends, Request, Header
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Optional

from database.config import get_db
from core.stripe_service import get_stripe_service
from services.reconciliation_service import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
):
    """
    Receive a Stripe event.

    200: processed, duplicate, or permanently rejected (kept as failed for replay)
    400: bad signature or malformed payload
    500: transient failure; the gateway should redeliver
    """
    payload = await request.body()
    result = WebhookProcessor(db, gateway).handle(payload, stripe_signature)
    return JSONResponse(
        status_code=result.http_status,
        content={
            "success": result.status != "failed",
            "status": result.status,
            "event_id": result.event_id,
            "outcome": result.outcome,
            "reason": result.error,
        },
    )
