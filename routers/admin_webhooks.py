"""
Admin Webhook Event Router
Inspect the webhook ledger, replay failed events and release stuck ones
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from config.app_config import STUCK_WEBHOOK_MINUTES
from database.config import get_db
from database.models import User
from database.marketplace_models import WebhookEventStatusDB
from schemas.marketplace import WebhookEventResponse, WebhookResultResponse
from auth.decorators import require_permission
from auth.roles import Permission
from core.stripe_service import get_stripe_service
from services.reconciliation_service import WebhookProcessor
from services.webhook_ledger import WebhookLedger

router = APIRouter(prefix="/admin/webhooks", tags=["Admin - Webhooks"])


@router.get("", response_model=List[WebhookEventResponse])
async def list_webhook_events(
    status_filter: Optional[WebhookEventStatusDB] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission(Permission.MANAGE_WEBHOOKS))
):
    return WebhookLedger(db).list_events(status_filter, limit)


@router.get("/stuck", response_model=List[WebhookEventResponse])
async def list_stuck_events(
    older_than_minutes: int = Query(STUCK_WEBHOOK_MINUTES, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission(Permission.MANAGE_WEBHOOKS))
):
    return WebhookLedger(db).find_stuck(older_than_minutes)


@router.post("/stuck/reset")
async def reset_stuck_events(
    older_than_minutes: int = Query(STUCK_WEBHOOK_MINUTES, ge=1),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission(Permission.MANAGE_WEBHOOKS))
):
    """Mark events stuck in processing as failed so they can be replayed."""
    count = WebhookLedger(db).mark_stuck_as_failed(older_than_minutes)
    return {"success": True, "reset": count}


@router.post("/{event_id}/replay", response_model=WebhookResultResponse)
async def replay_webhook_event(
    event_id: str,
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(require_permission(Permission.MANAGE_WEBHOOKS))
):
    result = WebhookProcessor(db, gateway).replay(event_id)
    return WebhookResultResponse(
        status=result.status,
        event_id=result.event_id,
        event_type=result.event_type,
        outcome=result.outcome,
        error=result.error,
    )
