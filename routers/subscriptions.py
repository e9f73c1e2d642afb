# Subscriptions Router for the Escrow Ledger
# Premium plan checkout; activation arrives through the webhook

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from database.config import get_db
from database.models import User
from schemas.marketplace import SubscriptionCheckout, CheckoutResponse
from auth.dependencies import get_current_user
from core.stripe_service import get_stripe_service
from services.subscription_service import SubscriptionService

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.post("/checkout", response_model=CheckoutResponse)
async def subscription_checkout(
    body: SubscriptionCheckout,
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(get_current_user)
):
    return SubscriptionService(db, gateway).create_checkout(current_user, body.plan_id)
