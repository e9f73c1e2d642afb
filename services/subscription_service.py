# Premium Subscription Service
# Checkout for premium plans and the subscription side of webhook processing.
# Inbound handlers run inside the webhook transaction and never commit.

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from config.app_config import FRONTEND_URL
from database.models import User, utcnow
from database.marketplace_models import Subscription, SubscriptionPlan, SubscriptionStatusDB
from schemas.webhooks import CheckoutSessionObject, InvoiceObject, SubscriptionObject
from services.errors import ValidationError, NotFoundError, PreconditionError
from services.funding_service import ensure_customer, APPLIED, DUPLICATE, IGNORED
from services.notification_service import NotificationService, NotificationType

logger = logging.getLogger(__name__)

SUBSCRIPTION = "subscription"

STRIPE_STATUS_MAP = {
    "active": SubscriptionStatusDB.ACTIVE,
    "trialing": SubscriptionStatusDB.ACTIVE,
    "past_due": SubscriptionStatusDB.ACTIVE,
    "incomplete": SubscriptionStatusDB.PENDING,
    "unpaid": SubscriptionStatusDB.PENDING,
    "paused": SubscriptionStatusDB.PENDING,
    "canceled": SubscriptionStatusDB.CANCELLED,
    "incomplete_expired": SubscriptionStatusDB.EXPIRED,
}


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


class SubscriptionService:

    def __init__(self, db: Session, gateway):
        self.db = db
        self.gateway = gateway
        self.notifications = NotificationService(db)

    def create_checkout(self, user: User, plan_id: str) -> dict:
        plan = self.db.query(SubscriptionPlan).filter(
            SubscriptionPlan.id == plan_id,
            SubscriptionPlan.is_active == True,  # noqa: E712
        ).first()
        if plan is None:
            raise NotFoundError("Subscription plan not found", code="plan_not_found")
        if not plan.stripe_price_id:
            raise PreconditionError("Plan is not available for online checkout", code="plan_not_purchasable")

        customer_id = ensure_customer(self.db, self.gateway, user)
        session = self.gateway.create_checkout_session(
            mode="subscription",
            price_id=plan.stripe_price_id,
            customer_id=customer_id,
            metadata={"type": SUBSCRIPTION, "plan_id": plan.id, "user_id": user.id},
            success_url=f"{FRONTEND_URL}/premium?checkout=success",
            cancel_url=f"{FRONTEND_URL}/premium?checkout=cancelled",
        )
        return {"url": session.url, "session_id": session.id}

    # ========================================================================
    # INBOUND
    # ========================================================================

    def _find_local(self, stripe_subscription_id: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.stripe_subscription_id == stripe_subscription_id
        ).with_for_update().first()

    def _sync(self, subscription: Subscription, remote) -> Subscription:
        subscription.stripe_status = remote.status
        subscription.status = STRIPE_STATUS_MAP.get(remote.status, SubscriptionStatusDB.PENDING)
        subscription.starts_at = _from_timestamp(remote.current_period_start) or subscription.starts_at
        subscription.expires_at = _from_timestamp(remote.current_period_end) or subscription.expires_at
        if remote.latest_invoice:
            subscription.stripe_latest_invoice_id = remote.latest_invoice

        user = subscription.user
        if subscription.status == SubscriptionStatusDB.ACTIVE:
            user.is_premium = True
            user.premium_expires_at = subscription.expires_at
        elif subscription.status in (SubscriptionStatusDB.CANCELLED, SubscriptionStatusDB.EXPIRED):
            user.is_premium = False
            subscription.cancelled_at = subscription.cancelled_at or utcnow()
        return subscription

    def _create_local(self, user_id: str, plan_id: Optional[str], remote) -> Subscription:
        user = self.db.query(User).filter(User.id == user_id).first()
        if user is None:
            raise ValidationError(f"No user {user_id} for subscription {remote.id}", code="unknown_user")
        subscription = Subscription(
            user=user,
            plan_id=plan_id,
            stripe_subscription_id=remote.id,
        )
        self.db.add(subscription)
        self.db.flush()
        return subscription

    def handle_checkout_completed(self, session: CheckoutSessionObject) -> str:
        if not session.subscription:
            raise ValidationError(f"Subscription checkout {session.id} has no subscription", code="missing_subscription")
        remote = self.gateway.retrieve_subscription(session.subscription)
        if remote is None:
            raise ValidationError(f"Subscription {session.subscription} not found at gateway", code="unknown_subscription")

        subscription = self._find_local(remote.id)
        if subscription is None:
            user_id = session.metadata.get("user_id")
            if not user_id:
                raise ValidationError(f"Checkout {session.id} has no user_id metadata", code="missing_user_id")
            subscription = self._create_local(user_id, session.metadata.get("plan_id"), remote)

        self._sync(subscription, remote)
        if subscription.status == SubscriptionStatusDB.ACTIVE:
            self.notifications.notify(
                subscription.user_id, NotificationType.SUBSCRIPTION_ACTIVATED,
                "Premium activated", "Your premium subscription is active",
                {"subscription_id": subscription.id},
            )
        logger.info(f"Subscription {remote.id} synced from checkout {session.id}")
        return APPLIED

    def handle_invoice_paid(self, invoice: InvoiceObject) -> str:
        subscription_id = invoice.subscription_id
        if not subscription_id:
            return IGNORED
        remote = self.gateway.retrieve_subscription(subscription_id)
        if remote is None:
            raise ValidationError(f"Subscription {subscription_id} not found at gateway", code="unknown_subscription")

        subscription = self._find_local(subscription_id)
        if subscription is None:
            user_id = remote.metadata.get("user_id")
            if not user_id:
                # Checkout event will create it
                logger.info(f"Invoice {invoice.id} for unknown subscription {subscription_id}; skipping")
                return IGNORED
            subscription = self._create_local(user_id, remote.metadata.get("plan_id"), remote)
        elif subscription.stripe_latest_invoice_id == invoice.id:
            return DUPLICATE

        self._sync(subscription, remote)
        subscription.stripe_latest_invoice_id = invoice.id
        return APPLIED

    def handle_invoice_payment_failed(self, invoice: InvoiceObject) -> str:
        subscription_id = invoice.subscription_id
        subscription = self._find_local(subscription_id) if subscription_id else None
        if subscription is None:
            return IGNORED
        subscription.stripe_status = "past_due"
        self.notifications.notify(
            subscription.user_id, NotificationType.SUBSCRIPTION_PAYMENT_FAILED,
            "Subscription payment failed", "We could not renew your premium subscription",
            {"subscription_id": subscription.id, "invoice_id": invoice.id},
        )
        return APPLIED

    def handle_subscription_changed(self, obj: SubscriptionObject, deleted: bool = False) -> str:
        subscription = self._find_local(obj.id)
        if subscription is None:
            return IGNORED
        if deleted:
            subscription.status = SubscriptionStatusDB.CANCELLED
            subscription.stripe_status = "canceled"
            subscription.cancelled_at = utcnow()
            subscription.user.is_premium = False
            return APPLIED

        remote = self.gateway.retrieve_subscription(obj.id)
        if remote is None:
            return IGNORED
        self._sync(subscription, remote)
        return APPLIED
