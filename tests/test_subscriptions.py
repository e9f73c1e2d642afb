"""Tests for premium subscriptions driven by checkout and invoice events."""
import pytest

from database.marketplace_models import Subscription, SubscriptionPlan, SubscriptionStatusDB
from services.errors import NotFoundError, PreconditionError
from services.reconciliation_service import WebhookProcessor, PROCESSED, FAILED
from services.subscription_service import SubscriptionService
from factories import checkout_event, invoice_event, subscription_event


@pytest.fixture
def plan(db):
    plan = SubscriptionPlan(name="Premium Monthly", price=999, interval_months=1, stripe_price_id="price_premium")
    db.add(plan)
    db.commit()
    return plan


@pytest.fixture
def subscribe(db, gateway, brand, plan):
    """Deliver a completed subscription checkout for the brand."""
    def _subscribe(status="active", latest_invoice="in_first"):
        remote = gateway.add_subscription(
            status=status,
            latest_invoice=latest_invoice,
            metadata={"user_id": brand.id, "plan_id": plan.id},
        )
        session = gateway.add_session(
            mode="subscription",
            subscription=remote.id,
            metadata={"type": "subscription", "plan_id": plan.id, "user_id": brand.id},
        )
        result = WebhookProcessor(db, gateway).process_payload(checkout_event(session))
        return remote, result
    return _subscribe


def _local(db, remote):
    db.expire_all()
    return db.query(Subscription).filter(Subscription.stripe_subscription_id == remote.id).one()


class TestSubscriptionCheckout:
    def test_creates_customer_and_session(self, db, gateway, brand, plan):
        checkout = SubscriptionService(db, gateway).create_checkout(brand, plan.id)

        session = gateway.sessions[checkout["session_id"]]
        assert session.mode == "subscription"
        assert session.metadata == {"type": "subscription", "plan_id": plan.id, "user_id": brand.id}
        db.refresh(brand)
        assert brand.stripe_customer_id == session.customer

    def test_existing_customer_is_reused(self, db, gateway, brand, plan):
        brand.stripe_customer_id = "cus_existing"
        db.commit()
        checkout = SubscriptionService(db, gateway).create_checkout(brand, plan.id)
        assert gateway.sessions[checkout["session_id"]].customer == "cus_existing"
        assert gateway.customers == []

    def test_unknown_plan(self, db, gateway, brand):
        with pytest.raises(NotFoundError):
            SubscriptionService(db, gateway).create_checkout(brand, "missing")

    def test_plan_without_price(self, db, gateway, brand):
        plan = SubscriptionPlan(name="Offline", price=0)
        db.add(plan)
        db.commit()
        with pytest.raises(PreconditionError):
            SubscriptionService(db, gateway).create_checkout(brand, plan.id)


class TestSubscriptionEvents:
    """Tests for subscription reconciliation."""

    def test_checkout_activates_premium(self, db, brand, plan, subscribe):
        remote, result = subscribe()

        assert result.status == PROCESSED
        local = _local(db, remote)
        assert local.status == SubscriptionStatusDB.ACTIVE
        assert local.plan_id == plan.id
        assert local.expires_at is not None
        db.refresh(brand)
        assert brand.is_premium is True
        assert brand.premium_expires_at == local.expires_at

    def test_incomplete_subscription_is_not_premium(self, db, brand, subscribe):
        remote, _ = subscribe(status="incomplete")
        assert _local(db, remote).status == SubscriptionStatusDB.PENDING
        db.refresh(brand)
        assert not brand.is_premium

    def test_invoice_paid_extends_period(self, db, gateway, brand, subscribe):
        remote, _ = subscribe()
        remote.current_period_end += 30 * 24 * 3600
        remote.latest_invoice = "in_second"

        result = WebhookProcessor(db, gateway).process_payload(invoice_event("in_second", remote.id))

        assert result.outcome == "applied"
        local = _local(db, remote)
        assert local.stripe_latest_invoice_id == "in_second"
        db.refresh(brand)
        assert brand.premium_expires_at == local.expires_at

    def test_invoice_already_applied_is_duplicate(self, db, gateway, subscribe):
        remote, _ = subscribe(latest_invoice="in_first")
        result = WebhookProcessor(db, gateway).process_payload(invoice_event("in_first", remote.id))
        assert result.outcome == "duplicate"

    def test_invoice_for_unknown_subscription_is_ignored(self, db, gateway):
        remote = gateway.add_subscription()
        result = WebhookProcessor(db, gateway).process_payload(invoice_event("in_x", remote.id))
        assert result.outcome == "ignored"

    def test_invoice_payment_failed_marks_past_due(self, db, gateway, subscribe):
        remote, _ = subscribe()
        result = WebhookProcessor(db, gateway).process_payload(
            invoice_event("in_second", remote.id, event_type="invoice.payment_failed")
        )
        assert result.outcome == "applied"
        assert _local(db, remote).stripe_status == "past_due"

    def test_subscription_deleted_revokes_premium(self, db, gateway, brand, subscribe):
        remote, _ = subscribe()
        result = WebhookProcessor(db, gateway).process_payload(
            subscription_event(remote, event_type="customer.subscription.deleted")
        )
        assert result.outcome == "applied"
        local = _local(db, remote)
        assert local.status == SubscriptionStatusDB.CANCELLED
        assert local.cancelled_at is not None
        db.refresh(brand)
        assert brand.is_premium is False

    def test_subscription_updated_resyncs_from_gateway(self, db, gateway, brand, subscribe):
        remote, _ = subscribe()
        remote.status = "canceled"
        WebhookProcessor(db, gateway).process_payload(subscription_event(remote))
        assert _local(db, remote).status == SubscriptionStatusDB.CANCELLED
        db.refresh(brand)
        assert brand.is_premium is False

    def test_checkout_for_missing_remote_subscription_fails(self, db, gateway, brand, plan):
        session = gateway.add_session(
            mode="subscription",
            subscription="sub_gone",
            metadata={"type": "subscription", "plan_id": plan.id, "user_id": brand.id},
        )
        result = WebhookProcessor(db, gateway).process_payload(checkout_event(session))
        assert result.status == FAILED
        assert db.query(Subscription).count() == 0
