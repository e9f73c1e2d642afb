"""Tests for webhook reconciliation of contract funding."""
from datetime import timedelta

import pytest

from database.models import utcnow
from database.marketplace_models import (
    Contract, CreatorBalance, JobPayment, WebhookEvent,
    ContractStatusDB, PaymentStatusDB, WebhookEventStatusDB,
)
from services.errors import PreconditionError, WebhookVerificationError
from services.reconciliation_service import WebhookProcessor, WebhookResult, PROCESSED, DUPLICATE, FAILED
from services.webhook_ledger import WebhookLedger
from factories import VALID_SIGNATURE, as_body, checkout_event


def _balance(db, creator_id):
    db.expire_all()
    return db.query(CreatorBalance).filter(CreatorBalance.creator_id == creator_id).one_or_none()


def _event_row(db, external_id):
    db.expire_all()
    return db.query(WebhookEvent).filter(WebhookEvent.external_event_id == external_id).one()


@pytest.fixture
def funding_session(gateway, brand, make_contract):
    contract = make_contract(budget=1000)
    session = gateway.add_session(
        mode="payment",
        amount=1000,
        metadata={"type": "contract_funding", "contract_id": contract.id, "user_id": brand.id},
    )
    return contract, session


class TestWebhookResult:
    """Tests for the HTTP status chosen for each outcome."""

    def test_processed_and_duplicate_are_200(self):
        assert WebhookResult(PROCESSED, "evt", "t").http_status == 200
        assert WebhookResult(DUPLICATE, "evt", "t").http_status == 200

    def test_permanent_failure_is_200(self):
        assert WebhookResult(FAILED, "evt", "t", retryable=False).http_status == 200

    def test_retryable_failure_is_500(self):
        assert WebhookResult(FAILED, "evt", "t", retryable=True).http_status == 500


class TestVerification:
    """Unverified deliveries never reach the database."""

    def test_bad_signature_rejected_without_row(self, db, gateway, funding_session):
        _, session = funding_session
        with pytest.raises(WebhookVerificationError) as exc:
            WebhookProcessor(db, gateway).handle(as_body(checkout_event(session)), "t=1,v1=forged")
        assert exc.value.code == "invalid_signature"
        assert db.query(WebhookEvent).count() == 0

    def test_missing_signature_rejected(self, db, gateway, funding_session):
        _, session = funding_session
        with pytest.raises(WebhookVerificationError):
            WebhookProcessor(db, gateway).handle(as_body(checkout_event(session)), None)
        assert db.query(WebhookEvent).count() == 0

    def test_malformed_payload_rejected_without_row(self, db, gateway):
        body = as_body({"id": "evt_bad", "type": "checkout.session.completed", "data": {"object": {}}})
        with pytest.raises(WebhookVerificationError) as exc:
            WebhookProcessor(db, gateway).handle(body, VALID_SIGNATURE)
        assert exc.value.code == "malformed_payload"
        assert db.query(WebhookEvent).count() == 0


class TestContractFunding:
    """Tests for applying confirmed funding exactly once."""

    def test_funding_applies_payment_balance_and_activation(self, db, gateway, creator, funding_session):
        contract, session = funding_session
        result = WebhookProcessor(db, gateway).handle(as_body(checkout_event(session)), VALID_SIGNATURE)

        assert result.status == PROCESSED
        assert result.outcome == "applied"
        db.expire_all()
        contract = db.get(Contract, contract.id)
        payment = contract.payment
        assert contract.status == ContractStatusDB.ACTIVE
        assert payment.status == PaymentStatusDB.COMPLETED
        assert payment.total_amount == 1000
        assert payment.platform_fee + payment.creator_amount == payment.total_amount
        assert payment.stripe_payment_intent_id == session.payment_intent
        assert _balance(db, creator.id).pending_balance == 950
        assert _event_row(db, result.event_id).status == WebhookEventStatusDB.PROCESSED

    def test_same_event_twice_applies_once(self, db, gateway, creator, funding_session):
        _, session = funding_session
        event = checkout_event(session)
        processor = WebhookProcessor(db, gateway)

        first = processor.process_payload(event)
        second = processor.process_payload(event)

        assert first.status == PROCESSED
        assert second.status == DUPLICATE
        assert db.query(JobPayment).count() == 1
        balance = _balance(db, creator.id)
        assert balance.pending_balance == 950
        assert balance.total_earned == 950

    def test_concurrent_duplicate_delivery_applies_once(self, db, session_factory, gateway, creator, funding_session):
        """A second delivery arriving mid-processing sees the claimed row and backs off."""
        _, session = funding_session
        event = checkout_event(session)
        concurrent = {}

        def deliver_again(_session_id):
            other = session_factory()
            try:
                concurrent["result"] = WebhookProcessor(other, gateway).process_payload(event)
            finally:
                other.close()

        gateway.before_retrieve_session = deliver_again
        first = WebhookProcessor(db, gateway).process_payload(event)

        assert first.status == PROCESSED
        assert concurrent["result"].status == DUPLICATE
        assert db.query(JobPayment).count() == 1
        assert _balance(db, creator.id).pending_balance == 950

    def test_second_event_for_same_payment_is_noop(self, db, gateway, creator, funding_session):
        """completed and async_payment_succeeded for one session carry different event ids."""
        _, session = funding_session
        processor = WebhookProcessor(db, gateway)
        processor.process_payload(checkout_event(session))
        result = processor.process_payload(
            checkout_event(session, event_type="checkout.session.async_payment_succeeded")
        )

        assert result.status == PROCESSED
        assert result.outcome == "duplicate"
        assert db.query(JobPayment).count() == 1
        assert _balance(db, creator.id).pending_balance == 950

    def test_different_payment_for_funded_contract_is_integrity_error(self, db, gateway, brand, creator, funding_session):
        contract, session = funding_session
        processor = WebhookProcessor(db, gateway)
        processor.process_payload(checkout_event(session))

        second_session = gateway.add_session(
            mode="payment",
            amount=1000,
            metadata={"type": "contract_funding", "contract_id": contract.id, "user_id": brand.id},
        )
        result = processor.process_payload(checkout_event(second_session))

        assert result.status == FAILED
        assert result.http_status == 200
        assert _event_row(db, result.event_id).status == WebhookEventStatusDB.FAILED
        assert "already funded" in _event_row(db, result.event_id).error_message
        assert _balance(db, creator.id).pending_balance == 950

    def test_unpaid_session_does_not_activate(self, db, gateway, brand, creator, make_contract):
        """The event claims paid but the gateway's current view says otherwise."""
        contract = make_contract(budget=1000)
        session = gateway.add_session(
            mode="payment",
            amount=1000,
            paid=False,
            metadata={"type": "contract_funding", "contract_id": contract.id, "user_id": brand.id},
        )
        result = WebhookProcessor(db, gateway).process_payload(checkout_event(session, payment_status="paid"))

        assert result.status == PROCESSED
        assert result.outcome == "awaiting_payment"
        db.refresh(contract)
        assert contract.status == ContractStatusDB.PENDING
        assert db.query(JobPayment).count() == 0
        assert _balance(db, creator.id) is None

    def test_async_success_after_unpaid_completion(self, db, gateway, brand, creator, make_contract):
        contract = make_contract(budget=1000)
        session = gateway.add_session(
            mode="payment",
            amount=1000,
            paid=False,
            metadata={"type": "contract_funding", "contract_id": contract.id, "user_id": brand.id},
        )
        processor = WebhookProcessor(db, gateway)
        processor.process_payload(checkout_event(session))

        session.payment_status = "paid"
        result = processor.process_payload(
            checkout_event(session, event_type="checkout.session.async_payment_succeeded")
        )

        assert result.outcome == "applied"
        db.refresh(contract)
        assert contract.status == ContractStatusDB.ACTIVE
        assert _balance(db, creator.id).pending_balance == 950

    def test_amount_mismatch_rolls_back(self, db, gateway, creator, make_contract, fund):
        contract = make_contract(budget=1000)
        _, result = fund(contract, amount=900)

        assert result.status == FAILED
        assert "does not match" in result.error
        db.refresh(contract)
        assert contract.status == ContractStatusDB.PENDING
        assert db.query(JobPayment).count() == 0

    def test_payment_failed_after_success_keeps_contract_active(self, db, gateway, creator, funding_session):
        contract, session = funding_session
        processor = WebhookProcessor(db, gateway)
        processor.process_payload(checkout_event(session))

        result = processor.process_payload(
            checkout_event(session, event_type="checkout.session.async_payment_failed")
        )

        assert result.status == PROCESSED
        assert result.outcome == "ignored"
        db.refresh(contract)
        assert contract.status == ContractStatusDB.ACTIVE
        assert contract.payment.status == PaymentStatusDB.COMPLETED
        assert _balance(db, creator.id).pending_balance == 950

    def test_payment_failed_before_success_records_failure(self, db, gateway, brand, make_contract):
        contract = make_contract(budget=1000)
        session = gateway.add_session(
            mode="payment",
            amount=1000,
            paid=False,
            metadata={"type": "contract_funding", "contract_id": contract.id, "user_id": brand.id},
        )
        result = WebhookProcessor(db, gateway).process_payload(
            checkout_event(session, event_type="checkout.session.async_payment_failed")
        )

        assert result.outcome == "applied"
        db.refresh(contract)
        assert contract.status == ContractStatusDB.PENDING
        assert contract.payment.status == PaymentStatusDB.FAILED
        assert contract.payment.total_amount == 1000
        assert (contract.payment.platform_fee, contract.payment.creator_amount) == (50, 950)

    def test_every_payment_row_splits_its_total(self, db, gateway, brand, make_contract, fund):
        failed = make_contract(budget=1999)
        session = gateway.add_session(
            mode="payment",
            amount=1999,
            paid=False,
            metadata={"type": "contract_funding", "contract_id": failed.id, "user_id": brand.id},
        )
        WebhookProcessor(db, gateway).process_payload(
            checkout_event(session, event_type="checkout.session.async_payment_failed")
        )
        fund(make_contract(budget=1001))

        payments = db.query(JobPayment).all()
        assert len(payments) == 2
        for payment in payments:
            assert payment.platform_fee + payment.creator_amount == payment.total_amount

    def test_funding_for_unknown_contract_fails(self, db, gateway, brand):
        session = gateway.add_session(
            mode="payment",
            amount=1000,
            metadata={"type": "contract_funding", "contract_id": "missing", "user_id": brand.id},
        )
        result = WebhookProcessor(db, gateway).process_payload(checkout_event(session))
        assert result.status == FAILED
        assert result.retryable is False

    def test_gateway_outage_is_retryable(self, db, gateway, funding_session):
        contract, session = funding_session
        gateway.unavailable = True
        result = WebhookProcessor(db, gateway).process_payload(checkout_event(session))

        assert result.status == FAILED
        assert result.http_status == 500
        db.refresh(contract)
        assert contract.status == ContractStatusDB.PENDING

    def test_redelivery_after_retryable_failure_succeeds(self, db, gateway, creator, funding_session):
        _, session = funding_session
        event = checkout_event(session)
        processor = WebhookProcessor(db, gateway)

        gateway.unavailable = True
        assert processor.process_payload(event).status == FAILED
        gateway.unavailable = False
        result = processor.process_payload(event)

        assert result.status == PROCESSED
        row = _event_row(db, event["id"])
        assert row.attempts == 2
        assert row.error_message is None
        assert _balance(db, creator.id).pending_balance == 950


class TestCheckoutRouting:
    """Checkout events are routed by mode and metadata."""

    def test_payment_without_funding_metadata_is_ignored(self, db, gateway):
        session = gateway.add_session(mode="payment", amount=500, metadata={"type": "tip"})
        result = WebhookProcessor(db, gateway).process_payload(checkout_event(session))
        assert result.status == PROCESSED
        assert result.outcome == "ignored"

    def test_unhandled_event_type_is_recorded_and_ignored(self, db, gateway):
        event = {"id": "evt_charge", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}
        result = WebhookProcessor(db, gateway).process_payload(event)
        assert result.status == PROCESSED
        assert result.outcome == "ignored"
        assert _event_row(db, "evt_charge").type == "charge.refunded"


class TestPaymentMethodSetup:
    """Tests for storing a saved payment method from a setup checkout."""

    def _setup_session(self, gateway, user, payment_method="pm_card"):
        gateway.setup_methods["seti_1"] = payment_method
        return gateway.add_session(
            mode="setup",
            setup_intent="seti_1",
            customer="cus_brand",
            metadata={"type": "payment_method_setup", "user_id": user.id},
        )

    def test_setup_stores_payment_method(self, db, gateway, brand):
        session = self._setup_session(gateway, brand)
        result = WebhookProcessor(db, gateway).process_payload(checkout_event(session))

        assert result.outcome == "applied"
        db.refresh(brand)
        assert brand.stripe_payment_method_id == "pm_card"
        assert brand.stripe_customer_id == "cus_brand"

    def test_unchanged_payment_method_is_skipped(self, db, gateway, brand):
        brand.stripe_payment_method_id = "pm_card"
        db.commit()
        session = self._setup_session(gateway, brand)
        result = WebhookProcessor(db, gateway).process_payload(checkout_event(session))
        assert result.outcome == "duplicate"


class TestOperationalReplay:
    """Tests for stuck detection and manual replay."""

    def test_failed_event_can_be_replayed(self, db, gateway, creator, funding_session):
        _, session = funding_session
        gateway.unavailable = True
        failed = WebhookProcessor(db, gateway).process_payload(checkout_event(session))
        row = _event_row(db, failed.event_id)
        assert row.status == WebhookEventStatusDB.FAILED

        gateway.unavailable = False
        result = WebhookProcessor(db, gateway).replay(row.id)

        assert result.status == PROCESSED
        assert _event_row(db, failed.event_id).status == WebhookEventStatusDB.PROCESSED
        assert _balance(db, creator.id).pending_balance == 950

    def test_processed_event_cannot_be_replayed(self, db, gateway, funding_session):
        _, session = funding_session
        done = WebhookProcessor(db, gateway).process_payload(checkout_event(session))
        row = _event_row(db, done.event_id)
        with pytest.raises(PreconditionError):
            WebhookProcessor(db, gateway).replay(row.id)

    def test_stuck_processing_rows_become_failed(self, db):
        stale = WebhookEvent(
            external_event_id="evt_stale",
            type="checkout.session.completed",
            payload={},
            status=WebhookEventStatusDB.PROCESSING,
            updated_at=utcnow() - timedelta(minutes=30),
        )
        fresh = WebhookEvent(
            external_event_id="evt_fresh",
            type="checkout.session.completed",
            payload={},
            status=WebhookEventStatusDB.PROCESSING,
        )
        db.add_all([stale, fresh])
        db.commit()

        ledger = WebhookLedger(db)
        assert [row.external_event_id for row in ledger.find_stuck(15)] == ["evt_stale"]
        assert ledger.mark_stuck_as_failed(15) == 1
        assert _event_row(db, "evt_stale").status == WebhookEventStatusDB.FAILED
        assert _event_row(db, "evt_fresh").status == WebhookEventStatusDB.PROCESSING

    def test_in_flight_duplicate_is_not_processed(self, db, gateway, funding_session):
        _, session = funding_session
        event = checkout_event(session)
        db.add(WebhookEvent(
            external_event_id=event["id"],
            type=event["type"],
            payload=event,
            status=WebhookEventStatusDB.PROCESSING,
        ))
        db.commit()

        result = WebhookProcessor(db, gateway).process_payload(event)
        assert result.status == DUPLICATE
        assert db.query(JobPayment).count() == 0
