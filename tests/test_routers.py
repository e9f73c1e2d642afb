"""HTTP tests for the API surface, run against the in-memory gateway."""
from database.models import User, UserType
from database.marketplace_models import (
    Contract, Notification, WebhookEvent, Withdrawal,
    ContractStatusDB, WebhookEventStatusDB, WithdrawalStatusDB,
)
from services.contract_service import ContractService
from factories import VALID_SIGNATURE, as_body, checkout_event

API = "/api/v2"


def _post_webhook(client, event, signature=VALID_SIGNATURE):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["Stripe-Signature"] = signature
    return client.post(f"{API}/webhooks/stripe", content=as_body(event), headers=headers)


def _earn(db, brand, creator, make_contract, fund, budget=2000):
    """Fund and complete a contract so the creator has available balance."""
    contract = make_contract(budget=budget)
    fund(contract)
    service = ContractService(db)
    service.submit_for_review(contract.id, creator)
    service.complete(contract.id, brand)


def _pay(gateway, session_id):
    """Simulate the brand completing the hosted checkout."""
    session = gateway.sessions[session_id]
    session.status = "complete"
    session.payment_status = "paid"
    session.payment_intent = f"pi_{session_id}"
    return session


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestOfferToFundingFlow:
    """Offer, accept, checkout and webhook through the HTTP layer."""

    def test_full_flow(self, client, db, gateway, brand, creator, auth_headers):
        response = client.post(f"{API}/offers", headers=auth_headers(brand), json={
            "creator_id": creator.id,
            "title": "Spring launch video",
            "budget": 1000,
            "estimated_days": 7,
        })
        assert response.status_code == 201
        offer = response.json()
        assert offer["status"] == "pending"

        response = client.post(f"{API}/offers/{offer['id']}/accept", headers=auth_headers(creator))
        assert response.status_code == 200
        contract = response.json()
        assert contract["status"] == "pending"
        assert contract["offer_id"] == offer["id"]

        response = client.post(f"{API}/contracts/{contract['id']}/fund", headers=auth_headers(brand))
        assert response.status_code == 200
        checkout = response.json()
        assert checkout["url"].startswith("https://checkout.test/")
        session = _pay(gateway, checkout["session_id"])

        response = _post_webhook(client, checkout_event(session))
        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert response.json()["outcome"] == "applied"

        response = client.get(f"{API}/contracts/{contract['id']}", headers=auth_headers(creator))
        assert response.json()["status"] == "active"
        assert response.json()["payment"]["creator_amount"] == 950

        response = client.get(f"{API}/wallet/balance", headers=auth_headers(creator))
        assert response.status_code == 200
        assert response.json()["pending_balance"] == 950
        assert response.json()["available_balance"] == 0

    def test_creator_cannot_send_offers(self, client, brand, creator, auth_headers):
        response = client.post(f"{API}/offers", headers=auth_headers(creator), json={
            "creator_id": creator.id,
            "title": "Self offer",
            "budget": 1000,
            "estimated_days": 7,
        })
        assert response.status_code == 403

    def test_missing_token_is_rejected(self, client):
        response = client.get(f"{API}/contracts")
        assert response.status_code in (401, 403)

    def test_duplicate_offer_returns_error_body(self, client, brand, creator, auth_headers):
        body = {"creator_id": creator.id, "title": "First offer", "budget": 1000, "estimated_days": 7}
        assert client.post(f"{API}/offers", headers=auth_headers(brand), json=body).status_code == 201
        response = client.post(f"{API}/offers", headers=auth_headers(brand), json=body)
        assert response.status_code == 409
        assert response.json()["success"] is False
        assert response.json()["code"]

    def test_other_brand_cannot_read_contract(self, client, db, make_contract, auth_headers):
        contract = make_contract()
        outsider = User(email="other@example.com", name="Other", user_type=UserType.BRAND)
        db.add(outsider)
        db.commit()
        response = client.get(f"{API}/contracts/{contract.id}", headers=auth_headers(outsider))
        assert response.status_code == 403


class TestWebhookEndpoint:
    def test_bad_signature(self, client, db, gateway, funded_contract):
        session = gateway.add_session(metadata={"type": "contract_funding", "contract_id": funded_contract.id})
        response = _post_webhook(client, checkout_event(session, event_id="evt_forged"), signature="t=1,v1=forged")

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["code"] == "invalid_signature"
        db.expire_all()
        assert db.query(WebhookEvent).filter(WebhookEvent.external_event_id == "evt_forged").count() == 0

    def test_missing_signature(self, client, gateway):
        session = gateway.add_session(metadata={"type": "contract_funding", "contract_id": "c1"})
        response = _post_webhook(client, checkout_event(session), signature=None)
        assert response.status_code == 400
        assert response.json()["code"] == "missing_signature"

    def test_redelivery_is_duplicate(self, client, db, gateway, brand, make_contract):
        contract = make_contract()
        session = gateway.add_session(amount=1000, metadata={
            "type": "contract_funding", "contract_id": contract.id, "user_id": brand.id,
        })
        event = checkout_event(session)

        assert _post_webhook(client, event).json()["status"] == "processed"
        response = _post_webhook(client, event)
        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    def test_gateway_outage_asks_for_redelivery(self, client, db, gateway, brand, make_contract):
        contract = make_contract()
        session = gateway.add_session(amount=1000, metadata={
            "type": "contract_funding", "contract_id": contract.id, "user_id": brand.id,
        })
        gateway.unavailable = True

        response = _post_webhook(client, checkout_event(session))

        assert response.status_code == 500
        assert response.json()["success"] is False
        db.expire_all()
        assert db.get(Contract, contract.id).status == ContractStatusDB.PENDING

    def test_unknown_event_type_is_acknowledged(self, client):
        event = {"id": "evt_payout", "type": "payout.paid", "data": {"object": {"id": "po_1"}}}
        response = _post_webhook(client, event)
        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"


class TestWalletEndpoints:
    def test_request_and_cancel_withdrawal(self, client, db, brand, creator, methods, make_contract, fund, auth_headers):
        _earn(db, brand, creator, make_contract, fund)

        response = client.post(f"{API}/wallet/withdrawals", headers=auth_headers(creator), json={
            "amount": 1000, "method": "Manual",
        })
        assert response.status_code == 201
        withdrawal = response.json()
        assert withdrawal["status"] == "pending"
        assert withdrawal["method"] == "manual"

        balance = client.get(f"{API}/wallet/balance", headers=auth_headers(creator)).json()
        assert balance["available_balance"] == 900
        assert balance["pending_withdrawals_count"] == 1
        assert balance["pending_withdrawals_amount"] == 1000

        response = client.post(f"{API}/wallet/withdrawals/{withdrawal['id']}/cancel", headers=auth_headers(creator))
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        balance = client.get(f"{API}/wallet/balance", headers=auth_headers(creator)).json()
        assert balance["available_balance"] == 1900

    def test_overdraw_returns_conflict(self, client, db, brand, creator, methods, make_contract, fund, auth_headers):
        _earn(db, brand, creator, make_contract, fund, budget=1000)
        response = client.post(f"{API}/wallet/withdrawals", headers=auth_headers(creator), json={
            "amount": 951, "method": "manual",
        })
        assert response.status_code == 409
        assert response.json() == {
            "success": False,
            "reason": "Insufficient available balance",
            "code": "insufficient_balance",
            "action": None,
        }

    def test_method_code_is_normalised(self, client, db, brand, creator, methods, make_contract, fund, auth_headers):
        _earn(db, brand, creator, make_contract, fund)
        response = client.post(f"{API}/wallet/withdrawals", headers=auth_headers(creator), json={
            "amount": 500, "method": "  Manual ",
        })
        assert response.status_code == 201
        assert response.json()["method"] == "manual"

    def test_non_positive_amount_is_rejected_by_schema(self, client, creator, methods, auth_headers):
        response = client.post(f"{API}/wallet/withdrawals", headers=auth_headers(creator), json={
            "amount": 0, "method": "manual",
        })
        assert response.status_code == 422

    def test_brand_has_no_wallet(self, client, brand, auth_headers):
        assert client.get(f"{API}/wallet/balance", headers=auth_headers(brand)).status_code == 403

    def test_withdrawal_methods(self, client, creator, methods, auth_headers):
        response = client.get(f"{API}/wallet/withdrawal-methods", headers=auth_headers(creator))
        assert response.status_code == 200
        codes = [method["code"] for method in response.json()]
        assert "manual" in codes

    def test_payment_method_setup_checkout(self, client, gateway, brand, auth_headers):
        response = client.post(f"{API}/wallet/payment-methods/setup", headers=auth_headers(brand))
        assert response.status_code == 200
        session = gateway.sessions[response.json()["session_id"]]
        assert session.mode == "setup"


class TestAdminEndpoints:
    """Admin withdrawal processing and webhook replay."""

    def test_process_and_complete_manual_withdrawal(
        self, client, db, admin, brand, creator, methods, make_contract, fund, auth_headers
    ):
        _earn(db, brand, creator, make_contract, fund)
        withdrawal_id = client.post(f"{API}/wallet/withdrawals", headers=auth_headers(creator), json={
            "amount": 500, "method": "manual",
        }).json()["id"]

        listed = client.get(f"{API}/admin/withdrawals", headers=auth_headers(admin)).json()
        assert [w["id"] for w in listed] == [withdrawal_id]

        response = client.post(f"{API}/admin/withdrawals/{withdrawal_id}/process", headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["status"] == "processing"

        response = client.post(
            f"{API}/admin/withdrawals/{withdrawal_id}/complete",
            headers=auth_headers(admin),
            json={"transaction_id": "bank-ref-42"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        db.expire_all()
        assert db.get(Withdrawal, withdrawal_id).status == WithdrawalStatusDB.COMPLETED

    def test_retry_transfer_after_timeout(
        self, client, db, gateway, admin, brand, creator, methods, make_contract, fund, auth_headers
    ):
        _earn(db, brand, creator, make_contract, fund, budget=100_000)
        withdrawal_id = client.post(f"{API}/wallet/withdrawals", headers=auth_headers(creator), json={
            "amount": 20_000, "method": "stripe",
        }).json()["id"]
        gateway.transfer_timeouts = True
        response = client.post(f"{API}/admin/withdrawals/{withdrawal_id}/process", headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["status"] == "processing"
        gateway.transfer_timeouts = False

        response = client.post(f"{API}/admin/withdrawals/{withdrawal_id}/retry-transfer", headers=auth_headers(admin))

        assert response.status_code == 200
        transfer, _ = gateway.transfers[0]
        assert len(gateway.transfers) == 1
        assert response.json()["transaction_id"] == transfer.id

    def test_creator_cannot_process_withdrawals(self, client, creator, auth_headers):
        response = client.post(f"{API}/admin/withdrawals/missing/process", headers=auth_headers(creator))
        assert response.status_code == 403

    def test_unknown_withdrawal(self, client, admin, auth_headers):
        response = client.post(f"{API}/admin/withdrawals/missing/process", headers=auth_headers(admin))
        assert response.status_code == 404
        assert response.json()["code"] == "withdrawal_not_found"

    def test_replay_failed_event(self, client, db, gateway, admin, brand, make_contract, auth_headers):
        contract = make_contract()
        session = gateway.add_session(amount=1000, metadata={
            "type": "contract_funding", "contract_id": contract.id, "user_id": brand.id,
        })
        event = checkout_event(session)
        gateway.unavailable = True
        assert _post_webhook(client, event).status_code == 500
        gateway.unavailable = False

        failed = client.get(
            f"{API}/admin/webhooks", params={"status": "failed"}, headers=auth_headers(admin)
        ).json()
        assert [row["external_event_id"] for row in failed] == [event["id"]]

        response = client.post(f"{API}/admin/webhooks/{failed[0]['id']}/replay", headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json()["status"] == "processed"

        response = client.post(f"{API}/admin/webhooks/{failed[0]['id']}/replay", headers=auth_headers(admin))
        assert response.status_code == 409
        assert response.json()["code"] == "webhook_not_replayable"

        db.expire_all()
        row = db.query(WebhookEvent).filter(WebhookEvent.external_event_id == event["id"]).one()
        assert row.status == WebhookEventStatusDB.PROCESSED
        assert db.get(Contract, contract.id).status == ContractStatusDB.ACTIVE

    def test_reset_stuck_events(self, client, admin, auth_headers):
        response = client.post(f"{API}/admin/webhooks/stuck/reset", headers=auth_headers(admin))
        assert response.status_code == 200
        assert response.json() == {"success": True, "reset": 0}


class TestNotificationEndpoints:
    def test_offer_notifies_creator(self, client, db, brand, creator, make_contract, auth_headers):
        make_contract()
        response = client.get(f"{API}/notifications", headers=auth_headers(creator))
        assert response.status_code == 200
        notifications = response.json()
        assert any(n["type"] == "offer_received" for n in notifications)

        target = notifications[0]["id"]
        response = client.post(f"{API}/notifications/{target}/read", headers=auth_headers(creator))
        assert response.status_code == 200
        db.expire_all()
        assert db.get(Notification, target).read is True

    def test_cannot_read_someone_elses_notification(self, client, brand, creator, make_contract, auth_headers):
        make_contract()
        notification_id = client.get(f"{API}/notifications", headers=auth_headers(creator)).json()[0]["id"]
        response = client.post(f"{API}/notifications/{notification_id}/read", headers=auth_headers(brand))
        assert response.status_code == 404
