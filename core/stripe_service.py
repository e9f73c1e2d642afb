# Stripe Gateway Service
# Thin wrapper around the Stripe SDK. Every call passes the configured key
# explicitly, so several clients (or a fake one in tests) can coexist.
# Results are returned as plain dataclasses; nothing outside this module
# touches Stripe objects.

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe
from fastapi import Request

from config.app_config import (
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    STRIPE_WEBHOOK_TOLERANCE,
    CURRENCY,
)
from services.errors import GatewayError, WebhookVerificationError

logger = logging.getLogger(__name__)


class StripeServiceError(GatewayError):
    """Raised when Stripe operations fail or are misconfigured."""


@dataclass
class CheckoutSessionResult:
    id: str
    url: Optional[str]


@dataclass
class CheckoutSessionInfo:
    id: str
    mode: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    payment_intent: Optional[str] = None
    setup_intent: Optional[str] = None
    subscription: Optional[str] = None
    customer: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


@dataclass
class PayoutAccount:
    id: str
    payouts_enabled: bool
    charges_enabled: bool = False
    details_submitted: bool = False


@dataclass
class SubscriptionInfo:
    id: str
    status: str
    customer: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    latest_invoice: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class TransferResult:
    id: str
    amount: int
    destination: str


def _plain(obj) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _id_of(value) -> Optional[str]:
    """Expandable Stripe fields arrive either as an id or as an object."""
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


class StripeService:
    """
    Gateway client used by the checkout, reconciliation and withdrawal flows.
    Construct it once at startup and inject it; it holds no global state.
    """

    def __init__(
        self,
        api_key: str = STRIPE_SECRET_KEY,
        webhook_secret: str = STRIPE_WEBHOOK_SECRET,
        currency: str = CURRENCY,
        webhook_tolerance: int = STRIPE_WEBHOOK_TOLERANCE,
    ):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.webhook_tolerance = webhook_tolerance

    def _ensure_secret_key(self) -> None:
        if not self.api_key:
            raise StripeServiceError("Stripe is not configured for this environment")

    def _call(self, description: str, fn, *args, **kwargs):
        self._ensure_secret_key()
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except (stripe.APIConnectionError, stripe.APIError) as exc:
            # The request may have reached Stripe; only an idempotent retry is safe
            logger.warning(f"Stripe {description} outcome unknown: {exc}")
            raise StripeServiceError(f"Failed to {description}: {exc}", outcome_unknown=True) from exc
        except stripe.StripeError as exc:
            logger.error(f"Stripe {description} failed: {exc}")
            raise StripeServiceError(f"Failed to {description}: {exc}") from exc

    # ========================================================================
    # CHECKOUT
    # ========================================================================

    def create_checkout_session(
        self,
        mode: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        amount: Optional[int] = None,
        product_name: Optional[str] = None,
        price_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> CheckoutSessionResult:
        params: Dict[str, Any] = {
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer_id:
            params["customer"] = customer_id

        if mode == "payment":
            params["line_items"] = [{
                "quantity": 1,
                "price_data": {
                    "currency": self.currency,
                    "unit_amount": amount,
                    "product_data": {"name": product_name or "Contract funding"},
                },
            }]
            params["payment_intent_data"] = {"metadata": metadata}
        elif mode == "subscription":
            params["line_items"] = [{"price": price_id, "quantity": 1}]
            params["subscription_data"] = {"metadata": metadata}
        elif mode == "setup":
            params["currency"] = self.currency
            params["setup_intent_data"] = {"metadata": metadata}
        else:
            raise StripeServiceError(f"Unsupported checkout mode: {mode}")

        session = self._call("create checkout session", stripe.checkout.Session.create, **params)
        logger.info(f"Created Stripe {mode} checkout session {session.id}")
        return CheckoutSessionResult(id=session.id, url=getattr(session, "url", None))

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        session = self._call("retrieve checkout session", stripe.checkout.Session.retrieve, session_id)
        return CheckoutSessionInfo(
            id=session.id,
            mode=getattr(session, "mode", None),
            status=getattr(session, "status", None),
            payment_status=getattr(session, "payment_status", None),
            amount_total=getattr(session, "amount_total", None),
            currency=getattr(session, "currency", None),
            payment_intent=_id_of(getattr(session, "payment_intent", None)),
            setup_intent=_id_of(getattr(session, "setup_intent", None)),
            subscription=_id_of(getattr(session, "subscription", None)),
            customer=_id_of(getattr(session, "customer", None)),
            metadata=_plain(getattr(session, "metadata", None)),
        )

    def retrieve_setup_payment_method(self, setup_intent_id: str) -> Optional[str]:
        intent = self._call("retrieve setup intent", stripe.SetupIntent.retrieve, setup_intent_id)
        return _id_of(getattr(intent, "payment_method", None))

    # ========================================================================
    # CUSTOMERS & SUBSCRIPTIONS
    # ========================================================================

    def create_customer(self, email: str, name: Optional[str], user_id: str) -> str:
        customer = self._call(
            "create customer", stripe.Customer.create,
            email=email, name=name, metadata={"user_id": user_id},
        )
        return customer.id

    def retrieve_subscription(self, subscription_id: str) -> Optional[SubscriptionInfo]:
        self._ensure_secret_key()
        try:
            sub = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                return None
            raise StripeServiceError(f"Failed to retrieve subscription: {exc}") from exc
        except stripe.StripeError as exc:
            raise StripeServiceError(f"Failed to retrieve subscription: {exc}") from exc

        # Period bounds moved onto subscription items in newer API versions
        period_start = getattr(sub, "current_period_start", None)
        period_end = getattr(sub, "current_period_end", None)
        if period_end is None:
            items = (_plain(sub).get("items") or {}).get("data") or []
            if items:
                first = _plain(items[0])
                period_start = first.get("current_period_start")
                period_end = first.get("current_period_end")

        return SubscriptionInfo(
            id=sub.id,
            status=sub.status,
            customer=_id_of(getattr(sub, "customer", None)),
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(getattr(sub, "cancel_at_period_end", False)),
            latest_invoice=_id_of(getattr(sub, "latest_invoice", None)),
            metadata=_plain(getattr(sub, "metadata", None)),
        )

    # ========================================================================
    # PAYOUTS
    # ========================================================================

    def retrieve_payout_account(self, account_id: str) -> Optional[PayoutAccount]:
        """Live payout eligibility. None when the account no longer exists."""
        self._ensure_secret_key()
        try:
            account = stripe.Account.retrieve(account_id, api_key=self.api_key)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) in ("resource_missing", "account_invalid"):
                return None
            raise StripeServiceError(f"Failed to retrieve payout account: {exc}") from exc
        except stripe.StripeError as exc:
            raise StripeServiceError(f"Failed to retrieve payout account: {exc}") from exc

        return PayoutAccount(
            id=account.id,
            payouts_enabled=bool(getattr(account, "payouts_enabled", False)),
            charges_enabled=bool(getattr(account, "charges_enabled", False)),
            details_submitted=bool(getattr(account, "details_submitted", False)),
        )

    def create_transfer(
        self,
        amount: int,
        destination: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": self.currency,
            "destination": destination,
            "metadata": metadata,
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        transfer = self._call("create transfer", stripe.Transfer.create, **params)
        logger.info(f"Created transfer {transfer.id} of {amount} to {destination}")
        return TransferResult(id=transfer.id, amount=amount, destination=destination)

    def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            params["amount"] = amount
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        refund = self._call("refund payment", stripe.Refund.create, **params)
        logger.info(f"Refunded payment intent {payment_intent_id}: {refund.id}")
        return refund.id

    # ========================================================================
    # WEBHOOKS
    # ========================================================================

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Check the Stripe-Signature header against the raw body and return the
        decoded event. Raises WebhookVerificationError on any mismatch.
        """
        if not self.webhook_secret:
            raise WebhookVerificationError("Stripe webhook secret is not configured", code="webhook_not_configured")
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header", code="missing_signature")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(body, signature, self.webhook_secret, self.webhook_tolerance)
        except UnicodeDecodeError as exc:
            raise WebhookVerificationError("Webhook payload is not valid UTF-8") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning(f"Rejected webhook with bad signature: {exc}")
            raise WebhookVerificationError("Invalid webhook signature", code="invalid_signature") from exc

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise WebhookVerificationError("Webhook payload is not valid JSON", code="malformed_payload") from exc
        if not isinstance(event, dict):
            raise WebhookVerificationError("Webhook payload is not an object", code="malformed_payload")
        return event


def get_stripe_service(request: Request):
    """FastAPI dependency: the gateway client built at startup."""
    return request.app.state.gateway
