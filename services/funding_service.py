# Contract Funding & Checkout Service
# Outbound: checkout sessions for contract funding and payment-method setup.
# Inbound: applies confirmed funding to the ledger, called from the webhook
# processor inside its transaction (never commits on that path).

import logging
from typing import Optional

from sqlalchemy.orm import Session

from config.app_config import FRONTEND_URL
from core.money import split_platform_fee
from database.models import User, utcnow
from database.marketplace_models import (
    Contract, JobPayment,
    ContractStatusDB, PaymentStatusDB,
)
from schemas.webhooks import CheckoutSessionObject
from services.balance_service import BalanceService
from services.contract_service import ContractService
from services.errors import (
    ValidationError, PermissionDeniedError, PreconditionError, LedgerIntegrityError,
)
from services.notification_service import NotificationService, NotificationType

logger = logging.getLogger(__name__)

CONTRACT_FUNDING = "contract_funding"
PAYMENT_METHOD_SETUP = "payment_method_setup"

# Outcomes reported back to the webhook processor
APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
AWAITING_PAYMENT = "awaiting_payment"


def ensure_customer(db: Session, gateway, user: User) -> str:
    """Gateway customer for the user, created and stored on first use."""
    if user.stripe_customer_id:
        return user.stripe_customer_id
    customer_id = gateway.create_customer(user.email, user.name, user.id)
    user.stripe_customer_id = customer_id
    db.commit()
    logger.info(f"Created gateway customer {customer_id} for user {user.id}")
    return customer_id


class FundingService:

    def __init__(self, db: Session, gateway):
        self.db = db
        self.gateway = gateway
        self.contracts = ContractService(db, gateway)
        self.balances = BalanceService(db)
        self.notifications = NotificationService(db)

    # ========================================================================
    # OUTBOUND CHECKOUT
    # ========================================================================

    def create_funding_checkout(self, contract_id: str, brand: User) -> dict:
        contract = self.contracts.get(contract_id)
        if contract.brand_id != brand.id:
            raise PermissionDeniedError("Only the brand on this contract can fund it")
        if contract.status != ContractStatusDB.PENDING:
            raise PreconditionError(
                f"Contract is {contract.status.value} and cannot be funded",
                code="contract_not_fundable",
            )
        if contract.payment is not None and contract.payment.status == PaymentStatusDB.COMPLETED:
            raise PreconditionError("Contract is already funded", code="contract_already_funded")

        customer_id = ensure_customer(self.db, self.gateway, brand)
        session = self.gateway.create_checkout_session(
            mode="payment",
            amount=contract.budget,
            product_name=f"Contract: {contract.title}",
            customer_id=customer_id,
            metadata={
                "type": CONTRACT_FUNDING,
                "contract_id": contract.id,
                "user_id": brand.id,
                "amount": str(contract.budget),
            },
            success_url=f"{FRONTEND_URL}/contracts/{contract.id}?funding=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{FRONTEND_URL}/contracts/{contract.id}?funding=cancelled",
        )
        logger.info(f"Funding checkout {session.id} created for contract {contract.id}")
        return {"url": session.url, "session_id": session.id}

    def create_setup_checkout(self, user: User) -> dict:
        customer_id = ensure_customer(self.db, self.gateway, user)
        session = self.gateway.create_checkout_session(
            mode="setup",
            customer_id=customer_id,
            metadata={"type": PAYMENT_METHOD_SETUP, "user_id": user.id},
            success_url=f"{FRONTEND_URL}/settings/payment-methods?setup=success",
            cancel_url=f"{FRONTEND_URL}/settings/payment-methods?setup=cancelled",
        )
        return {"url": session.url, "session_id": session.id}

    # ========================================================================
    # INBOUND FUNDING
    # ========================================================================

    def _contract_for_session(self, session: CheckoutSessionObject, for_update: bool = False) -> Contract:
        contract_id = session.metadata.get("contract_id")
        if not contract_id:
            raise ValidationError(
                f"Checkout session {session.id} has no contract_id metadata",
                code="missing_contract_id",
            )
        return self.contracts.get(contract_id, for_update=for_update)

    def apply_contract_funding(self, session: CheckoutSessionObject) -> str:
        """
        Record confirmed funding exactly once: completed payment, pending credit
        and contract activation. Decisions use the gateway's current view of the
        session, not the event snapshot.
        """
        self._contract_for_session(session)
        remote = self.gateway.retrieve_checkout_session(session.id)
        if not remote.is_paid:
            logger.info(f"Checkout {session.id} not paid yet ({remote.payment_status}); waiting")
            return AWAITING_PAYMENT

        contract = self._contract_for_session(session, for_update=True)
        reference = remote.payment_intent or remote.id
        payment = contract.payment

        if payment is not None and payment.status == PaymentStatusDB.COMPLETED:
            if reference in (payment.stripe_payment_intent_id, payment.stripe_checkout_session_id):
                logger.info(f"Contract {contract.id} already funded by {reference}")
                return DUPLICATE
            raise LedgerIntegrityError(
                f"Contract {contract.id} already funded by {payment.payment_reference}; got {reference}",
                code="duplicate_payment",
            )

        if contract.status != ContractStatusDB.PENDING:
            raise LedgerIntegrityError(
                f"Funding received for {contract.status.value} contract {contract.id}",
                code="contract_not_fundable",
            )
        if remote.amount_total != contract.budget:
            raise LedgerIntegrityError(
                f"Paid amount {remote.amount_total} does not match budget {contract.budget}",
                code="amount_mismatch",
            )

        platform_fee, creator_amount = split_platform_fee(contract.budget)
        if payment is None:
            payment = JobPayment(contract=contract)
            self.db.add(payment)
        payment.brand_id = contract.brand_id
        payment.creator_id = contract.creator_id
        payment.total_amount = contract.budget
        payment.platform_fee = platform_fee
        payment.creator_amount = creator_amount
        payment.currency = remote.currency or "usd"
        payment.status = PaymentStatusDB.COMPLETED
        payment.stripe_payment_intent_id = remote.payment_intent
        payment.stripe_checkout_session_id = remote.id
        payment.paid_at = utcnow()
        self.db.flush()

        self.balances.credit_pending(contract.creator_id, creator_amount)
        self.contracts.mark_active(contract, None)
        self.notifications.notify_payment_received(contract.creator_id, contract.id, creator_amount)

        logger.info(
            f"Contract {contract.id} funded: total={contract.budget} fee={platform_fee} creator={creator_amount}"
        )
        return APPLIED

    def mark_funding_failed(self, session: CheckoutSessionObject) -> str:
        """Async payment failed. Never reverts a contract that is already funded."""
        contract = self._contract_for_session(session, for_update=True)
        payment = contract.payment
        if contract.status != ContractStatusDB.PENDING or (
            payment is not None and payment.status == PaymentStatusDB.COMPLETED
        ):
            logger.info(f"Ignoring payment failure for funded contract {contract.id}")
            return IGNORED

        if payment is None:
            platform_fee, creator_amount = split_platform_fee(contract.budget)
            payment = JobPayment(
                contract=contract,
                brand_id=contract.brand_id,
                creator_id=contract.creator_id,
                total_amount=contract.budget,
                platform_fee=platform_fee,
                creator_amount=creator_amount,
            )
            self.db.add(payment)
        payment.status = PaymentStatusDB.FAILED
        payment.stripe_checkout_session_id = session.id
        payment.stripe_payment_intent_id = session.payment_intent
        self.notifications.notify(
            contract.brand_id, NotificationType.PAYMENT_FAILED,
            "Payment failed", f"Funding for '{contract.title}' failed. Please try again.",
            {"contract_id": contract.id},
        )
        return APPLIED

    # ========================================================================
    # PAYMENT METHOD SETUP
    # ========================================================================

    def _user_for_session(self, session: CheckoutSessionObject) -> Optional[User]:
        user_id = session.metadata.get("user_id")
        if user_id:
            user = self.db.query(User).filter(User.id == user_id).first()
            if user is not None:
                return user
        if session.customer:
            return self.db.query(User).filter(User.stripe_customer_id == session.customer).first()
        return None

    def apply_payment_method_setup(self, session: CheckoutSessionObject) -> str:
        user = self._user_for_session(session)
        if user is None:
            raise ValidationError(f"No user found for setup session {session.id}", code="unknown_user")
        if not session.setup_intent:
            raise ValidationError(f"Setup session {session.id} has no setup intent", code="missing_setup_intent")

        payment_method_id = self.gateway.retrieve_setup_payment_method(session.setup_intent)
        if not payment_method_id or payment_method_id == user.stripe_payment_method_id:
            return DUPLICATE

        user.stripe_payment_method_id = payment_method_id
        if session.customer and not user.stripe_customer_id:
            user.stripe_customer_id = session.customer
        logger.info(f"Stored payment method for user {user.id}")
        return APPLIED
