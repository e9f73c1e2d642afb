# Escrow Ledger Database Models
# Offers, contracts, payments, creator balances, withdrawals and webhook events.
# All money columns hold integer minor units (cents).

from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text, JSON, Enum, Boolean,
    Numeric, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

# Use the same Base from existing models
from database.models import Base, generate_uuid, utcnow


def _enum(enum_cls, name):
    return Enum(enum_cls, values_callable=lambda x: [e.value for e in x], name=name)


# ============================================================================
# ENUMS
# ============================================================================

class OfferStatusDB(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ContractStatusDB(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class ContractWorkflowDB(str, enum.Enum):
    AWAITING_FUNDING = "awaiting_funding"
    ACTIVE = "active"
    WAITING_REVIEW = "waiting_review"
    CANCELLING = "cancelling"
    PAYMENT_AVAILABLE = "payment_available"
    CANCELLED = "cancelled"
    TERMINATED = "terminated"
    DISPUTED = "disputed"


class PaymentStatusDB(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class WithdrawalStatusDB(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WebhookEventStatusDB(str, enum.Enum):
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class SubscriptionStatusDB(str, enum.Enum):
    ACTIVE = "active"
    PENDING = "pending"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# ============================================================================
# OFFER
# ============================================================================

class Offer(Base):
    """A priced proposal from a brand to a creator."""
    __tablename__ = "offers"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    brand_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    campaign_id = Column(String(36))

    title = Column(String(255), nullable=False)
    description = Column(Text)
    requirements = Column(JSON)
    budget = Column(Integer, nullable=False)  # In cents
    estimated_days = Column(Integer, nullable=False)

    status = Column(_enum(OfferStatusDB, "offerstatusdb"), default=OfferStatusDB.PENDING, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    accepted_at = Column(DateTime)
    rejected_at = Column(DateTime)
    rejection_reason = Column(Text)
    cancelled_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    brand = relationship("User", foreign_keys=[brand_id])
    creator = relationship("User", foreign_keys=[creator_id])
    contract = relationship("Contract", back_populates="offer", uselist=False)

    __table_args__ = (
        Index("ix_offers_pair_status", "brand_id", "creator_id", "status"),
    )

    def is_expired(self, now=None) -> bool:
        return (now or utcnow()) > self.expires_at

    def can_be_accepted(self, now=None) -> bool:
        return self.status == OfferStatusDB.PENDING and not self.is_expired(now)


# ============================================================================
# CONTRACT
# ============================================================================

class Contract(Base):
    """A funded engagement between a brand and a creator."""
    __tablename__ = "contracts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    brand_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    offer_id = Column(String(36), ForeignKey("offers.id", ondelete="SET NULL"), unique=True)

    title = Column(String(255), nullable=False)
    description = Column(Text)
    requirements = Column(JSON)
    budget = Column(Integer, nullable=False)  # In cents, immutable once active
    estimated_days = Column(Integer, nullable=False, default=1)

    status = Column(_enum(ContractStatusDB, "contractstatusdb"), default=ContractStatusDB.PENDING, nullable=False)
    workflow_status = Column(
        _enum(ContractWorkflowDB, "contractworkflowdb"),
        default=ContractWorkflowDB.AWAITING_FUNDING,
        nullable=False,
    )

    started_at = Column(DateTime)
    expected_completion_at = Column(DateTime)
    submitted_at = Column(DateTime)
    completed_at = Column(DateTime)
    completed_by = Column(String(36))
    cancelled_at = Column(DateTime)
    cancellation_reason = Column(Text)
    disputed_at = Column(DateTime)
    dispute_reason = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    brand = relationship("User", foreign_keys=[brand_id])
    creator = relationship("User", foreign_keys=[creator_id])
    offer = relationship("Offer", back_populates="contract")
    payment = relationship("JobPayment", back_populates="contract", uselist=False)
    audit_logs = relationship("ContractAuditLog", back_populates="contract", order_by="ContractAuditLog.created_at")

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.brand_id, self.creator_id)

    def is_funded(self) -> bool:
        return self.payment is not None and self.payment.status in (
            PaymentStatusDB.COMPLETED,
        )

    def can_be_completed(self, now=None) -> bool:
        if self.status != ContractStatusDB.ACTIVE or not self.is_funded():
            return False
        if self.workflow_status == ContractWorkflowDB.WAITING_REVIEW:
            return True
        return self.expected_completion_at is not None and (now or utcnow()) >= self.expected_completion_at


class ContractAuditLog(Base):
    """One row per contract transition."""
    __tablename__ = "contract_audit_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    actor_id = Column(String(36))  # None for webhook/system actions
    details = Column(JSON)
    created_at = Column(DateTime, default=utcnow)

    contract = relationship("Contract", back_populates="audit_logs")


# ============================================================================
# PAYMENT
# ============================================================================

class JobPayment(Base):
    """Confirmed funding for a contract. Exactly one per contract."""
    __tablename__ = "job_payments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    contract_id = Column(String(36), ForeignKey("contracts.id", ondelete="CASCADE"), unique=True, nullable=False)
    brand_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    creator_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)

    total_amount = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False)
    creator_amount = Column(Integer, nullable=False)
    currency = Column(String(3), default="usd")

    status = Column(_enum(PaymentStatusDB, "paymentstatusdb"), default=PaymentStatusDB.PENDING, nullable=False)
    stripe_payment_intent_id = Column(String(255))
    stripe_checkout_session_id = Column(String(255), unique=True)

    paid_at = Column(DateTime)
    released_at = Column(DateTime)
    refunded_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    contract = relationship("Contract", back_populates="payment")

    @property
    def payment_reference(self):
        return self.stripe_payment_intent_id or self.stripe_checkout_session_id


# ============================================================================
# CREATOR BALANCE
# ============================================================================

class CreatorBalance(Base):
    """Per-creator ledger. Mutated only while the row is locked."""
    __tablename__ = "creator_balances"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)

    available_balance = Column(Integer, default=0, nullable=False)
    pending_balance = Column(Integer, default=0, nullable=False)
    total_earned = Column(Integer, default=0, nullable=False)
    total_withdrawn = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    creator = relationship("User")


# ============================================================================
# WITHDRAWALS
# ============================================================================

class WithdrawalMethod(Base):
    """Payout method configuration. Read-only to the withdrawal flow."""
    __tablename__ = "withdrawal_methods"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    min_amount = Column(Integer, nullable=False)
    max_amount = Column(Integer)
    fixed_fee = Column(Integer, default=0, nullable=False)
    fee_percentage = Column(Numeric(5, 2), default=0, nullable=False)
    required_fields = Column(JSON, default=list)
    is_automatic = Column(Boolean, default=False)  # paid out through a gateway transfer
    is_active = Column(Boolean, default=True)
    sort_order = Column(Integer, default=0)


class Withdrawal(Base):
    """Creator-initiated debit against available balance."""
    __tablename__ = "withdrawals"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    creator_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    amount = Column(Integer, nullable=False)
    platform_fee = Column(Numeric(5, 2), default=0, nullable=False)  # percentage
    fixed_fee = Column(Integer, default=0, nullable=False)
    net_amount = Column(Integer, nullable=False)
    method = Column(String(50), nullable=False)
    details = Column(JSON)

    status = Column(_enum(WithdrawalStatusDB, "withdrawalstatusdb"), default=WithdrawalStatusDB.PENDING, nullable=False)
    transaction_id = Column(String(255))
    failure_reason = Column(Text)
    processed_at = Column(DateTime)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    creator = relationship("User")

    @property
    def is_open(self) -> bool:
        return self.status in (WithdrawalStatusDB.PENDING, WithdrawalStatusDB.PROCESSING)

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            WithdrawalStatusDB.COMPLETED,
            WithdrawalStatusDB.FAILED,
            WithdrawalStatusDB.CANCELLED,
        )


# ============================================================================
# WEBHOOK EVENTS
# ============================================================================

class WebhookEvent(Base):
    """Durable record of every verified inbound gateway event."""
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    external_event_id = Column(String(255), nullable=False)
    type = Column(String(100), nullable=False)
    payload = Column(JSON)

    status = Column(_enum(WebhookEventStatusDB, "webhookeventstatusdb"), default=WebhookEventStatusDB.PROCESSING, nullable=False)
    error_message = Column(Text)
    attempts = Column(Integer, default=1, nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    processed_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("external_event_id", name="uq_webhook_events_external_event_id"),
    )


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(100), nullable=False)
    price = Column(Integer, nullable=False)  # In cents
    interval_months = Column(Integer, default=1, nullable=False)
    stripe_price_id = Column(String(255))
    is_active = Column(Boolean, default=True)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(String(36), ForeignKey("subscription_plans.id"))

    status = Column(_enum(SubscriptionStatusDB, "subscriptionstatusdb"), default=SubscriptionStatusDB.PENDING, nullable=False)
    stripe_subscription_id = Column(String(255), unique=True)
    stripe_status = Column(String(50))
    stripe_latest_invoice_id = Column(String(255))

    starts_at = Column(DateTime)
    expires_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User")
    plan = relationship("SubscriptionPlan")


# ============================================================================
# NOTIFICATIONS
# ============================================================================

class Notification(Base):
    """User notifications."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    type = Column(String(50), nullable=False)  # payment_received, withdrawal_completed, etc.
    title = Column(String(200), nullable=False)
    message = Column(Text)
    data = Column(JSON)  # Additional context (contract_id, amount, etc.)

    read = Column(Boolean, default=False)
    read_at = Column(DateTime)

    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", backref="notifications")
