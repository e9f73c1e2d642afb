# Pydantic Schemas for the Escrow Ledger API
# All money fields are integer cents.

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from database.marketplace_models import (
    OfferStatusDB, ContractStatusDB, ContractWorkflowDB, PaymentStatusDB,
    WithdrawalStatusDB, WebhookEventStatusDB,
)


# ============================================================================
# OFFERS
# ============================================================================

class OfferCreate(BaseModel):
    """Schema for a brand sending an offer."""
    creator_id: str
    title: str = Field(..., min_length=3, max_length=255)
    description: Optional[str] = None
    requirements: List[str] = []
    budget: int = Field(..., gt=0)  # In cents
    estimated_days: int = Field(..., gt=0, le=365)
    campaign_id: Optional[str] = None


class OfferReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class OfferResponse(BaseModel):
    id: str
    brand_id: str
    creator_id: str
    campaign_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    requirements: Optional[List[str]] = None
    budget: int
    estimated_days: int
    status: OfferStatusDB
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# CONTRACTS
# ============================================================================

class PaymentResponse(BaseModel):
    id: str
    total_amount: int
    platform_fee: int
    creator_amount: int
    currency: Optional[str] = None
    status: PaymentStatusDB
    paid_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ContractResponse(BaseModel):
    id: str
    brand_id: str
    creator_id: str
    offer_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    budget: int
    estimated_days: int
    status: ContractStatusDB
    workflow_status: ContractWorkflowDB
    started_at: Optional[datetime] = None
    expected_completion_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    dispute_reason: Optional[str] = None
    payment: Optional[PaymentResponse] = None

    model_config = ConfigDict(from_attributes=True)


class ContractAuditLogResponse(BaseModel):
    action: str
    actor_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ContractReason(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class ContractDispute(BaseModel):
    reason: str = Field(..., min_length=10, max_length=2000)


class ContractSubmit(BaseModel):
    note: Optional[str] = Field(None, max_length=2000)


class CheckoutResponse(BaseModel):
    url: Optional[str] = None
    session_id: str


# ============================================================================
# BALANCE & WITHDRAWALS
# ============================================================================

class BalanceResponse(BaseModel):
    """Creator ledger summary."""
    creator_id: str
    available_balance: int
    pending_balance: int
    total_earned: int
    total_withdrawn: int
    pending_withdrawals_count: int = 0
    pending_withdrawals_amount: int = 0


class WithdrawRequest(BaseModel):
    """Schema for withdrawal request."""
    amount: int = Field(..., gt=0)  # In cents
    method: str = "stripe"
    details: Dict[str, Any] = {}

    @field_validator("method")
    @classmethod
    def method_code(cls, v):
        return v.strip().lower()


class WithdrawalResponse(BaseModel):
    id: str
    amount: int
    fixed_fee: int
    net_amount: int
    method: str
    status: WithdrawalStatusDB
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WithdrawalMethodResponse(BaseModel):
    code: str
    name: str
    min_amount: int
    max_amount: Optional[int] = None
    fixed_fee: int
    fee_percentage: float
    required_fields: List[str] = []

    model_config = ConfigDict(from_attributes=True)


class WithdrawalFail(BaseModel):
    reason: str = Field(..., min_length=3, max_length=1000)


class WithdrawalComplete(BaseModel):
    transaction_id: Optional[str] = None


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

class SubscriptionCheckout(BaseModel):
    plan_id: str


# ============================================================================
# WEBHOOK EVENTS (admin)
# ============================================================================

class WebhookEventResponse(BaseModel):
    id: str
    external_event_id: str
    type: str
    status: WebhookEventStatusDB
    error_message: Optional[str] = None
    attempts: int
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WebhookResultResponse(BaseModel):
    status: str
    event_id: str
    event_type: str
    outcome: Optional[str] = None
    error: Optional[str] = None
