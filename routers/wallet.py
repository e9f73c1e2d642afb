# Wallet Router for the Escrow Ledger
# Creator balance, withdrawals, withdrawal methods and payment-method setup

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List

from database.config import get_db
from database.models import User, UserType
from schemas.marketplace import (
    BalanceResponse,
    WithdrawRequest,
    WithdrawalResponse,
    WithdrawalMethodResponse,
    CheckoutResponse,
)
from auth.dependencies import get_current_user
from auth.decorators import require_user_type
from core.stripe_service import get_stripe_service
from services.balance_service import BalanceService
from services.funding_service import FundingService
from services.withdrawal_service import WithdrawalService
from services import withdrawal_methods

router = APIRouter(prefix="/wallet", tags=["Wallet"])


# ============================================================================
# BALANCE
# ============================================================================

@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_user_type(UserType.CREATOR))
):
    """
    Get the creator's ledger summary.
    Creates the ledger row on first access and repairs drift from payment history.
    """
    summary = BalanceService(db).get_summary(current_user.id)
    db.commit()
    return summary


# ============================================================================
# WITHDRAWALS
# ============================================================================

@router.get("/withdrawal-methods", response_model=List[WithdrawalMethodResponse])
async def get_withdrawal_methods(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return withdrawal_methods.list_active_methods(db)


@router.get("/withdrawals", response_model=List[WithdrawalResponse])
async def list_withdrawals(
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(require_user_type(UserType.CREATOR))
):
    return WithdrawalService(db, gateway).list_for_creator(current_user.id)


@router.post("/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED)
async def request_withdrawal(
    body: WithdrawRequest,
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(require_user_type(UserType.CREATOR))
):
    """Debit available balance and queue a payout."""
    return WithdrawalService(db, gateway).request(current_user, body.amount, body.method, body.details)


@router.post("/withdrawals/{withdrawal_id}/cancel", response_model=WithdrawalResponse)
async def cancel_withdrawal(
    withdrawal_id: str,
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(require_user_type(UserType.CREATOR))
):
    return WithdrawalService(db, gateway).cancel(withdrawal_id, current_user)


# ============================================================================
# PAYMENT METHODS
# ============================================================================

@router.post("/payment-methods/setup", response_model=CheckoutResponse)
async def setup_payment_method(
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(get_current_user)
):
    """Start a setup checkout; the saved card arrives through the webhook."""
    return FundingService(db, gateway).create_setup_checkout(current_user)
