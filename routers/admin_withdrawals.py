"""
Admin Withdrawal Management Router
Allows admins to view and process withdrawals and repair creator ledgers
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from database.config import get_db
from database.models import User
from database.marketplace_models import WithdrawalStatusDB
from schemas.marketplace import WithdrawalResponse, WithdrawalFail, WithdrawalComplete, BalanceResponse
from auth.decorators import require_permission
from auth.roles import Permission
from core.stripe_service import get_stripe_service
from services.balance_service import BalanceService
from services.withdrawal_service import WithdrawalService

router = APIRouter(prefix="/admin/withdrawals", tags=["Admin - Withdrawals"])


# ============================================================================
# ADMIN WITHDRAWAL ENDPOINTS
# ============================================================================

@router.get("", response_model=List[WithdrawalResponse])
async def list_withdrawals(
    status_filter: Optional[WithdrawalStatusDB] = Query(WithdrawalStatusDB.PENDING, alias="status"),
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(require_permission(Permission.PROCESS_WITHDRAWALS))
):
    """Withdrawals in a given status, oldest first."""
    return WithdrawalService(db, gateway).list_by_status(status_filter)


@router.post("/{withdrawal_id}/process", response_model=WithdrawalResponse)
async def process_withdrawal(
    withdrawal_id: str,
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(require_permission(Permission.PROCESS_WITHDRAWALS))
):
    """
    Move a withdrawal to processing.
    Automatic methods are paid out with a gateway transfer immediately.
    """
    return WithdrawalService(db, gateway).process(withdrawal_id)


@router.post("/{withdrawal_id}/retry-transfer", response_model=WithdrawalResponse)
async def retry_withdrawal_transfer(
    withdrawal_id: str,
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(require_permission(Permission.PROCESS_WITHDRAWALS))
):
    """Re-send a transfer that timed out; the gateway returns the original if it went through."""
    return WithdrawalService(db, gateway).retry_transfer(withdrawal_id)


@router.post("/{withdrawal_id}/complete", response_model=WithdrawalResponse)
async def complete_withdrawal(
    withdrawal_id: str,
    body: WithdrawalComplete,
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(require_permission(Permission.PROCESS_WITHDRAWALS))
):
    return WithdrawalService(db, gateway).complete(withdrawal_id, body.transaction_id)


@router.post("/{withdrawal_id}/fail", response_model=WithdrawalResponse)
async def fail_withdrawal(
    withdrawal_id: str,
    body: WithdrawalFail,
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(require_permission(Permission.PROCESS_WITHDRAWALS))
):
    """Mark a payout as failed and return the amount to the creator's balance."""
    return WithdrawalService(db, gateway).fail(withdrawal_id, body.reason)


@router.post("/balances/{creator_id}/recalculate", response_model=BalanceResponse)
async def recalculate_balance(
    creator_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_permission(Permission.PROCESS_WITHDRAWALS))
):
    service = BalanceService(db)
    service.recalculate_from_payments(creator_id)
    summary = service.get_summary(creator_id)
    db.commit()
    return summary
