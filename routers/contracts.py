# Contracts Router for the Escrow Ledger
# Funding checkout and the contract work lifecycle

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional

from database.config import get_db
from database.models import User, UserType
from database.marketplace_models import ContractStatusDB
from schemas.marketplace import (
    ContractResponse,
    ContractAuditLogResponse,
    ContractReason,
    ContractDispute,
    ContractSubmit,
    CheckoutResponse,
)
from auth.dependencies import get_current_user
from auth.decorators import require_user_type
from core.stripe_service import get_stripe_service
from services.contract_service import ContractService
from services.funding_service import FundingService

router = APIRouter(prefix="/contracts", tags=["Contracts"])


# ============================================================================
# READS
# ============================================================================

@router.get("", response_model=List[ContractResponse])
async def list_contracts(
    status_filter: Optional[ContractStatusDB] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return ContractService(db).list_for_user(current_user, status_filter)


@router.get("/{contract_id}", response_model=ContractResponse)
async def get_contract(
    contract_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return ContractService(db).get_for_party(contract_id, current_user)


@router.get("/{contract_id}/history", response_model=List[ContractAuditLogResponse])
async def get_contract_history(
    contract_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return ContractService(db).get_for_party(contract_id, current_user).audit_logs


# ============================================================================
# FUNDING
# ============================================================================

@router.post("/{contract_id}/fund", response_model=CheckoutResponse)
async def fund_contract(
    contract_id: str,
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(require_user_type(UserType.BRAND))
):
    """
    Start a checkout for the contract budget.
    The contract activates only when the gateway confirms payment.
    """
    return FundingService(db, gateway).create_funding_checkout(contract_id, current_user)


@router.post("/{contract_id}/activate", response_model=ContractResponse)
async def activate_contract(
    contract_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_user_type(UserType.BRAND))
):
    return ContractService(db).activate(contract_id, current_user)


# ============================================================================
# WORK LIFECYCLE
# ============================================================================

@router.post("/{contract_id}/submit", response_model=ContractResponse)
async def submit_contract(
    contract_id: str,
    body: ContractSubmit,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_user_type(UserType.CREATOR))
):
    return ContractService(db).submit_for_review(contract_id, current_user, body.note)


@router.post("/{contract_id}/complete", response_model=ContractResponse)
async def complete_contract(
    contract_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_user_type(UserType.BRAND))
):
    """Accept the work and release the creator's share to their available balance."""
    return ContractService(db).complete(contract_id, current_user)


@router.post("/{contract_id}/cancel", response_model=ContractResponse)
async def cancel_contract(
    contract_id: str,
    body: ContractReason,
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(get_current_user)
):
    return ContractService(db, gateway).cancel(contract_id, current_user, body.reason)


@router.post("/{contract_id}/terminate", response_model=ContractResponse)
async def terminate_contract(
    contract_id: str,
    body: ContractReason,
    db: Session = Depends(get_db),
    gateway=Depends(get_stripe_service),
    current_user: User = Depends(require_user_type(UserType.BRAND))
):
    return ContractService(db, gateway).terminate(contract_id, current_user, body.reason)


@router.post("/{contract_id}/dispute", response_model=ContractResponse)
async def dispute_contract(
    contract_id: str,
    body: ContractDispute,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return ContractService(db).dispute(contract_id, current_user, body.reason)
