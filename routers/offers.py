# Offers Router for the Escrow Ledger
# Brands send priced offers; creators accept (creating a contract), reject or let them expire

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from database.config import get_db
from database.models import User, UserType
from database.marketplace_models import OfferStatusDB
from schemas.marketplace import OfferCreate, OfferReject, OfferResponse, ContractResponse
from auth.dependencies import get_current_user
from auth.decorators import require_user_type
from services.offer_service import OfferService

router = APIRouter(prefix="/offers", tags=["Offers"])


@router.post("", response_model=OfferResponse, status_code=status.HTTP_201_CREATED)
async def create_offer(
    offer_data: OfferCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_user_type(UserType.BRAND))
):
    """Send an offer to a creator. One pending offer per brand/creator pair."""
    return OfferService(db).create(
        brand=current_user,
        creator_id=offer_data.creator_id,
        title=offer_data.title,
        description=offer_data.description,
        requirements=offer_data.requirements,
        budget=offer_data.budget,
        estimated_days=offer_data.estimated_days,
        campaign_id=offer_data.campaign_id,
    )


@router.get("", response_model=List[OfferResponse])
async def list_offers(
    status_filter: Optional[OfferStatusDB] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    return OfferService(db).list_for_user(current_user, status_filter)


@router.post("/{offer_id}/accept", response_model=ContractResponse)
async def accept_offer(
    offer_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_user_type(UserType.CREATOR))
):
    """Accept an offer. Returns the new contract, awaiting funding."""
    return OfferService(db).accept(offer_id, current_user)


@router.post("/{offer_id}/reject", response_model=OfferResponse)
async def reject_offer(
    offer_id: str,
    body: OfferReject,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_user_type(UserType.CREATOR))
):
    return OfferService(db).reject(offer_id, current_user, body.reason)


@router.post("/{offer_id}/cancel", response_model=OfferResponse)
async def cancel_offer(
    offer_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_user_type(UserType.BRAND))
):
    return OfferService(db).cancel(offer_id, current_user)
