# Offer State Machine
# pending -> accepted | rejected | cancelled | expired
# Accepting an offer creates its contract in the same transaction.

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from config.app_config import OFFER_EXPIRY_DAYS
from database.config import atomic
from database.models import User, UserType, utcnow
from database.marketplace_models import (
    Offer, Contract, ContractAuditLog,
    OfferStatusDB, ContractStatusDB, ContractWorkflowDB,
)
from services.errors import ValidationError, NotFoundError, PermissionDeniedError, PreconditionError
from services.notification_service import NotificationService, NotificationType

logger = logging.getLogger(__name__)


class OfferService:

    def __init__(self, db: Session):
        self.db = db
        self.notifications = NotificationService(db)

    def get(self, offer_id: str, for_update: bool = False) -> Offer:
        query = self.db.query(Offer).filter(Offer.id == offer_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        offer = query.first()
        if offer is None:
            raise NotFoundError("Offer not found", code="offer_not_found")
        return offer

    def list_for_user(self, user: User, status: Optional[OfferStatusDB] = None) -> List[Offer]:
        query = self.db.query(Offer)
        if user.user_type == UserType.CREATOR:
            query = query.filter(Offer.creator_id == user.id)
        elif user.user_type == UserType.BRAND:
            query = query.filter(Offer.brand_id == user.id)
        if status is not None:
            query = query.filter(Offer.status == status)
        return query.order_by(Offer.created_at.desc()).all()

    def _open_offer_between(self, brand_id: str, creator_id: str) -> Optional[Offer]:
        # Expired-but-unswept offers no longer block a new one
        return self.db.query(Offer).filter(
            Offer.brand_id == brand_id,
            Offer.creator_id == creator_id,
            Offer.status == OfferStatusDB.PENDING,
            Offer.expires_at >= utcnow(),
        ).first()

    def create(
        self,
        brand: User,
        creator_id: str,
        title: str,
        budget: int,
        estimated_days: int,
        description: Optional[str] = None,
        requirements: Optional[list] = None,
        campaign_id: Optional[str] = None,
    ) -> Offer:
        if brand.user_type != UserType.BRAND:
            raise PermissionDeniedError("Only brands can send offers")
        if isinstance(budget, bool) or not isinstance(budget, int) or budget <= 0:
            raise ValidationError("Budget must be a positive amount in cents", code="invalid_budget")
        if estimated_days <= 0:
            raise ValidationError("Estimated days must be positive", code="invalid_estimated_days")

        creator = self.db.query(User).filter(User.id == creator_id).first()
        if creator is None or creator.user_type != UserType.CREATOR:
            raise NotFoundError("Creator not found", code="creator_not_found")

        with atomic(self.db):
            # Serialises offer creation per brand so the pair check holds
            self.db.query(User).filter(User.id == brand.id).with_for_update().first()
            if self._open_offer_between(brand.id, creator_id) is not None:
                raise PreconditionError(
                    "You already have a pending offer with this creator",
                    code="offer_already_pending",
                )
            offer = Offer(
                brand_id=brand.id,
                creator_id=creator_id,
                campaign_id=campaign_id,
                title=title,
                description=description,
                requirements=requirements or [],
                budget=budget,
                estimated_days=estimated_days,
                status=OfferStatusDB.PENDING,
                expires_at=utcnow() + timedelta(days=OFFER_EXPIRY_DAYS),
            )
            self.db.add(offer)
            self.db.flush()
            self.notifications.notify(
                creator_id, NotificationType.OFFER_RECEIVED,
                "New offer", f"You received an offer: {title}",
                {"offer_id": offer.id},
            )

        logger.info(f"Offer {offer.id} sent from brand {brand.id} to creator {creator_id}")
        return offer

    def _require_pending(self, offer: Offer):
        if offer.status != OfferStatusDB.PENDING:
            raise PreconditionError(
                f"Offer has already been {offer.status.value}",
                code="offer_already_processed",
                action="offer_already_processed",
            )

    def accept(self, offer_id: str, creator: User) -> Contract:
        """Creator accepts: exactly one pending contract is created, atomically."""
        with atomic(self.db):
            offer = self.get(offer_id, for_update=True)
            if offer.creator_id != creator.id:
                raise PermissionDeniedError("Only the invited creator can accept this offer")
            self._require_pending(offer)
            if offer.is_expired():
                raise PreconditionError("This offer has expired", code="offer_expired", action="offer_expired")

            now = utcnow()
            offer.status = OfferStatusDB.ACCEPTED
            offer.accepted_at = now

            contract = Contract(
                brand_id=offer.brand_id,
                creator_id=offer.creator_id,
                offer_id=offer.id,
                title=offer.title,
                description=offer.description,
                requirements=offer.requirements,
                budget=offer.budget,
                estimated_days=offer.estimated_days,
                status=ContractStatusDB.PENDING,
                workflow_status=ContractWorkflowDB.AWAITING_FUNDING,
            )
            self.db.add(contract)
            self.db.flush()
            self.db.add(ContractAuditLog(
                contract_id=contract.id,
                action="created",
                actor_id=creator.id,
                details={"offer_id": offer.id, "budget": offer.budget},
            ))
            self.notifications.notify(
                offer.brand_id, NotificationType.OFFER_ACCEPTED,
                "Offer accepted", f"Your offer '{offer.title}' was accepted. Fund the contract to start work.",
                {"offer_id": offer.id, "contract_id": contract.id},
            )

        logger.info(f"Offer {offer.id} accepted; contract {contract.id} created")
        return contract

    def reject(self, offer_id: str, creator: User, reason: Optional[str] = None) -> Offer:
        with atomic(self.db):
            offer = self.get(offer_id, for_update=True)
            if offer.creator_id != creator.id:
                raise PermissionDeniedError("Only the invited creator can reject this offer")
            self._require_pending(offer)
            offer.status = OfferStatusDB.REJECTED
            offer.rejected_at = utcnow()
            offer.rejection_reason = reason
            self.notifications.notify(
                offer.brand_id, NotificationType.OFFER_REJECTED,
                "Offer declined", f"Your offer '{offer.title}' was declined",
                {"offer_id": offer.id, "reason": reason},
            )
        return offer

    def cancel(self, offer_id: str, brand: User) -> Offer:
        with atomic(self.db):
            offer = self.get(offer_id, for_update=True)
            if offer.brand_id != brand.id:
                raise PermissionDeniedError("Only the brand that sent this offer can cancel it")
            self._require_pending(offer)
            offer.status = OfferStatusDB.CANCELLED
            offer.cancelled_at = utcnow()
            self.notifications.notify(
                offer.creator_id, NotificationType.OFFER_CANCELLED,
                "Offer withdrawn", f"The offer '{offer.title}' was withdrawn",
                {"offer_id": offer.id},
            )
        return offer

    def expire_stale(self) -> int:
        """Persist the expired state for pending offers past their deadline."""
        with atomic(self.db):
            count = self.db.query(Offer).filter(
                Offer.status == OfferStatusDB.PENDING,
                Offer.expires_at < utcnow(),
            ).update({"status": OfferStatusDB.EXPIRED}, synchronize_session=False)
        if count:
            logger.info(f"Expired {count} stale offers")
        return count
