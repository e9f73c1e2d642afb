# Notification Service for the Escrow Ledger
# In-app notifications. Delivery is fire-and-forget: a failure is logged and
# never aborts the ledger transaction it rides in.

import logging
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from typing import Optional, List
from enum import Enum

from database.models import utcnow
from database.marketplace_models import Notification
from core.money import format_amount

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    OFFER_RECEIVED = "offer_received"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_REJECTED = "offer_rejected"
    OFFER_CANCELLED = "offer_cancelled"
    CONTRACT_FUNDED = "contract_funded"
    CONTRACT_SUBMITTED = "contract_submitted"
    CONTRACT_COMPLETED = "contract_completed"
    CONTRACT_CANCELLED = "contract_cancelled"
    CONTRACT_DISPUTED = "contract_disputed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_FAILED = "payment_failed"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_FAILED = "withdrawal_failed"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
    SYSTEM = "system"


class NotificationService:
    """
    Service for creating and reading user notifications.
    Writes go through a savepoint so a failed insert only loses the notification.
    """

    def __init__(self, db: Session):
        self.db = db

    def notify(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Optional[Notification]:
        try:
            with self.db.begin_nested():
                notification = Notification(
                    user_id=user_id,
                    type=type.value,
                    title=title,
                    message=message,
                    data=data or {},
                )
                self.db.add(notification)
            return notification
        except SQLAlchemyError as e:
            logger.warning(f"Notification {type.value} for user {user_id} dropped: {e}")
            return None

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[Notification]:
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.read == False)  # noqa: E712
        return query.order_by(Notification.created_at.desc()).all()

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        """
        Mark a notification as read.

        Returns:
            True if notification was marked read, False if not found
        """
        notification = self.db.query(Notification).filter(
            Notification.id == notification_id,
            Notification.user_id == user_id
        ).first()

        if notification:
            notification.read = True
            notification.read_at = utcnow()
            return True
        return False

    # =========================================================================
    # LEDGER NOTIFICATION HELPERS
    # =========================================================================

    def notify_payment_received(self, creator_id: str, contract_id: str, amount: int):
        return self.notify(
            user_id=creator_id,
            type=NotificationType.PAYMENT_RECEIVED,
            title="Contract funded",
            message=f"{format_amount(amount)} is held in escrow for your contract",
            data={"contract_id": contract_id, "amount": amount},
        )

    def notify_withdrawal_completed(self, creator_id: str, withdrawal_id: str, amount: int):
        return self.notify(
            user_id=creator_id,
            type=NotificationType.WITHDRAWAL_COMPLETED,
            title="Withdrawal completed",
            message=f"Your withdrawal of {format_amount(amount)} has been paid out",
            data={"withdrawal_id": withdrawal_id, "amount": amount},
        )

    def notify_withdrawal_failed(self, creator_id: str, withdrawal_id: str, amount: int, reason: str):
        return self.notify(
            user_id=creator_id,
            type=NotificationType.WITHDRAWAL_FAILED,
            title="Withdrawal failed",
            message=f"Your withdrawal of {format_amount(amount)} failed and was returned to your balance: {reason}",
            data={"withdrawal_id": withdrawal_id, "amount": amount, "reason": reason},
        )
