# Withdrawal State Machine
#
#   pending -> processing -> completed | failed
#   pending -> cancelled
#
# Requesting debits available balance in the same transaction that creates the
# withdrawal; cancellation and payout failure credit it back. Gateway calls
# (payout eligibility, transfers) run before or after the balance lock, never
# while holding it. Every transfer for a withdrawal carries the same
# idempotency key; when a transfer call ends without an answer the withdrawal
# stays processing until the transfer webhook arrives or an admin retries.

import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from config.app_config import MAX_OPEN_WITHDRAWALS
from core.money import withdrawal_net_amount
from database.config import atomic
from database.models import User, UserType, utcnow
from database.marketplace_models import Withdrawal, WithdrawalStatusDB
from schemas.webhooks import TransferObject
from services.balance_service import BalanceService, require_positive_amount
from services.errors import (
    ValidationError, NotFoundError, PermissionDeniedError, PreconditionError, GatewayError,
)
from services.funding_service import APPLIED, DUPLICATE, IGNORED
from services.notification_service import NotificationService, NotificationType
from services import withdrawal_methods

logger = logging.getLogger(__name__)

OPEN_STATUSES = (WithdrawalStatusDB.PENDING, WithdrawalStatusDB.PROCESSING)


class WithdrawalService:

    def __init__(self, db: Session, gateway):
        self.db = db
        self.gateway = gateway
        self.balances = BalanceService(db)
        self.notifications = NotificationService(db)

    # ========================================================================
    # READS
    # ========================================================================

    def get(self, withdrawal_id: str, for_update: bool = False) -> Withdrawal:
        query = self.db.query(Withdrawal).filter(Withdrawal.id == withdrawal_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        withdrawal = query.first()
        if withdrawal is None:
            raise NotFoundError("Withdrawal not found", code="withdrawal_not_found")
        return withdrawal

    def list_for_creator(self, creator_id: str) -> List[Withdrawal]:
        return self.db.query(Withdrawal).filter(
            Withdrawal.creator_id == creator_id
        ).order_by(Withdrawal.created_at.desc()).all()

    def list_by_status(self, status: Optional[WithdrawalStatusDB] = None) -> List[Withdrawal]:
        query = self.db.query(Withdrawal)
        if status is not None:
            query = query.filter(Withdrawal.status == status)
        return query.order_by(Withdrawal.created_at).all()

    def open_count(self, creator_id: str) -> int:
        return self.db.query(func.count(Withdrawal.id)).filter(
            Withdrawal.creator_id == creator_id,
            Withdrawal.status.in_(OPEN_STATUSES),
        ).scalar()

    # ========================================================================
    # REQUEST / CANCEL
    # ========================================================================

    def check_payout_eligibility(self, creator: User) -> str:
        """Live check against the gateway. Returns the payout account id."""
        if not creator.stripe_account_id:
            raise PreconditionError(
                "Connect a payout account before withdrawing",
                code="payout_account_missing",
                action="requires_stripe_account",
            )
        account = self.gateway.retrieve_payout_account(creator.stripe_account_id)
        if account is None:
            raise PreconditionError(
                "Your payout account could not be found. Please reconnect it.",
                code="payout_account_missing",
                action="requires_stripe_account",
            )
        if not account.payouts_enabled:
            raise PreconditionError(
                "Your payout account is not verified for payouts yet",
                code="payouts_disabled",
                action="stripe_verification",
            )
        return account.id

    def request(self, creator: User, amount: int, method_code: str, details: Optional[dict] = None) -> Withdrawal:
        if creator.user_type != UserType.CREATOR:
            raise PermissionDeniedError("Only creators can withdraw")
        require_positive_amount(amount)

        method = withdrawal_methods.get_active_method(self.db, method_code)
        if method is None:
            raise ValidationError(f"Unknown withdrawal method: {method_code}", code="unknown_method")
        withdrawal_methods.validate_amount(method, amount)
        details = withdrawal_methods.validate_details(method, details)
        net_amount = withdrawal_net_amount(amount, method.fixed_fee, method.fee_percentage)
        if net_amount <= 0:
            raise ValidationError("Amount does not cover the withdrawal fees", code="amount_below_fees")

        if self.open_count(creator.id) >= MAX_OPEN_WITHDRAWALS:
            raise PreconditionError(
                f"You can have at most {MAX_OPEN_WITHDRAWALS} withdrawals in progress",
                code="too_many_pending_withdrawals",
                action="too_many_pending_withdrawals",
            )

        if method.is_automatic:
            details["stripe_account_id"] = self.check_payout_eligibility(creator)

        with atomic(self.db):
            # The balance row lock serialises this creator's requests
            self.balances.debit_available(creator.id, amount)
            if self.open_count(creator.id) >= MAX_OPEN_WITHDRAWALS:
                raise PreconditionError(
                    f"You can have at most {MAX_OPEN_WITHDRAWALS} withdrawals in progress",
                    code="too_many_pending_withdrawals",
                    action="too_many_pending_withdrawals",
                )
            withdrawal = Withdrawal(
                creator_id=creator.id,
                amount=amount,
                platform_fee=method.fee_percentage,
                fixed_fee=method.fixed_fee,
                net_amount=net_amount,
                method=method.code,
                details=details,
                status=WithdrawalStatusDB.PENDING,
            )
            self.db.add(withdrawal)
            self.db.flush()
            self.notifications.notify(
                creator.id, NotificationType.WITHDRAWAL_REQUESTED,
                "Withdrawal requested", "Your withdrawal request was received",
                {"withdrawal_id": withdrawal.id, "amount": amount},
            )

        logger.info(f"Withdrawal {withdrawal.id} requested by {creator.id}: {amount} via {method.code}")
        return withdrawal

    def cancel(self, withdrawal_id: str, creator: User) -> Withdrawal:
        with atomic(self.db):
            withdrawal = self.get(withdrawal_id, for_update=True)
            if withdrawal.creator_id != creator.id:
                raise PermissionDeniedError("You can only cancel your own withdrawals")
            if withdrawal.status != WithdrawalStatusDB.PENDING:
                raise PreconditionError(
                    f"A {withdrawal.status.value} withdrawal cannot be cancelled",
                    code="withdrawal_not_cancellable",
                )
            self.balances.credit_back_withdrawal(withdrawal.creator_id, withdrawal.amount)
            withdrawal.status = WithdrawalStatusDB.CANCELLED
            withdrawal.cancelled_at = utcnow()

        logger.info(f"Withdrawal {withdrawal.id} cancelled; {withdrawal.amount} credited back")
        return withdrawal

    # ========================================================================
    # PROCESSING
    # ========================================================================

    def process(self, withdrawal_id: str) -> Withdrawal:
        """
        pending -> processing. Automatic methods then hand the net amount to a
        gateway transfer; if the transfer is refused the withdrawal fails and
        the amount is credited back.
        """
        with atomic(self.db):
            withdrawal = self.get(withdrawal_id, for_update=True)
            if withdrawal.status != WithdrawalStatusDB.PENDING:
                raise PreconditionError(
                    f"A {withdrawal.status.value} withdrawal cannot be processed",
                    code="withdrawal_not_pending",
                )
            withdrawal.status = WithdrawalStatusDB.PROCESSING
            withdrawal.processed_at = utcnow()

        method = withdrawal_methods.get_active_method(self.db, withdrawal.method)
        if method is None or not method.is_automatic:
            return withdrawal
        return self._send_transfer(withdrawal)

    def retry_transfer(self, withdrawal_id: str) -> Withdrawal:
        """
        Re-send the transfer of a processing withdrawal whose earlier attempt
        ended without an answer. The idempotency key makes the gateway return
        the original transfer if the first attempt went through.
        """
        with atomic(self.db):
            withdrawal = self.get(withdrawal_id, for_update=True)
            if withdrawal.status != WithdrawalStatusDB.PROCESSING:
                raise PreconditionError(
                    f"A {withdrawal.status.value} withdrawal has no transfer to retry",
                    code="withdrawal_not_processing",
                )
            if withdrawal.transaction_id:
                raise PreconditionError(
                    "The transfer for this withdrawal was already accepted",
                    code="transfer_already_sent",
                )
        method = withdrawal_methods.get_active_method(self.db, withdrawal.method)
        if method is None or not method.is_automatic:
            raise PreconditionError(
                "Manual withdrawals are paid outside the gateway",
                code="withdrawal_not_automatic",
            )
        return self._send_transfer(withdrawal)

    @staticmethod
    def transfer_idempotency_key(withdrawal: Withdrawal) -> str:
        return f"withdrawal-transfer-{withdrawal.id}"

    def _send_transfer(self, withdrawal: Withdrawal) -> Withdrawal:
        destination = (withdrawal.details or {}).get("stripe_account_id")
        try:
            if not destination:
                raise GatewayError("Withdrawal has no payout account", code="payout_account_missing")
            transfer = self.gateway.create_transfer(
                amount=withdrawal.net_amount,
                destination=destination,
                metadata={"withdrawal_id": withdrawal.id, "creator_id": withdrawal.creator_id},
                idempotency_key=self.transfer_idempotency_key(withdrawal),
            )
        except GatewayError as e:
            if e.outcome_unknown:
                # The transfer may exist; its webhook or a retry settles it
                logger.warning(f"Transfer for withdrawal {withdrawal.id} has an unknown outcome: {e.reason}")
                return withdrawal
            logger.error(f"Transfer for withdrawal {withdrawal.id} failed: {e.reason}")
            with atomic(self.db):
                withdrawal = self.get(withdrawal.id, for_update=True)
                self.mark_failed(withdrawal, e.reason)
            return withdrawal

        with atomic(self.db):
            withdrawal = self.get(withdrawal.id, for_update=True)
            if not withdrawal.transaction_id:
                withdrawal.transaction_id = transfer.id
        logger.info(f"Withdrawal {withdrawal.id} transferred as {transfer.id}")
        return withdrawal

    def mark_completed(self, withdrawal: Withdrawal, transaction_id: Optional[str] = None) -> str:
        """processing -> completed on a locked row, inside the caller's transaction."""
        if withdrawal.status == WithdrawalStatusDB.COMPLETED:
            return DUPLICATE
        if withdrawal.status != WithdrawalStatusDB.PROCESSING:
            logger.warning(f"Ignoring completion of {withdrawal.status.value} withdrawal {withdrawal.id}")
            return IGNORED
        withdrawal.status = WithdrawalStatusDB.COMPLETED
        withdrawal.completed_at = utcnow()
        if transaction_id:
            withdrawal.transaction_id = transaction_id
        self.notifications.notify_withdrawal_completed(withdrawal.creator_id, withdrawal.id, withdrawal.amount)
        return APPLIED

    def mark_failed(self, withdrawal: Withdrawal, reason: str) -> str:
        """processing -> failed on a locked row; the amount returns to available."""
        if withdrawal.status == WithdrawalStatusDB.FAILED:
            return DUPLICATE
        if withdrawal.status != WithdrawalStatusDB.PROCESSING:
            logger.error(f"Payout failure reported for {withdrawal.status.value} withdrawal {withdrawal.id}: {reason}")
            return IGNORED
        self.balances.credit_back_withdrawal(withdrawal.creator_id, withdrawal.amount)
        withdrawal.status = WithdrawalStatusDB.FAILED
        withdrawal.failure_reason = reason
        self.notifications.notify_withdrawal_failed(withdrawal.creator_id, withdrawal.id, withdrawal.amount, reason)
        return APPLIED

    def complete(self, withdrawal_id: str, transaction_id: Optional[str] = None) -> Withdrawal:
        """Manual completion for methods paid outside the gateway."""
        with atomic(self.db):
            withdrawal = self.get(withdrawal_id, for_update=True)
            if self.mark_completed(withdrawal, transaction_id) == IGNORED:
                raise PreconditionError(
                    f"A {withdrawal.status.value} withdrawal cannot be completed",
                    code="withdrawal_not_processing",
                )
        return withdrawal

    def fail(self, withdrawal_id: str, reason: str) -> Withdrawal:
        with atomic(self.db):
            withdrawal = self.get(withdrawal_id, for_update=True)
            if self.mark_failed(withdrawal, reason) == IGNORED:
                raise PreconditionError(
                    f"A {withdrawal.status.value} withdrawal cannot be failed",
                    code="withdrawal_not_processing",
                )
        return withdrawal

    # ========================================================================
    # TRANSFER CALLBACKS (inside the webhook transaction)
    # ========================================================================

    def _withdrawal_for_transfer(self, transfer: TransferObject) -> Optional[Withdrawal]:
        if not transfer.withdrawal_id:
            return None
        return self.db.query(Withdrawal).filter(
            Withdrawal.id == transfer.withdrawal_id
        ).with_for_update().populate_existing().first()

    def handle_transfer_succeeded(self, transfer: TransferObject) -> str:
        withdrawal = self._withdrawal_for_transfer(transfer)
        if withdrawal is None:
            logger.info(f"Transfer {transfer.id} is not linked to a withdrawal")
            return IGNORED
        return self.mark_completed(withdrawal, transfer.id)

    def handle_transfer_failed(self, transfer: TransferObject) -> str:
        withdrawal = self._withdrawal_for_transfer(transfer)
        if withdrawal is None:
            logger.info(f"Transfer {transfer.id} is not linked to a withdrawal")
            return IGNORED
        reason = "Transfer reversed" if transfer.reversed else "Transfer failed"
        return self.mark_failed(withdrawal, reason)
