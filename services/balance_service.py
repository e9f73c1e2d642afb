# Creator Balance Ledger
# available / pending / earned / withdrawn accounting per creator.
#
# Every mutation locks the creator's balance row (SELECT ... FOR UPDATE) and
# runs inside the caller's transaction; callers commit.

import logging
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database.marketplace_models import (
    CreatorBalance, JobPayment, Withdrawal,
    PaymentStatusDB, WithdrawalStatusDB,
)
from services.errors import ValidationError, PreconditionError, LedgerIntegrityError

logger = logging.getLogger(__name__)

# Withdrawals that have already been debited from available balance
DEBITED_WITHDRAWAL_STATUSES = (
    WithdrawalStatusDB.PENDING,
    WithdrawalStatusDB.PROCESSING,
    WithdrawalStatusDB.COMPLETED,
)


def require_positive_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount must be a positive whole number of cents", code="invalid_amount")
    return amount


class BalanceService:

    def __init__(self, db: Session):
        self.db = db

    # ========================================================================
    # ROW ACCESS
    # ========================================================================

    def _query(self, creator_id: str):
        return self.db.query(CreatorBalance).filter(CreatorBalance.creator_id == creator_id)

    def lock(self, creator_id: str) -> CreatorBalance:
        """Lock the creator's balance row, creating it on first access."""
        balance = self._query(creator_id).with_for_update().populate_existing().first()
        if balance is not None:
            return balance

        try:
            with self.db.begin_nested():
                balance = CreatorBalance(
                    creator_id=creator_id,
                    available_balance=0,
                    pending_balance=0,
                    total_earned=0,
                    total_withdrawn=0,
                )
                self.db.add(balance)
            logger.info(f"Created balance ledger for creator {creator_id}")
            return balance
        except IntegrityError:
            # Another transaction created it first
            return self._query(creator_id).with_for_update().populate_existing().one()

    def get(self, creator_id: str) -> CreatorBalance:
        """Read-only access; creates the row lazily like lock()."""
        balance = self._query(creator_id).first()
        return balance if balance is not None else self.lock(creator_id)

    # ========================================================================
    # MUTATIONS
    # ========================================================================

    def credit_pending(self, creator_id: str, amount: int) -> CreatorBalance:
        """Funds confirmed for a contract: held until the work is accepted."""
        require_positive_amount(amount)
        balance = self.lock(creator_id)
        balance.pending_balance += amount
        balance.total_earned += amount
        self.db.flush()
        logger.info(f"Credited {amount} pending to creator {creator_id}")
        return balance

    def release_to_available(self, creator_id: str, amount: int) -> CreatorBalance:
        require_positive_amount(amount)
        balance = self.lock(creator_id)
        if balance.pending_balance < amount:
            logger.error(
                f"Release of {amount} for creator {creator_id} exceeds pending {balance.pending_balance}"
            )
            raise LedgerIntegrityError(
                "Insufficient pending balance to release",
                code="insufficient_pending_balance",
            )
        balance.pending_balance -= amount
        balance.available_balance += amount
        self.db.flush()
        logger.info(f"Released {amount} to available for creator {creator_id}")
        return balance

    def reverse_pending(self, creator_id: str, amount: int) -> CreatorBalance:
        """Refund of a payment that was never released."""
        require_positive_amount(amount)
        balance = self.lock(creator_id)
        if balance.pending_balance < amount or balance.total_earned < amount:
            raise LedgerIntegrityError(
                "Insufficient pending balance to reverse",
                code="insufficient_pending_balance",
            )
        balance.pending_balance -= amount
        balance.total_earned -= amount
        self.db.flush()
        logger.info(f"Reversed {amount} pending for creator {creator_id}")
        return balance

    def debit_available(self, creator_id: str, amount: int) -> CreatorBalance:
        require_positive_amount(amount)
        balance = self.lock(creator_id)
        if amount > balance.available_balance:
            raise PreconditionError(
                "Insufficient available balance",
                code="insufficient_balance",
            )
        balance.available_balance -= amount
        balance.total_withdrawn += amount
        self.db.flush()
        return balance

    def credit_back_withdrawal(self, creator_id: str, amount: int) -> CreatorBalance:
        """Undo a debit when a withdrawal is cancelled or its payout fails."""
        require_positive_amount(amount)
        balance = self.lock(creator_id)
        if balance.total_withdrawn < amount:
            raise LedgerIntegrityError(
                "Credit back exceeds total withdrawn",
                code="withdrawn_underflow",
            )
        balance.available_balance += amount
        balance.total_withdrawn -= amount
        self.db.flush()
        logger.info(f"Credited back {amount} to creator {creator_id}")
        return balance

    # ========================================================================
    # RECONCILIATION
    # ========================================================================

    def _completed_payment_totals(self, creator_id: str):
        earned, released = self.db.query(
            func.coalesce(func.sum(JobPayment.creator_amount), 0),
            func.coalesce(
                func.sum(JobPayment.creator_amount).filter(JobPayment.released_at.isnot(None)),
                0,
            ),
        ).filter(
            JobPayment.creator_id == creator_id,
            JobPayment.status == PaymentStatusDB.COMPLETED,
        ).one()
        return int(earned), int(released)

    def recalculate_from_payments(self, creator_id: str) -> CreatorBalance:
        """Rebuild every balance field from payment and withdrawal history."""
        balance = self.lock(creator_id)
        earned, released = self._completed_payment_totals(creator_id)
        withdrawn = int(self.db.query(func.coalesce(func.sum(Withdrawal.amount), 0)).filter(
            Withdrawal.creator_id == creator_id,
            Withdrawal.status.in_(DEBITED_WITHDRAWAL_STATUSES),
        ).scalar())

        if withdrawn > released:
            raise LedgerIntegrityError(
                f"Withdrawals ({withdrawn}) exceed released earnings ({released}) for creator {creator_id}",
                code="withdrawals_exceed_earnings",
            )

        balance.total_earned = earned
        balance.pending_balance = earned - released
        balance.available_balance = released - withdrawn
        balance.total_withdrawn = withdrawn
        self.db.flush()
        logger.warning(f"Recalculated balance for creator {creator_id} from payment history")
        return balance

    def has_drift(self, balance: CreatorBalance) -> bool:
        earned, _ = self._completed_payment_totals(balance.creator_id)
        return balance.total_earned != earned

    def get_summary(self, creator_id: str) -> dict:
        balance = self.get(creator_id)
        if self.has_drift(balance):
            balance = self.recalculate_from_payments(creator_id)

        open_count, open_amount = self.db.query(
            func.count(Withdrawal.id),
            func.coalesce(func.sum(Withdrawal.amount), 0),
        ).filter(
            Withdrawal.creator_id == creator_id,
            Withdrawal.status.in_((WithdrawalStatusDB.PENDING, WithdrawalStatusDB.PROCESSING)),
        ).one()

        return {
            "creator_id": creator_id,
            "available_balance": balance.available_balance,
            "pending_balance": balance.pending_balance,
            "total_earned": balance.total_earned,
            "total_withdrawn": balance.total_withdrawn,
            "pending_withdrawals_count": int(open_count),
            "pending_withdrawals_amount": int(open_amount),
        }
