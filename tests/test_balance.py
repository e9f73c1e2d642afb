"""Tests for the creator balance ledger."""
import pytest

from database.models import utcnow
from database.marketplace_models import (
    CreatorBalance, JobPayment, Withdrawal, PaymentStatusDB, WithdrawalStatusDB,
)
from services.balance_service import BalanceService
from services.errors import ValidationError, PreconditionError, LedgerIntegrityError


def _balance_row(db, creator_id):
    return db.query(CreatorBalance).filter(CreatorBalance.creator_id == creator_id).one()


class TestBalanceRow:
    """Tests for lazy creation of the balance row."""

    def test_lock_creates_row_once(self, db, creator):
        service = BalanceService(db)
        first = service.lock(creator.id)
        db.commit()
        second = service.lock(creator.id)
        db.commit()
        assert first.id == second.id
        assert db.query(CreatorBalance).count() == 1

    def test_new_row_starts_at_zero(self, db, creator):
        balance = BalanceService(db).get(creator.id)
        db.commit()
        assert balance.available_balance == 0
        assert balance.pending_balance == 0
        assert balance.total_earned == 0
        assert balance.total_withdrawn == 0


class TestLedgerMutations:
    """Tests for credit, release, debit and their reversals."""

    def test_credit_pending(self, db, creator):
        BalanceService(db).credit_pending(creator.id, 950)
        db.commit()
        balance = _balance_row(db, creator.id)
        assert balance.pending_balance == 950
        assert balance.total_earned == 950
        assert balance.available_balance == 0

    def test_release_moves_pending_to_available(self, db, creator):
        service = BalanceService(db)
        service.credit_pending(creator.id, 950)
        service.release_to_available(creator.id, 950)
        db.commit()
        balance = _balance_row(db, creator.id)
        assert balance.pending_balance == 0
        assert balance.available_balance == 950

    def test_release_more_than_pending_fails_loudly(self, db, creator):
        service = BalanceService(db)
        service.credit_pending(creator.id, 500)
        db.commit()
        with pytest.raises(LedgerIntegrityError) as exc:
            service.release_to_available(creator.id, 501)
        assert exc.value.code == "insufficient_pending_balance"
        db.rollback()
        balance = _balance_row(db, creator.id)
        assert balance.pending_balance == 500
        assert balance.available_balance == 0

    def test_debit_available(self, db, creator):
        service = BalanceService(db)
        service.credit_pending(creator.id, 1000)
        service.release_to_available(creator.id, 1000)
        service.debit_available(creator.id, 400)
        db.commit()
        balance = _balance_row(db, creator.id)
        assert balance.available_balance == 600
        assert balance.total_withdrawn == 400

    def test_debit_more_than_available_is_rejected(self, db, creator):
        service = BalanceService(db)
        service.credit_pending(creator.id, 1000)
        service.release_to_available(creator.id, 1000)
        db.commit()
        with pytest.raises(PreconditionError) as exc:
            service.debit_available(creator.id, 1001)
        assert exc.value.code == "insufficient_balance"

    def test_credit_back_restores_debit(self, db, creator):
        service = BalanceService(db)
        service.credit_pending(creator.id, 1000)
        service.release_to_available(creator.id, 1000)
        service.debit_available(creator.id, 300)
        service.credit_back_withdrawal(creator.id, 300)
        db.commit()
        balance = _balance_row(db, creator.id)
        assert balance.available_balance == 1000
        assert balance.total_withdrawn == 0

    def test_credit_back_beyond_withdrawn_fails(self, db, creator):
        with pytest.raises(LedgerIntegrityError):
            BalanceService(db).credit_back_withdrawal(creator.id, 1)

    def test_reverse_pending(self, db, creator):
        service = BalanceService(db)
        service.credit_pending(creator.id, 950)
        service.reverse_pending(creator.id, 950)
        db.commit()
        balance = _balance_row(db, creator.id)
        assert balance.pending_balance == 0
        assert balance.total_earned == 0

    def test_reverse_more_than_pending_fails(self, db, creator):
        service = BalanceService(db)
        service.credit_pending(creator.id, 100)
        with pytest.raises(LedgerIntegrityError):
            service.reverse_pending(creator.id, 101)

    @pytest.mark.parametrize("amount", [0, -5, 10.5, "100", True, None])
    def test_non_positive_or_non_integer_amounts_are_rejected(self, db, creator, amount):
        with pytest.raises(ValidationError) as exc:
            BalanceService(db).credit_pending(creator.id, amount)
        assert exc.value.code == "invalid_amount"


class TestRecalculation:
    """Tests for the self-heal path."""

    def _payment(self, db, brand, creator, contract, amount, released=False):
        payment = JobPayment(
            contract_id=contract.id,
            brand_id=brand.id,
            creator_id=creator.id,
            total_amount=amount,
            platform_fee=0,
            creator_amount=amount,
            status=PaymentStatusDB.COMPLETED,
            paid_at=utcnow(),
            released_at=utcnow() if released else None,
        )
        db.add(payment)
        return payment

    def test_recalculate_from_history(self, db, brand, creator, make_contract):
        first = make_contract(budget=1000, title="First")
        second = make_contract(budget=2000, title="Second")
        self._payment(db, brand, creator, first, 1000, released=True)
        self._payment(db, brand, creator, second, 2000)
        db.add(Withdrawal(
            creator_id=creator.id, amount=300, net_amount=300, method="manual",
            status=WithdrawalStatusDB.COMPLETED,
        ))
        db.add(Withdrawal(
            creator_id=creator.id, amount=200, net_amount=200, method="manual",
            status=WithdrawalStatusDB.CANCELLED,
        ))
        db.commit()

        balance = BalanceService(db).recalculate_from_payments(creator.id)
        db.commit()

        assert balance.total_earned == 3000
        assert balance.pending_balance == 2000
        assert balance.available_balance == 700
        assert balance.total_withdrawn == 300

    def test_summary_repairs_drift(self, db, brand, creator, make_contract):
        """total_earned of 0 with completed payments on record triggers a rebuild."""
        contract = make_contract(budget=1000)
        self._payment(db, brand, creator, contract, 950)
        db.commit()

        summary = BalanceService(db).get_summary(creator.id)
        db.commit()

        assert summary["total_earned"] == 950
        assert summary["pending_balance"] == 950
        assert _balance_row(db, creator.id).total_earned == 950

    def test_withdrawals_exceeding_released_earnings_raise(self, db, creator):
        db.add(Withdrawal(
            creator_id=creator.id, amount=500, net_amount=500, method="manual",
            status=WithdrawalStatusDB.PENDING,
        ))
        db.commit()
        with pytest.raises(LedgerIntegrityError) as exc:
            BalanceService(db).recalculate_from_payments(creator.id)
        assert exc.value.code == "withdrawals_exceed_earnings"

    def test_summary_counts_open_withdrawals(self, db, brand, creator, make_contract):
        contract = make_contract(budget=5000)
        self._payment(db, brand, creator, contract, 5000, released=True)
        db.add(Withdrawal(
            creator_id=creator.id, amount=1500, net_amount=1500, method="manual",
            status=WithdrawalStatusDB.PENDING,
        ))
        db.commit()

        summary = BalanceService(db).get_summary(creator.id)
        assert summary["available_balance"] == 3500
        assert summary["pending_withdrawals_count"] == 1
        assert summary["pending_withdrawals_amount"] == 1500
