# Contract State Machine
#
#   pending --activate--> active          (only once funding is confirmed)
#   active  --submit_for_review--> active (workflow: waiting_review)
#   active  --complete--> completed       (releases pending -> available)
#   pending/active --cancel--> cancelled  (funded contracts are refunded)
#                    funded: workflow cancelling while the refund is issued
#   active  --terminate--> cancelled      (brand only, reason "terminated")
#   active  --dispute--> disputed         (funds stay pending)
#
# Every transition writes a ContractAuditLog row.

import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from database.config import atomic
from database.models import User, UserType, utcnow
from database.marketplace_models import (
    Contract, ContractAuditLog, JobPayment,
    ContractStatusDB, ContractWorkflowDB, PaymentStatusDB,
)
from services.balance_service import BalanceService
from services.errors import (
    GatewayError, LedgerIntegrityError, NotFoundError, PermissionDeniedError, PreconditionError,
)
from services.notification_service import NotificationService, NotificationType

logger = logging.getLogger(__name__)


class ContractService:

    def __init__(self, db: Session, gateway=None):
        self.db = db
        self.gateway = gateway
        self.balances = BalanceService(db)
        self.notifications = NotificationService(db)

    # ========================================================================
    # READS
    # ========================================================================

    def get(self, contract_id: str, for_update: bool = False) -> Contract:
        query = self.db.query(Contract).filter(Contract.id == contract_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        contract = query.first()
        if contract is None:
            raise NotFoundError("Contract not found", code="contract_not_found")
        return contract

    def get_for_party(self, contract_id: str, user: User) -> Contract:
        contract = self.get(contract_id)
        if not contract.is_party(user.id) and user.user_type != UserType.ADMIN:
            raise PermissionDeniedError("You are not a party to this contract")
        return contract

    def list_for_user(self, user: User, status: Optional[ContractStatusDB] = None) -> List[Contract]:
        query = self.db.query(Contract)
        if user.user_type == UserType.CREATOR:
            query = query.filter(Contract.creator_id == user.id)
        elif user.user_type == UserType.BRAND:
            query = query.filter(Contract.brand_id == user.id)
        if status is not None:
            query = query.filter(Contract.status == status)
        return query.order_by(Contract.created_at.desc()).all()

    # ========================================================================
    # HELPERS
    # ========================================================================

    def log(self, contract: Contract, action: str, actor_id: Optional[str], details: Optional[dict] = None):
        self.db.add(ContractAuditLog(
            contract_id=contract.id,
            action=action,
            actor_id=actor_id,
            details=details or {},
        ))

    def _counterparty(self, contract: Contract, user_id: Optional[str]) -> str:
        return contract.creator_id if user_id == contract.brand_id else contract.brand_id

    @staticmethod
    def _require_brand(contract: Contract, user: User):
        if contract.brand_id != user.id:
            raise PermissionDeniedError("Only the brand on this contract can do this")

    @staticmethod
    def _require_party(contract: Contract, user: User):
        if not contract.is_party(user.id):
            raise PermissionDeniedError("You are not a party to this contract")

    @staticmethod
    def _require_not_cancelling(contract: Contract):
        if contract.workflow_status == ContractWorkflowDB.CANCELLING:
            raise PreconditionError(
                "Contract is being cancelled and refunded",
                code="contract_cancelling",
            )

    @staticmethod
    def _completed_payment(contract: Contract) -> Optional[JobPayment]:
        payment = contract.payment
        if payment is not None and payment.status == PaymentStatusDB.COMPLETED:
            return payment
        return None

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def mark_active(self, contract: Contract, actor_id: Optional[str]) -> Contract:
        """
        pending -> active. Runs inside the caller's transaction with the
        contract row already locked. Refuses unfunded contracts.
        """
        if contract.status != ContractStatusDB.PENDING:
            raise PreconditionError(
                f"Contract is {contract.status.value}, not pending",
                code="contract_not_pending",
            )
        if self._completed_payment(contract) is None:
            raise PreconditionError(
                "Contract must be funded before it can start",
                code="contract_not_funded",
                action="requires_funding",
            )

        now = utcnow()
        contract.status = ContractStatusDB.ACTIVE
        contract.workflow_status = ContractWorkflowDB.ACTIVE
        contract.started_at = now
        contract.expected_completion_at = now + timedelta(days=contract.estimated_days or 1)
        self.log(contract, "activated", actor_id)
        self.notifications.notify(
            contract.creator_id, NotificationType.CONTRACT_FUNDED,
            "Contract started", f"'{contract.title}' is funded. You can start working.",
            {"contract_id": contract.id},
        )
        return contract

    def activate(self, contract_id: str, brand: User) -> Contract:
        with atomic(self.db):
            contract = self.get(contract_id, for_update=True)
            self._require_brand(contract, brand)
            self.mark_active(contract, brand.id)
        return contract

    def submit_for_review(self, contract_id: str, creator: User, note: Optional[str] = None) -> Contract:
        with atomic(self.db):
            contract = self.get(contract_id, for_update=True)
            if contract.creator_id != creator.id:
                raise PermissionDeniedError("Only the creator on this contract can submit work")
            self._require_not_cancelling(contract)
            if contract.status != ContractStatusDB.ACTIVE:
                raise PreconditionError("Only active contracts accept submissions", code="contract_not_active")
            contract.workflow_status = ContractWorkflowDB.WAITING_REVIEW
            contract.submitted_at = utcnow()
            self.log(contract, "submitted_for_review", creator.id, {"note": note})
            self.notifications.notify(
                contract.brand_id, NotificationType.CONTRACT_SUBMITTED,
                "Work submitted", f"Work on '{contract.title}' is ready for review",
                {"contract_id": contract.id},
            )
        return contract

    def complete(self, contract_id: str, brand: User) -> Contract:
        """Brand accepts the work; the creator's share moves pending -> available."""
        with atomic(self.db):
            contract = self.get(contract_id, for_update=True)
            self._require_brand(contract, brand)
            if contract.status != ContractStatusDB.ACTIVE:
                raise PreconditionError(
                    f"Contract is {contract.status.value}, not active",
                    code="contract_not_active",
                )
            self._require_not_cancelling(contract)
            payment = self._completed_payment(contract)
            if payment is None:
                raise PreconditionError(
                    "Contract has no confirmed payment",
                    code="contract_not_funded",
                    action="requires_funding",
                )
            if not contract.can_be_completed():
                raise PreconditionError(
                    "Contract cannot be completed until work is submitted or the deadline passes",
                    code="contract_not_completable",
                )

            now = utcnow()
            self.balances.release_to_available(contract.creator_id, payment.creator_amount)
            payment.released_at = now
            contract.status = ContractStatusDB.COMPLETED
            contract.workflow_status = ContractWorkflowDB.PAYMENT_AVAILABLE
            contract.completed_at = now
            contract.completed_by = brand.id
            self.log(contract, "completed", brand.id, {"released": payment.creator_amount})
            self.notifications.notify(
                contract.creator_id, NotificationType.CONTRACT_COMPLETED,
                "Contract completed", f"Payment for '{contract.title}' is now available to withdraw",
                {"contract_id": contract.id, "amount": payment.creator_amount},
            )

        logger.info(f"Contract {contract.id} completed; released {payment.creator_amount}")
        return contract

    def cancel(self, contract_id: str, user: User, reason: Optional[str] = None) -> Contract:
        return self._close(
            contract_id, user, reason or "cancelled", ContractWorkflowDB.CANCELLED, "cancelled",
            authorize=self._require_party,
        )

    def terminate(self, contract_id: str, brand: User, reason: Optional[str] = None) -> Contract:
        def authorize(contract: Contract, user: User):
            self._require_brand(contract, user)
            if contract.status != ContractStatusDB.ACTIVE:
                raise PreconditionError("Only active contracts can be terminated", code="contract_not_active")

        return self._close(
            contract_id, brand, "terminated", ContractWorkflowDB.TERMINATED, "terminated",
            authorize=authorize, note=reason,
        )

    def _locked_payment(self, contract: Contract) -> Optional[JobPayment]:
        """The contract's payment as committed, read under the contract lock."""
        return self.db.query(JobPayment).filter(
            JobPayment.contract_id == contract.id
        ).with_for_update().populate_existing().first()

    def _close(
        self,
        contract_id: str,
        user: User,
        reason: str,
        workflow: ContractWorkflowDB,
        action: str,
        authorize,
        note: Optional[str] = None,
    ) -> Contract:
        """
        Cancel or terminate. An unfunded contract closes in a single locked
        transaction. A funded one is first claimed as `cancelling` under the
        lock, which every other transition refuses; the refund then runs with
        no lock held, and the close is finalized under the lock again.
        """
        with atomic(self.db):
            contract = self.get(contract_id, for_update=True)
            authorize(contract, user)
            self._require_not_cancelling(contract)
            if contract.status not in (ContractStatusDB.PENDING, ContractStatusDB.ACTIVE):
                raise PreconditionError(
                    f"A {contract.status.value} contract cannot be cancelled",
                    code="contract_not_cancellable",
                )

            payment = self._locked_payment(contract)
            if payment is None or payment.status != PaymentStatusDB.COMPLETED:
                self._finish_close(contract, user, reason, workflow, action, note, refund_id=None)
                logger.info(f"Contract {contract.id} {action} by {user.id}")
                return contract

            if not payment.stripe_payment_intent_id:
                raise PreconditionError("Payment has no gateway reference to refund", code="refund_unavailable")
            previous_workflow = contract.workflow_status
            payment_intent_id = payment.stripe_payment_intent_id
            refund_amount = payment.total_amount
            contract.workflow_status = ContractWorkflowDB.CANCELLING
            self.log(contract, "cancellation_started", user.id, {"previous_workflow": previous_workflow.value})

        try:
            refund_id = self.gateway.refund_payment(
                payment_intent_id, refund_amount, idempotency_key=f"contract-refund-{contract_id}"
            )
        except GatewayError as e:
            logger.error(f"Refund for contract {contract_id} failed: {e.reason}")
            with atomic(self.db):
                contract = self.get(contract_id, for_update=True)
                if contract.workflow_status == ContractWorkflowDB.CANCELLING:
                    contract.workflow_status = previous_workflow
                    self.log(contract, "cancellation_aborted", user.id, {"error": e.reason})
            raise

        with atomic(self.db):
            contract = self.get(contract_id, for_update=True)
            payment = self._locked_payment(contract)
            if contract.workflow_status != ContractWorkflowDB.CANCELLING or payment is None \
                    or payment.status != PaymentStatusDB.COMPLETED:
                raise LedgerIntegrityError(
                    f"Contract {contract_id} changed while refund {refund_id} was issued",
                    code="cancellation_conflict",
                )
            self.balances.reverse_pending(contract.creator_id, payment.creator_amount)
            payment.status = PaymentStatusDB.REFUNDED
            payment.refunded_at = utcnow()
            self._finish_close(contract, user, reason, workflow, action, note, refund_id=refund_id)

        logger.info(f"Contract {contract.id} {action} by {user.id}; refunded as {refund_id}")
        return contract

    def _finish_close(self, contract, user, reason, workflow, action, note, refund_id):
        contract.status = ContractStatusDB.CANCELLED
        contract.workflow_status = workflow
        contract.cancelled_at = utcnow()
        contract.cancellation_reason = reason
        self.log(contract, action, user.id, {"reason": reason, "note": note, "refund_id": refund_id})
        self.notifications.notify(
            self._counterparty(contract, user.id), NotificationType.CONTRACT_CANCELLED,
            "Contract cancelled", f"'{contract.title}' was {action}",
            {"contract_id": contract.id, "reason": reason},
        )

    def dispute(self, contract_id: str, user: User, reason: str) -> Contract:
        with atomic(self.db):
            contract = self.get(contract_id, for_update=True)
            self._require_party(contract, user)
            self._require_not_cancelling(contract)
            if contract.status != ContractStatusDB.ACTIVE:
                raise PreconditionError("Only active contracts can be disputed", code="contract_not_active")
            contract.status = ContractStatusDB.DISPUTED
            contract.workflow_status = ContractWorkflowDB.DISPUTED
            contract.disputed_at = utcnow()
            contract.dispute_reason = reason
            self.log(contract, "disputed", user.id, {"reason": reason})
            self.notifications.notify(
                self._counterparty(contract, user.id), NotificationType.CONTRACT_DISPUTED,
                "Contract disputed", f"A dispute was opened on '{contract.title}'",
                {"contract_id": contract.id, "reason": reason},
            )
        return contract
