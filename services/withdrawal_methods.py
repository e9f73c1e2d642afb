# Withdrawal Method Registry
# Read-only configuration consumed by the withdrawal flow. Amounts in cents.

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from database.marketplace_models import WithdrawalMethod
from services.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_METHODS = [
    {
        "code": "stripe",
        "name": "Stripe Connect",
        "min_amount": 1000,
        "max_amount": 10_000_000,
        "fixed_fee": 0,
        "fee_percentage": 0,
        "required_fields": [],
        "is_automatic": True,
        "sort_order": 1,
    },
    {
        "code": "bank_transfer",
        "name": "Bank Transfer",
        "min_amount": 5000,
        "max_amount": 5_000_000,
        "fixed_fee": 500,
        "fee_percentage": 0,
        "required_fields": ["account_holder_name", "account_number", "routing_number"],
        "is_automatic": False,
        "sort_order": 2,
    },
    {
        "code": "paypal",
        "name": "PayPal",
        "min_amount": 1000,
        "max_amount": 1_000_000,
        "fixed_fee": 0,
        "fee_percentage": 2,
        "required_fields": ["email"],
        "is_automatic": False,
        "sort_order": 3,
    },
]


def seed_withdrawal_methods(db: Session) -> int:
    """Insert any default method that is missing. Existing rows are left alone."""
    existing = {code for (code,) in db.query(WithdrawalMethod.code).all()}
    created = 0
    for data in DEFAULT_METHODS:
        if data["code"] not in existing:
            db.add(WithdrawalMethod(is_active=True, **data))
            created += 1
    if created:
        db.commit()
        logger.info(f"Seeded {created} withdrawal methods")
    return created


def list_active_methods(db: Session) -> List[WithdrawalMethod]:
    return db.query(WithdrawalMethod).filter(
        WithdrawalMethod.is_active == True  # noqa: E712
    ).order_by(WithdrawalMethod.sort_order).all()


def get_active_method(db: Session, code: str) -> Optional[WithdrawalMethod]:
    return db.query(WithdrawalMethod).filter(
        WithdrawalMethod.code == code,
        WithdrawalMethod.is_active == True,  # noqa: E712
    ).first()


def validate_amount(method: WithdrawalMethod, amount: int):
    if amount < method.min_amount:
        raise ValidationError(
            f"Minimum withdrawal for {method.name} is {method.min_amount}",
            code="amount_below_minimum",
        )
    if method.max_amount is not None and amount > method.max_amount:
        raise ValidationError(
            f"Maximum withdrawal for {method.name} is {method.max_amount}",
            code="amount_above_maximum",
        )


def validate_details(method: WithdrawalMethod, details: Optional[dict]) -> dict:
    details = dict(details or {})
    missing = [f for f in (method.required_fields or []) if not str(details.get(f) or "").strip()]
    if missing:
        raise ValidationError(
            f"Missing withdrawal details: {', '.join(missing)}",
            code="missing_withdrawal_details",
        )
    return details
