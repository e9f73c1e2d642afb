# Role-Based Access Control for the Escrow Ledger
# Maps user types to the ledger operations they may perform

from enum import Enum
from typing import List, Set

from database.models import UserType


class Permission(str, Enum):
    """Fine-grained permissions for the ledger."""

    # Brand permissions
    SEND_OFFERS = "send_offers"
    FUND_CONTRACTS = "fund_contracts"
    COMPLETE_CONTRACTS = "complete_contracts"

    # Creator permissions
    RESPOND_TO_OFFERS = "respond_to_offers"
    SUBMIT_WORK = "submit_work"
    WITHDRAW_FUNDS = "withdraw_funds"

    # Common permissions
    VIEW_CONTRACTS = "view_contracts"
    RAISE_DISPUTES = "raise_disputes"
    MANAGE_PAYMENT_METHODS = "manage_payment_methods"

    # Admin permissions
    PROCESS_WITHDRAWALS = "process_withdrawals"
    MANAGE_WEBHOOKS = "manage_webhooks"


ROLE_PERMISSIONS: dict[UserType, Set[Permission]] = {
    UserType.BRAND: {
        Permission.SEND_OFFERS,
        Permission.FUND_CONTRACTS,
        Permission.COMPLETE_CONTRACTS,
        Permission.VIEW_CONTRACTS,
        Permission.RAISE_DISPUTES,
        Permission.MANAGE_PAYMENT_METHODS,
    },

    UserType.CREATOR: {
        Permission.RESPOND_TO_OFFERS,
        Permission.SUBMIT_WORK,
        Permission.WITHDRAW_FUNDS,
        Permission.VIEW_CONTRACTS,
        Permission.RAISE_DISPUTES,
        Permission.MANAGE_PAYMENT_METHODS,
    },

    UserType.ADMIN: {
        # Admin has ALL permissions
        *Permission.__members__.values()
    },
}


def get_permissions_for_role(user_type: UserType) -> Set[Permission]:
    """Get all permissions for a given user type."""
    return ROLE_PERMISSIONS.get(user_type, set())


def has_permission(user_type: UserType, permission: Permission) -> bool:
    return permission in get_permissions_for_role(user_type)


def has_any_permission(user_type: UserType, permissions: List[Permission]) -> bool:
    user_permissions = get_permissions_for_role(user_type)
    return any(p in user_permissions for p in permissions)
