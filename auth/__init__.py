# Auth module for the Escrow Ledger
# Provides bearer-token authentication and role-based access control

from auth.roles import (
    Permission,
    ROLE_PERMISSIONS,
    get_permissions_for_role,
    has_permission,
    has_any_permission,
)

from auth.decorators import (
    AuthError,
    require_user_type,
    require_permission,
)

from auth.dependencies import create_access_token, get_current_user

__all__ = [
    # Roles
    "Permission",
    "ROLE_PERMISSIONS",
    "get_permissions_for_role",
    "has_permission",
    "has_any_permission",

    # Dependencies
    "AuthError",
    "require_user_type",
    "require_permission",
    "create_access_token",
    "get_current_user",
]
