# Authentication and Authorization Dependencies for the Escrow Ledger
# Access control for API endpoints, resolved from the bearer token's user

from fastapi import HTTPException, status, Depends

from database.models import User, UserType
from auth.roles import Permission, has_any_permission
from auth.dependencies import get_current_user


class AuthError(HTTPException):
    """Custom exception for authentication/authorization errors."""

    def __init__(self, detail: str, status_code: int = status.HTTP_403_FORBIDDEN):
        super().__init__(status_code=status_code, detail=detail)


def require_user_type(*allowed_types: UserType):
    """
    Dependency that requires the user to be one of the specified types.

    Usage:
        @router.post("/withdrawals")
        async def request_withdrawal(
            user: User = Depends(require_user_type(UserType.CREATOR))
        ):
            ...
    """
    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        if current_user.user_type not in allowed_types:
            allowed_names = ", ".join(t.value for t in allowed_types)
            raise AuthError(detail=f"This endpoint requires user type: {allowed_names}")
        return current_user

    return dependency


def require_permission(*permissions: Permission):
    """Dependency that requires the user to have any of the given permissions."""
    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        if not has_any_permission(current_user.user_type, list(permissions)):
            raise AuthError(detail="You don't have permission to perform this action")
        return current_user

    return dependency

