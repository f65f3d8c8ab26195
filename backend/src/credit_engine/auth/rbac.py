"""Role checks for staff-only endpoints.

Staff roles:
- Super Admin: everything
- Billing Admin: coupons, payment proof review, compensating adjustments
- Support Rep: read access to customer billing data
"""
from enum import Enum
from functools import wraps
from typing import Callable

import structlog
from fastapi import HTTPException, status

logger = structlog.get_logger(__name__)


class Role(str, Enum):
    SUPER_ADMIN = "Super Admin"
    BILLING_ADMIN = "Billing Admin"
    SUPPORT_REP = "Support Rep"


# Higher roles inherit the lower roles' access
ROLE_HIERARCHY = {
    Role.SUPER_ADMIN: [Role.SUPER_ADMIN, Role.BILLING_ADMIN, Role.SUPPORT_REP],
    Role.BILLING_ADMIN: [Role.BILLING_ADMIN, Role.SUPPORT_REP],
    Role.SUPPORT_REP: [Role.SUPPORT_REP],
}


def check_role_hierarchy(user_role: str | None, required_roles: list[Role]) -> bool:
    """
    Check if a user role satisfies any of the required roles.

    Args:
        user_role: Role claim from the token
        required_roles: Acceptable roles

    Returns:
        True if the role (or a role above it) is required
    """
    try:
        user_role_enum = Role(user_role)
    except ValueError:
        return False

    return any(role in ROLE_HIERARCHY[user_role_enum] for role in required_roles)


def require_roles(*required_roles: Role):
    """
    Decorator to require specific roles for endpoint access.

    Usage:
        @require_roles(Role.SUPER_ADMIN, Role.BILLING_ADMIN)
        async def review_payment_proof(..., current_user: dict = Depends(get_current_user)):
            ...

    Raises:
        HTTPException: 401 without a user, 403 if the role is not allowed
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            current_user = kwargs.get("current_user")
            if not current_user:
                logger.error("rbac_missing_current_user", endpoint=func.__name__)
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

            user_role = current_user.get("role")
            if not check_role_hierarchy(user_role, list(required_roles)):
                logger.warning(
                    "rbac_permission_denied",
                    user_id=current_user.get("sub"),
                    user_role=user_role,
                    required_roles=[r.value for r in required_roles],
                    endpoint=func.__name__,
                )
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Insufficient permissions. Required roles: {', '.join(r.value for r in required_roles)}",
                )

            return await func(*args, **kwargs)

        return wrapper

    return decorator
