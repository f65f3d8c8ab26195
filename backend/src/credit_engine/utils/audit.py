"""Audit trail helpers.

Purchase transitions, settlement errors and staff reviews are written to
``audit_logs`` inside the caller's transaction.
"""
from functools import wraps
from typing import Any, Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.models.audit_log import AuditLog

logger = structlog.get_logger(__name__)


async def log_audit(
    db: AsyncSession,
    entity_type: str,
    entity_id: UUID,
    action: str,
    user_id: Optional[str] = None,
    changes: Optional[dict] = None,
    request_id: Optional[str] = None,
) -> None:
    """
    Log an audit entry.

    Args:
        db: Database session
        entity_type: Type of entity (purchase, payment_proof, coupon, ...)
        entity_id: Entity UUID
        action: Action performed (create, transition, error, review)
        user_id: User who performed the action
        changes: Dictionary of changes {field: {old: X, new: Y}} or error details
        request_id: Request correlation ID
    """
    audit_log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        user_id=user_id,
        changes=changes or {},
        request_id=request_id,
    )

    db.add(audit_log)
    await db.flush()

    logger.info(
        "audit_log_created",
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        user_id=user_id,
    )


async def log_transition(
    db: AsyncSession,
    entity_type: str,
    entity_id: UUID,
    old: Any,
    new: Any,
    user_id: Optional[str] = None,
    **details: Any,
) -> None:
    """Record a status transition ``old -> new`` with optional details."""
    changes: dict[str, Any] = {
        "status": {
            "old": getattr(old, "value", old),
            "new": getattr(new, "value", new),
        }
    }
    if details:
        changes["details"] = {key: str(value) if value is not None else None for key, value in details.items()}
    await log_audit(db, entity_type, entity_id, "transition", user_id=user_id, changes=changes)


def audit_create(entity_type: str):
    """
    Decorator to audit create operations.

    Usage:
        @audit_create("coupon")
        async def create_coupon(self, data: CouponCreate, current_user: dict | None = None):
            coupon = Coupon(...)
            self.db.add(coupon)
            await self.db.flush()
            return coupon

    Args:
        entity_type: Type of entity being created
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            result = await func(self, *args, **kwargs)

            current_user = kwargs.get("current_user") or {}
            user_id = current_user.get("sub") if current_user else None

            if hasattr(result, "id"):
                await log_audit(
                    db=self.db,
                    entity_type=entity_type,
                    entity_id=result.id,
                    action="create",
                    user_id=user_id,
                    request_id=kwargs.get("request_id"),
                )

            return result

        return wrapper
    return decorator
