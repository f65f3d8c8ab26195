"""FastAPI dependencies for database sessions, authentication and services."""
from typing import Optional
from uuid import UUID

import jwt
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from credit_engine.adapters.registry import ChannelRegistry, get_channel_registry
from credit_engine.auth.jwt import jwt_auth
from credit_engine.database import get_db
from credit_engine.services.purchase_service import PurchaseService
from credit_engine.services.usage_service import UsageService

logger = structlog.get_logger(__name__)

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)

__all__ = [
    "get_db",
    "get_current_user",
    "current_account_id",
    "get_channel_registry",
    "get_purchase_service",
    "get_usage_service",
]


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict:
    """
    Get current authenticated user from JWT token.

    Returns:
        dict: Decoded claims (sub, role, email)

    Raises:
        HTTPException: If token is invalid, expired, or missing
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = credentials.credentials
    try:
        payload = jwt_auth.verify_access_token(token)
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("invalid_token", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        UUID(payload["sub"])
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token subject is not an account id")

    structlog.contextvars.bind_contextvars(user_id=payload["sub"])
    return payload


def current_account_id(current_user: dict = Depends(get_current_user)) -> UUID:
    """Account id of the authenticated caller."""
    return UUID(current_user["sub"])


def get_purchase_service(
    db: AsyncSession = Depends(get_db),
    channels: ChannelRegistry = Depends(get_channel_registry),
) -> PurchaseService:
    return PurchaseService(db, channels=channels)


def get_usage_service(
    db: AsyncSession = Depends(get_db),
    channels: ChannelRegistry = Depends(get_channel_registry),
) -> UsageService:
    return UsageService(db, channels=channels)
