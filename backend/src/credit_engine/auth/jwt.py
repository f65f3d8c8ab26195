"""JWT access tokens.

Tokens are issued by the dashboard's auth provider and signed with the
shared secret in ``settings.jwt_secret_key``. ``sub`` is the account id.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from uuid import UUID

import jwt

from credit_engine.config import settings


class JWTAuth:
    """JWT authentication handler with a shared signing secret."""

    def __init__(self, secret_key: str | None = None, algorithm: str | None = None):
        self.secret_key = secret_key or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm
        self.access_token_expire_minutes = 60

    def create_access_token(
        self,
        user_id: UUID,
        role: str = "User",
        email: Optional[str] = None,
        additional_claims: Optional[Dict] = None,
    ) -> str:
        """
        Create JWT access token.

        Used by service-to-service callers and tests; end users get their
        tokens from the dashboard.

        Args:
            user_id: Account UUID
            role: User role (User, Support Rep, Billing Admin, Super Admin)
            email: User email
            additional_claims: Additional JWT claims

        Returns:
            Encoded JWT token
        """
        now = datetime.now(timezone.utc)
        claims = {
            "sub": str(user_id),
            "role": role,
            "iat": now,
            "exp": now + timedelta(minutes=self.access_token_expire_minutes),
            "type": "access",
        }
        if email:
            claims["email"] = email
        if additional_claims:
            claims.update(additional_claims)

        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify_access_token(self, token: str) -> Dict:
        """
        Verify and decode an access token.

        Args:
            token: JWT token string

        Returns:
            Decoded token claims

        Raises:
            jwt.ExpiredSignatureError: If token is expired
            jwt.InvalidTokenError: If token is invalid or not an access token
        """
        payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm], options={"require": ["sub", "exp"]})

        if payload.get("type", "access") != "access":
            raise jwt.InvalidTokenError("Not an access token")

        return payload


# Global JWT auth instance
jwt_auth = JWTAuth()
