"""Authentication service.

Sessions are issued by the identity provider; this service only verifies the
bearer tokens it signs and resolves them to registry users.
"""
from datetime import datetime, timedelta
from typing import Optional
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.config import settings
from app.models.user import User
from app.exceptions import AuthenticationError


class AuthService:
    """Token verification and user lookup"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID"""
        result = await self.db.execute(
            select(User).where(User.id == user_id)
        )
        return result.scalar_one_or_none()

    async def authenticate_token(self, token: str) -> User:
        """Resolve a bearer token to an active user"""
        payload = self.decode_token(token)
        try:
            user_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            raise AuthenticationError(message="Invalid token")

        if payload.get("type") != "access":
            raise AuthenticationError(message="Invalid token type")

        user = await self.get_user_by_id(user_id)
        if not user:
            raise AuthenticationError(message="User not found")
        if not user.is_active:
            raise AuthenticationError(message="Account is disabled")
        return user

    @staticmethod
    def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
        """Create JWT access token (used by seed scripts and tests)"""
        to_encode = data.copy()
        expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
        to_encode.update({"exp": expire, "type": "access"})
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

    @staticmethod
    def decode_token(token: str) -> dict:
        """Decode and validate JWT token"""
        try:
            payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
            return payload
        except JWTError:
            raise AuthenticationError(message="Invalid or expired token")
