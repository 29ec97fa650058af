"""
Seed script to create an administrator for development.

Run with: python -m scripts.seed_admin
"""
import asyncio
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy import select

from app.config import settings
from app.database import Base
from app.models.user import User, UserRole, VerificationStatus
from app.services.auth import AuthService


# Development administrator
ADMIN_EMAIL = "admin@example.com"
ADMIN_FULL_NAME = "Registry Administrator"


async def create_admin_user():
    """Create a verified administrator and print a bearer token for it"""

    # Create async engine
    engine = create_async_engine(settings.DATABASE_URL, echo=True)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        # Check if user already exists
        result = await session.execute(
            select(User).where(User.email == ADMIN_EMAIL.lower())
        )
        user = result.scalar_one_or_none()

        if user:
            print(f"\n{'='*50}")
            print("Administrator already exists!")
        else:
            user = User(
                email=ADMIN_EMAIL.lower(),
                full_name=ADMIN_FULL_NAME,
                role=UserRole.ADMIN,
                verification_status=VerificationStatus.VERIFIED,
                is_active=True
            )

            session.add(user)
            await session.commit()
            await session.refresh(user)

            print(f"\n{'='*50}")
            print("Administrator created successfully!")

        token = AuthService.create_access_token({"sub": str(user.id)})

        print(f"{'='*50}")
        print(f"Email: {ADMIN_EMAIL}")
        print(f"User ID: {user.id}")
        print(f"Bearer token: {token}")
        print(f"{'='*50}\n")

    await engine.dispose()
    return user


if __name__ == "__main__":
    asyncio.run(create_admin_user())
