"""User model - the ownership-relevant projection of a registry user"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, ForeignKey, Enum, UniqueConstraint
from datetime import datetime
from app.database import Base
import enum


class UserRole(str, enum.Enum):
    """Capability role of a user"""
    USER = "USER"
    ADMIN = "ADMIN"


class VerificationStatus(str, enum.Enum):
    """Identity verification state; only VERIFIED users may hold land"""
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"


class User(Base):
    """Registry user. Authentication lives with the identity provider."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    # Profile
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=True)

    # Capability
    role = Column(Enum(UserRole), default=UserRole.USER, nullable=False)
    is_active = Column(Boolean, default=True)

    # Identity verification
    verification_status = Column(Enum(VerificationStatus), default=VerificationStatus.PENDING, nullable=False)
    verified_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    verification_date = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class LandHolding(Base):
    """One entry of a user's owned-lands set"""
    __tablename__ = "land_holdings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    land_id = Column(Integer, ForeignKey("lands.id"), nullable=False, index=True)
    acquired_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "land_id", name="uq_land_holdings_user_land"),
    )
