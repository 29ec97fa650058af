"""Audit log model for tracking user actions"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey
from datetime import datetime
from app.database import Base


class AuditLog(Base):
    """Audit log for registry actions (claims, offers, transactions, reviews)"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)

    # User who performed the action
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Action details
    action = Column(String(100), nullable=False, index=True)  # LAND_CLAIM, OFFER_ACCEPT, TRANSACTION_APPROVE, ...
    resource_type = Column(String(100), nullable=False, index=True)  # LAND, CHAT, TRANSACTION, USER
    resource_id = Column(String(50), nullable=True)

    # Details
    details = Column(JSON, nullable=True)

    severity = Column(String(20), default="MEDIUM")  # LOW, MEDIUM, HIGH, CRITICAL

    # Timestamp
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
