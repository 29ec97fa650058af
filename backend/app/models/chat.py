"""Negotiation (chat) models"""
from sqlalchemy import Column, Integer, DateTime, Text, Boolean, ForeignKey, Enum, Numeric
from datetime import datetime
from app.database import Base
import enum


class ChatStatus(str, enum.Enum):
    """Negotiation lifecycle; transitions only move forward"""
    ACTIVE = "ACTIVE"
    DEAL_AGREED = "DEAL_AGREED"
    TRANSACTION_INITIATED = "TRANSACTION_INITIATED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    BLOCKED = "BLOCKED"


class OfferStatus(str, enum.Enum):
    """State of a single offer"""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COUNTER_OFFERED = "COUNTER_OFFERED"
    EXPIRED = "EXPIRED"


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    OFFER = "OFFER"
    COUNTER_OFFER = "COUNTER_OFFER"
    ACCEPTANCE = "ACCEPTANCE"
    REJECTION = "REJECTION"
    SYSTEM = "SYSTEM"


class Chat(Base):
    """Offer exchange between one buyer and one seller over one parcel"""
    __tablename__ = "chats"

    id = Column(Integer, primary_key=True, index=True)

    # Participants
    land_id = Column(Integer, ForeignKey("lands.id"), nullable=False, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    status = Column(Enum(ChatStatus), default=ChatStatus.ACTIVE, nullable=False, index=True)

    # Current offer (all null when there is none)
    offer_amount = Column(Numeric(15, 2), nullable=True)
    offer_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    offer_status = Column(Enum(OfferStatus), nullable=True)
    offer_made_at = Column(DateTime, nullable=True)

    # Bumped by every offer mutation; conditional updates are keyed on it
    offer_version = Column(Integer, default=0, nullable=False)

    # Agreed terms
    agreed_price = Column(Numeric(15, 2), nullable=True)
    agreed_date = Column(DateTime, nullable=True)

    # Plain column: land_transactions already holds the foreign key to chats
    transaction_id = Column(Integer, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_activity = Column(DateTime, default=datetime.utcnow)

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.buyer_id, self.seller_id)


class ChatMessage(Base):
    """Append-only chat message"""
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=True)  # None for system messages

    message = Column(Text, nullable=False)
    message_type = Column(Enum(MessageType), default=MessageType.TEXT, nullable=False)
    offer_amount = Column(Numeric(15, 2), nullable=True)

    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class OfferHistory(Base):
    """An offer that was superseded, accepted, rejected or expired"""
    __tablename__ = "offer_history"

    id = Column(Integer, primary_key=True, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=False, index=True)

    amount = Column(Numeric(15, 2), nullable=False)
    offered_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(Enum(OfferStatus), nullable=False)
    offered_at = Column(DateTime, nullable=True)
    superseded_at = Column(DateTime, default=datetime.utcnow)
