"""Database models package"""
from app.models.user import User, UserRole, VerificationStatus, LandHolding
from app.models.land import Land, LandStatus, LandType, LandClassification, TransferType, OwnershipRecord
from app.models.chat import Chat, ChatStatus, OfferStatus, MessageType, ChatMessage, OfferHistory
from app.models.transaction import (
    LandTransaction,
    TransactionStatus,
    TransactionType,
    InitiationSource,
    TransactionDocument,
    TransactionDocumentType,
    TimelineEvent,
    TimelineEventType,
    NON_TERMINAL_STATUSES,
    TERMINAL_STATUSES,
)
from app.models.audit_log import AuditLog

__all__ = [
    "User",
    "UserRole",
    "VerificationStatus",
    "LandHolding",
    "Land",
    "LandStatus",
    "LandType",
    "LandClassification",
    "TransferType",
    "OwnershipRecord",
    "Chat",
    "ChatStatus",
    "OfferStatus",
    "MessageType",
    "ChatMessage",
    "OfferHistory",
    "LandTransaction",
    "TransactionStatus",
    "TransactionType",
    "InitiationSource",
    "TransactionDocument",
    "TransactionDocumentType",
    "TimelineEvent",
    "TimelineEventType",
    "NON_TERMINAL_STATUSES",
    "TERMINAL_STATUSES",
    "AuditLog",
]
