"""Land transaction models - the formal, admin-reviewed record of a sale"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, JSON, Boolean, ForeignKey, Enum, Numeric, Index, event, text,
)
from datetime import datetime
from app.database import Base
import enum


class TransactionStatus(str, enum.Enum):
    """Status states for a land transaction"""
    INITIATED = "INITIATED"
    DOCUMENTS_SUBMITTED = "DOCUMENTS_SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


NON_TERMINAL_STATUSES = (
    TransactionStatus.INITIATED,
    TransactionStatus.DOCUMENTS_SUBMITTED,
    TransactionStatus.UNDER_REVIEW,
    TransactionStatus.APPROVED,
)

TERMINAL_STATUSES = (
    TransactionStatus.REJECTED,
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
)

_NON_TERMINAL_SQL = "status IN ({})".format(", ".join(f"'{s.value}'" for s in NON_TERMINAL_STATUSES))


class TransactionType(str, enum.Enum):
    SALE = "SALE"
    TRANSFER = "TRANSFER"
    INHERITANCE = "INHERITANCE"
    GIFT = "GIFT"


class InitiationSource(str, enum.Enum):
    """Where the purchase request came from"""
    CHAT = "CHAT"
    MARKETPLACE = "MARKETPLACE"


class TransactionDocumentType(str, enum.Enum):
    SALE_AGREEMENT = "SALE_AGREEMENT"
    IDENTITY_PROOF = "IDENTITY_PROOF"
    ADDRESS_PROOF = "ADDRESS_PROOF"
    INCOME_PROOF = "INCOME_PROOF"
    NOC = "NOC"
    OTHER = "OTHER"


class TimelineEventType(str, enum.Enum):
    INITIATED = "INITIATED"
    SELLER_CONFIRMED = "SELLER_CONFIRMED"
    DOCUMENTS_UPLOADED = "DOCUMENTS_UPLOADED"
    REVIEW_STARTED = "REVIEW_STARTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    CERTIFICATE_PENDING = "CERTIFICATE_PENDING"
    CERTIFICATE_ISSUED = "CERTIFICATE_ISSUED"


class LandTransaction(Base):
    """Transaction record; never deleted, it is the audit record of a sale"""
    __tablename__ = "land_transactions"

    id = Column(Integer, primary_key=True, index=True)

    # Human reference printed on certificates (TXN + 10 uppercase hex chars)
    transaction_code = Column(String(20), unique=True, nullable=False, index=True)

    # Parties
    land_id = Column(Integer, ForeignKey("lands.id"), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    chat_id = Column(Integer, ForeignKey("chats.id"), nullable=True)

    # Terms
    agreed_price = Column(Numeric(15, 2), nullable=False)
    escrow_amount = Column(Numeric(15, 2), default=0)
    transaction_type = Column(Enum(TransactionType), default=TransactionType.SALE, nullable=False)
    initiated_from = Column(Enum(InitiationSource), nullable=False)
    seller_confirmed = Column(Boolean, default=False, nullable=False)

    # Status tracking
    status = Column(Enum(TransactionStatus), default=TransactionStatus.INITIATED, nullable=False, index=True)

    # Admin review
    reviewed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    review_date = Column(DateTime, nullable=True)
    review_comments = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    documents_verified = Column(Boolean, default=False)
    legal_clearance = Column(Boolean, default=False)
    financial_verification = Column(Boolean, default=False)

    # Completion details
    completed_date = Column(DateTime, nullable=True)
    registration_number = Column(String(50), nullable=True)
    registration_office = Column(String(255), nullable=True)
    stamp_duty = Column(Numeric(15, 2), nullable=True)
    registration_fee = Column(Numeric(15, 2), nullable=True)
    total_charges = Column(Numeric(15, 2), nullable=True)

    # Certificates (opaque references into the document store)
    certificate_ref = Column(String(100), nullable=True)
    ownership_certificate_ref = Column(String(100), nullable=True)
    verification_code = Column(String(32), nullable=True)
    certificate_pending = Column(Boolean, default=False, nullable=False)
    certificate_attempts = Column(Integer, default=0, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        # At most one live transaction per parcel
        Index(
            "uq_land_transactions_live_land",
            "land_id",
            unique=True,
            sqlite_where=text(_NON_TERMINAL_SQL),
            postgresql_where=text(_NON_TERMINAL_SQL),
        ),
    )

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.buyer_id, self.seller_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TransactionDocument(Base):
    """A document submitted by a party; content lives in the document store"""
    __tablename__ = "transaction_documents"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(Integer, ForeignKey("land_transactions.id"), nullable=False, index=True)

    document_type = Column(Enum(TransactionDocumentType), default=TransactionDocumentType.OTHER, nullable=False)
    document_name = Column(String(255), nullable=True)
    content_ref = Column(String(100), nullable=False)
    mime_type = Column(String(100), nullable=True)
    file_size = Column(Integer, nullable=True)

    uploaded_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    uploaded_at = Column(DateTime, default=datetime.utcnow)
    verified = Column(Boolean, default=False)


class TimelineEvent(Base):
    """Immutable timeline entry; the audit trail of record for a transaction"""
    __tablename__ = "transaction_timeline"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(Integer, ForeignKey("land_transactions.id"), nullable=False, index=True)

    event = Column(Enum(TimelineEventType), nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    performed_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    description = Column(Text, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)


@event.listens_for(TimelineEvent, "before_update")
def _refuse_timeline_update(mapper, connection, target):
    raise ValueError(f"Timeline entry {target.id} is append-only and cannot be modified")
