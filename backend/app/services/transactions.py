"""Transaction lifecycle manager.

A transaction is the formal record of a sale. It is created once a deal is
agreed (in a chat, or straight from the marketplace), collects documents from
both parties, goes through admin review and ends COMPLETED, REJECTED or
CANCELLED. Status changes are conditional updates keyed on the status that
was read, and every change appends a timeline entry.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import extract, func, select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import (
    ConcurrentTransactionExists,
    ConflictError,
    InvalidNegotiationState,
    InvalidTransactionState,
    NotFoundError,
    UnauthorizedActor,
    ValidationError,
)
from app.models.chat import ChatStatus
from app.models.land import Land, LandStatus
from app.models.transaction import (
    InitiationSource,
    LandTransaction,
    NON_TERMINAL_STATUSES,
    TimelineEvent,
    TimelineEventType,
    TransactionDocument,
    TransactionDocumentType,
    TransactionStatus,
    TransactionType,
)
from app.services.land_registry import LandRegistryStore
from app.services.negotiation import NegotiationEngine
from app.services.ownership_transfer import OwnershipTransferCoordinator
from app.services.state_machine import ensure_transaction_transition, to_amount

logger = logging.getLogger(__name__)

MONEY = Decimal("0.01")

DOCUMENT_STATUSES = (TransactionStatus.INITIATED, TransactionStatus.DOCUMENTS_SUBMITTED)
REVIEWABLE_STATUSES = (TransactionStatus.DOCUMENTS_SUBMITTED, TransactionStatus.UNDER_REVIEW)
CONFIRMABLE_STATUSES = (
    TransactionStatus.INITIATED,
    TransactionStatus.DOCUMENTS_SUBMITTED,
    TransactionStatus.UNDER_REVIEW,
)


class ReviewVerdict(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


@dataclass
class SubmittedDocument:
    """A document already placed in the document store"""
    content_ref: str
    document_type: TransactionDocumentType = TransactionDocumentType.OTHER
    document_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


def generate_transaction_code() -> str:
    """TXN followed by 10 uppercase hex characters"""
    return f"TXN{secrets.token_hex(5).upper()}"


class TransactionLifecycleManager:
    """Initiation, documents, review and cancellation of land transactions"""

    def __init__(
        self,
        db: AsyncSession,
        registry: LandRegistryStore,
        negotiation: NegotiationEngine,
        coordinator: OwnershipTransferCoordinator,
    ):
        self.db = db
        self.registry = registry
        self.negotiation = negotiation
        self.coordinator = coordinator

    # Queries

    async def get(self, transaction_id: int) -> LandTransaction:
        result = await self.db.execute(
            select(LandTransaction)
            .where(LandTransaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        transaction = result.scalar_one_or_none()
        if not transaction:
            raise NotFoundError(message="Transaction not found", details={"transaction_id": transaction_id})
        return transaction

    async def get_by_code(self, transaction_code: str) -> LandTransaction:
        result = await self.db.execute(
            select(LandTransaction).where(LandTransaction.transaction_code == transaction_code.strip().upper())
        )
        transaction = result.scalar_one_or_none()
        if not transaction:
            raise NotFoundError(message="Transaction not found", details={"transaction_code": transaction_code})
        return transaction

    async def live_transaction_for_land(self, land_id: int) -> Optional[LandTransaction]:
        result = await self.db.execute(
            select(LandTransaction).where(
                LandTransaction.land_id == land_id,
                LandTransaction.status.in_(NON_TERMINAL_STATUSES),
            )
        )
        return result.scalars().first()

    async def list_for_user(self, user_id: int, status: Optional[TransactionStatus] = None) -> List[LandTransaction]:
        query = select(LandTransaction).where(
            or_(LandTransaction.buyer_id == user_id, LandTransaction.seller_id == user_id)
        )
        if status:
            query = query.where(LandTransaction.status == status)
        result = await self.db.execute(query.order_by(LandTransaction.created_at.desc()))
        return list(result.scalars().all())

    async def pending_review(self) -> List[LandTransaction]:
        result = await self.db.execute(
            select(LandTransaction)
            .where(LandTransaction.status.in_(REVIEWABLE_STATUSES))
            .order_by(LandTransaction.created_at)
        )
        return list(result.scalars().all())

    async def documents(self, transaction_id: int) -> List[TransactionDocument]:
        result = await self.db.execute(
            select(TransactionDocument)
            .where(TransactionDocument.transaction_id == transaction_id)
            .order_by(TransactionDocument.id)
        )
        return list(result.scalars().all())

    async def timeline(self, transaction_id: int) -> List[TimelineEvent]:
        result = await self.db.execute(
            select(TimelineEvent)
            .where(TimelineEvent.transaction_id == transaction_id)
            .order_by(TimelineEvent.id)
        )
        return list(result.scalars().all())

    async def statistics(self) -> Dict[str, Any]:
        """Status counts and the value of completed sales"""
        result = await self.db.execute(
            select(
                LandTransaction.status,
                func.count(LandTransaction.id),
                func.sum(LandTransaction.agreed_price),
            ).group_by(LandTransaction.status)
        )
        breakdown = {status.value: 0 for status in TransactionStatus}
        completed_value = Decimal("0.00")
        for status, count, value in result.all():
            breakdown[status.value] = count
            if status == TransactionStatus.COMPLETED and value is not None:
                completed_value = Decimal(str(value)).quantize(MONEY)

        completed = breakdown[TransactionStatus.COMPLETED.value]
        return {
            "total_transactions": sum(breakdown.values()),
            "pending_review": sum(breakdown[s.value] for s in REVIEWABLE_STATUSES),
            "completed": completed,
            "completed_value": completed_value,
            "average_completed_price": (completed_value / completed).quantize(MONEY) if completed else None,
            "status_breakdown": breakdown,
        }

    async def monthly_statistics(self, year: int) -> List[Dict[str, Any]]:
        """Transactions initiated and sales completed in each month of ``year``"""
        start, end = datetime(year, 1, 1), datetime(year + 1, 1, 1)
        months = [
            {"month": month, "initiated": 0, "completed": 0, "completed_value": Decimal("0.00")}
            for month in range(1, 13)
        ]

        initiated_month = extract("month", LandTransaction.created_at).label("month")
        initiated = await self.db.execute(
            select(initiated_month, func.count(LandTransaction.id))
            .where(LandTransaction.created_at >= start, LandTransaction.created_at < end)
            .group_by(initiated_month)
        )
        for month, count in initiated.all():
            months[int(month) - 1]["initiated"] = count

        completed_month = extract("month", LandTransaction.completed_date).label("month")
        completed = await self.db.execute(
            select(completed_month, func.count(LandTransaction.id), func.sum(LandTransaction.agreed_price))
            .where(
                LandTransaction.status == TransactionStatus.COMPLETED,
                LandTransaction.completed_date >= start,
                LandTransaction.completed_date < end,
            )
            .group_by(completed_month)
        )
        for month, count, value in completed.all():
            months[int(month) - 1]["completed"] = count
            months[int(month) - 1]["completed_value"] = Decimal(str(value or 0)).quantize(MONEY)

        return months

    async def verify(self, transaction_code: str) -> LandTransaction:
        """A completed transaction by its public code"""
        transaction = await self.get_by_code(transaction_code)
        if transaction.status != TransactionStatus.COMPLETED:
            raise NotFoundError(
                message="No completed transfer found for this code",
                details={"transaction_code": transaction_code},
            )
        return transaction

    # Status changes

    async def _advance(
        self,
        transaction: LandTransaction,
        target: TransactionStatus,
        event: TimelineEventType,
        actor_id: Optional[int],
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        values: Optional[Dict[str, Any]] = None,
    ) -> LandTransaction:
        """Conditional status change plus its timeline entry"""
        transaction_id, code, current = transaction.id, transaction.transaction_code, transaction.status
        ensure_transaction_transition(current, target)
        result = await self.db.execute(
            update(LandTransaction)
            .where(LandTransaction.id == transaction_id, LandTransaction.status == current)
            .values(status=target, **(values or {}))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            logger.info(f"Lost status race on transaction {code}: expected {current.value}")
            raise InvalidTransactionState(
                message="The transaction changed while your request was being processed; reload and retry",
                details={"transaction_id": transaction_id, "expected_status": current.value},
            )

        self.db.add(TimelineEvent(
            transaction_id=transaction_id,
            event=event,
            timestamp=datetime.utcnow(),
            performed_by=actor_id,
            description=description,
            event_metadata=metadata,
        ))
        await self.db.commit()

        logger.info(f"Transaction {code} moved {current.value} -> {target.value}")
        return await self.get(transaction_id)

    def _require_participant(self, transaction: LandTransaction, actor_id: int) -> None:
        if not transaction.is_participant(actor_id):
            raise UnauthorizedActor(
                message="Only the buyer or seller can act on this transaction",
                details={"transaction_id": transaction.id},
            )

    async def initiate(
        self,
        land_id: int,
        buyer_id: int,
        seller_id: int,
        agreed_price=None,
        chat_id: Optional[int] = None,
        actor_id: Optional[int] = None,
    ) -> LandTransaction:
        """Create the transaction and take the parcel off the market.

        The parcel reservation is a compare-and-swap on the parcel row; the
        partial unique index on live transactions is the second guard.
        """
        actor_id = actor_id or buyer_id
        if buyer_id == seller_id:
            raise ValidationError(message="Buyer and seller must be different users")

        land = await self.registry.get_land(land_id)
        if land.current_owner_id != seller_id:
            raise ConflictError(
                message="Seller does not own this land",
                details={"land_id": land_id, "seller_id": seller_id},
            )

        if chat_id is not None:
            chat = await self.negotiation.get_chat(chat_id)
            if (chat.land_id, chat.buyer_id, chat.seller_id) != (land_id, buyer_id, seller_id):
                raise ValidationError(
                    message="Negotiation does not match this land, buyer and seller",
                    details={"chat_id": chat_id},
                )
            if chat.status != ChatStatus.DEAL_AGREED:
                raise InvalidNegotiationState(
                    message=f"Negotiation is {chat.status.value}; a deal must be agreed first",
                    details={"chat_id": chat_id, "status": chat.status.value},
                )
            price = Decimal(chat.agreed_price).quantize(MONEY)
            if agreed_price is not None and to_amount(agreed_price) != price:
                raise ValidationError(
                    message="Price differs from the price agreed in the negotiation",
                    details={"agreed_price": str(price)},
                )
            source = InitiationSource.CHAT
        else:
            if agreed_price is None and land.asking_price is None:
                raise ValidationError(message="An agreed price is required")
            price = to_amount(agreed_price if agreed_price is not None else land.asking_price)
            source = InitiationSource.MARKETPLACE

        if land.status == LandStatus.UNDER_TRANSACTION or land.active_transaction_code:
            raise ConcurrentTransactionExists(details={"land_id": land_id})

        transaction_code = generate_transaction_code()
        if not await self.registry.reserve_for_transaction(land_id, transaction_code):
            land = await self.registry.get_land(land_id)
            if land.status == LandStatus.UNDER_TRANSACTION or land.active_transaction_code:
                raise ConcurrentTransactionExists(details={"land_id": land_id})
            raise InvalidTransactionState(
                message="Land is not listed for sale",
                details={"land_id": land_id, "status": land.status.value},
            )

        transaction = LandTransaction(
            transaction_code=transaction_code,
            land_id=land_id,
            seller_id=seller_id,
            buyer_id=buyer_id,
            chat_id=chat_id,
            agreed_price=price,
            escrow_amount=(price * Decimal(str(settings.ESCROW_RATE))).quantize(MONEY),
            transaction_type=TransactionType.SALE,
            initiated_from=source,
            # An agreed chat already carries the seller's consent
            seller_confirmed=source == InitiationSource.CHAT,
            status=TransactionStatus.INITIATED,
        )
        self.db.add(transaction)
        try:
            await self.db.flush()
            self.db.add(TimelineEvent(
                transaction_id=transaction.id,
                event=TimelineEventType.INITIATED,
                timestamp=datetime.utcnow(),
                performed_by=actor_id,
                description=f"Transaction initiated from {source.value.lower()} at {price}",
                event_metadata={"agreed_price": str(price), "chat_id": chat_id},
            ))
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.warning(f"Live transaction already exists for land {land_id}; releasing {transaction_code}")
            await self.registry.release_from_transaction(land_id, transaction_code)
            raise ConcurrentTransactionExists(details={"land_id": land_id})

        transaction_id = transaction.id
        if chat_id is not None:
            linked = await self.negotiation.mark_transaction_initiated(
                chat_id, transaction_id, transaction_code, actor_id
            )
            if not linked:
                await self._compensate_initiation(
                    transaction_id, "Negotiation changed before the transaction was linked"
                )
                raise InvalidNegotiationState(
                    message="Negotiation is no longer in DEAL_AGREED; transaction was not created",
                    details={"chat_id": chat_id},
                )

        logger.info(
            f"Transaction {transaction_code} initiated for land {land_id}: "
            f"buyer {buyer_id}, seller {seller_id}, price {price}"
        )
        return await self.get(transaction_id)

    async def _compensate_initiation(self, transaction_id: int, reason: str) -> None:
        transaction = await self.get(transaction_id)
        logger.warning(f"Compensating initiation of {transaction.transaction_code}: {reason}")
        if transaction.status == TransactionStatus.INITIATED:
            transaction = await self._advance(
                transaction, TransactionStatus.CANCELLED, TimelineEventType.CANCELLED, None, reason
            )
        if transaction.is_terminal:
            await self.registry.release_from_transaction(transaction.land_id, transaction.transaction_code)

    async def confirm_sale(self, transaction_id: int, seller_id: int) -> LandTransaction:
        """Seller consent for a purchase requested from the marketplace"""
        transaction = await self.get(transaction_id)
        if transaction.seller_id != seller_id:
            raise UnauthorizedActor(message="Only the seller can confirm this sale")
        if transaction.seller_confirmed:
            return transaction
        if transaction.status not in CONFIRMABLE_STATUSES:
            raise InvalidTransactionState(
                message=f"Cannot confirm a {transaction.status.value} transaction",
                details={"status": transaction.status.value},
            )

        result = await self.db.execute(
            update(LandTransaction)
            .where(
                LandTransaction.id == transaction_id,
                LandTransaction.seller_confirmed.is_(False),
                LandTransaction.status.in_(CONFIRMABLE_STATUSES),
            )
            .values(seller_confirmed=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            self.db.add(TimelineEvent(
                transaction_id=transaction_id,
                event=TimelineEventType.SELLER_CONFIRMED,
                timestamp=datetime.utcnow(),
                performed_by=seller_id,
                description="Seller confirmed the sale",
            ))
        await self.db.commit()

        logger.info(f"Seller {seller_id} confirmed transaction {transaction.transaction_code}")
        return await self.get(transaction_id)

    async def submit_documents(self, transaction_id: int, actor_id: int,
                               documents: Sequence[SubmittedDocument]) -> LandTransaction:
        transaction = await self.get(transaction_id)
        self._require_participant(transaction, actor_id)

        if transaction.status not in DOCUMENT_STATUSES:
            raise InvalidTransactionState(
                message=f"Documents cannot be submitted while the transaction is {transaction.status.value}",
                details={"status": transaction.status.value},
            )
        if not documents:
            raise ValidationError(message="At least one document is required")

        now = datetime.utcnow()
        result = await self.db.execute(
            update(LandTransaction)
            .where(LandTransaction.id == transaction_id, LandTransaction.status == transaction.status)
            .values(status=TransactionStatus.DOCUMENTS_SUBMITTED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise InvalidTransactionState(
                message="The transaction changed while documents were being submitted; reload and retry",
                details={"transaction_id": transaction_id},
            )

        for document in documents:
            self.db.add(TransactionDocument(
                transaction_id=transaction_id,
                document_type=document.document_type,
                document_name=document.document_name,
                content_ref=document.content_ref,
                mime_type=document.mime_type,
                file_size=document.file_size,
                uploaded_by=actor_id,
                uploaded_at=now,
            ))
        self.db.add(TimelineEvent(
            transaction_id=transaction_id,
            event=TimelineEventType.DOCUMENTS_UPLOADED,
            timestamp=now,
            performed_by=actor_id,
            description=f"{len(documents)} document(s) submitted",
            event_metadata={"documents": [d.document_type.value for d in documents]},
        ))
        await self.db.commit()

        logger.info(f"{len(documents)} document(s) submitted to {transaction.transaction_code} by user {actor_id}")
        return await self.get(transaction_id)

    async def start_review(self, transaction_id: int, admin_id: int) -> LandTransaction:
        transaction = await self.get(transaction_id)
        return await self._advance(
            transaction,
            TransactionStatus.UNDER_REVIEW,
            TimelineEventType.REVIEW_STARTED,
            admin_id,
            "Admin review started",
        )

    async def review(
        self,
        transaction_id: int,
        admin_id: int,
        verdict: ReviewVerdict,
        comments: Optional[str] = None,
        rejection_reason: Optional[str] = None,
        documents_verified: bool = True,
        legal_clearance: bool = True,
        financial_verification: bool = True,
    ) -> LandTransaction:
        transaction = await self.get(transaction_id)
        if transaction.status not in REVIEWABLE_STATUSES:
            raise InvalidTransactionState(
                message=f"Transaction is {transaction.status.value} and cannot be reviewed",
                details={"status": transaction.status.value},
            )

        if verdict == ReviewVerdict.REJECT:
            return await self._reject(transaction, admin_id, comments, rejection_reason)

        if not transaction.seller_confirmed:
            raise InvalidTransactionState(
                message="The seller has not confirmed this sale yet",
                details={"transaction_id": transaction_id},
            )

        if transaction.status == TransactionStatus.DOCUMENTS_SUBMITTED:
            transaction = await self.start_review(transaction_id, admin_id)

        transaction = await self._advance(
            transaction,
            TransactionStatus.APPROVED,
            TimelineEventType.APPROVED,
            admin_id,
            "Transaction approved",
            metadata={"comments": comments},
            values={
                "reviewed_by": admin_id,
                "review_date": datetime.utcnow(),
                "review_comments": comments,
                "documents_verified": documents_verified,
                "legal_clearance": legal_clearance,
                "financial_verification": financial_verification,
            },
        )
        return await self.coordinator.transfer(transaction.id, admin_id)

    async def _reject(self, transaction: LandTransaction, admin_id: int, comments: Optional[str],
                      rejection_reason: Optional[str]) -> LandTransaction:
        reason = (rejection_reason or "").strip()
        if not reason:
            raise ValidationError(message="A rejection reason is required")

        if transaction.status == TransactionStatus.DOCUMENTS_SUBMITTED:
            transaction = await self.start_review(transaction.id, admin_id)

        transaction = await self._advance(
            transaction,
            TransactionStatus.REJECTED,
            TimelineEventType.REJECTED,
            admin_id,
            f"Transaction rejected: {reason}",
            metadata={"reason": reason, "comments": comments},
            values={
                "reviewed_by": admin_id,
                "review_date": datetime.utcnow(),
                "review_comments": comments,
                "rejection_reason": reason,
            },
        )

        if not await self.registry.release_from_transaction(transaction.land_id, transaction.transaction_code):
            logger.warning(f"Land {transaction.land_id} was not held by {transaction.transaction_code} on rejection")
        if transaction.chat_id:
            await self.negotiation.reopen(transaction.chat_id, reason, admin_id)

        return transaction

    async def cancel(self, transaction_id: int, actor_id: int, reason: Optional[str] = None) -> LandTransaction:
        """Either party may walk away until review starts"""
        transaction = await self.get(transaction_id)
        self._require_participant(transaction, actor_id)

        if transaction.status not in DOCUMENT_STATUSES:
            raise InvalidTransactionState(
                message=f"A {transaction.status.value} transaction can no longer be cancelled",
                details={"status": transaction.status.value},
            )

        description = "Transaction cancelled"
        if reason:
            description = f"Transaction cancelled: {reason}"
        transaction = await self._advance(
            transaction,
            TransactionStatus.CANCELLED,
            TimelineEventType.CANCELLED,
            actor_id,
            description,
            metadata={"reason": reason},
        )

        await self.registry.release_from_transaction(transaction.land_id, transaction.transaction_code)
        if transaction.chat_id:
            await self.negotiation.cancel_for_transaction(transaction.chat_id, transaction.transaction_code, actor_id)

        return await self.get(transaction_id)

    async def reconcile_parcel(self, land_id: int, now: Optional[datetime] = None) -> Land:
        """Free a parcel whose reservation points at no live transaction.

        A reservation younger than the grace window is left alone even when no
        transaction row exists yet: ``initiate`` commits the reservation before
        it inserts the transaction.
        """
        now = now or datetime.utcnow()
        land = await self.registry.get_land(land_id)
        code = land.active_transaction_code
        if land.status != LandStatus.UNDER_TRANSACTION or not code:
            return land

        result = await self.db.execute(
            select(LandTransaction).where(LandTransaction.transaction_code == code)
        )
        transaction = result.scalar_one_or_none()
        if transaction is not None and not transaction.is_terminal:
            return land

        grace = timedelta(seconds=settings.RESERVATION_GRACE_SECONDS)
        if transaction is None and land.reserved_at is not None and now - land.reserved_at < grace:
            logger.info(f"Land {land_id} reservation {code} is recent; leaving it for its initiation to finish")
            return land

        if await self.registry.release_from_transaction(land_id, code):
            logger.warning(f"Reconciled land {land_id}: released stale reservation {code}")
        return await self.registry.get_land(land_id)
