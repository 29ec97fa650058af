"""Workflow facade: the single entry point for routers and background tasks.

Checks who may act (participants or an admin, through the injected identity
service), checks that a user is verified before they can become a parcel's
owner, sequences the negotiation, transaction and transfer components for
each logical action, and records an audit event once an action has
committed. Audit failures are logged and never undo committed state.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import (
    CollaboratorUnavailable,
    IneligibleOwner,
    TransferPreconditionFailed,
    UnauthorizedActor,
    ValidationError,
)
from app.models.chat import Chat, ChatMessage, OfferHistory
from app.models.land import Land, OwnershipRecord
from app.models.transaction import (
    LandTransaction,
    TimelineEvent,
    TransactionDocument,
    TransactionDocumentType,
    TransactionStatus,
)
from app.models.user import User
from app.services.collaborators import (
    AuditSink,
    CertificateService,
    DocumentStore,
    IdentityService,
    call_with_timeout,
)
from app.services.land_registry import LandRegistryStore
from app.services.negotiation import NegotiationEngine
from app.services.ownership_transfer import OwnershipTransferCoordinator
from app.services.transactions import ReviewVerdict, SubmittedDocument, TransactionLifecycleManager

logger = logging.getLogger(__name__)


@dataclass
class DocumentUpload:
    """Raw document bytes as received from a party"""
    content: bytes
    document_type: TransactionDocumentType = TransactionDocumentType.OTHER
    filename: Optional[str] = None
    mime_type: Optional[str] = None


class WorkflowFacade:
    """Authorization, eligibility and sequencing over the registry workflow"""

    def __init__(
        self,
        db: AsyncSession,
        identity: IdentityService,
        audit: AuditSink,
        certificates: CertificateService,
        document_store: DocumentStore,
        retry_queue: Optional[Callable[[int], None]] = None,
        collaborator_timeout: Optional[float] = None,
    ):
        self.db = db
        self.identity = identity
        self.audit = audit
        self.document_store = document_store
        self.collaborator_timeout = collaborator_timeout or settings.COLLABORATOR_TIMEOUT_SECONDS

        self.registry = LandRegistryStore(db)
        self.negotiation = NegotiationEngine(db, self.registry)
        self.coordinator = OwnershipTransferCoordinator(
            db,
            self.registry,
            self.negotiation,
            certificates,
            retry_queue=retry_queue,
            collaborator_timeout=self.collaborator_timeout,
        )
        self.transactions = TransactionLifecycleManager(db, self.registry, self.negotiation, self.coordinator)

    # Guards

    async def _require_admin(self, actor_id: int) -> None:
        if not await self.identity.is_admin(actor_id):
            raise UnauthorizedActor(message="Administrator access required")

    async def _require_participant_or_admin(self, record, actor_id: int) -> None:
        if record.is_participant(actor_id):
            return
        if await self.identity.is_admin(actor_id):
            return
        raise UnauthorizedActor(
            message="Only the participants or an administrator can access this record",
            details={"record_id": record.id},
        )

    async def _require_eligible(self, user_id: int) -> None:
        if not await self.identity.is_ownership_eligible(user_id):
            raise IneligibleOwner(
                message="User must be verified before holding land ownership",
                details={"user_id": user_id},
            )

    async def _audit(self, event_kind: str, actor_id: Optional[int], target_kind: str,
                     target_id: Any, details: Optional[Dict[str, Any]] = None) -> None:
        try:
            await call_with_timeout(
                self.audit.record(event_kind, actor_id, target_kind, target_id, details),
                "audit sink",
                self.collaborator_timeout,
            )
        except CollaboratorUnavailable as e:
            logger.warning(f"Audit event {event_kind} for {target_kind} {target_id} not recorded: {e.message}")

    # Land

    async def register_land(self, admin_id: int, attributes: Dict[str, Any]) -> Land:
        await self._require_admin(admin_id)
        land = await self.registry.register_land(admin_id, attributes)
        await self._audit("LAND_REGISTER", admin_id, "LAND", land.id, {"asset_id": land.asset_id})
        return land

    async def claim_land(self, land_id: int, user_id: int) -> Land:
        await self._require_eligible(user_id)
        land = await self.registry.claim_initial_ownership(land_id, user_id)
        await self._audit("LAND_CLAIM", user_id, "LAND", land.id, {"asset_id": land.asset_id})
        return land

    async def list_for_sale(self, land_id: int, owner_id: int, asking_price,
                            description: Optional[str] = None) -> Land:
        land = await self.registry.list_for_sale(land_id, owner_id, asking_price, description)
        await self._audit(
            "LAND_LIST_SALE", owner_id, "LAND", land.id,
            {"asset_id": land.asset_id, "asking_price": str(land.asking_price)},
        )
        return land

    async def unlist(self, land_id: int, owner_id: int) -> Land:
        land = await self.registry.unlist(land_id, owner_id)
        await self._audit("LAND_UNLIST", owner_id, "LAND", land.id, {"asset_id": land.asset_id})
        return land

    async def get_land(self, land_id: int) -> Land:
        return await self.registry.get_land(land_id)

    async def get_land_by_asset_id(self, asset_id: str) -> Land:
        return await self.registry.get_by_asset_id(asset_id)

    async def marketplace(self, **filters) -> Tuple[List[Land], int]:
        return await self.registry.marketplace(**filters)

    async def ownership_history(self, land_id: int) -> List[OwnershipRecord]:
        await self.registry.get_land(land_id)
        return await self.registry.ownership_history(land_id)

    async def my_lands(self, user_id: int) -> List[Land]:
        return await self.registry.holdings_of(user_id)

    # Negotiation

    async def start_negotiation(self, land_id: int, buyer_id: int) -> Chat:
        chat = await self.negotiation.start(land_id, buyer_id)
        await self._audit("CHAT_START", buyer_id, "CHAT", chat.id, {"land_id": land_id})
        return chat

    async def get_negotiation(self, chat_id: int, actor_id: int) -> Tuple[Chat, List[ChatMessage], List[OfferHistory]]:
        chat = await self.negotiation.get_chat(chat_id)
        await self._require_participant_or_admin(chat, actor_id)
        messages = await self.negotiation.messages(chat_id)
        history = await self.negotiation.offer_history(chat_id)
        return chat, messages, history

    async def my_negotiations(self, user_id: int) -> List[Chat]:
        return await self.negotiation.chats_for_user(user_id)

    async def send_message(self, chat_id: int, sender_id: int, text: str) -> ChatMessage:
        return await self.negotiation.send_message(chat_id, sender_id, text)

    async def mark_read(self, chat_id: int, reader_id: int) -> int:
        return await self.negotiation.mark_read(chat_id, reader_id)

    async def make_offer(self, chat_id: int, actor_id: int, amount) -> Chat:
        chat = await self.negotiation.make_offer(chat_id, actor_id, amount)
        await self._audit("OFFER_MAKE", actor_id, "CHAT", chat_id, {"amount": str(chat.offer_amount)})
        return chat

    async def counter_offer(self, chat_id: int, actor_id: int, amount) -> Chat:
        chat = await self.negotiation.counter_offer(chat_id, actor_id, amount)
        await self._audit("OFFER_COUNTER", actor_id, "CHAT", chat_id, {"amount": str(chat.offer_amount)})
        return chat

    async def accept_offer(self, chat_id: int, actor_id: int) -> Chat:
        chat = await self.negotiation.accept_offer(chat_id, actor_id)
        await self._audit("OFFER_ACCEPT", actor_id, "CHAT", chat_id, {"agreed_price": str(chat.agreed_price)})
        return chat

    async def reject_offer(self, chat_id: int, actor_id: int, reason: Optional[str] = None) -> Chat:
        chat = await self.negotiation.reject_offer(chat_id, actor_id, reason)
        await self._audit("OFFER_REJECT", actor_id, "CHAT", chat_id, {"reason": reason})
        return chat

    async def cancel_negotiation(self, chat_id: int, actor_id: int, reason: Optional[str] = None) -> Chat:
        chat = await self.negotiation.get_chat(chat_id)
        await self._require_participant_or_admin(chat, actor_id)
        chat = await self.negotiation.cancel(chat_id, actor_id, reason)
        await self._audit("CHAT_CANCEL", actor_id, "CHAT", chat_id, {"reason": reason})
        return chat

    async def block_negotiation(self, chat_id: int, actor_id: int, reason: Optional[str] = None) -> Chat:
        chat = await self.negotiation.get_chat(chat_id)
        await self._require_participant_or_admin(chat, actor_id)
        chat = await self.negotiation.block(chat_id, actor_id, reason)
        await self._audit("CHAT_BLOCK", actor_id, "CHAT", chat_id, {"reason": reason})
        return chat

    async def expire_stale_offers(self) -> int:
        return await self.negotiation.expire_stale_offers()

    async def negotiation_statistics(self, admin_id: int) -> Dict[str, Any]:
        await self._require_admin(admin_id)
        return await self.negotiation.statistics()

    # Transactions

    async def initiate_transaction(
        self,
        actor_id: int,
        land_id: Optional[int] = None,
        agreed_price=None,
        chat_id: Optional[int] = None,
    ) -> LandTransaction:
        """Start a transaction from an agreed negotiation or a marketplace purchase.

        Either party of an agreed negotiation may initiate; a marketplace
        purchase is always initiated by the buyer. The buyer must be eligible
        to hold ownership either way.
        """
        if chat_id is not None:
            chat = await self.negotiation.get_chat(chat_id)
            if not chat.is_participant(actor_id):
                raise UnauthorizedActor(message="Only the negotiation participants can initiate this transaction")
            if land_id is not None and land_id != chat.land_id:
                raise ValidationError(message="Land does not match the negotiation")
            land_id, buyer_id, seller_id = chat.land_id, chat.buyer_id, chat.seller_id
        else:
            if land_id is None:
                raise ValidationError(message="Either a negotiation or a land is required")
            land = await self.registry.get_land(land_id)
            buyer_id, seller_id = actor_id, land.current_owner_id
            if seller_id is None:
                raise ValidationError(message="Land has no owner to buy from")
            if buyer_id == seller_id:
                raise ValidationError(message="You cannot buy your own land")

        await self._require_eligible(buyer_id)

        transaction = await self.transactions.initiate(
            land_id, buyer_id, seller_id, agreed_price=agreed_price, chat_id=chat_id, actor_id=actor_id
        )
        await self._audit(
            "TRANSACTION_INITIATE", actor_id, "TRANSACTION", transaction.id,
            {
                "transaction_code": transaction.transaction_code,
                "land_id": land_id,
                "agreed_price": str(transaction.agreed_price),
                "initiated_from": transaction.initiated_from.value,
            },
        )
        return transaction

    async def confirm_sale(self, transaction_id: int, seller_id: int) -> LandTransaction:
        transaction = await self.transactions.confirm_sale(transaction_id, seller_id)
        await self._audit("TRANSACTION_CONFIRM", seller_id, "TRANSACTION", transaction_id)
        return transaction

    async def submit_documents(self, transaction_id: int, actor_id: int,
                               uploads: Sequence[DocumentUpload]) -> LandTransaction:
        transaction = await self.transactions.get(transaction_id)
        if not transaction.is_participant(actor_id):
            raise UnauthorizedActor(message="Only the buyer or seller can submit documents")
        if not uploads:
            raise ValidationError(message="At least one document is required")

        documents = []
        for upload in uploads:
            content_ref = await call_with_timeout(
                self.document_store.put(upload.content),
                "document store",
                self.collaborator_timeout,
            )
            documents.append(SubmittedDocument(
                content_ref=content_ref,
                document_type=upload.document_type,
                document_name=upload.filename,
                mime_type=upload.mime_type,
                file_size=len(upload.content),
            ))

        transaction = await self.transactions.submit_documents(transaction_id, actor_id, documents)
        await self._audit(
            "TRANSACTION_DOCUMENTS", actor_id, "TRANSACTION", transaction_id,
            {"documents": [d.content_ref for d in documents]},
        )
        return transaction

    async def start_review(self, transaction_id: int, admin_id: int) -> LandTransaction:
        await self._require_admin(admin_id)
        transaction = await self.transactions.start_review(transaction_id, admin_id)
        await self._audit("TRANSACTION_REVIEW_START", admin_id, "TRANSACTION", transaction_id)
        return transaction

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
        await self._require_admin(admin_id)
        if verdict == ReviewVerdict.APPROVE:
            transaction = await self.transactions.get(transaction_id)
            await self._require_eligible(transaction.buyer_id)

        try:
            transaction = await self.transactions.review(
                transaction_id,
                admin_id,
                verdict,
                comments=comments,
                rejection_reason=rejection_reason,
                documents_verified=documents_verified,
                legal_clearance=legal_clearance,
                financial_verification=financial_verification,
            )
        except TransferPreconditionFailed as e:
            await self._audit("TRANSFER_FAILED", admin_id, "TRANSACTION", transaction_id, e.details)
            raise

        event_kind = "TRANSACTION_APPROVE" if verdict == ReviewVerdict.APPROVE else "TRANSACTION_REJECT"
        await self._audit(
            event_kind, admin_id, "TRANSACTION", transaction_id,
            {
                "transaction_code": transaction.transaction_code,
                "status": transaction.status.value,
                "rejection_reason": transaction.rejection_reason,
                "certificate_pending": transaction.certificate_pending,
            },
        )
        return transaction

    async def retry_transfer(self, transaction_id: int, admin_id: int) -> LandTransaction:
        """Finish an approved transfer that was interrupted"""
        await self._require_admin(admin_id)
        transaction = await self.transactions.get(transaction_id)
        await self._require_eligible(transaction.buyer_id)
        try:
            transaction = await self.coordinator.transfer(transaction_id, admin_id)
        except TransferPreconditionFailed as e:
            await self._audit("TRANSFER_FAILED", admin_id, "TRANSACTION", transaction_id, e.details)
            raise
        await self._audit("TRANSFER_RESUME", admin_id, "TRANSACTION", transaction_id,
                          {"status": transaction.status.value})
        return transaction

    async def cancel_transaction(self, transaction_id: int, actor_id: int,
                                 reason: Optional[str] = None) -> LandTransaction:
        transaction = await self.transactions.cancel(transaction_id, actor_id, reason)
        await self._audit("TRANSACTION_CANCEL", actor_id, "TRANSACTION", transaction_id, {"reason": reason})
        return transaction

    async def get_transaction(
        self, transaction_id: int, actor_id: int
    ) -> Tuple[LandTransaction, List[TimelineEvent], List[TransactionDocument]]:
        transaction = await self.transactions.get(transaction_id)
        await self._require_participant_or_admin(transaction, actor_id)
        timeline = await self.transactions.timeline(transaction_id)
        documents = await self.transactions.documents(transaction_id)
        return transaction, timeline, documents

    async def my_transactions(self, user_id: int,
                              status: Optional[TransactionStatus] = None) -> List[LandTransaction]:
        return await self.transactions.list_for_user(user_id, status)

    async def pending_review(self, admin_id: int) -> List[LandTransaction]:
        await self._require_admin(admin_id)
        return await self.transactions.pending_review()

    async def transaction_statistics(self, admin_id: int,
                                     year: Optional[int] = None) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        """Overall counts plus the month-by-month figures for ``year`` (default: this year)"""
        await self._require_admin(admin_id)
        year = year or datetime.utcnow().year
        return await self.transactions.statistics(), await self.transactions.monthly_statistics(year)

    async def verify_transfer(self, transaction_code: str) -> Tuple[LandTransaction, Land]:
        transaction = await self.transactions.verify(transaction_code)
        land = await self.registry.get_land(transaction.land_id)
        return transaction, land

    async def reconcile_parcel(self, land_id: int, admin_id: int) -> Land:
        await self._require_admin(admin_id)
        land = await self.transactions.reconcile_parcel(land_id)
        await self._audit("LAND_RECONCILE", admin_id, "LAND", land_id, {"status": land.status.value})
        return land

    async def issue_pending_certificate(self, transaction_id: int) -> LandTransaction:
        return await self.coordinator.issue_pending_certificate(transaction_id)

    # Users

    async def verify_user(self, admin_id: int, user_id: int, approve: bool,
                          rejection_reason: Optional[str] = None) -> User:
        await self._require_admin(admin_id)
        if not approve and not rejection_reason:
            raise ValidationError(message="A rejection reason is required")
        user = await self.identity.set_verification(user_id, admin_id, approve, rejection_reason)
        await self._audit(
            "USER_VERIFY", admin_id, "USER", user_id,
            {"status": user.verification_status.value, "rejection_reason": rejection_reason},
        )
        return user


def build_workflow(db: AsyncSession, session_factory, retry_queue: Optional[Callable[[int], None]] = None) -> WorkflowFacade:
    """Facade wired with the database, filesystem and ReportLab collaborators"""
    from app.services.collaborators import (
        DatabaseAuditSink,
        DatabaseIdentityService,
        LocalDocumentStore,
        ReportLabCertificateService,
    )

    document_store = LocalDocumentStore(settings.STORAGE_PATH)
    return WorkflowFacade(
        db,
        identity=DatabaseIdentityService(db),
        audit=DatabaseAuditSink(session_factory),
        certificates=ReportLabCertificateService(document_store, settings.SECRET_KEY, settings.FRONTEND_URL),
        document_store=document_store,
        retry_queue=retry_queue,
    )
