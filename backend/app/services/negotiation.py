"""Negotiation engine: the offer protocol between one buyer and one seller.

Offer mutations are computed by the pure ``plan_*`` functions and applied with
one conditional UPDATE keyed on ``offer_version`` and the chat status that was
read. If another request changed the offer in between, no row matches and the
caller gets ``InvalidNegotiationState`` instead of a silent overwrite.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import (
    ConflictError,
    InvalidNegotiationState,
    NotFoundError,
    UnauthorizedActor,
    ValidationError,
)
from app.models.chat import Chat, ChatMessage, ChatStatus, MessageType, OfferHistory, OfferStatus
from app.models.land import LandStatus
from app.services.land_registry import LandRegistryStore
from app.services.state_machine import (
    OfferChange,
    ensure_chat_transition,
    plan_accept,
    plan_counter_offer,
    plan_expiry,
    plan_offer,
    plan_reject,
    plan_reopen,
)

logger = logging.getLogger(__name__)

OPEN_CHAT_STATUSES = (ChatStatus.ACTIVE, ChatStatus.DEAL_AGREED, ChatStatus.TRANSACTION_INITIATED)
SILENCED_CHAT_STATUSES = (ChatStatus.COMPLETED, ChatStatus.CANCELLED, ChatStatus.BLOCKED)
# A party may walk away until a transaction takes over the deal
WITHDRAWABLE_CHAT_STATUSES = (ChatStatus.ACTIVE, ChatStatus.DEAL_AGREED)


class NegotiationEngine:
    """Chat and offer state for a parcel negotiation"""

    def __init__(self, db: AsyncSession, registry: Optional[LandRegistryStore] = None,
                 offer_expiry_hours: Optional[int] = None):
        self.db = db
        self.registry = registry or LandRegistryStore(db)
        self.offer_expiry_hours = offer_expiry_hours or settings.OFFER_EXPIRY_HOURS

    # Queries

    async def get_chat(self, chat_id: int) -> Chat:
        result = await self.db.execute(
            select(Chat).where(Chat.id == chat_id).execution_options(populate_existing=True)
        )
        chat = result.scalar_one_or_none()
        if not chat:
            raise NotFoundError(message="Negotiation not found", details={"chat_id": chat_id})
        return chat

    async def messages(self, chat_id: int) -> List[ChatMessage]:
        result = await self.db.execute(
            select(ChatMessage).where(ChatMessage.chat_id == chat_id).order_by(ChatMessage.id)
        )
        return list(result.scalars().all())

    async def offer_history(self, chat_id: int) -> List[OfferHistory]:
        result = await self.db.execute(
            select(OfferHistory).where(OfferHistory.chat_id == chat_id).order_by(OfferHistory.id)
        )
        return list(result.scalars().all())

    async def chats_for_user(self, user_id: int) -> List[Chat]:
        result = await self.db.execute(
            select(Chat)
            .where(or_(Chat.buyer_id == user_id, Chat.seller_id == user_id))
            .order_by(Chat.last_activity.desc())
        )
        return list(result.scalars().all())

    async def find_open_chat(self, land_id: int, buyer_id: int, seller_id: int) -> Optional[Chat]:
        result = await self.db.execute(
            select(Chat).where(
                Chat.land_id == land_id,
                Chat.buyer_id == buyer_id,
                Chat.seller_id == seller_id,
                Chat.status.in_(OPEN_CHAT_STATUSES),
            )
        )
        return result.scalars().first()

    async def statistics(self) -> Dict[str, Any]:
        """Negotiation counts for the admin dashboard"""
        result = await self.db.execute(
            select(Chat.status, func.count(Chat.id)).group_by(Chat.status)
        )
        breakdown = {status.value: 0 for status in ChatStatus}
        for status, count in result.all():
            breakdown[status.value] = count

        return {
            "total_chats": sum(breakdown.values()),
            "active_chats": breakdown[ChatStatus.ACTIVE.value],
            "deals_agreed": breakdown[ChatStatus.DEAL_AGREED.value],
            "status_breakdown": breakdown,
        }

    async def _chat_for_participant(self, chat_id: int, actor_id: int) -> Chat:
        chat = await self.get_chat(chat_id)
        if not chat.is_participant(actor_id):
            raise UnauthorizedActor(
                message="Only the buyer or seller can act on this negotiation",
                details={"chat_id": chat_id},
            )
        return chat

    # Starting and messaging

    async def start(self, land_id: int, buyer_id: int) -> Chat:
        """Open a negotiation, or return the one already open for this buyer"""
        land = await self.registry.get_land(land_id)

        if land.current_owner_id is None:
            raise ConflictError(message="Land has no owner to negotiate with", details={"land_id": land_id})
        if land.current_owner_id == buyer_id:
            raise ValidationError(message="You cannot negotiate for your own land", details={"land_id": land_id})

        existing = await self.find_open_chat(land_id, buyer_id, land.current_owner_id)
        if existing:
            return existing

        if not land.for_sale or land.status != LandStatus.FOR_SALE:
            raise ConflictError(message="Land is not available for sale", details={"land_id": land_id})

        now = datetime.utcnow()
        chat = Chat(
            land_id=land_id,
            buyer_id=buyer_id,
            seller_id=land.current_owner_id,
            status=ChatStatus.ACTIVE,
            offer_version=0,
            last_activity=now,
        )
        self.db.add(chat)
        await self.db.flush()

        self.db.add(ChatMessage(
            chat_id=chat.id,
            sender_id=buyer_id,
            message=f"Hi! I'm interested in your land (Asset ID: {land.asset_id}). Can we discuss?",
            message_type=MessageType.TEXT,
            created_at=now,
        ))
        await self.db.commit()

        logger.info(f"Negotiation {chat.id} started for land {land.asset_id} by buyer {buyer_id}")
        return await self.get_chat(chat.id)

    async def send_message(self, chat_id: int, sender_id: int, text: str) -> ChatMessage:
        chat = await self._chat_for_participant(chat_id, sender_id)
        if chat.status in SILENCED_CHAT_STATUSES:
            raise InvalidNegotiationState(
                message=f"Cannot send messages in a {chat.status.value} negotiation",
                details={"chat_id": chat_id, "status": chat.status.value},
            )

        text = (text or "").strip()
        if not text:
            raise ValidationError(message="Message cannot be empty")

        now = datetime.utcnow()
        message = ChatMessage(
            chat_id=chat_id,
            sender_id=sender_id,
            message=text,
            message_type=MessageType.TEXT,
            created_at=now,
        )
        self.db.add(message)
        await self.db.execute(
            update(Chat).where(Chat.id == chat_id).values(last_activity=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(message)
        return message

    async def mark_read(self, chat_id: int, reader_id: int) -> int:
        """Mark the counterparty's messages read; returns how many changed"""
        await self._chat_for_participant(chat_id, reader_id)
        result = await self.db.execute(
            update(ChatMessage)
            .where(
                ChatMessage.chat_id == chat_id,
                or_(ChatMessage.sender_id != reader_id, ChatMessage.sender_id.is_(None)),
                ChatMessage.is_read.is_(False),
            )
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount

    # Offer protocol

    async def _apply(self, chat: Chat, change: OfferChange, sender_id: Optional[int],
                     extra_values: Optional[Dict[str, Any]] = None) -> Chat:
        """Write ``change`` if the chat still looks the way it did when it was planned"""
        # A rollback expires ``chat``; everything read after it comes from here
        chat_id, version, status = chat.id, chat.offer_version, chat.status
        previous_amount, previous_by, previous_made_at = chat.offer_amount, chat.offer_by_id, chat.offer_made_at

        now = datetime.utcnow()
        values: Dict[str, Any] = {
            "offer_amount": change.amount,
            "offer_by_id": change.offered_by,
            "offer_status": change.offer_status,
            "offer_made_at": change.offer_made_at,
            "offer_version": version + 1,
            "last_activity": now,
        }
        if change.chat_status is not None:
            values["status"] = change.chat_status
        if change.agreed_price is not None:
            values["agreed_price"] = change.agreed_price
            values["agreed_date"] = change.agreed_date
        if change.clear_agreement:
            values["agreed_price"] = None
            values["agreed_date"] = None
            values["transaction_id"] = None
        if extra_values:
            values.update(extra_values)

        result = await self.db.execute(
            update(Chat)
            .where(
                Chat.id == chat_id,
                Chat.offer_version == version,
                Chat.status == status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            logger.info(f"Lost offer update race on chat {chat_id} at version {version}")
            raise InvalidNegotiationState(
                message="The negotiation changed while your request was being processed; reload and retry",
                details={"chat_id": chat_id, "offer_version": version},
            )

        if change.archive_as is not None and previous_amount is not None:
            self.db.add(OfferHistory(
                chat_id=chat_id,
                amount=previous_amount,
                offered_by_id=previous_by,
                status=change.archive_as,
                offered_at=previous_made_at,
                superseded_at=now,
            ))
        self.db.add(ChatMessage(
            chat_id=chat_id,
            sender_id=sender_id,
            message=change.message,
            message_type=change.message_type,
            offer_amount=change.message_amount,
            created_at=now,
        ))
        await self.db.commit()
        return await self.get_chat(chat_id)

    async def make_offer(self, chat_id: int, actor_id: int, amount) -> Chat:
        chat = await self._chat_for_participant(chat_id, actor_id)
        change = plan_offer(chat, actor_id, amount, datetime.utcnow(), self.offer_expiry_hours)
        chat = await self._apply(chat, change, actor_id)
        logger.info(f"Offer of {change.amount} made in chat {chat_id} by user {actor_id}")
        return chat

    async def counter_offer(self, chat_id: int, actor_id: int, amount) -> Chat:
        chat = await self._chat_for_participant(chat_id, actor_id)
        change = plan_counter_offer(chat, actor_id, amount, datetime.utcnow(), self.offer_expiry_hours)
        chat = await self._apply(chat, change, actor_id)
        logger.info(f"Counter offer of {change.amount} made in chat {chat_id} by user {actor_id}")
        return chat

    async def accept_offer(self, chat_id: int, actor_id: int) -> Chat:
        chat = await self._chat_for_participant(chat_id, actor_id)
        change = plan_accept(chat, actor_id, datetime.utcnow(), self.offer_expiry_hours)
        chat = await self._apply(chat, change, actor_id)
        logger.info(f"Offer accepted in chat {chat_id} by user {actor_id} at {change.agreed_price}")
        return chat

    async def reject_offer(self, chat_id: int, actor_id: int, reason: Optional[str] = None) -> Chat:
        chat = await self._chat_for_participant(chat_id, actor_id)
        change = plan_reject(chat, actor_id, reason, datetime.utcnow(), self.offer_expiry_hours)
        chat = await self._apply(chat, change, actor_id)
        logger.info(f"Offer rejected in chat {chat_id} by user {actor_id}")
        return chat

    async def expire_stale_offers(self, now: Optional[datetime] = None) -> int:
        """Move PENDING offers older than the expiry window to EXPIRED"""
        now = now or datetime.utcnow()
        cutoff = now - timedelta(hours=self.offer_expiry_hours)
        result = await self.db.execute(
            select(Chat.id).where(
                Chat.status == ChatStatus.ACTIVE,
                Chat.offer_status == OfferStatus.PENDING,
                Chat.offer_made_at <= cutoff,
            )
        )

        expired = 0
        # Reload each chat; a lost race rolls back and expires what was loaded before it
        for chat_id in result.scalars().all():
            chat = await self.get_chat(chat_id)
            change = plan_expiry(chat, now, self.offer_expiry_hours)
            if change is None:
                continue
            try:
                await self._apply(chat, change, None)
                expired += 1
            except InvalidNegotiationState:
                # A party acted on the offer first
                continue

        if expired:
            logger.info(f"Expired {expired} stale offers")
        return expired

    # Lifecycle

    async def _transition(self, chat: Chat, target: ChatStatus, message: str,
                          sender_id: Optional[int], extra_values: Optional[Dict[str, Any]] = None) -> bool:
        """Conditional status change plus a system message; False if the status moved first"""
        chat_id, current = chat.id, chat.status
        ensure_chat_transition(current, target)
        now = datetime.utcnow()
        values = {"status": target, "last_activity": now}
        if extra_values:
            values.update(extra_values)

        result = await self.db.execute(
            update(Chat)
            .where(Chat.id == chat_id, Chat.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            logger.info(f"Lost status race on chat {chat_id}: expected {current.value}")
            return False

        self.db.add(ChatMessage(
            chat_id=chat_id,
            sender_id=sender_id,
            message=message,
            message_type=MessageType.SYSTEM,
            created_at=now,
        ))
        await self.db.commit()
        logger.info(f"Chat {chat_id} moved {current.value} -> {target.value}")
        return True

    async def _withdraw(self, chat: Chat, target: ChatStatus, actor_id: int, message: str) -> Chat:
        chat_id = chat.id
        if chat.status not in WITHDRAWABLE_CHAT_STATUSES:
            raise InvalidNegotiationState(
                message=f"A {chat.status.value} negotiation cannot be {target.value.lower()}",
                details={"chat_id": chat_id, "status": chat.status.value},
            )
        if not await self._transition(chat, target, message, actor_id):
            raise InvalidNegotiationState(
                message="The negotiation changed while your request was being processed; reload and retry",
                details={"chat_id": chat_id},
            )
        return await self.get_chat(chat_id)

    async def cancel(self, chat_id: int, actor_id: int, reason: Optional[str] = None) -> Chat:
        chat = await self.get_chat(chat_id)
        message = "Negotiation cancelled."
        if reason:
            message = f"Negotiation cancelled: {reason}"
        return await self._withdraw(chat, ChatStatus.CANCELLED, actor_id, message)

    async def block(self, chat_id: int, actor_id: int, reason: Optional[str] = None) -> Chat:
        chat = await self.get_chat(chat_id)
        message = "Negotiation blocked."
        if reason:
            message = f"Negotiation blocked: {reason}"
        return await self._withdraw(chat, ChatStatus.BLOCKED, actor_id, message)

    async def mark_transaction_initiated(self, chat_id: int, transaction_id: int,
                                         transaction_code: str, actor_id: int) -> bool:
        """DEAL_AGREED -> TRANSACTION_INITIATED; False if the chat is no longer DEAL_AGREED"""
        chat = await self.get_chat(chat_id)
        if chat.status != ChatStatus.DEAL_AGREED:
            return False
        return await self._transition(
            chat,
            ChatStatus.TRANSACTION_INITIATED,
            f"Transaction {transaction_code} initiated for the agreed price.",
            actor_id,
            extra_values={"transaction_id": transaction_id},
        )

    async def reopen(self, chat_id: int, reason: str, actor_id: Optional[int] = None) -> Chat:
        """Back to ACTIVE with the offer and agreed terms cleared"""
        chat = await self.get_chat(chat_id)
        if chat.status == ChatStatus.ACTIVE and chat.offer_status is None:
            return chat
        change = plan_reopen(chat, reason)
        chat = await self._apply(chat, change, actor_id)
        logger.info(f"Chat {chat_id} reopened: {reason}")
        return chat

    async def complete(self, chat_id: int, transaction_code: str, actor_id: Optional[int] = None) -> Chat:
        chat = await self.get_chat(chat_id)
        if chat.status == ChatStatus.COMPLETED:
            return chat
        if chat.status != ChatStatus.TRANSACTION_INITIATED:
            logger.warning(
                f"Chat {chat_id} is {chat.status.value}, not TRANSACTION_INITIATED, "
                f"while completing transaction {transaction_code}"
            )
            return chat
        await self._transition(
            chat, ChatStatus.COMPLETED, f"Transaction {transaction_code} completed. Ownership transferred.", actor_id
        )
        return await self.get_chat(chat_id)

    async def cancel_for_transaction(self, chat_id: int, transaction_code: str,
                                     actor_id: Optional[int] = None) -> Chat:
        chat = await self.get_chat(chat_id)
        if chat.status != ChatStatus.TRANSACTION_INITIATED:
            return chat
        await self._transition(
            chat, ChatStatus.CANCELLED, f"Transaction {transaction_code} was cancelled.", actor_id
        )
        return await self.get_chat(chat_id)
